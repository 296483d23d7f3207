"""CLI entry point for lazy-publish."""

from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click

from lazy_publish.changes import ChangeDetector
from lazy_publish.config import ReleaseConfig, resolve_config
from lazy_publish.errors import PublishError, ReleaseError
from lazy_publish.models import AccessLevel, BumpLevel, PublishRecord, Route
from lazy_publish.pipeline import plan_workspace, run_release
from lazy_publish.registry import NpmRegistry
from lazy_publish.scm import GitGateway


def _write_output(name: str, value: str) -> None:
    """Append a step output when running inside GitHub Actions."""
    output_path = os.environ.get("GITHUB_OUTPUT")
    if not output_path:
        return
    with open(output_path, "a") as fh:
        fh.write(f"{name}={value}\n")


def _published_json(records: list[PublishRecord]) -> str:
    return json.dumps([r.model_dump() for r in records])


def _load_config(config_path: str | None, **overrides: Any) -> ReleaseConfig:
    try:
        return resolve_config(overrides, Path(config_path) if config_path else None)
    except ReleaseError as exc:
        raise click.ClickException(str(exc)) from exc


F = TypeVar("F", bound=Callable[..., Any])


def config_options(func: F) -> F:
    """Options shared by every command that reads the release config.

    Each option can also be set through the INPUT_* variable GitHub
    Actions uses for workflow inputs.
    """
    options = [
        click.option(
            "--config",
            "config_path",
            type=click.Path(dir_okay=False),
            default=None,
            help="Config file. (default: <root>/lazy-publish.toml)",
        ),
        click.option(
            "--root",
            envvar="INPUT_ROOT_PATH",
            type=click.Path(file_okay=False),
            default=None,
            help="Workspace root directory.",
        ),
        click.option(
            "--package",
            envvar="INPUT_PACKAGE_PATH",
            default=None,
            help="Package directory for single-package routes, relative to root.",
        ),
        click.option(
            "--route",
            envvar="INPUT_ROUTE",
            type=click.Choice([r.value for r in Route]),
            default=None,
            help="Release flow to run.",
        ),
        click.option(
            "--access",
            envvar="INPUT_ACCESS",
            type=click.Choice([a.value for a in AccessLevel]),
            default=None,
            help="Registry access every package must declare.",
        ),
        click.option(
            "--main-branch",
            envvar="INPUT_MAIN_BRANCH",
            default=None,
            help="Branch that publishes stable versions.",
        ),
        click.option(
            "--dev-branch",
            envvar="INPUT_DEV_BRANCH",
            default=None,
            help="Branch that publishes -dev.N prereleases.",
        ),
        click.option(
            "--registry-url",
            envvar="INPUT_REGISTRY_URL",
            default=None,
            help="npm registry base URL.",
        ),
        click.option(
            "--since",
            envvar="INPUT_SINCE",
            default=None,
            help="Detect changes from a git revision range instead of the registry.",
        ),
        click.option(
            "--force",
            envvar="INPUT_FORCE_PUBLISH",
            is_flag=True,
            help="Publish everything, skipping change detection.",
        ),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(package_name="lazy-publish")
def cli() -> None:
    """Lazy monorepo npm publisher: only publishes what changed."""


@cli.command()
@config_options
@click.option(
    "--build-command",
    envvar="INPUT_BUILD_COMMAND",
    default=None,
    help="npm script that builds the packages.",
)
@click.option(
    "--bump",
    envvar="INPUT_BUMP_LEVEL",
    type=click.Choice([b.value for b in BumpLevel]),
    default=None,
    help="Version increment on the main branch.",
)
def release(config_path: str | None, force: bool, **options: Any) -> None:
    """Build, detect changes and publish (usually called from CI)."""
    config = _load_config(config_path, force=force or None, **options)

    try:
        result = asyncio.run(run_release(config))
    except PublishError as exc:
        if exc.published:
            click.echo("Published before the failure:", err=True)
            for record in exc.published:
                click.echo(f"  {record.name}@{record.version}", err=True)
        _write_output("published", _published_json(exc.published))
        raise click.ClickException(str(exc)) from exc
    except ReleaseError as exc:
        raise click.ClickException(str(exc)) from exc

    _write_output("published", _published_json(result.published))
    click.echo(_published_json(result.published))


@cli.command()
@config_options
def plan(config_path: str | None, force: bool, **options: Any) -> None:
    """Show which workspace packages would be published, batch by batch.

    Nothing is built or published; change detection uses the current
    build output.
    """
    config = _load_config(config_path, force=force or None, **options)
    registry = NpmRegistry(config.registry_url)

    try:
        result = asyncio.run(
            plan_workspace(
                config, registry, GitGateway(config.root_path), ChangeDetector(registry)
            )
        )
    except ReleaseError as exc:
        raise click.ClickException(str(exc)) from exc

    batches = [[pkg.name for pkg in batch] for batch in result.batches]
    _write_output("batches", json.dumps(batches))
    click.echo(json.dumps(batches))

"""Release pipeline: load → detect → expand → schedule → publish.

This module orchestrates the lazy-publish release process:
1. Load the workspace packages and their published versions
2. Build the publishable ones
3. Detect which packages changed since their last publish
4. Add every package that depends on a changed one
5. Order the result into dependency-respecting batches
6. Publish batch by batch, packages within a batch in parallel, pinning
   workspace dependencies to the versions just published

The key property is that unchanged packages are not republished, while
anything that depends on a changed package is.
"""

from __future__ import annotations

import asyncio
import subprocess
from collections.abc import Mapping
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field

from .changes import ChangeDetector, detect_changes, detect_changes_since
from .config import ReleaseConfig
from .errors import (
    BuildError,
    ManifestError,
    NotPublishableBranch,
    PublishError,
    RegistryError,
    UnresolvedDependencyError,
)
from .graph import expand_dependents, schedule_batches
from .manifest import load_package, load_workspace, pin_internal_deps, write_manifest
from .models import (
    UNPUBLISHED_VERSION,
    Package,
    PublishRecord,
    ReleaseResult,
    Route,
)
from .registry import NpmRegistry, RegistryGateway
from .scm import GitGateway, SourceControlGateway
from .shell import run_async, step, warn
from .versions import calc_update_version, dist_tag_for_branch


class Builder(Protocol):
    async def build(self, packages: list[Package], config: ReleaseConfig) -> None: ...


class ShellBuilder:
    """Builds packages with bun and turbo.

    The single-package route installs and builds inside the package
    directory. Monorepo routes install once at the root and let turbo
    build each selected workspace along with its internal dependencies
    (`--filter=<name>...`).
    """

    async def build(self, packages: list[Package], config: ReleaseConfig) -> None:
        step(f"Building {len(packages)} packages")
        print(f"  {', '.join(p.name for p in packages)}")
        try:
            if config.route is Route.SINGLE_PACKAGE:
                cwd = Path(packages[0].path)
                await run_async("bun", "install", cwd=cwd)
                await run_async("bun", "run", config.build_command, cwd=cwd)
            else:
                filters = [f"--filter={p.name}..." for p in packages]
                await run_async("bun", "install", cwd=config.root_path)
                await run_async(
                    "bunx",
                    "turbo",
                    "run",
                    config.build_command,
                    *filters,
                    cwd=config.root_path,
                )
        except (subprocess.CalledProcessError, OSError) as exc:
            raise BuildError(f"Build failed: {exc}") from exc


class ReleasePlan(BaseModel):
    """What a workspace release would publish, and in which order.

    Attributes:
        packages: Every package in the workspace.
        batches: Packages to publish, in publish order.
        skipped_reason: Why there is nothing to publish, if so.
    """

    packages: list[Package] = Field(default_factory=list)
    batches: list[list[Package]] = Field(default_factory=list)
    skipped_reason: str | None = None


def ensure_release_branch(branch: str, config: ReleaseConfig) -> None:
    """Raise NotPublishableBranch unless branch is the main or dev branch."""
    if branch not in (config.main_branch, config.dev_branch):
        raise NotPublishableBranch(branch)


async def find_changed(
    packages: list[Package],
    config: ReleaseConfig,
    scm: SourceControlGateway,
    detector: ChangeDetector,
) -> list[Package]:
    """Pick the change detection strategy the config asks for."""
    if config.force:
        step("Force publish: all packages marked changed")
        return list(packages)
    if config.since:
        return detect_changes_since(packages, scm, config.since, config.root_path)
    return await detect_changes(
        packages,
        detector,
        timeout=config.detect_timeout,
        package_timeout=config.package_timeout,
    )


async def prefetch_versions(
    batches: list[list[Package]], registry: RegistryGateway
) -> dict[str, str]:
    """Look up published versions of workspace deps that aren't being published.

    Every such dependency is fetched once, concurrently, before the first
    batch starts. Lookups that fail or find nothing are left out; a
    package that needs one of them fails later with
    UnresolvedDependencyError.

    Returns:
        Map of package name → latest published version.
    """
    planned = {pkg.name for batch in batches for pkg in batch}
    targets = sorted(
        {
            dep
            for batch in batches
            for pkg in batch
            for dep in pkg.internal_deps
            if dep not in planned
        }
    )
    if not targets:
        return {}

    print(f"  Fetching published versions: {', '.join(targets)}")
    results = await asyncio.gather(
        *(registry.fetch_package_info(name) for name in targets),
        return_exceptions=True,
    )

    fetched: dict[str, str] = {}
    for name, result in zip(targets, results):
        if isinstance(result, RegistryError):
            warn(f"Failed to fetch version for {name}: {result}")
        elif isinstance(result, BaseException):
            raise result
        elif result.artifact_ref or result.version != UNPUBLISHED_VERSION:
            fetched[name] = result.version
    return fetched


def resolve_internal_versions(
    pkg: Package, published: Mapping[str, str], fetched: Mapping[str, str]
) -> dict[str, str]:
    """Pick the version each workspace dependency of pkg should be pinned to.

    A version published earlier in this run wins over the registry's.

    Raises:
        UnresolvedDependencyError: If neither source knows the dependency.
    """
    versions: dict[str, str] = {}
    for dep in pkg.internal_deps:
        if dep in published:
            versions[dep] = published[dep]
        elif dep in fetched:
            versions[dep] = fetched[dep]
        else:
            raise UnresolvedDependencyError(pkg.name, dep)
    return versions


async def publish_package(
    pkg: Package,
    new_version: str,
    *,
    published: Mapping[str, str],
    fetched: Mapping[str, str],
    registry: RegistryGateway,
    tag: str,
) -> PublishRecord:
    """Rewrite one package's manifest and publish it."""
    versions = resolve_internal_versions(pkg, published, fetched)

    pkg.manifest["version"] = new_version
    pin_internal_deps(pkg.manifest, versions)
    for dep, version in versions.items():
        print(f"  {pkg.name}: {dep} → {version}")

    await asyncio.to_thread(write_manifest, pkg)
    await registry.publish(Path(pkg.path), tag, pkg.access)
    return PublishRecord(name=pkg.name, version=new_version)


async def publish_batches(
    batches: list[list[Package]],
    registry: RegistryGateway,
    config: ReleaseConfig,
    branch: str,
) -> list[PublishRecord]:
    """Publish batches in order, each batch's packages concurrently.

    A batch always runs to completion, then the versions it published
    become visible to the next batch. If any package in a batch fails, no
    further batch is started. Whatever was already published stays
    published, registry publishes can't be undone.

    Raises:
        NotPublishableBranch: Before publishing anything, if branch isn't a
            release branch.
        PublishError: If a package fails. Carries the records published so far.
    """
    tag = dist_tag_for_branch(branch, dev_branch=config.dev_branch)
    new_versions = {
        pkg.name: calc_update_version(
            pkg.current_version,
            config.bump,
            branch,
            main_branch=config.main_branch,
            dev_branch=config.dev_branch,
        )
        for batch in batches
        for pkg in batch
    }
    fetched = await prefetch_versions(batches, registry)

    published: dict[str, str] = {}
    records: list[PublishRecord] = []

    for i, batch in enumerate(batches, start=1):
        step(f"[Batch {i}/{len(batches)}] {', '.join(p.name for p in batch)}")
        results = await asyncio.gather(
            *(
                publish_package(
                    pkg,
                    new_versions[pkg.name],
                    published=published,
                    fetched=fetched,
                    registry=registry,
                    tag=tag,
                )
                for pkg in batch
            ),
            return_exceptions=True,
        )

        failures: list[tuple[Package, Exception]] = []
        for pkg, result in zip(batch, results):
            if isinstance(result, PublishRecord):
                records.append(result)
                print(f"  ✓ Published {result.name}@{result.version}")
            elif isinstance(result, Exception):
                failures.append((pkg, result))
                print(f"  ✗ Failed {pkg.name}@{new_versions[pkg.name]}: {result}")
            else:
                raise result

        if failures:
            pkg, exc = failures[0]
            raise PublishError(
                pkg.name, new_versions[pkg.name], exc, list(records)
            ) from exc

        # Only now, between batches, do new versions become visible
        published.update({r.name: r.version for r in records})

    return records


async def plan_workspace(
    config: ReleaseConfig,
    registry: RegistryGateway,
    scm: SourceControlGateway,
    detector: ChangeDetector,
    builder: Builder | None = None,
) -> ReleasePlan:
    """Work out which workspace packages to publish and in what order.

    Args:
        builder: Builds the publishable packages before change detection.
            None skips the build (dry runs use the existing build output).
    """
    step("Loading workspace packages")
    all_packages = await load_workspace(config.root_path, registry, config.access)

    step("Filtering publishable packages")
    eligible = [p for p in all_packages if p.publish_eligible]
    print(f"  {', '.join(p.name for p in eligible) or 'none'}")
    if not eligible:
        return ReleasePlan(
            packages=all_packages, skipped_reason="No publishable packages"
        )

    if builder is not None:
        await builder.build(eligible, config)

    changed = await find_changed(eligible, config, scm, detector)
    if not changed:
        return ReleasePlan(packages=all_packages, skipped_reason="No changed packages")

    step("Expanding dependent packages")
    expanded = expand_dependents(all_packages, changed)
    to_publish = [p for p in expanded if p.publish_eligible]
    print(f"  Packages to publish: {', '.join(p.name for p in to_publish) or 'none'}")
    if not to_publish:
        return ReleasePlan(
            packages=all_packages, skipped_reason="No publishable packages changed"
        )

    step("Resolving publish order")
    batches = schedule_batches(to_publish)
    for i, batch in enumerate(batches, start=1):
        print(f"  Batch {i}: {', '.join(p.name for p in batch)}")

    return ReleasePlan(packages=all_packages, batches=batches)


async def run_workspace_release(
    config: ReleaseConfig,
    registry: RegistryGateway,
    scm: SourceControlGateway,
    builder: Builder,
    detector: ChangeDetector,
) -> ReleaseResult:
    """Release every changed package of a workspace, plus its dependents."""
    branch = scm.current_branch()
    ensure_release_branch(branch, config)

    plan = await plan_workspace(config, registry, scm, detector, builder)
    if plan.skipped_reason:
        print(f"  {plan.skipped_reason}, nothing to publish")
        return ReleaseResult(skipped_reason=plan.skipped_reason)

    step("Publishing packages")
    records = await publish_batches(plan.batches, registry, config, branch)
    return ReleaseResult(published=records)


async def run_package_release(
    config: ReleaseConfig,
    registry: RegistryGateway,
    scm: SourceControlGateway,
    builder: Builder,
    detector: ChangeDetector,
) -> ReleaseResult:
    """Release a single package that has no workspace dependencies."""
    branch = scm.current_branch()
    ensure_release_branch(branch, config)

    step("Loading package")
    pkg = await load_package(config.package_path, registry, config.access)
    print(f"  {pkg.name} {pkg.current_version} ({pkg.path})")

    step("Verifying dependencies")
    if pkg.internal_deps:
        raise ManifestError(
            f"{pkg.name}: workspace dependencies are not supported in the "
            f"{config.route.value} route ({', '.join(pkg.internal_deps)})"
        )
    print("  All dependencies resolve through the registry")

    await builder.build([pkg], config)

    changed = await find_changed([pkg], config, scm, detector)
    if not changed:
        print("  No changes to publish")
        return ReleaseResult(skipped_reason="No changed packages")

    step("Publishing package")
    records = await publish_batches([[pkg]], registry, config, branch)
    return ReleaseResult(published=records)


async def run_release(
    config: ReleaseConfig,
    *,
    registry: RegistryGateway | None = None,
    scm: SourceControlGateway | None = None,
    builder: Builder | None = None,
    detector: ChangeDetector | None = None,
) -> ReleaseResult:
    """Execute the release pipeline for the configured route.

    Collaborators default to the real npm registry, git and bun; tests
    pass fakes.

    Returns:
        The packages published. A run on a non-release branch returns an
        empty result instead of failing.
    """
    registry = registry or NpmRegistry(config.registry_url)
    scm = scm or GitGateway(config.root_path)
    builder = builder or ShellBuilder()
    detector = detector or ChangeDetector(registry)

    print(f"  Route: {config.route.value}")
    print(f"  Root: {config.root_path}")

    runner = (
        run_workspace_release
        if config.route is Route.MONOREPO_WORKSPACE
        else run_package_release
    )
    try:
        result = await runner(config, registry, scm, builder, detector)
    except NotPublishableBranch as exc:
        print(f"  {exc}, skipping release")
        return ReleaseResult(skipped_reason=str(exc))

    if result.published:
        summary = ", ".join(f"{r.name}@{r.version}" for r in result.published)
        print(f"\n{'=' * 60}\nPublished: {summary}\n{'=' * 60}")
    return result

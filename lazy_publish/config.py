"""Release configuration.

Settings come from three places, highest precedence first:

1. CLI flags (or their INPUT_* environment variables in GitHub Actions)
2. lazy-publish.toml in the workspace root
3. Defaults on ReleaseConfig

The config file uses flat top-level keys:

    build_command = "build"
    bump = "minor"
    main_branch = "main"
    dev_branch = "next"
    access = "restricted"
    route = "monorepo-workspace"
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import tomlkit
from pydantic import BaseModel, ConfigDict, ValidationError
from tomlkit.exceptions import TOMLKitError

from .errors import ConfigError
from .models import AccessLevel, BumpLevel, Route

CONFIG_FILENAME = "lazy-publish.toml"
DEFAULT_REGISTRY_URL = "https://registry.npmjs.org"


class ReleaseConfig(BaseModel):
    """Validated settings for one release run.

    Attributes:
        root: Workspace root directory.
        package: Package directory (single-package routes), relative to root.
        build_command: Script name passed to `bun run` or `turbo run`.
        bump: Version increment applied on the main branch.
        main_branch: Branch that publishes stable versions.
        dev_branch: Branch that publishes "-dev.N" prereleases.
        access: Registry access every published package must declare.
        route: Which release flow to run.
        force: Publish even if change detection finds nothing.
        registry_url: Base URL of the npm registry.
        detect_timeout: Seconds allowed for the whole change detection phase.
        package_timeout: Seconds allowed for a single package's change check.
        since: Revision range (e.g. "v1.2.0..HEAD"). When set, changes are
            detected from git history instead of published tarballs.
    """

    model_config = ConfigDict(extra="forbid")

    root: str = "."
    package: str = "."
    build_command: str = "build"
    bump: BumpLevel = BumpLevel.PATCH
    main_branch: str = "main"
    dev_branch: str = "dev"
    access: AccessLevel = AccessLevel.PUBLIC
    route: Route = Route.SINGLE_PACKAGE
    force: bool = False
    registry_url: str = DEFAULT_REGISTRY_URL
    detect_timeout: float = 600.0
    package_timeout: float = 120.0
    since: str | None = None

    @property
    def root_path(self) -> Path:
        return Path(self.root).resolve()

    @property
    def package_path(self) -> Path:
        return (self.root_path / self.package).resolve()


def load_config_file(path: Path) -> dict[str, Any]:
    """Read a lazy-publish.toml file into plain Python values.

    Returns an empty dict if the file does not exist.

    Raises:
        ConfigError: If the file is not valid TOML.
    """
    if not path.exists():
        return {}
    try:
        doc = tomlkit.parse(path.read_text())
    except TOMLKitError as exc:
        raise ConfigError(f"{path}: {exc}") from exc
    return doc.unwrap()


def resolve_config(
    overrides: Mapping[str, Any] | None = None,
    config_path: Path | None = None,
) -> ReleaseConfig:
    """Merge the config file with CLI overrides and validate the result.

    Args:
        overrides: Values from the command line. None values are ignored so
            unset flags fall through to the file and defaults.
        config_path: Explicit config file. Defaults to lazy-publish.toml in
            the root given by overrides (or the current directory).

    Raises:
        ConfigError: If the file or any value is invalid.
    """
    cli_values = {k: v for k, v in (overrides or {}).items() if v is not None}
    if config_path is None:
        config_path = Path(cli_values.get("root", ".")) / CONFIG_FILENAME

    values = load_config_file(config_path) | cli_values
    try:
        return ReleaseConfig(**values)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration:\n{exc}") from exc

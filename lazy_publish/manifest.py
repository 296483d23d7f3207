"""package.json reading, validation and writing.

Loads workspace packages into Package models: name, declared dependencies
(classified internal/external by their specifier), access level, and the
latest published version from the registry.
"""

from __future__ import annotations

import asyncio
import glob
import json
from pathlib import Path
from typing import Any

from .errors import ManifestError
from .models import (
    DEPENDENCY_CATEGORIES,
    AccessLevel,
    Dependency,
    DependencyKind,
    Package,
)
from .registry import RegistryGateway
from .specifiers import parse_specifier

MANIFEST_FILENAME = "package.json"


def read_manifest(path: Path) -> dict[str, Any]:
    """Load a package.json file.

    Args:
        path: Path to the package.json, or the directory containing it.

    Raises:
        ManifestError: If the file is missing or is not a JSON object.
    """
    if path.is_dir():
        path = path / MANIFEST_FILENAME
    try:
        doc = json.loads(path.read_text())
    except FileNotFoundError as exc:
        raise ManifestError(f"No {MANIFEST_FILENAME} found at {path}") from exc
    except json.JSONDecodeError as exc:
        raise ManifestError(f"{path}: invalid JSON ({exc})") from exc
    if not isinstance(doc, dict):
        raise ManifestError(f"{path}: expected a JSON object")
    return doc


def save_manifest(path: Path, doc: dict[str, Any]) -> None:
    """Write a package.json with two-space indentation and a trailing newline."""
    if path.is_dir():
        path = path / MANIFEST_FILENAME
    path.write_text(json.dumps(doc, indent=2) + "\n")


def write_manifest(pkg: Package) -> None:
    """Persist a package's (possibly rewritten) manifest to disk."""
    save_manifest(Path(pkg.path), pkg.manifest)


def get_access(doc: dict[str, Any]) -> AccessLevel:
    """Private packages publish as restricted, everything else as public."""
    return AccessLevel.RESTRICTED if doc.get("private") else AccessLevel.PUBLIC


def parse_dependencies(doc: dict[str, Any], source: str = "") -> list[Dependency]:
    """Collect and classify dependencies from all categories.

    Gathers dependencies from:
    - dependencies (runtime deps)
    - devDependencies
    - peerDependencies

    Raises:
        ManifestError: If any specifier can't be resolved through the
            registry (file:, link:, git URLs, plain URLs, local paths).
    """
    deps: list[Dependency] = []
    for category in DEPENDENCY_CATEGORIES:
        section = doc.get(category) or {}
        if not isinstance(section, dict):
            raise ManifestError(f"{source}: {category} must be an object")
        for name, raw in section.items():
            spec = parse_specifier(str(raw))
            if not spec.is_valid:
                raise ManifestError(
                    f"{source}: invalid version specifier for {name}: {raw!r}"
                )
            kind = (
                DependencyKind.INTERNAL if spec.is_internal else DependencyKind.EXTERNAL
            )
            deps.append(
                Dependency(name=name, kind=kind, specifier=str(raw), category=category)
            )
    return deps


def get_workspace_globs(doc: dict[str, Any]) -> list[str]:
    """Extract workspace glob patterns from the root package.json.

    Supports both the array form ("workspaces": ["packages/*"]) and the
    object form ("workspaces": {"packages": ["packages/*"]}).

    Raises:
        ManifestError: If no workspaces are defined.
    """
    workspaces = doc.get("workspaces")
    if isinstance(workspaces, dict):
        workspaces = workspaces.get("packages")
    if not workspaces:
        raise ManifestError(f"No workspaces defined in root {MANIFEST_FILENAME}")
    return [str(w) for w in workspaces]


def discover_package_paths(root: Path) -> list[Path]:
    """Find every workspace package directory under root.

    Expands the workspace globs from root/package.json and keeps the
    directories that contain a package.json.
    """
    patterns = get_workspace_globs(read_manifest(root / MANIFEST_FILENAME))

    member_dirs: list[Path] = []
    for pattern in patterns:
        for match in sorted(glob.glob(str(root / pattern))):
            p = Path(match)
            if (p / MANIFEST_FILENAME).is_file() and p not in member_dirs:
                member_dirs.append(p)

    if not member_dirs:
        raise ManifestError("No packages found matching workspaces")
    return member_dirs


async def load_package(
    path: Path, registry: RegistryGateway, access: AccessLevel | str
) -> Package:
    """Load one package and look up its published state.

    Args:
        path: Package directory.
        registry: Used to fetch the latest published version and tarball.
        access: Access level configured for this run. Every package must
            declare the same one, so a private package can't be published
            publicly by accident (or the other way around).

    Raises:
        ManifestError: Missing name, invalid specifier, or access mismatch.
    """
    doc = read_manifest(path)
    name = doc.get("name")
    if not name:
        raise ManifestError(f"{path / MANIFEST_FILENAME}: package name is required")

    dependencies = parse_dependencies(doc, source=name)

    pkg_access = get_access(doc)
    expected = AccessLevel(access)
    if pkg_access is not expected:
        raise ManifestError(
            f"{name}: package access mismatch: {pkg_access.value} != {expected.value}"
        )

    info = await registry.fetch_package_info(name)
    return Package(
        name=name,
        path=str(path),
        current_version=info.version,
        artifact_ref=info.artifact_ref,
        access=pkg_access,
        publish_eligible=doc.get("npm") is True,
        dependencies=dependencies,
        manifest=doc,
    )


async def load_workspace(
    root: Path, registry: RegistryGateway, access: AccessLevel | str
) -> list[Package]:
    """Load every workspace package under root concurrently.

    Raises:
        ManifestError: If any package fails to load or two packages share a name.
    """
    paths = discover_package_paths(root)
    packages = list(
        await asyncio.gather(*(load_package(p, registry, access) for p in paths))
    )

    seen: dict[str, str] = {}
    for pkg in packages:
        if pkg.name in seen:
            raise ManifestError(
                f"Duplicate package name {pkg.name} ({seen[pkg.name]}, {pkg.path})"
            )
        seen[pkg.name] = pkg.path

    for pkg in packages:
        deps = f" → [{', '.join(pkg.internal_deps)}]" if pkg.internal_deps else ""
        print(f"  {pkg.name} {pkg.current_version} ({pkg.path}){deps}")

    return packages


def pin_internal_deps(manifest: dict[str, Any], versions: dict[str, str]) -> list[str]:
    """Replace workspace: specifiers with exact versions, modifying in place.

    Args:
        manifest: package.json document.
        versions: Map of package name → version to pin.

    Returns:
        Names of the workspace dependencies that had no entry in versions.
    """
    missing: list[str] = []
    for category in DEPENDENCY_CATEGORIES:
        section = manifest.get(category)
        if not isinstance(section, dict):
            continue
        for name, raw in section.items():
            if not parse_specifier(str(raw)).is_internal:
                continue
            if name in versions:
                section[name] = versions[name]
            elif name not in missing:
                missing.append(name)
    return missing

"""Shared test fixtures."""

from __future__ import annotations

import json
import shutil
import tarfile
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from lazy_publish.changes import ChangeDetector
from lazy_publish.config import ReleaseConfig
from lazy_publish.errors import RegistryError
from lazy_publish.models import AccessLevel, Package, RegistryInfo


class FakeRegistry:
    """In-memory RegistryGateway.

    Publishing records the manifest as it was on disk at publish time, so
    tests can check what a package was published with.
    """

    def __init__(self) -> None:
        self.infos: dict[str, RegistryInfo] = {}
        self.artifacts: dict[str, Path] = {}
        self.fail_fetch: set[str] = set()
        self.fail_publish: set[str] = set()
        self.fetch_calls: list[str] = []
        self.published: list[dict[str, Any]] = []

    def add(self, name: str, version: str) -> None:
        self.infos[name] = RegistryInfo(
            version=version,
            artifact_ref=f"https://registry.test/{name}/-/{name}-{version}.tgz",
        )

    async def fetch_package_info(self, name: str) -> RegistryInfo:
        self.fetch_calls.append(name)
        if name in self.fail_fetch:
            raise RegistryError(f"boom: {name}")
        return self.infos.get(name, RegistryInfo())

    async def download_artifact(self, ref: str, dest: Path) -> Path:
        if ref not in self.artifacts:
            raise RegistryError(f"no artifact at {ref}")
        target = dest / "package.tgz"
        shutil.copy(self.artifacts[ref], target)
        return target

    async def publish(self, path: Path, tag: str, access: AccessLevel) -> None:
        manifest = json.loads((Path(path) / "package.json").read_text())
        if manifest["name"] in self.fail_publish:
            raise RegistryError(f"publish rejected: {manifest['name']}")
        self.published.append(
            {
                "name": manifest["name"],
                "version": manifest["version"],
                "tag": tag,
                "access": access,
                "manifest": manifest,
            }
        )

    @property
    def published_names(self) -> list[str]:
        return [p["name"] for p in self.published]


class StaticDetector(ChangeDetector):
    """Reports a fixed set of package names as changed."""

    def __init__(self, changed: set[str] | None = None) -> None:
        super().__init__(FakeRegistry())
        self.changed = changed or set()
        self.checked: list[str] = []

    async def has_changed(self, pkg: Package) -> bool:
        self.checked.append(pkg.name)
        return pkg.name in self.changed


class FakeScm:
    def __init__(self, branch: str = "main") -> None:
        self.branch = branch
        self.diffs: dict[str, list[str]] = {}

    def current_branch(self) -> str:
        return self.branch

    def diff_changed_paths(self, rev_range: str) -> list[str]:
        return self.diffs.get(rev_range, [])


class FakeBuilder:
    def __init__(self) -> None:
        self.built: list[list[str]] = []

    async def build(self, packages: list[Package], config: ReleaseConfig) -> None:
        self.built.append([p.name for p in packages])


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry()


@pytest.fixture
def scm() -> FakeScm:
    return FakeScm()


@pytest.fixture
def builder() -> FakeBuilder:
    return FakeBuilder()


@pytest.fixture
def write_workspace(tmp_path: Path) -> Callable[[dict[str, dict[str, Any]]], Path]:
    """Return a function that lays out an npm workspace under tmp_path.

    Each entry maps a package directory name (under packages/) to the
    contents of its package.json.
    """

    def _write(packages: dict[str, dict[str, Any]]) -> Path:
        (tmp_path / "package.json").write_text(
            json.dumps({"name": "root", "private": True, "workspaces": ["packages/*"]})
        )
        for dirname, manifest in packages.items():
            pkg_dir = tmp_path / "packages" / dirname
            pkg_dir.mkdir(parents=True)
            (pkg_dir / "package.json").write_text(json.dumps(manifest, indent=2))
            (pkg_dir / "index.js").write_text(f"module.exports = '{dirname}';\n")
        return tmp_path

    return _write


def make_tarball(src: Path, dest: Path) -> Path:
    """Pack src into dest as an npm-style tarball (files under package/)."""
    with tarfile.open(dest, "w:gz") as tar:
        tar.add(src, arcname="package")
    return dest


@pytest.fixture
def sample_manifest() -> dict[str, Any]:
    return {
        "name": "@acme/app",
        "version": "1.0.0",
        "npm": True,
        "dependencies": {
            "@acme/core": "workspace:*",
            "lodash": "^4.17.21",
        },
        "devDependencies": {"typescript": "~5.4.0"},
        "peerDependencies": {"@acme/utils": "workspace:^"},
    }

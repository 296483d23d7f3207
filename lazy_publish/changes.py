"""Change detection.

A package needs publishing when what it would publish now differs from
what the registry already has. The default detector packs the local
package, downloads the published tarball, and compares the two trees file
by file after stripping fields that change on every release anyway (the
version and resolved workspace dependency versions).

Every failure leans towards "changed": a missed release is worse than a
redundant one.
"""

from __future__ import annotations

import asyncio
import filecmp
import json
import subprocess
import tarfile
import tempfile
from collections.abc import Iterable
from pathlib import Path

from .errors import ChangeDetectionTimeout, ReleaseError
from .models import Package
from .registry import RegistryGateway
from .scm import SourceControlGateway
from .shell import run_async, step, warn
from .specifiers import parse_specifier

# Byte difference under which two trees are considered equal when a real
# content comparison isn't possible.
SIZE_TOLERANCE = 100

# Sections where resolved workspace versions legitimately differ.
NORMALIZED_CATEGORIES = (
    "dependencies",
    "devDependencies",
    "peerDependencies",
    "optionalDependencies",
)

# Root files that affect every package when they change.
ROOT_FILES = frozenset(
    {
        "package.json",
        "package-lock.json",
        "yarn.lock",
        "pnpm-lock.yaml",
        "bun.lock",
        "bun.lockb",
    }
)


def normalize_manifests(local_dir: Path, published_dir: Path) -> None:
    """Strip fields that differ between releases without a real change.

    Removes "version" from both package.json files, and every workspace
    dependency of the local package from both sides (locally it reads
    "workspace:*", in the published tarball it is a resolved version).
    """
    local_path = local_dir / "package.json"
    published_path = published_dir / "package.json"
    local = json.loads(local_path.read_text())
    published = json.loads(published_path.read_text())

    local.pop("version", None)
    published.pop("version", None)

    for category in NORMALIZED_CATEGORIES:
        deps = local.get(category)
        if not isinstance(deps, dict):
            continue
        for name, raw in list(deps.items()):
            if parse_specifier(str(raw)).is_internal:
                del deps[name]
                published_deps = published.get(category)
                if isinstance(published_deps, dict):
                    published_deps.pop(name, None)

    local_path.write_text(json.dumps(local, indent=2))
    published_path.write_text(json.dumps(published, indent=2))


def _relative_files(root: Path) -> set[str]:
    return {str(p.relative_to(root)) for p in root.rglob("*") if p.is_file()}


def trees_equal(a: Path, b: Path) -> bool:
    """Recursively compare two directories by file list and file contents."""
    files = _relative_files(a)
    if files != _relative_files(b):
        return False
    return all(filecmp.cmp(a / f, b / f, shallow=False) for f in files)


def directory_size(root: Path) -> int:
    """Total size in bytes of all files under root."""
    return sum(p.stat().st_size for p in root.rglob("*") if p.is_file())


def extract_tarball(tarball: Path, dest: Path) -> None:
    with tarfile.open(tarball, "r:gz") as tar:
        if hasattr(tarfile, "data_filter"):
            tar.extractall(dest, filter="data")
        else:
            tar.extractall(dest)


class ChangeDetector:
    """Compares local package contents against the published tarball.

    Args:
        registry: Used to download the published tarball.
        size_tolerance: Allowed byte difference for the size fallback.
    """

    def __init__(
        self, registry: RegistryGateway, *, size_tolerance: int = SIZE_TOLERANCE
    ) -> None:
        self._registry = registry
        self._size_tolerance = size_tolerance

    async def pack_local(self, pkg: Package, dest: Path) -> Path:
        """Create the tarball bun would publish for pkg inside dest."""
        await run_async(
            "bun", "pm", "pack", "--destination", str(dest), cwd=pkg.path, capture=True
        )
        tarballs = sorted(dest.glob("*.tgz"))
        if not tarballs:
            raise FileNotFoundError(
                f"bun pm pack did not produce a tarball for {pkg.name}"
            )
        return tarballs[0]

    async def _extract_local(self, pkg: Package, dest: Path) -> None:
        tarball = await self.pack_local(pkg, dest)
        await asyncio.to_thread(extract_tarball, tarball, dest)

    async def _extract_published(self, ref: str, dest: Path) -> None:
        tarball = await self._registry.download_artifact(ref, dest)
        await asyncio.to_thread(extract_tarball, tarball, dest)

    async def _compare(
        self, pkg: Package, ref: str, local_tmp: Path, published_tmp: Path
    ) -> bool:
        # Run both sides to completion before raising, so neither is still
        # writing into a temp dir that's about to be removed.
        results = await asyncio.gather(
            self._extract_local(pkg, local_tmp),
            self._extract_published(ref, published_tmp),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

        local_dir = local_tmp / "package"
        published_dir = published_tmp / "package"
        await asyncio.to_thread(normalize_manifests, local_dir, published_dir)
        return not await asyncio.to_thread(trees_equal, local_dir, published_dir)

    def _size_fallback(
        self, pkg: Package, local_dir: Path, published_dir: Path
    ) -> bool:
        if not (local_dir.is_dir() and published_dir.is_dir()):
            print(f"  {pkg.name}: nothing to compare, assuming changes")
            return True
        try:
            local_size = directory_size(local_dir)
            published_size = directory_size(published_dir)
        except OSError:
            print(f"  {pkg.name}: size comparison failed, assuming changes")
            return True
        changed = abs(local_size - published_size) > self._size_tolerance
        print(
            f"  {pkg.name}: size comparison local={local_size} "
            f"published={published_size} changed={changed}"
        )
        return changed

    async def has_changed(self, pkg: Package) -> bool:
        """Decide whether pkg differs from its published version.

        Never-published packages are always changed. If the comparison
        can't be completed, falls back to comparing total sizes, and if
        that isn't possible either, reports a change.
        """
        ref = pkg.artifact_ref
        if not pkg.is_published or ref is None:
            print(f"  {pkg.name}: first publish (no existing version)")
            return True

        with tempfile.TemporaryDirectory(
            prefix="lazy-publish-registry-"
        ) as published_tmp, tempfile.TemporaryDirectory(
            prefix="lazy-publish-local-"
        ) as local_tmp:
            try:
                changed = await self._compare(
                    pkg, ref, Path(local_tmp), Path(published_tmp)
                )
            except (
                ReleaseError,
                OSError,
                ValueError,
                tarfile.TarError,
                subprocess.CalledProcessError,
            ) as exc:
                warn(f"{pkg.name}: content comparison failed ({exc})")
                changed = self._size_fallback(
                    pkg, Path(local_tmp) / "package", Path(published_tmp) / "package"
                )

        print(f"  {pkg.name}: {'changes detected' if changed else 'no changes'}")
        return changed

    async def check(self, pkg: Package, timeout: float) -> bool:
        """has_changed() bounded by timeout.

        Raises:
            ChangeDetectionTimeout: If the check takes longer than timeout.
        """
        try:
            return await asyncio.wait_for(self.has_changed(pkg), timeout)
        except asyncio.TimeoutError as exc:
            raise ChangeDetectionTimeout(
                f"{pkg.name}: change detection timed out after {timeout:g}s"
            ) from exc


async def detect_changes(
    packages: Iterable[Package],
    detector: ChangeDetector,
    *,
    timeout: float = 600.0,
    package_timeout: float = 120.0,
) -> list[Package]:
    """Return the packages whose contents differ from the registry.

    Packages are checked concurrently. A package whose check fails or
    times out counts as changed without affecting the others. If the
    whole phase exceeds timeout, every package counts as changed.
    """
    packages = list(packages)
    step(f"Checking changes for {len(packages)} packages")

    async def classify(pkg: Package) -> bool:
        try:
            return await detector.check(pkg, package_timeout)
        except ChangeDetectionTimeout as exc:
            warn(f"{exc}, assuming changes")
        except (ReleaseError, OSError) as exc:
            warn(f"{pkg.name}: change detection failed ({exc}), assuming changes")
        return True

    try:
        flags = await asyncio.wait_for(
            asyncio.gather(*(classify(p) for p in packages)), timeout
        )
    except asyncio.TimeoutError:
        warn(
            f"Change detection timed out after {timeout:g}s, "
            "assuming all packages changed"
        )
        return packages

    changed = [p for p, flag in zip(packages, flags) if flag]
    print(f"  {len(changed)} of {len(packages)} packages have changes")
    return changed


def detect_changes_since(
    packages: Iterable[Package],
    scm: SourceControlGateway,
    rev_range: str,
    root: Path,
) -> list[Package]:
    """Commit-range variant of detect_changes.

    A package is changed if any file under its directory, or any root
    workspace file (package.json, lockfiles), changed in rev_range.
    """
    packages = list(packages)
    step(f"Checking changes in {rev_range}")

    changed_files = set(scm.diff_changed_paths(rev_range))
    root_changed = bool(changed_files & ROOT_FILES)
    root = root.resolve()

    changed: list[Package] = []
    for pkg in packages:
        pkg_dir = Path(pkg.path).resolve()
        prefix = (
            str(pkg_dir.relative_to(root)).rstrip("/") + "/"
            if pkg_dir.is_relative_to(root) and pkg_dir != root
            else ""
        )
        if prefix and any(f.startswith(prefix) for f in changed_files):
            changed.append(pkg)
            print(f"  {pkg.name}: changed in {rev_range}")
        elif not prefix and changed_files:
            # Package is the repo root itself: any change counts
            changed.append(pkg)
            print(f"  {pkg.name}: changed in {rev_range}")
        elif root_changed:
            changed.append(pkg)
            print(f"  {pkg.name}: root config changed in {rev_range}")
    return changed

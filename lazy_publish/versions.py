"""Version parsing and bumping utilities.

Handles conversion between version strings and semver objects, with
special handling for incomplete version strings (e.g., "1.0" → "1.0.0"),
and the branch-dependent release policy:

- main branch: regular major/minor/patch increment
- dev branch: "-dev.N" prereleases on top of the next patch version
"""

from __future__ import annotations

import re

import semver

from .errors import NotPublishableBranch
from .models import UNPUBLISHED_VERSION, BumpLevel

_DEV_PRERELEASE = re.compile(r"^dev\.\d+$")


def parse_version(version_str: str) -> semver.Version:
    """Parse a version string into a semver.Version object.

    Handles incomplete versions by padding with zeros:
    - "1" → "1.0.0"
    - "1.2" → "1.2.0"
    - "1.2.3-dev.1" → "1.2.3-dev.1"

    Prerelease and build suffixes are kept as-is.

    Raises:
        ValueError: If the string is not a valid version.
    """
    version_str = version_str.strip()
    match = re.search(r"[-+]", version_str)
    core, suffix = (
        (version_str[: match.start()], version_str[match.start() :])
        if match
        else (version_str, "")
    )
    parts = core.split(".")
    # Pad with zeros to ensure we have at least 3 parts
    while len(parts) < 3:
        parts.append("0")
    return semver.Version.parse(".".join(parts[:3]) + suffix)


def bump_version(version_str: str, level: BumpLevel | str) -> str:
    """Increment a version by major, minor or patch.

    A prerelease of the release being bumped to is finalized rather than
    skipped over, so "1.2.4-dev.3" bumps (patch) to "1.2.4", not "1.2.5".

    Examples:
        "1.2.3", patch → "1.2.4"
        "1.2.3", major → "2.0.0"
        "2.0.0-dev.1", major → "2.0.0"
    """
    level = BumpLevel(level)
    v = parse_version(version_str)
    if v.prerelease:
        finalized = v.finalize_version()
        if level is BumpLevel.PATCH:
            return str(finalized)
        if level is BumpLevel.MINOR and v.patch == 0:
            return str(finalized)
        if level is BumpLevel.MAJOR and v.minor == 0 and v.patch == 0:
            return str(finalized)
    if level is BumpLevel.MAJOR:
        return str(v.bump_major())
    if level is BumpLevel.MINOR:
        return str(v.bump_minor())
    return str(v.bump_patch())


def bump_dev(version_str: str) -> str:
    """Compute the next "-dev.N" prerelease.

    Examples:
        "1.2.3" → "1.2.4-dev.0"
        "1.2.4-dev.0" → "1.2.4-dev.1"
    """
    v = parse_version(version_str)
    if v.prerelease and _DEV_PRERELEASE.match(v.prerelease):
        return str(v.bump_prerelease("dev"))
    return str(v.bump_patch().replace(prerelease="dev.0"))


def calc_update_version(
    current_version: str | None,
    bump_level: BumpLevel | str,
    branch: str,
    *,
    main_branch: str = "main",
    dev_branch: str = "dev",
) -> str:
    """Compute the version to publish next.

    Args:
        current_version: Latest published version. Missing or blank values
            are treated as "0.0.0".
        bump_level: major, minor or patch. Only used on the main branch.
        branch: Branch the release runs on.
        main_branch: Name of the stable release branch.
        dev_branch: Name of the prerelease branch.

    Raises:
        NotPublishableBranch: If branch is neither main_branch nor dev_branch.
    """
    if not current_version or current_version.strip() in ("", "null"):
        current_version = UNPUBLISHED_VERSION

    if branch == main_branch:
        return bump_version(current_version, bump_level)
    if branch == dev_branch:
        return bump_dev(current_version)
    raise NotPublishableBranch(branch)


def dist_tag_for_branch(branch: str, *, dev_branch: str = "dev") -> str:
    """Registry dist-tag for releases cut from branch."""
    return "dev" if branch == dev_branch else "latest"

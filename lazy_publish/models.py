"""Data models for lazy-publish.

These Pydantic models represent the core data structures used throughout
the release pipeline.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

UNPUBLISHED_VERSION = "0.0.0"

# Manifest sections that can declare dependencies on other packages.
DEPENDENCY_CATEGORIES = ("dependencies", "devDependencies", "peerDependencies")


class AccessLevel(str, Enum):
    PUBLIC = "public"
    RESTRICTED = "restricted"


class BumpLevel(str, Enum):
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"


class Route(str, Enum):
    """Which release flow to run.

    The two single-package routes only differ in how the build is invoked
    (in the package directory vs. from the monorepo root).
    """

    SINGLE_PACKAGE = "single-package"
    MONOREPO_SINGLE_PACKAGE = "monorepo-single-package"
    MONOREPO_WORKSPACE = "monorepo-workspace"


class DependencyKind(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"


class Dependency(BaseModel):
    """One declared reference from a package to another package.

    Attributes:
        name: Name of the package being depended on.
        kind: INTERNAL for workspace references, EXTERNAL for registry ones.
        specifier: Raw version specifier as declared in the manifest.
        category: Manifest section the dependency was declared in.
    """

    name: str
    kind: DependencyKind
    specifier: str
    category: str = "dependencies"


class Package(BaseModel):
    """A single publishable package in the workspace.

    Attributes:
        name: Package name from package.json.
        path: Directory containing the package.json.
        current_version: Latest published version, "0.0.0" if never published.
        artifact_ref: Tarball URL of the latest published version, if any.
        access: Registry visibility derived from the "private" flag.
        publish_eligible: True when the manifest opts in with "npm": true.
        dependencies: Declared dependencies across all categories.
        manifest: Raw package.json document, mutated in place during a run.
    """

    name: str
    path: str
    current_version: str = UNPUBLISHED_VERSION
    artifact_ref: str | None = None
    access: AccessLevel = AccessLevel.PUBLIC
    publish_eligible: bool = False
    dependencies: list[Dependency] = Field(default_factory=list)
    manifest: dict[str, Any] = Field(default_factory=dict)

    @property
    def internal_deps(self) -> list[str]:
        """Names of internal dependencies, deduplicated, in declaration order."""
        seen: list[str] = []
        for dep in self.dependencies:
            if dep.kind is DependencyKind.INTERNAL and dep.name not in seen:
                seen.append(dep.name)
        return seen

    @property
    def is_published(self) -> bool:
        return self.current_version != UNPUBLISHED_VERSION and bool(self.artifact_ref)


class RegistryInfo(BaseModel):
    """What the registry knows about a package.

    Attributes:
        version: Latest published version, "0.0.0" when the package is absent.
        artifact_ref: Download URL of that version's tarball.
    """

    version: str = UNPUBLISHED_VERSION
    artifact_ref: str | None = None


class PublishRecord(BaseModel):
    """Records a package published during the current run."""

    name: str
    version: str


class ReleaseResult(BaseModel):
    """Outcome of a release run.

    Attributes:
        published: Packages published, in publish order.
        skipped_reason: Why the run stopped early, if it did.
    """

    published: list[PublishRecord] = Field(default_factory=list)
    skipped_reason: str | None = None

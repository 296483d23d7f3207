"""Exception types raised by the release pipeline."""

from __future__ import annotations

from collections.abc import Iterable

from .models import PublishRecord


class ReleaseError(Exception):
    """Base class for all lazy-publish errors."""


class ConfigError(ReleaseError):
    """Invalid lazy-publish.toml or CLI option value."""


class ManifestError(ReleaseError):
    """A package.json is missing, malformed, or declares an unusable dependency."""


class NotPublishableBranch(ReleaseError):
    """The current branch is neither the main nor the dev release branch."""

    def __init__(self, branch: str) -> None:
        super().__init__(f"Branch '{branch}' is not a release branch")
        self.branch = branch


class CircularDependencyError(ReleaseError):
    """The packages to publish contain a dependency cycle."""

    def __init__(self, remaining: Iterable[str]) -> None:
        self.remaining = sorted(remaining)
        super().__init__(
            f"Dependency cycle detected involving: {', '.join(self.remaining)}"
        )


class UnresolvedDependencyError(ReleaseError):
    """No version could be found for an internal dependency."""

    def __init__(self, package: str, dependency: str) -> None:
        super().__init__(
            f"{package}: could not resolve a published version for "
            f"workspace dependency {dependency}"
        )
        self.package = package
        self.dependency = dependency


class RegistryError(ReleaseError):
    """The registry could not be reached or returned an unexpected response."""


class ChangeDetectionTimeout(ReleaseError):
    """Change detection did not finish within its time budget."""


class BuildError(ReleaseError):
    """The build command failed."""


class PublishError(ReleaseError):
    """A package in a publish batch failed.

    Attributes:
        package: Name of the (first) package that failed.
        version: Version it was being published as, if one was computed.
        published: Everything published in this run before the failure.
    """

    def __init__(
        self,
        package: str,
        version: str | None,
        cause: BaseException,
        published: list[PublishRecord],
    ) -> None:
        target = f"{package}@{version}" if version else package
        super().__init__(f"Failed to publish {target}: {cause}")
        self.package = package
        self.version = version
        self.cause = cause
        self.published = published

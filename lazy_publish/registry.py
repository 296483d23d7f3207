"""Registry gateway.

The pipeline only talks to the package registry through the small
RegistryGateway protocol, so tests (and other registries) can substitute
their own implementation. NpmRegistry is the real one: metadata and
tarballs over HTTP with httpx, publishing through the bun CLI.
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Any, Protocol

import httpx

from .config import DEFAULT_REGISTRY_URL
from .errors import RegistryError
from .models import AccessLevel, RegistryInfo
from .shell import run_async

# Published tarballs bigger than this are not downloaded for comparison.
MAX_ARTIFACT_BYTES = 50 * 1024 * 1024
ARTIFACT_FILENAME = "package.tgz"


class RegistryGateway(Protocol):
    async def fetch_package_info(self, name: str) -> RegistryInfo:
        """Latest published version and tarball reference for a package."""
        ...

    async def download_artifact(self, ref: str, dest: Path) -> Path:
        """Download a published tarball into dest and return its path."""
        ...

    async def publish(self, path: Path, tag: str, access: AccessLevel) -> None:
        """Publish the package in path under a dist-tag."""
        ...


class NpmRegistry:
    """RegistryGateway backed by an npm-compatible registry.

    Args:
        registry_url: Base URL of the registry.
        token: Auth token sent as a bearer header. Defaults to $NPM_TOKEN.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport, used by tests.
    """

    def __init__(
        self,
        registry_url: str = DEFAULT_REGISTRY_URL,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._registry_url = registry_url.rstrip("/")
        self._token = token if token is not None else os.environ.get("NPM_TOKEN")
        self._timeout = timeout
        self._transport = transport

    def headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers=self.headers(),
            timeout=self._timeout,
            transport=self._transport,
            follow_redirects=True,
        )

    def package_url(self, name: str) -> str:
        # Scoped names keep the "@" but the slash must be escaped
        return f"{self._registry_url}/{name.replace('/', '%2f')}"

    async def fetch_package_info(self, name: str) -> RegistryInfo:
        """Look up the "latest" dist-tag of a package.

        A package the registry has never seen (404) comes back as version
        "0.0.0" with no artifact reference.

        Raises:
            RegistryError: On transport failures or unexpected responses.
        """
        try:
            async with self._client() as client:
                response = await client.get(self.package_url(name))
        except httpx.HTTPError as exc:
            raise RegistryError(f"Failed to fetch {name}: {exc}") from exc

        if response.status_code == 404:
            return RegistryInfo()
        if response.is_error:
            raise RegistryError(
                f"Registry returned {response.status_code} for {name}"
            )

        try:
            data: dict[str, Any] = response.json()
        except ValueError as exc:
            raise RegistryError(f"Invalid registry response for {name}") from exc

        version = (data.get("dist-tags") or {}).get("latest") or RegistryInfo().version
        tarball = (
            (data.get("versions") or {}).get(version, {}).get("dist", {}).get("tarball")
        )
        return RegistryInfo(version=version, artifact_ref=tarball)

    async def download_artifact(self, ref: str, dest: Path) -> Path:
        """Stream a tarball to dest/package.tgz.

        Raises:
            RegistryError: On transport failures, non-2xx responses, or if the
                tarball exceeds MAX_ARTIFACT_BYTES.
        """
        target = dest / ARTIFACT_FILENAME
        try:
            async with self._client() as client:
                async with client.stream("GET", ref) as response:
                    if response.is_error:
                        raise RegistryError(
                            f"Registry returned {response.status_code} for {ref}"
                        )
                    declared = int(response.headers.get("content-length", 0))
                    if declared > MAX_ARTIFACT_BYTES:
                        raise RegistryError(f"Tarball too large ({declared} bytes)")
                    size = 0
                    with target.open("wb") as fh:
                        async for chunk in response.aiter_bytes():
                            size += len(chunk)
                            if size > MAX_ARTIFACT_BYTES:
                                raise RegistryError(
                                    f"Tarball too large (>{size} bytes)"
                                )
                            fh.write(chunk)
        except httpx.HTTPError as exc:
            raise RegistryError(f"Failed to download {ref}: {exc}") from exc
        return target

    async def publish(self, path: Path, tag: str, access: AccessLevel) -> None:
        """Run `bun publish` in the package directory.

        Raises:
            RegistryError: If bun exits non-zero.
        """
        try:
            await run_async(
                "bun",
                "publish",
                "--access",
                AccessLevel(access).value,
                "--tag",
                tag,
                cwd=path,
            )
        except (subprocess.CalledProcessError, OSError) as exc:
            raise RegistryError(f"bun publish failed in {path}: {exc}") from exc

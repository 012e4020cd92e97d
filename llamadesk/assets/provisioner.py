"""
Asset provisioner for the llama-server binary and model file.

This module resolves each asset from the bundled resources directory,
falls back to a per-user download cache, and downloads and verifies
missing files over HTTP.
"""

import os
import stat
import asyncio
import hashlib
from pathlib import Path
from dataclasses import dataclass
from typing import Optional, Dict, List, Callable, Awaitable
from urllib.parse import urljoin

import httpx

from llamadesk.config import AssetConfig
from llamadesk.exceptions import (
    AssetMissing, DownloadFailed, ChecksumMismatch, UserCanceled
)
from llamadesk.utils.logging_config import setup_logging

logger = setup_logging("asset_provisioner")

REDIRECT_STATUSES = (301, 302, 303, 307, 308)

ConsentCallback = Callable[["AssetSpec"], Awaitable[bool]]


@dataclass
class AssetSpec:
    """A file needed to run local inference."""
    name: str
    relative_path: str
    url: Optional[str] = None
    sha256: Optional[str] = None
    executable: bool = False


def file_sha256(path: Path, chunk_size: int = 1024 * 1024) -> str:
    """Compute the hex SHA-256 digest of a file."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(chunk_size), b""):
            digest.update(block)
    return digest.hexdigest()


def checksum_matches(actual: str, expected: str) -> bool:
    """Compare two hex digests, ignoring case and surrounding whitespace."""
    return actual.strip().lower() == expected.strip().lower()


async def verify_checksum(path: Path, expected: Optional[str]) -> bool:
    """
    Check a file against an expected SHA-256.

    Args:
        path: File to hash
        expected: Expected hex digest, or None to skip verification

    Returns:
        bool: True if the file exists and matches (or no checksum is required)
    """
    if not path.is_file():
        return False
    if not expected:
        return True

    loop = asyncio.get_running_loop()
    actual = await loop.run_in_executor(None, file_sha256, path)
    return checksum_matches(actual, expected)


class AssetProvisioner:
    """
    Resolves, downloads and verifies inference assets.

    Lookup order for each asset: bundled copy, cached copy, fresh
    download into the cache. A downloaded file is only moved into
    place after its checksum has been verified.

    Example:
        provisioner = AssetProvisioner(AssetConfig())
        paths = await provisioner.ensure_all(provisioner.default_specs())
    """

    def __init__(
        self,
        config: Optional[AssetConfig] = None,
        consent: Optional[ConsentCallback] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        """
        Initialize asset provisioner.

        Args:
            config: Asset configuration
            consent: Async callback asked before any download; returning
                False cancels the download
            http_client: Optional pre-built client (used by tests)
        """
        self.config = config or AssetConfig()
        self.consent = consent
        self._http_client = http_client
        self._owns_client = http_client is None

        logger.info(
            f"AssetProvisioner created (bundled={self.config.bundled_dir}, "
            f"cache={self.config.cache_dir})"
        )

    def default_specs(self) -> List[AssetSpec]:
        """Build the binary and model specs from configuration."""
        return [
            AssetSpec(
                name="binary",
                relative_path=self.config.binary_path,
                url=self.config.binary_url,
                sha256=self.config.binary_sha256,
                executable=True
            ),
            AssetSpec(
                name="model",
                relative_path=self.config.model_path,
                url=self.config.model_url,
                sha256=self.config.model_sha256
            )
        ]

    def bundled_path(self, spec: AssetSpec) -> Path:
        return Path(self.config.bundled_dir) / spec.relative_path

    def cached_path(self, spec: AssetSpec) -> Path:
        return Path(self.config.cache_dir) / spec.relative_path

    async def ensure_all(self, specs: List[AssetSpec]) -> Dict[str, Path]:
        """
        Ensure every asset is available locally.

        Args:
            specs: Assets to resolve

        Returns:
            Dict mapping asset name to local path
        """
        paths = {}
        for spec in specs:
            paths[spec.name] = await self.ensure(spec)
        return paths

    async def ensure(self, spec: AssetSpec) -> Path:
        """
        Resolve a single asset to a verified local file.

        Args:
            spec: Asset to resolve

        Returns:
            Path: Local path of the ready asset

        Raises:
            AssetMissing: Not bundled and no download URL configured
            UserCanceled: The consent callback declined the download
            DownloadFailed: The download could not be completed
            ChecksumMismatch: The downloaded file failed verification
        """
        bundled = self.bundled_path(spec)
        if await verify_checksum(bundled, spec.sha256):
            logger.info(f"Using bundled {spec.name}: {bundled}")
            return bundled

        if bundled.exists():
            logger.warning(f"Bundled {spec.name} failed checksum, ignoring it")

        if not spec.url:
            raise AssetMissing(
                spec.name,
                f"{spec.name} not found at {bundled} and no download URL configured"
            )

        cached = self.cached_path(spec)
        if await verify_checksum(cached, spec.sha256):
            logger.info(f"Using cached {spec.name}: {cached}")
            return cached

        if cached.exists():
            logger.warning(f"Cached {spec.name} failed checksum, downloading again")

        if self.consent is not None and not await self.consent(spec):
            raise UserCanceled(spec.name)

        await self._download(spec, cached)
        return cached

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Ensure HTTP client is initialized."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.download_timeout, read=None),
                follow_redirects=False
            )
            self._owns_client = True
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client if this provisioner created it."""
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _download(self, spec: AssetSpec, target: Path) -> None:
        """Download an asset into the cache, verifying before it is kept."""
        client = await self._ensure_client()
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")

        logger.info(f"Downloading {spec.name} from {spec.url}")

        try:
            await self._fetch(client, spec, partial)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        if spec.sha256:
            loop = asyncio.get_running_loop()
            actual = await loop.run_in_executor(None, file_sha256, partial)
            if not checksum_matches(actual, spec.sha256):
                partial.unlink(missing_ok=True)
                raise ChecksumMismatch(spec.name, spec.sha256, actual)

        if spec.executable and os.name == "posix":
            mode = partial.stat().st_mode
            partial.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        os.replace(partial, target)
        logger.info(f"Downloaded {spec.name} to {target}")

    async def _fetch(
        self,
        client: httpx.AsyncClient,
        spec: AssetSpec,
        destination: Path
    ) -> None:
        """Follow redirects iteratively and stream the final body to disk."""
        url = spec.url
        hops = 0

        while True:
            try:
                async with client.stream("GET", url) as response:
                    if response.status_code in REDIRECT_STATUSES:
                        location = response.headers.get("Location")
                        if not location:
                            raise DownloadFailed(
                                spec.name,
                                "Redirect without Location header",
                                response.status_code
                            )
                        hops += 1
                        if hops > self.config.max_redirects:
                            raise DownloadFailed(
                                spec.name,
                                f"Too many redirects (> {self.config.max_redirects})"
                            )
                        url = urljoin(str(response.url), location)
                        logger.debug(f"Redirect {hops} for {spec.name} -> {url}")
                        continue

                    if not response.is_success:
                        raise DownloadFailed(
                            spec.name,
                            f"HTTP {response.status_code} from {url}",
                            response.status_code
                        )

                    await self._write_body(spec, response, destination)
                    return

            except httpx.HTTPError as e:
                raise DownloadFailed(spec.name, f"Transport error: {e}") from e

    async def _write_body(
        self,
        spec: AssetSpec,
        response: httpx.Response,
        destination: Path
    ) -> None:
        try:
            total = int(response.headers.get("Content-Length", 0) or 0)
        except ValueError:
            total = 0  # progress is not reported
        received = 0
        next_report = 10

        with open(destination, "wb") as f:
            async for chunk in response.aiter_bytes(self.config.chunk_size):
                f.write(chunk)
                received += len(chunk)
                if total:
                    percent = received * 100 // total
                    if percent >= next_report:
                        logger.info(f"{spec.name}: {percent}% ({received}/{total} bytes)")
                        next_report = (percent // 10 + 1) * 10

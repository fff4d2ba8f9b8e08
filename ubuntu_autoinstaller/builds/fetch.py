"""Ubuntu release image fetch module.

This module handles:
- Discovering the current live-server ISO of a release
- Streaming downloads into the source cache
- SHA256SUMS parsing and digest helpers
"""

from __future__ import annotations

import hashlib
import logging
import threading
from dataclasses import dataclass
from pathlib import Path

import httpx

from ubuntu_autoinstaller.builds.iso import find_iso_name

logger = logging.getLogger(__name__)

# Official Ubuntu release server
UBUNTU_RELEASES_BASE = "https://releases.ubuntu.com"

# Timeout for index and checksum requests (seconds)
INDEX_TIMEOUT = 30

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

SHA256SUMS = "SHA256SUMS"
SHA256SUMS_GPG = "SHA256SUMS.gpg"


class DownloadError(Exception):
    """Raised when a download fails."""

    def __init__(self, message: str, code: str = "download_error") -> None:
        """Initialize DownloadError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.code = code


class DownloadCancelledError(DownloadError):
    """Raised when a download is interrupted by cancellation."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Download of {url} cancelled", code="cancelled")


@dataclass
class DownloadResult:
    """Result of a file download."""

    path: Path
    checksum: str
    size_bytes: int
    reused: bool = False


def release_base_url(codename: str, base_url: str = UBUNTU_RELEASES_BASE) -> str:
    """Return the release directory URL for a codename."""
    return f"{base_url.rstrip('/')}/{codename}"


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def parse_sha256sums(content: str, filename: str) -> str | None:
    """Parse SHA256SUMS content to find the checksum of a file.

    Args:
        content: Content of a SHA256SUMS file.
        filename: Filename to look up.

    Returns:
        SHA256 checksum string, or None if not found.
    """
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        parts = line.split(maxsplit=1)
        if len(parts) != 2:
            continue

        checksum, name = parts
        # Remove leading '*' if present (binary mode indicator)
        if name.lstrip("*").strip() == filename:
            return checksum.lower()

    return None


def digest_listed(content: str, digest: str) -> bool:
    """Check whether a digest appears in SHA256SUMS content."""
    digest = digest.lower()
    for line in content.splitlines():
        parts = line.split(maxsplit=1)
        if parts and parts[0].lower() == digest:
            return True
    return False


def fetch_text(
    client: httpx.Client,
    url: str,
    timeout: float = INDEX_TIMEOUT,
) -> str:
    """Fetch a small text resource.

    Raises:
        DownloadError: If the request fails.
    """
    logger.debug("Fetching %s", url)

    try:
        response = client.get(url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
        return response.text

    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error fetching {url}: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(f"Timeout fetching {url}", code="timeout") from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error fetching {url}: {e}",
            code="network_error",
        ) from e


def find_release_iso(
    client: httpx.Client,
    codename: str,
    base_url: str = UBUNTU_RELEASES_BASE,
) -> str:
    """Find the live-server ISO name published for a release.

    Returns:
        File name such as ``ubuntu-22.04.5-live-server-amd64.iso``.

    Raises:
        DownloadError: If the index cannot be fetched or lists no ISO.
    """
    index = fetch_text(client, release_base_url(codename, base_url) + "/")
    name = find_iso_name(index)
    if name is None:
        raise DownloadError(
            f"No live-server ISO found for {codename}", code="iso_not_found"
        )
    return name


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
    cancel_event: threading.Event | None = None,
) -> DownloadResult:
    """Download a file into place.

    Data is streamed into ``<dest>.part`` and renamed once complete, so
    an interrupted download never leaves a file under the final name.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.
        cancel_event: Checked between chunks; aborts the download when set.

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadError: If download fails.
        DownloadCancelledError: If cancelled.
    """
    logger.info("Downloading %s to %s", url, dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    part_path = dest_path.with_name(dest_path.name + ".part")

    try:
        with client.stream(
            "GET", url, timeout=timeout, follow_redirects=True
        ) as response:
            response.raise_for_status()

            total_bytes = 0
            sha256 = hashlib.sha256()

            with part_path.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    if cancel_event is not None and cancel_event.is_set():
                        raise DownloadCancelledError(url)
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)

        part_path.replace(dest_path)
        computed_checksum = sha256.hexdigest()

        logger.info(
            "Downloaded %s (%d bytes, checksum: %s)",
            dest_path.name,
            total_bytes,
            computed_checksum[:16] + "...",
        )

        return DownloadResult(
            path=dest_path,
            checksum=computed_checksum,
            size_bytes=total_bytes,
        )

    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error downloading {url}: {e.response.status_code} {e.response.reason_phrase}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(
            f"Timeout downloading {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e
    finally:
        part_path.unlink(missing_ok=True)


__all__ = [
    "SHA256SUMS",
    "SHA256SUMS_GPG",
    "UBUNTU_RELEASES_BASE",
    "DownloadCancelledError",
    "DownloadError",
    "DownloadResult",
    "compute_file_sha256",
    "digest_listed",
    "download_file",
    "fetch_text",
    "find_release_iso",
    "parse_sha256sums",
    "release_base_url",
]

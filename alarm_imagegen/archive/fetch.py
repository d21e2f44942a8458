"""Root filesystem tarball fetch module.

This module handles:
- URL discovery for the tarball and its published md5 checksum
- Download, skipped when a correctly named tarball is already present
- Checksum verification (never deletes the user's tarball)
- Extraction into the mounted root filesystem
"""

from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

import httpx

from alarm_imagegen.errors import (
    CommandError,
    DownloadError,
    ExtractionError,
    IntegrityError,
)
from alarm_imagegen.image.commands import run_command

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIX = ".tar.gz"
CHECKSUM_SUFFIX = ".md5"

# Timeout for checksum requests (seconds)
CHECKSUM_TIMEOUT = 30

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB


@dataclass
class ArchiveURLs:
    """URLs for a tarball and its checksum file."""

    archive_url: str
    checksum_url: str

    def __post_init__(self) -> None:
        """Validate URLs after initialization."""
        if not self.archive_url:
            raise ValueError("archive_url must be provided")
        if not self.checksum_url:
            raise ValueError("checksum_url must be provided")

    @property
    def filename(self) -> str:
        return self.archive_url.rsplit("/", 1)[-1]


@dataclass
class FetchResult:
    """Result of making sure the tarball is on disk."""

    archive_path: Path
    downloaded: bool
    size_bytes: int


def build_archive_urls(
    archive_name: str,
    mirror_url: str,
    checksum_url: str,
) -> ArchiveURLs:
    """Build URLs for a tarball and its md5 file.

    Args:
        archive_name: Tarball base name (e.g. 'ArchLinuxARM-odroid-xu4-latest').
        mirror_url: Base URL of the download mirror.
        checksum_url: Base URL checksums are published under.

    Returns:
        ArchiveURLs for the tarball.
    """
    filename = f"{archive_name}{ARCHIVE_SUFFIX}"
    return ArchiveURLs(
        archive_url=f"{mirror_url.rstrip('/')}/{filename}",
        checksum_url=f"{checksum_url.rstrip('/')}/{filename}{CHECKSUM_SUFFIX}",
    )


def parse_md5sums(content: str, archive_filename: str) -> str | None:
    """Find the checksum for a file in md5sum output.

    A file with a single entry matches regardless of its name column.

    Args:
        content: Content of the .md5 file.
        archive_filename: Filename to look up.

    Returns:
        MD5 checksum string, or None if not found.
    """
    entries: list[tuple[str, str]] = []
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue

        parts = line.split(maxsplit=1)
        checksum = parts[0].lower()
        if len(checksum) != 32:
            continue
        # Remove leading '*' if present (binary mode indicator)
        filename = parts[1].lstrip("*").strip() if len(parts) == 2 else ""
        entries.append((checksum, Path(filename).name))

    for checksum, filename in entries:
        if filename == archive_filename:
            return checksum
    if len(entries) == 1:
        return entries[0][0]
    return None


def compute_file_md5(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute MD5 checksum of a file."""
    md5 = hashlib.md5()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            md5.update(chunk)
    return md5.hexdigest()


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> int:
    """Download a file.

    Data is streamed to a temporary file next to ``dest_path`` and renamed
    into place only when complete, so an interrupted transfer never leaves a
    correctly named partial tarball behind.

    Returns:
        Number of bytes downloaded.

    Raises:
        DownloadError: If download fails.
    """
    logger.info("Downloading %s to %s", url, dest_path)
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=dest_path.parent, suffix=".part")
    tmp_path = Path(tmp_name)

    try:
        with os.fdopen(fd, "wb") as f, client.stream(
            "GET", url, timeout=timeout, follow_redirects=True
        ) as response:
            response.raise_for_status()
            total_bytes = 0
            for chunk in response.iter_bytes(chunk_size):
                f.write(chunk)
                total_bytes += len(chunk)
        tmp_path.replace(dest_path)

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
    except OSError as e:
        raise DownloadError(
            f"Failed to write {dest_path}: {e}",
            code="os_error",
        ) from e
    finally:
        tmp_path.unlink(missing_ok=True)

    logger.info("Downloaded %s (%d bytes)", dest_path.name, total_bytes)
    return total_bytes


def fetch_checksums(
    client: httpx.Client,
    checksum_url: str,
    timeout: float = CHECKSUM_TIMEOUT,
) -> str:
    """Fetch the published checksum file.

    Raises:
        DownloadError: If fetch fails.
    """
    logger.debug("Fetching checksum from %s", checksum_url)

    try:
        response = client.get(checksum_url, timeout=timeout, follow_redirects=True)
        response.raise_for_status()
        return response.text

    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error fetching checksum: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(
            f"Timeout fetching checksum from {checksum_url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error fetching checksum: {e}",
            code="network_error",
        ) from e


def ensure_archive(
    client: httpx.Client,
    urls: ArchiveURLs,
    dest_dir: Path,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> FetchResult:
    """Make sure the tarball is on disk, downloading only when missing.

    Returns:
        FetchResult telling whether a download happened.

    Raises:
        DownloadError: If the download fails.
    """
    archive_path = dest_dir / urls.filename
    if archive_path.is_file():
        logger.info("Using existing %s", archive_path.name)
        return FetchResult(
            archive_path=archive_path,
            downloaded=False,
            size_bytes=archive_path.stat().st_size,
        )

    size = download_file(client, urls.archive_url, archive_path, timeout=timeout)
    return FetchResult(archive_path=archive_path, downloaded=True, size_bytes=size)


def verify_archive(
    client: httpx.Client,
    urls: ArchiveURLs,
    archive_path: Path,
    timeout: float = CHECKSUM_TIMEOUT,
) -> str:
    """Compare a tarball against its published md5 checksum.

    The tarball is left in place on mismatch; the operator decides whether to
    delete it.

    Returns:
        The verified checksum.

    Raises:
        DownloadError: If the checksum cannot be fetched.
        IntegrityError: If the checksum is missing or does not match.
    """
    logger.info("Verifying download integrity of %s", archive_path.name)
    expected = parse_md5sums(
        fetch_checksums(client, urls.checksum_url, timeout=timeout),
        archive_path.name,
    )
    actual = compute_file_md5(archive_path)
    if expected is None or expected != actual:
        logger.error("Wrong md5sum checksum: '%s'", archive_path.name)
        raise IntegrityError(archive_path.name, expected, actual)
    return actual


def extract_archive(archive_path: Path, root_dir: Path) -> None:
    """Extract the tarball into the mounted root filesystem.

    Runs the system tar so ownership, permissions and extended attributes
    are preserved. Nothing is cleaned up on failure; the root filesystem is
    recreated by the next build.

    Raises:
        ExtractionError: If extraction fails.
    """
    logger.info("Extracting %s to %s", archive_path.name, root_dir)
    try:
        run_command(
            ["tar", "--numeric-owner", "-xpzf", archive_path, "-C", root_dir]
        )
    except CommandError as e:
        raise ExtractionError(f"Failed to extract {archive_path}: {e}") from e
    os.sync()


__all__ = [
    "ARCHIVE_SUFFIX",
    "ArchiveURLs",
    "FetchResult",
    "build_archive_urls",
    "compute_file_md5",
    "download_file",
    "ensure_archive",
    "extract_archive",
    "fetch_checksums",
    "parse_md5sums",
    "verify_archive",
]

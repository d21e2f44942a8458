"""Root filesystem tarball module.

This module handles:
- Downloading the tarball (skipped when already present)
- md5 verification against the published checksum
- Extraction into the mounted image
"""

from alarm_imagegen.archive.fetch import (
    ArchiveURLs,
    FetchResult,
    build_archive_urls,
    compute_file_md5,
    download_file,
    ensure_archive,
    extract_archive,
    fetch_checksums,
    parse_md5sums,
    verify_archive,
)

__all__ = [
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

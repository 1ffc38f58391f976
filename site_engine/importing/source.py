"""
Import archive sources.

An import source is either a local archive path or an ``https://`` URL. URLs
are validated before any network access and downloaded into the downloads
root; only then is the archive itself validated.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path, PurePosixPath
from urllib.parse import urlsplit

import httpx

from ..compression import CompressionFormat, detect_format
from ..errors import ArchiveNotFoundError, ImportValidationError, InsecureUrlError

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 60.0
_ZIP_MAGIC = b"PK\x03\x04"
_ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"


def is_url(source: str) -> bool:
    return "://" in source


def check_download_url(url: str, trusted_prefix: str | None = None) -> None:
    """
    Reject URLs the engine will not download from.

    Raises
    ------
    InsecureUrlError
        If the URL is not https, has no host, or does not start with the
        trusted prefix when one is configured.
    """
    parts = urlsplit(url)
    if parts.scheme.lower() != "https":
        raise InsecureUrlError(f"Only https:// archive URLs are accepted: {url}")
    if not parts.netloc:
        raise InsecureUrlError(f"Archive URL has no host: {url}")
    if trusted_prefix and not url.startswith(trusted_prefix):
        raise InsecureUrlError(f"Archive URL is not under the trusted prefix {trusted_prefix}: {url}")


def download_archive(
    url: str,
    *,
    downloads_root: Path,
    client: httpx.Client | None = None,
) -> Path:
    """
    Download an archive into `downloads_root` and return its path.

    Raises
    ------
    ImportValidationError
        If the server answers with an error or the transfer fails.
    """
    name = PurePosixPath(urlsplit(url).path).name or "archive.zip"
    target = downloads_root / f"{uuid.uuid4().hex[:8]}-{name}"
    downloads_root.mkdir(parents=True, exist_ok=True)

    owns_client = client is None
    http = client or httpx.Client(timeout=DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True)
    try:
        with http.stream("GET", url) as res:
            if res.status_code >= 400:
                raise ImportValidationError(f"Download failed ({res.status_code}): {url}")
            with target.open("wb") as handle:
                for chunk in res.iter_bytes():
                    handle.write(chunk)
    except httpx.HTTPError as exc:
        target.unlink(missing_ok=True)
        raise ImportValidationError(f"Download failed: {url} ({exc})") from exc
    except ImportValidationError:
        target.unlink(missing_ok=True)
        raise
    finally:
        if owns_client:
            http.close()

    logger.info("downloaded %s to %s", url, target)
    return target


def resolve_archive_source(
    source: str,
    *,
    downloads_root: Path,
    trusted_prefix: str | None = None,
    client: httpx.Client | None = None,
) -> Path:
    """
    Turn an import source into a local archive path.

    Raises
    ------
    InsecureUrlError
        For non-https or untrusted URLs.
    ArchiveNotFoundError
        If a local path does not exist.
    ImportValidationError
        If a download fails.
    """
    cleaned = source.strip()
    if not cleaned:
        raise ImportValidationError("Please provide an archive path or URL.")
    if is_url(cleaned):
        check_download_url(cleaned, trusted_prefix)
        return download_archive(cleaned, downloads_root=downloads_root, client=client)

    path = Path(cleaned).expanduser()
    if not path.is_file():
        raise ArchiveNotFoundError(f"Archive not found: {path}")
    return path.resolve()


def validate_archive(path: Path) -> CompressionFormat:
    """
    Check that `path` is a zip or tar.zst archive, by name and content.

    Raises
    ------
    ArchiveNotFoundError
        If the file does not exist.
    ImportValidationError
        If the file is not a supported archive.
    """
    if not path.is_file():
        raise ArchiveNotFoundError(f"Archive not found: {path}")
    fmt = detect_format(path)
    with path.open("rb") as handle:
        magic = handle.read(4)
    if fmt is CompressionFormat.ZIP and magic == _ZIP_MAGIC:
        return fmt
    if fmt is CompressionFormat.TAR_ZST and magic == _ZSTD_MAGIC:
        return fmt
    raise ImportValidationError(
        f"File does not exist or has an invalid type (expected .zip or .tar.zst): {path.name}"
    )

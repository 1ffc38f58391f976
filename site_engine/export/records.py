"""
Export records.

Export archives are the durable record of completed exports: the archive name
encodes the tenant, and the embedded manifest lists what it contains. How long
each archive took to produce (and how long each import took) is kept in the
option store for display and for estimating similar future jobs.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..clock import format_utc, parse_utc
from ..compression import detect_format, read_member
from ..errors import ArchiveError, ExportError
from ..kv_store import KeyValueStore
from ..paths_and_safety import (
    EnginePaths,
    SafetyViolationError,
    assert_within,
    validate_export_name,
)
from .bundle import MANIFEST_NAME, ArchiveManifest

logger = logging.getLogger(__name__)

GENERATION_TIMES_KEY = "exporter_generation_times"
IMPORT_TIMES_KEY = "exporter_import_times"


@dataclass(frozen=True, slots=True)
class ExportRecord:
    """
    A completed export.

    Attributes
    ----------
    archive_path:
        Location of the archive in the exports root.
    tenant_id:
        Exported tenant.
    created_at:
        Export time (UTC).
    size_bytes:
        Archive size.
    included_assets:
        File trees contained in the archive.
    generation_seconds:
        Measured wall-clock duration, if recorded.
    """

    archive_path: Path
    tenant_id: int
    created_at: datetime
    size_bytes: int
    included_assets: tuple[str, ...]
    generation_seconds: float | None

    @property
    def name(self) -> str:
        return self.archive_path.name

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "archive_path": str(self.archive_path),
            "tenant_id": self.tenant_id,
            "created_at_utc": format_utc(self.created_at),
            "size_bytes": self.size_bytes,
            "included_assets": list(self.included_assets),
            "generation_seconds": self.generation_seconds,
        }


def _save_time(options_store: KeyValueStore, key: str, file_name: str, seconds: float) -> None:
    times = options_store.get(key, {}) or {}
    times[file_name] = round(float(seconds), 3)
    options_store.set(key, times)


def save_generation_time(options_store: KeyValueStore, file_name: str, seconds: float) -> None:
    _save_time(options_store, GENERATION_TIMES_KEY, file_name, seconds)


def get_generation_time(options_store: KeyValueStore, file_name: str) -> float | None:
    value = (options_store.get(GENERATION_TIMES_KEY, {}) or {}).get(file_name)
    return float(value) if value is not None else None


def save_import_time(options_store: KeyValueStore, file_name: str, seconds: float) -> None:
    _save_time(options_store, IMPORT_TIMES_KEY, file_name, seconds)


def get_import_time(options_store: KeyValueStore, file_name: str) -> float | None:
    value = (options_store.get(IMPORT_TIMES_KEY, {}) or {}).get(file_name)
    return float(value) if value is not None else None


def tenant_from_export_name(name: str) -> int | None:
    """Return the tenant id encoded in an export name, or None."""
    try:
        return validate_export_name(name)
    except SafetyViolationError:
        return None


def read_archive_manifest(archive_path: Path) -> ArchiveManifest | None:
    """Read the manifest embedded in an archive, or None if it is missing or invalid."""
    try:
        raw = read_member(archive_path, MANIFEST_NAME)
        if raw is None:
            return None
        return ArchiveManifest.from_dict(json.loads(raw.decode("utf-8")))
    except (ArchiveError, ValueError) as exc:
        logger.warning("unreadable manifest in %s: %s", archive_path.name, exc)
        return None


def list_exports(
    paths: EnginePaths,
    options_store: KeyValueStore | None = None,
) -> list[ExportRecord]:
    """Return completed exports, newest first."""
    if not paths.exports_root.is_dir():
        return []

    records: list[ExportRecord] = []
    for archive_path in paths.exports_root.iterdir():
        if not archive_path.is_file() or detect_format(archive_path) is None:
            continue
        tenant_id = tenant_from_export_name(archive_path.name)
        if tenant_id is None:
            continue

        manifest = read_archive_manifest(archive_path)
        stat = archive_path.stat()
        if manifest is not None:
            created_at = parse_utc(manifest.created_at_utc)
            assets = manifest.included_assets
        else:
            created_at = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            assets = ()

        records.append(
            ExportRecord(
                archive_path=archive_path,
                tenant_id=tenant_id,
                created_at=created_at,
                size_bytes=stat.st_size,
                included_assets=tuple(assets),
                generation_seconds=(
                    get_generation_time(options_store, archive_path.name)
                    if options_store is not None
                    else None
                ),
            )
        )

    records.sort(key=lambda r: (r.created_at, r.name), reverse=True)
    return records


def delete_export(
    paths: EnginePaths,
    name: str,
    options_store: KeyValueStore | None = None,
) -> Path:
    """
    Delete an export archive by file name.

    Raises
    ------
    SafetyViolationError
        If `name` is not a valid export archive name.
    ExportError
        If no such export exists.
    """
    validate_export_name(name)
    archive_path = paths.exports_root / name.strip()
    assert_within(paths.exports_root, archive_path, purpose="export deletion")
    if not archive_path.is_file():
        raise ExportError(f"Export not found: {name}")
    archive_path.unlink()

    if options_store is not None:
        times = options_store.get(GENERATION_TIMES_KEY, {}) or {}
        if times.pop(archive_path.name, None) is not None:
            options_store.set(GENERATION_TIMES_KEY, times)

    logger.info("deleted export %s", archive_path.name)
    return archive_path

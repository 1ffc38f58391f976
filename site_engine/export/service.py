"""
Export service.

Produces one archive for one tenant: SQL dump, optional file trees, and a
manifest, staged under the work root and compressed into the exports root.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable

from ..clock import Clock, elapsed_seconds, format_utc
from ..compression import CompressionFormat, compress_directory
from ..config import EngineSettings, ExportOptions
from ..database.catalog import TableCatalog
from ..database.dump import write_sql_dump
from ..database.max_runtime import MaxRuntimeGuard
from ..errors import ArchiveError, ExportError, StoreError
from ..json_io import write_json_atomic
from ..paths_and_safety import EnginePaths, remove_work_directory
from .bundle import (
    ARCHIVE_SQL_PATH,
    MANIFEST_NAME,
    MANIFEST_SCHEMA_VERSION,
    ArchiveManifest,
    SiteLayout,
    bundle_assets,
)
from .records import ExportRecord

logger = logging.getLogger(__name__)


def export_archive_name(tenant_id: int, created_at: datetime, fmt: CompressionFormat) -> str:
    """Return ``site-export-<id>-<YYYY-MM-DD>-<epoch><suffix>``."""
    return (
        f"site-export-{int(tenant_id)}-{created_at:%Y-%m-%d}-{int(created_at.timestamp())}"
        f"{fmt.suffix}"
    )


def run_export(
    subject_id: int,
    options: ExportOptions,
    *,
    catalog: TableCatalog,
    settings: EngineSettings,
    paths: EnginePaths,
    clock: Clock,
    guard_factory: Callable[[], MaxRuntimeGuard] = MaxRuntimeGuard,
) -> ExportRecord:
    """
    Export one tenant to an archive.

    Parameters
    ----------
    subject_id:
        Tenant to export.
    options:
        File trees to include.
    catalog:
        Catalog over the source store.
    settings:
        Engine settings (archive format, content root, plugin exclusions).
    paths:
        Engine paths; staging happens under ``paths.work_root``.
    clock:
        Source of the export time and duration.
    guard_factory:
        Builds the runtime guard held for the whole export.

    Returns
    -------
    ExportRecord
        The completed export, with its measured duration.

    Raises
    ------
    ExportError
        If the tenant has no tables or the source cannot be read.
    ArchiveError
        If the archive cannot be written.
    """
    started = clock.now()
    fmt = CompressionFormat(settings.archive_format)
    archive_path = paths.exports_root / export_archive_name(subject_id, started, fmt)
    staging = paths.work_root / f"export-{int(subject_id)}-{uuid.uuid4().hex[:12]}"

    with guard_factory():
        try:
            included = _stage_export(
                subject_id,
                options,
                staging=staging,
                catalog=catalog,
                settings=settings,
                created_at_utc=format_utc(started),
            )
            compress_directory(source_root=staging, output_path=archive_path, format=fmt)
        except StoreError as exc:
            raise ExportError(f"Export of tenant {subject_id} failed: {exc}") from exc
        finally:
            if staging.exists():
                remove_work_directory(paths, staging)

    duration = elapsed_seconds(clock, started)
    logger.info("exported tenant %s to %s in %.2fs", subject_id, archive_path.name, duration)
    return ExportRecord(
        archive_path=archive_path,
        tenant_id=int(subject_id),
        created_at=started,
        size_bytes=archive_path.stat().st_size,
        included_assets=included,
        generation_seconds=duration,
    )


def _stage_export(
    subject_id: int,
    options: ExportOptions,
    *,
    staging: Path,
    catalog: TableCatalog,
    settings: EngineSettings,
    created_at_utc: str,
) -> tuple[str, ...]:
    tables = catalog.list_tables(subject_id)
    if not tables:
        raise ExportError(f"No tables found for tenant {subject_id}")

    sql_path = staging / ARCHIVE_SQL_PATH
    sql_path.parent.mkdir(parents=True, exist_ok=True)
    with sql_path.open("w", encoding="utf-8", errors="surrogateescape", newline="\n") as handle:
        summary = write_sql_dump(
            catalog, tables, handle, title=f"siteport export of tenant {subject_id}"
        )

    copied: dict[str, int] = {}
    if options.included_assets:
        if settings.content_root is None:
            logger.warning("content_root is not configured; file trees not exported")
        else:
            copied = bundle_assets(
                SiteLayout(settings.content_root),
                staging,
                options.included_assets,
                subject_id,
                multisite=settings.multisite,
                exclusions=settings.plugin_exclusions,
            )

    included = tuple(sorted(copied))
    manifest = ArchiveManifest(
        schema_version=MANIFEST_SCHEMA_VERSION,
        tenant_id=int(subject_id),
        base_prefix=catalog.base_prefix,
        site_url=catalog.read_option(subject_id, "siteurl"),
        created_at_utc=created_at_utc,
        tables=summary.tables,
        included_assets=included,
    )
    try:
        write_json_atomic(staging / MANIFEST_NAME, manifest.to_dict())
    except ArchiveError as exc:
        raise ExportError(str(exc)) from exc
    return included

"""
Import service.

Materializes one export archive into a destination store:

1. extract the archive under the work root and read its manifest
2. (optionally) drop the tenant's existing tables, then stream the SQL dump
3. install bundled file trees into the destination content directory
4. rewrite the source site URL to the new URL across the tenant's tables
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from ..clock import Clock, elapsed_seconds
from ..compression import extract_archive
from ..config import EngineSettings, ImportRequest, ReplaceOptions, StoreSettings
from ..database.catalog import TableCatalog
from ..database.importer import ImportReport, StreamingImporter
from ..database.max_runtime import MaxRuntimeGuard
from ..database.replace import SearchReplaceEngine
from ..database.reports import RunReport
from ..database.store import Store
from ..errors import ImportValidationError
from ..export.bundle import MANIFEST_NAME, ArchiveManifest, SiteLayout, install_assets
from ..json_io import read_json
from ..paths_and_safety import EnginePaths, assert_within, remove_work_directory
from .source import validate_archive

logger = logging.getLogger(__name__)

StoreOpener = Callable[[StoreSettings], Store]


@dataclass(frozen=True, slots=True)
class ImportResult:
    """
    Outcome of one archive import.

    Attributes
    ----------
    archive_path:
        Imported archive.
    tenant_id:
        Tenant the archive was exported from (and imported into).
    import_report:
        Statement-level report of the SQL import.
    replace_report:
        URL rewrite report, or None when no rewrite was needed.
    duration_seconds:
        Wall-clock duration of the whole import.
    assets_installed:
        Files installed per asset kind.
    archive_deleted:
        True when the archive was removed after the import.
    """

    archive_path: Path
    tenant_id: int
    import_report: ImportReport
    replace_report: RunReport | None
    duration_seconds: float
    assets_installed: dict[str, int] = field(default_factory=dict)
    archive_deleted: bool = False

    @property
    def ok(self) -> bool:
        return self.import_report.ok

    def to_dict(self) -> dict[str, Any]:
        return {
            "archive_path": str(self.archive_path),
            "tenant_id": self.tenant_id,
            "import": self.import_report.to_dict(),
            "replace": self.replace_report.to_dict() if self.replace_report else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "assets_installed": dict(self.assets_installed),
            "archive_deleted": self.archive_deleted,
        }


def run_import(
    archive_path: Path,
    request: ImportRequest,
    *,
    settings: EngineSettings,
    paths: EnginePaths,
    clock: Clock,
    guard_factory: Callable[[], MaxRuntimeGuard] = MaxRuntimeGuard,
    store_opener: StoreOpener = Store.connect,
) -> ImportResult:
    """
    Import one archive.

    Parameters
    ----------
    archive_path:
        Local archive (.zip or .tar.zst).
    request:
        Destination URL and drop/cleanup options.
    settings:
        Engine settings; the destination store defaults to ``database_url``.
    paths:
        Engine paths; extraction happens under ``paths.work_root``.
    clock:
        Used to measure the duration.
    guard_factory:
        Builds the runtime guard held for the import.
    store_opener:
        Connects to the destination with its own credentials.

    Raises
    ------
    ImportValidationError
        If the request or archive is rejected.
    StoreConnectionError
        If the destination cannot be reached.
    ArchiveError
        If the archive cannot be extracted or its manifest is invalid.
    """
    if not request.new_url.strip():
        raise ImportValidationError("Please provide a URL for the new site.")
    validate_archive(archive_path)

    destination_url = request.destination_url or settings.database_url
    if not destination_url:
        raise ImportValidationError("No destination database is configured.")

    started = clock.now()
    staging = paths.work_root / f"import-{uuid.uuid4().hex[:12]}"

    with guard_factory():
        store = store_opener(StoreSettings(url=destination_url))
        try:
            extract_archive(archive_path=archive_path, destination_dir=staging)
            manifest = ArchiveManifest.from_dict(read_json(staging / MANIFEST_NAME))
            if manifest.base_prefix != settings.base_prefix:
                raise ImportValidationError(
                    f"Archive uses table prefix {manifest.base_prefix!r}; "
                    f"destination uses {settings.base_prefix!r}."
                )

            catalog = TableCatalog(
                store=store,
                base_prefix=settings.base_prefix,
                multisite=settings.multisite,
                page_size=settings.page_size,
            )
            sql_path = staging / manifest.sql_path
            assert_within(staging, sql_path, purpose="archive SQL dump")

            importer = StreamingImporter(store, request.import_options(), catalog)
            import_report = importer.import_file(sql_path, tenant_id=manifest.tenant_id)

            assets: dict[str, int] = {}
            if manifest.included_assets:
                if settings.content_root is None:
                    logger.warning("content_root is not configured; file trees not installed")
                else:
                    assets = install_assets(
                        staging,
                        SiteLayout(settings.content_root),
                        manifest.tenant_id,
                        multisite=settings.multisite,
                    )

            replace_report = _rewrite_site_url(
                catalog,
                manifest,
                request.new_url,
                settings=settings,
                guard_factory=guard_factory,
            )
        finally:
            store.dispose()
            if staging.exists():
                remove_work_directory(paths, staging)

    deleted = False
    if request.delete_archive and import_report.ok:
        archive_path.unlink(missing_ok=True)
        deleted = True

    duration = elapsed_seconds(clock, started)
    logger.info(
        "imported %s into tenant %s in %.2fs (%d failed statement(s))",
        archive_path.name,
        manifest.tenant_id,
        duration,
        import_report.statements_failed,
    )
    return ImportResult(
        archive_path=archive_path,
        tenant_id=manifest.tenant_id,
        import_report=import_report,
        replace_report=replace_report,
        duration_seconds=duration,
        assets_installed=assets,
        archive_deleted=deleted,
    )


def _rewrite_site_url(
    catalog: TableCatalog,
    manifest: ArchiveManifest,
    new_url: str,
    *,
    settings: EngineSettings,
    guard_factory: Callable[[], MaxRuntimeGuard],
) -> RunReport | None:
    old_url = (manifest.site_url or "").rstrip("/")
    target = new_url.strip().rstrip("/")
    if not old_url or old_url == target:
        return None
    engine = SearchReplaceEngine(
        catalog,
        ReplaceOptions(dry_run=False, page_size=settings.page_size),
        guard_factory=guard_factory,
    )
    return engine.run(old_url, target, catalog.list_tables(manifest.tenant_id))

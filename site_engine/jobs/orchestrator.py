"""
Export/import job orchestrator.

Exports run synchronously or are handed to a task queue. Imports are queued
as pending records and executed one per tick. The pending job store is the
only coordination point between requests and workers; every lifecycle step
is written to the job journal.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping

import httpx

from ..clock import Clock, SystemClock, elapsed_seconds
from ..config import EngineSettings, ExportOptions, ImportRequest, ReplaceOptions, load_settings
from ..database.catalog import TableCatalog
from ..database.max_runtime import MaxRuntimeGuard
from ..database.replace import SearchReplaceEngine
from ..database.reports import RunReport
from ..database.store import Store
from ..errors import ImportValidationError, SiteEngineError
from ..export.records import (
    ExportRecord,
    delete_export,
    list_exports,
    save_generation_time,
    save_import_time,
)
from ..export.service import run_export
from ..importing.service import ImportResult, StoreOpener, run_import
from ..importing.source import resolve_archive_source, validate_archive
from ..kv_store import KeyValueStore
from ..paths_and_safety import EnginePaths, ensure_engine_directories, resolve_engine_paths
from .journal import JobJournal
from .models import JobKind, PendingJob, job_hash
from .pending import PendingJobStore
from .tasks import DeferredTaskQueue, InlineTaskQueue, TaskQueue

logger = logging.getLogger(__name__)

EXPORT_TASK = "export_site"
TICK_INTERVAL_SECONDS = 60


@dataclass(frozen=True, slots=True)
class TickOutcome:
    """
    Result of one import tick.

    Attributes
    ----------
    job:
        The claimed import, or None when nothing was pending.
    result:
        Import result when the import ran to completion.
    error:
        Failure message when the import raised.
    reclaimed:
        True when a stale running import was claimed again.
    """

    job: PendingJob | None = None
    result: ImportResult | None = None
    error: str | None = None
    reclaimed: bool = False

    @property
    def idle(self) -> bool:
        return self.job is None


class Orchestrator:
    """
    Coordinates exports, imports and pending job records.

    Parameters
    ----------
    settings:
        Engine settings.
    paths:
        Engine directory layout.
    kv:
        Option store for generation and import times.
    pending:
        Pending job records.
    journal:
        Job lifecycle journal.
    tasks:
        Where background exports are sent.
    clock:
        Time source.
    store_opener:
        Opens the source and destination stores.
    guard_factory:
        Builds runtime guards for long operations.
    http_client:
        Client used to download https import sources.
    """

    def __init__(
        self,
        *,
        settings: EngineSettings,
        paths: EnginePaths,
        kv: KeyValueStore,
        pending: PendingJobStore,
        journal: JobJournal,
        tasks: TaskQueue,
        clock: Clock,
        store_opener: StoreOpener = Store.connect,
        guard_factory: Callable[[], MaxRuntimeGuard] = MaxRuntimeGuard,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._settings = settings
        self._paths = paths
        self._kv = kv
        self._pending = pending
        self._journal = journal
        self._tasks = tasks
        self._clock = clock
        self._store_opener = store_opener
        self._guard_factory = guard_factory
        self._http_client = http_client

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def paths(self) -> EnginePaths:
        return self._paths

    @property
    def journal(self) -> JobJournal:
        return self._journal

    @contextmanager
    def _source_catalog(self) -> Iterator[TableCatalog]:
        store = self._store_opener(self._settings.store_settings())
        try:
            yield TableCatalog(
                store=store,
                base_prefix=self._settings.base_prefix,
                multisite=self._settings.multisite,
                page_size=self._settings.page_size,
            )
        finally:
            store.dispose()

    # ------------------------------------------------------------------
    # Exports
    # ------------------------------------------------------------------

    def export(
        self,
        subject_id: int,
        options: ExportOptions | None = None,
        background: bool = False,
    ) -> ExportRecord | PendingJob:
        """
        Export a tenant now, or queue the export.

        Returns
        -------
        ExportRecord | PendingJob
            The completed export, or the pending record when `background`.
            Queueing an export that is already pending returns the existing
            record and sends nothing to the task queue.
        """
        options = options or ExportOptions()
        if not background:
            return self._run_export(int(subject_id), options)

        payload = options.to_dict()
        existing = self._pending.get(JobKind.EXPORT, job_hash(int(subject_id), payload))
        if existing is not None:
            logger.info("export of tenant %s is already pending", subject_id)
            return existing

        job = self._pending.add(JobKind.EXPORT, int(subject_id), payload)
        self._journal.append(
            "export_enqueued",
            {"site_id": job.subject_id, "hash": job.hash, "options": payload},
        )
        self._tasks.enqueue(
            EXPORT_TASK,
            {"site_id": job.subject_id, "options": payload, "hash": job.hash},
        )
        return job

    def export_many(
        self,
        subject_ids: Iterable[int],
        options: ExportOptions | None = None,
        background: bool = False,
    ) -> list[ExportRecord | PendingJob]:
        """
        Bulk export: run :meth:`export` for each tenant in order.

        Repeated ids are exported once. The first failure stops the batch.
        """
        outcomes: list[ExportRecord | PendingJob] = []
        for subject_id in dict.fromkeys(int(s) for s in subject_ids):
            outcomes.append(self.export(subject_id, options, background=background))
        return outcomes

    def handle_export_task(self, payload: Mapping[str, Any]) -> ExportRecord:
        """
        Run a queued export.

        The pending record is removed on success. A failed export leaves it
        in place until its TTL expires.
        """
        site_id = int(payload["site_id"])
        options = ExportOptions.from_dict(payload.get("options") or {})
        digest = str(payload.get("hash") or job_hash(site_id, options.to_dict()))

        job = self._pending.get(JobKind.EXPORT, digest)
        if job is not None:
            self._pending.mark_running(job)
        try:
            record = self._run_export(site_id, options)
        except SiteEngineError as exc:
            logger.error("background export of tenant %s failed: %s", site_id, exc)
            self._journal.append(
                "export_failed", {"site_id": site_id, "hash": digest, "error": str(exc)}
            )
            raise
        self._pending.remove(JobKind.EXPORT, digest)
        return record

    def run_pending_exports(self) -> list[ExportRecord]:
        """Execute exports left in the pending store that nobody has claimed."""
        records: list[ExportRecord] = []
        for job in self._pending.list(JobKind.EXPORT):
            if job.running:
                continue
            try:
                records.append(
                    self.handle_export_task(
                        {"site_id": job.subject_id, "options": dict(job.options), "hash": job.hash}
                    )
                )
            except SiteEngineError:
                continue
        return records

    def _run_export(self, subject_id: int, options: ExportOptions) -> ExportRecord:
        with self._source_catalog() as catalog:
            record = run_export(
                subject_id,
                options,
                catalog=catalog,
                settings=self._settings,
                paths=self._paths,
                clock=self._clock,
                guard_factory=self._guard_factory,
            )
        if record.generation_seconds is not None:
            save_generation_time(self._kv, record.name, record.generation_seconds)
        self._journal.append(
            "export_completed",
            {
                "site_id": subject_id,
                "archive": record.name,
                "size_bytes": record.size_bytes,
                "seconds": round(record.generation_seconds or 0.0, 3),
            },
        )
        return record

    def list_exports(self) -> list[ExportRecord]:
        return list_exports(self._paths, self._kv)

    def delete_export(self, name: str) -> Path:
        return delete_export(self._paths, name, self._kv)

    # ------------------------------------------------------------------
    # Imports
    # ------------------------------------------------------------------

    def import_site(
        self,
        source: str,
        request: ImportRequest,
        background: bool = True,
    ) -> ImportResult | PendingJob:
        """
        Validate an import and queue it (or run it now).

        Raises
        ------
        ImportValidationError
            If the URL is missing, the source cannot be resolved or the file
            is not a supported archive. Nothing is queued in that case.
        """
        if not request.new_url.strip():
            raise ImportValidationError("Please provide a URL for the new site.")
        archive = resolve_archive_source(
            source,
            downloads_root=self._paths.downloads_root,
            trusted_prefix=self._settings.trusted_download_prefix,
            client=self._http_client,
        )
        validate_archive(archive)

        if not background:
            return self._run_import(archive, request)

        job = self._pending.add(JobKind.IMPORT, str(archive), request.to_dict())
        self._journal.append(
            "import_enqueued",
            {"archive": str(archive), "hash": job.hash, "new_url": request.new_url},
        )
        return job

    def on_tick(self) -> TickOutcome:
        """
        Claim and run at most one pending import.

        Returns
        -------
        TickOutcome
            ``idle`` when nothing was claimed.
        """
        imports = self._pending.list(JobKind.IMPORT)
        job = next((j for j in imports if not j.running), None)
        reclaimed = False
        if job is None:
            job = self._stale_import(imports)
            if job is None:
                return TickOutcome()
            reclaimed = True
            logger.warning("reclaiming stale import %s", job.hash[:12])
            self._journal.append(
                "import_reclaimed", {"archive": str(job.subject_id), "hash": job.hash}
            )

        job = self._pending.mark_running(job)
        self._journal.append(
            "import_claimed",
            {"archive": str(job.subject_id), "hash": job.hash, "attempt": job.attempts},
        )

        try:
            request = ImportRequest.from_dict(job.options)
            result = self._run_import(Path(str(job.subject_id)), request)
        except (SiteEngineError, OSError) as exc:
            logger.error("import of %s failed: %s", job.subject_id, exc)
            self._journal.append(
                "import_failed",
                {"archive": str(job.subject_id), "hash": job.hash, "error": str(exc)},
            )
            return TickOutcome(job=job, error=str(exc), reclaimed=reclaimed)

        self._pending.remove(JobKind.IMPORT, job.hash)
        return TickOutcome(job=job, result=result, reclaimed=reclaimed)

    def _stale_import(self, imports: Iterable[PendingJob]) -> PendingJob | None:
        limit = self._settings.stale_import_seconds
        if not limit:
            return None
        for job in imports:
            if job.running and job.started_at is not None:
                if elapsed_seconds(self._clock, job.started_at) > limit:
                    return job
        return None

    def _run_import(self, archive: Path, request: ImportRequest) -> ImportResult:
        result = run_import(
            archive,
            request,
            settings=self._settings,
            paths=self._paths,
            clock=self._clock,
            guard_factory=self._guard_factory,
            store_opener=self._store_opener,
        )
        save_import_time(self._kv, archive.name, result.duration_seconds)
        self._journal.append(
            "import_completed",
            {
                "archive": archive.name,
                "tenant_id": result.tenant_id,
                "statements_failed": result.import_report.statements_failed,
                "archive_deleted": result.archive_deleted,
                "seconds": round(result.duration_seconds, 3),
            },
        )
        return result

    def tick_interval(self) -> int | None:
        """Return the tick period while imports are pending, else None."""
        if self._pending.list(JobKind.IMPORT):
            return TICK_INTERVAL_SECONDS
        return None

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def pending(self, kind: JobKind | None = None) -> list[PendingJob]:
        kinds = (kind,) if kind is not None else tuple(JobKind)
        jobs: list[PendingJob] = []
        for k in kinds:
            jobs.extend(self._pending.list(k))
        return jobs

    def cancel(self, kind: JobKind, digest: str) -> bool:
        """
        Cancel a pending job that has not started.

        Raises
        ------
        JobError
            If the job is already running.
        """
        removed = self._pending.cancel(kind, digest)
        if removed:
            self._journal.append("job_cancelled", {"kind": kind.value, "hash": digest})
        return removed

    def search_replace(
        self,
        search: str,
        replace: str,
        *,
        tenant_id: int | None = None,
        tables: Iterable[str] | None = None,
        csv: str | None = None,
        options: ReplaceOptions | None = None,
    ) -> RunReport:
        """
        Run the search-replace engine against the source store.

        Tables default to every table of `tenant_id` (the root tenant when
        omitted).
        """
        options = options or ReplaceOptions(page_size=self._settings.page_size)
        with self._source_catalog() as catalog:
            selected = list(tables) if tables else catalog.list_tables(
                tenant_id if tenant_id is not None else 1
            )
            engine = SearchReplaceEngine(
                catalog,
                options,
                guard_factory=self._guard_factory,
                clock=self._clock,
            )
            return engine.run(search, replace, selected, csv=csv)


def open_orchestrator(
    data_root: Path | None = None,
    *,
    clock: Clock | None = None,
    tasks: TaskQueue | None = None,
    store_opener: StoreOpener = Store.connect,
    guard_factory: Callable[[], MaxRuntimeGuard] = MaxRuntimeGuard,
    http_client: httpx.Client | None = None,
) -> Orchestrator:
    """
    Build an orchestrator over the engine directories under `data_root`.

    When `tasks` is an :class:`InlineTaskQueue`, the export handler is
    registered on it. Without a queue, background exports are deferred to
    :meth:`Orchestrator.run_pending_exports`.
    """
    paths = resolve_engine_paths(data_root)
    ensure_engine_directories(paths)
    settings = load_settings(data_root=paths.data_root)
    clock = clock or SystemClock()

    kv = KeyValueStore(paths.kv_path, clock)
    queue = tasks if tasks is not None else DeferredTaskQueue()
    orchestrator = Orchestrator(
        settings=settings,
        paths=paths,
        kv=kv,
        pending=PendingJobStore(kv, clock),
        journal=JobJournal(paths.journal_path, clock=clock),
        tasks=queue,
        clock=clock,
        store_opener=store_opener,
        guard_factory=guard_factory,
        http_client=http_client,
    )
    if isinstance(queue, InlineTaskQueue):
        queue.register(EXPORT_TASK, orchestrator.handle_export_task)
    return orchestrator

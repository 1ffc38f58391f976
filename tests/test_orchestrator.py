from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Callable

import pytest

from site_engine.config import ExportOptions, ImportRequest
from site_engine.database.max_runtime import MaxRuntimeGuard
from site_engine.errors import ArchiveNotFoundError, ImportValidationError, JobError, StoreConnectionError
from site_engine.export.records import ExportRecord
from site_engine.init_engine import init_engine
from site_engine.jobs.models import JobKind, PendingJob
from site_engine.jobs.orchestrator import EXPORT_TASK, Orchestrator, open_orchestrator
from site_engine.jobs.tasks import InlineTaskQueue, RecordingTaskQueue, TaskQueue
from site_fixtures import NEW_URL, OLD_URL, MutableClock, build_content_root, fetch_all, sqlite_url

GuardFactory = Callable[[], MaxRuntimeGuard]


def _open(
    tmp_path: Path,
    clock: MutableClock,
    guard: GuardFactory,
    *,
    tasks: TaskQueue | None = None,
    **overrides: Any,
) -> Orchestrator:
    data_root = tmp_path / "data"
    init_engine(data_root, content_root=str(build_content_root(tmp_path / "content")), **overrides)
    return open_orchestrator(data_root, clock=clock, tasks=tasks, guard_factory=guard)


def _events(orchestrator: Orchestrator) -> list[str]:
    return [e.event for e in orchestrator.journal.events()]


def _archive(orchestrator: Orchestrator, tmp_path: Path, name: str) -> Path:
    record = orchestrator.export(2)
    assert isinstance(record, ExportRecord)
    target = tmp_path / name
    shutil.copy2(record.archive_path, target)
    return target


def _request(tmp_path: Path, new_url: str = "https://new.example") -> ImportRequest:
    return ImportRequest(new_url=new_url, destination_url=sqlite_url(tmp_path / "dest.sqlite"))


def test_background_export_is_queued_once(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    tasks = RecordingTaskQueue()
    orch = _open(tmp_path, clock, null_guard, tasks=tasks, database_url=sqlite_url(site_db))

    first = orch.export(2, ExportOptions(uploads=True), background=True)
    second = orch.export(2, ExportOptions(uploads=True), background=True)

    assert isinstance(first, PendingJob)
    assert second == first
    assert len(orch.pending(JobKind.EXPORT)) == 1
    assert len(tasks.tasks) == 1
    assert tasks.tasks[0].name == EXPORT_TASK
    assert tasks.tasks[0].payload["hash"] == first.hash

    dispatcher = InlineTaskQueue()
    dispatcher.register(EXPORT_TASK, orch.handle_export_task)
    assert tasks.drain(dispatcher) == 1

    assert orch.pending(JobKind.EXPORT) == []
    [record] = orch.list_exports()
    assert record.tenant_id == 2
    assert record.generation_seconds == 0.0
    assert _events(orch) == ["export_enqueued", "export_completed"]


def test_inline_queue_runs_background_export_at_once(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    orch = _open(
        tmp_path, clock, null_guard, tasks=InlineTaskQueue(), database_url=sqlite_url(site_db)
    )

    orch.export(2, background=True)

    assert orch.pending() == []
    assert len(orch.list_exports()) == 1


def test_deferred_exports_run_on_demand(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    orch = _open(tmp_path, clock, null_guard, database_url=sqlite_url(site_db))

    orch.export(2, background=True)
    assert len(orch.pending(JobKind.EXPORT)) == 1

    [record] = orch.run_pending_exports()
    assert record.tenant_id == 2
    assert orch.pending(JobKind.EXPORT) == []


def test_export_without_configured_store_fails(
    tmp_path: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    orch = _open(tmp_path, clock, null_guard)
    with pytest.raises(StoreConnectionError):
        orch.export(2)


def test_import_is_validated_before_queueing(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    orch = _open(tmp_path, clock, null_guard, database_url=sqlite_url(site_db))
    archive = _archive(orch, tmp_path, "a.zip")
    bogus = tmp_path / "notes.txt"
    bogus.write_text("x", encoding="utf-8")

    with pytest.raises(ImportValidationError):
        orch.import_site(str(archive), ImportRequest(new_url="  "))
    with pytest.raises(ArchiveNotFoundError):
        orch.import_site(str(tmp_path / "missing.zip"), _request(tmp_path))
    with pytest.raises(ImportValidationError):
        orch.import_site(str(bogus), _request(tmp_path))

    assert orch.pending(JobKind.IMPORT) == []
    assert orch.tick_interval() is None


def test_each_tick_runs_one_import(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    orch = _open(tmp_path, clock, null_guard, database_url=sqlite_url(site_db))
    archive = _archive(orch, tmp_path, "a.zip")

    first = orch.import_site(str(archive), _request(tmp_path, "https://one.example"))
    second = orch.import_site(str(archive), _request(tmp_path, "https://two.example"))
    assert isinstance(first, PendingJob) and isinstance(second, PendingJob)
    assert orch.tick_interval() == 60

    outcome = orch.on_tick()

    assert outcome.job is not None and outcome.job.hash == first.hash
    assert outcome.result is not None and outcome.result.ok
    assert [j.hash for j in orch.pending(JobKind.IMPORT)] == [second.hash]
    dest = tmp_path / "dest.sqlite"
    assert fetch_all(dest, "SELECT option_value FROM wp_2_options WHERE option_name = 'siteurl'") == [
        ("https://one.example",)
    ]

    assert orch.on_tick().job.hash == second.hash  # type: ignore[union-attr]
    assert orch.tick_interval() is None
    assert orch.on_tick().idle
    assert _events(orch).count("import_completed") == 2


def test_failed_import_stays_claimed_and_next_tick_moves_on(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    orch = _open(tmp_path, clock, null_guard, database_url=sqlite_url(site_db))
    broken = _archive(orch, tmp_path, "broken.zip")
    good = tmp_path / "good.zip"
    shutil.copy2(broken, good)
    failing = orch.import_site(str(broken), _request(tmp_path))
    working = orch.import_site(str(good), _request(tmp_path))
    broken.unlink()

    outcome = orch.on_tick()

    assert outcome.error is not None
    assert outcome.job is not None and outcome.job.hash == failing.hash
    [still_there, _] = orch.pending(JobKind.IMPORT)
    assert still_there.running is True

    outcome = orch.on_tick()
    assert outcome.job is not None and outcome.job.hash == working.hash
    assert outcome.result is not None

    assert orch.on_tick().idle
    assert "import_failed" in _events(orch)


def test_stale_running_import_is_reclaimed(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    orch = _open(
        tmp_path, clock, null_guard, database_url=sqlite_url(site_db), stale_import_seconds=60
    )
    archive = _archive(orch, tmp_path, "a.zip")
    parked = tmp_path / "parked.zip"
    job = orch.import_site(str(archive), _request(tmp_path))
    archive.rename(parked)

    assert orch.on_tick().error is not None
    parked.rename(archive)
    assert orch.on_tick().idle

    clock.advance(61)
    outcome = orch.on_tick()

    assert outcome.reclaimed is True
    assert outcome.job is not None and outcome.job.hash == job.hash
    assert outcome.job.attempts == 2
    assert outcome.result is not None and outcome.result.ok
    assert "import_reclaimed" in _events(orch)


def test_cancel_pending_and_running_jobs(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    orch = _open(tmp_path, clock, null_guard, database_url=sqlite_url(site_db))
    archive = _archive(orch, tmp_path, "a.zip")
    queued = orch.import_site(str(archive), _request(tmp_path))
    assert isinstance(queued, PendingJob)

    assert orch.cancel(JobKind.IMPORT, queued.hash) is True
    assert orch.cancel(JobKind.IMPORT, queued.hash) is False
    assert "job_cancelled" in _events(orch)

    claimed = orch.import_site(str(archive), _request(tmp_path, "https://other.example"))
    archive.unlink()
    orch.on_tick()
    with pytest.raises(JobError):
        orch.cancel(JobKind.IMPORT, claimed.hash)


def test_synchronous_import_records_its_time(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    orch = _open(tmp_path, clock, null_guard, database_url=sqlite_url(site_db))
    archive = _archive(orch, tmp_path, "a.zip")

    result = orch.import_site(str(archive), _request(tmp_path), background=False)

    assert not isinstance(result, PendingJob)
    assert result.ok
    assert orch.pending() == []
    assert _events(orch)[-1] == "import_completed"


def test_search_replace_defaults_to_dry_run(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    orch = _open(tmp_path, clock, null_guard, database_url=sqlite_url(site_db))

    report = orch.search_replace(OLD_URL, NEW_URL, tenant_id=2)

    assert report.dry_run is True
    assert set(report.per_table) == {"wp_2_options", "wp_2_postmeta", "wp_2_posts"}
    assert report.total_changes > 0
    assert fetch_all(site_db, "SELECT option_value FROM wp_2_options WHERE option_id = 1") == [
        (OLD_URL,)
    ]


def test_delete_export_through_orchestrator(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    orch = _open(tmp_path, clock, null_guard, database_url=sqlite_url(site_db))
    record = orch.export(2)
    assert isinstance(record, ExportRecord)

    orch.delete_export(record.name)

    assert orch.list_exports() == []


def test_bulk_export_runs_each_tenant_once(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    orch = _open(tmp_path, clock, null_guard, database_url=sqlite_url(site_db))

    outcomes = orch.export_many([2, 1, 2])

    assert [o.tenant_id for o in outcomes if isinstance(o, ExportRecord)] == [2, 1]
    assert sorted(r.tenant_id for r in orch.list_exports()) == [1, 2]


def test_bulk_background_export_queues_one_job_per_tenant(
    tmp_path: Path, site_db: Path, clock: MutableClock, null_guard: GuardFactory
) -> None:
    tasks = RecordingTaskQueue()
    orch = _open(tmp_path, clock, null_guard, tasks=tasks, database_url=sqlite_url(site_db))

    outcomes = orch.export_many([1, 2], background=True)

    assert all(isinstance(o, PendingJob) for o in outcomes)
    assert [t.payload["site_id"] for t in tasks.tasks] == [1, 2]

from __future__ import annotations

from pathlib import Path

import pytest

from site_engine.errors import JobError
from site_engine.jobs.models import JobKind, JobState, PendingJob, job_hash
from site_engine.jobs.pending import DEFAULT_TTL_SECONDS, PendingJobStore
from site_engine.kv_store import KeyValueStore
from site_fixtures import MutableClock


def _store(tmp_path: Path, clock: MutableClock) -> PendingJobStore:
    return PendingJobStore(KeyValueStore(tmp_path / "kv.sqlite", clock), clock)


def test_job_hash_is_stable_and_key_order_independent() -> None:
    a = job_hash(2, {"themes": True, "uploads": False})
    b = job_hash(2, {"uploads": False, "themes": True})

    assert a == b
    assert len(a) == 64
    assert job_hash(3, {"themes": True, "uploads": False}) != a


def test_adding_the_same_request_twice_keeps_one_record(
    tmp_path: Path, clock: MutableClock
) -> None:
    store = _store(tmp_path, clock)

    first = store.add(JobKind.EXPORT, 2, {"uploads": True})
    clock.advance(5)
    second = store.add(JobKind.EXPORT, 2, {"uploads": True})

    assert second == first
    assert len(store.list(JobKind.EXPORT)) == 1
    assert store.list(JobKind.IMPORT) == []


def test_list_is_in_enqueue_order(tmp_path: Path, clock: MutableClock) -> None:
    store = _store(tmp_path, clock)
    for archive in ("c.zip", "a.zip", "b.zip"):
        store.add(JobKind.IMPORT, archive, {"new_url": "https://x.test"})

    assert [j.subject_id for j in store.list(JobKind.IMPORT)] == ["c.zip", "a.zip", "b.zip"]


def test_mark_running_and_remove(tmp_path: Path, clock: MutableClock) -> None:
    store = _store(tmp_path, clock)
    job = store.add(JobKind.IMPORT, "a.zip", {})
    assert job.state is JobState.PENDING

    clock.advance(10)
    running = store.mark_running(job)

    assert running.state is JobState.RUNNING
    assert running.started_at == clock.now()
    assert running.attempts == 1
    assert store.get(JobKind.IMPORT, job.hash) == running
    assert store.remove(JobKind.IMPORT, job.hash) is True
    assert store.get(JobKind.IMPORT, job.hash) is None


def test_cancel_only_applies_to_jobs_not_yet_running(
    tmp_path: Path, clock: MutableClock
) -> None:
    store = _store(tmp_path, clock)
    queued = store.add(JobKind.IMPORT, "a.zip", {})
    running = store.mark_running(store.add(JobKind.IMPORT, "b.zip", {}))

    assert store.cancel(JobKind.IMPORT, queued.hash) is True
    assert store.cancel(JobKind.IMPORT, queued.hash) is False
    with pytest.raises(JobError):
        store.cancel(JobKind.IMPORT, running.hash)


def test_records_expire_after_ttl(tmp_path: Path, clock: MutableClock) -> None:
    store = _store(tmp_path, clock)
    job = store.add(JobKind.EXPORT, 2, {})

    clock.advance(DEFAULT_TTL_SECONDS - 1)
    assert store.get(JobKind.EXPORT, job.hash) is not None

    clock.advance(1)
    assert store.get(JobKind.EXPORT, job.hash) is None
    assert store.list(JobKind.EXPORT) == []


def test_pending_job_serialization(clock: MutableClock) -> None:
    job = PendingJob(
        kind=JobKind.EXPORT,
        subject_id=2,
        options={"uploads": True},
        hash="abc",
        enqueued_at=clock.now(),
    )

    assert PendingJob.from_dict(job.to_dict()) == job
    assert job.key == "pending_export_abc"

    with pytest.raises(JobError):
        PendingJob.from_dict({"kind": "bogus"})

"""
Pending job store.

Records live in the key-value store under ``pending_<kind>_<hash>`` with a
TTL, so an abandoned record eventually disappears on its own. The per-hash key
is the only guard against duplicate concurrent jobs: callers must always go
through :meth:`PendingJobStore.add` rather than writing keys themselves.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from ..clock import Clock
from ..errors import JobError
from ..kv_store import KeyValueStore
from .models import JobKind, PendingJob, SubjectId, job_hash

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 2 * 60 * 60


class PendingJobStore:
    """
    Durable, TTL-bounded pending job records.

    Parameters
    ----------
    kv:
        Backing key-value store.
    clock:
        Source of enqueue and claim times.
    ttl_seconds:
        Lifetime of a record, refreshed when the job is claimed.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        clock: Clock,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
    ) -> None:
        self._kv = kv
        self._clock = clock
        self._ttl_seconds = ttl_seconds

    def add(self, kind: JobKind, subject_id: SubjectId, options: Mapping[str, Any]) -> PendingJob:
        """Write a pending record, or return the existing one for the same request."""
        digest = job_hash(subject_id, options)
        existing = self.get(kind, digest)
        if existing is not None:
            logger.debug("%s job %s already pending", kind.value, digest[:12])
            return existing
        job = PendingJob(
            kind=kind,
            subject_id=subject_id,
            options=dict(options),
            hash=digest,
            enqueued_at=self._clock.now(),
        )
        self._kv.set(job.key, job.to_dict(), ttl_seconds=self._ttl_seconds)
        return job

    def get(self, kind: JobKind, digest: str) -> PendingJob | None:
        payload = self._kv.get(kind.key_prefix + digest)
        if payload is None:
            return None
        return PendingJob.from_dict(payload)

    def list(self, kind: JobKind) -> list[PendingJob]:
        """Return live records of `kind` in enqueue order. Malformed records are skipped."""
        jobs: list[PendingJob] = []
        for key, payload in self._kv.scan(kind.key_prefix):
            try:
                jobs.append(PendingJob.from_dict(payload))
            except JobError as exc:
                logger.warning("ignoring pending record %s: %s", key, exc)
        return jobs

    def mark_running(self, job: PendingJob) -> PendingJob:
        claimed = job.claimed(self._clock.now())
        self._kv.set(claimed.key, claimed.to_dict(), ttl_seconds=self._ttl_seconds)
        return claimed

    def remove(self, kind: JobKind, digest: str) -> bool:
        return self._kv.delete(kind.key_prefix + digest)

    def cancel(self, kind: JobKind, digest: str) -> bool:
        """
        Delete a record that has not been claimed yet.

        Returns
        -------
        bool
            False if no such record exists.

        Raises
        ------
        JobError
            If the job is already running.
        """
        job = self.get(kind, digest)
        if job is None:
            return False
        if job.running:
            raise JobError(f"The {kind.value} job {digest[:12]} is running and cannot be cancelled.")
        return self.remove(kind, digest)

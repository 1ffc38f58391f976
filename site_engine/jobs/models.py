"""
Pending job model.

A pending job is the durable marker of an export or import that has been
requested but not yet completed. Its hash is derived from what was requested,
so requesting the same work twice addresses the same record.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Union

from ..clock import format_utc, parse_utc
from ..errors import JobError

SubjectId = Union[int, str]


class JobKind(str, Enum):
    """Kinds of pending jobs."""

    EXPORT = "export"
    IMPORT = "import"

    @property
    def key_prefix(self) -> str:
        return f"pending_{self.value}_"


class JobState(str, Enum):
    """Lifecycle: requested -> pending -> running -> (completed | failed)."""

    REQUESTED = "requested"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def job_hash(subject_id: SubjectId, options: Mapping[str, Any]) -> str:
    """Return the SHA-256 of the canonical JSON of ``[subject_id, options]``."""
    canonical = json.dumps(
        [subject_id, dict(options)],
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class PendingJob:
    """
    A queued or running job.

    Attributes
    ----------
    kind:
        Export or import.
    subject_id:
        Tenant id for exports, archive path for imports.
    options:
        Options the job was requested with.
    hash:
        Deduplication hash of ``(subject_id, options)``.
    enqueued_at:
        When the record was first written.
    running:
        True once a worker has claimed the job.
    started_at:
        When the job was claimed.
    """

    kind: JobKind
    subject_id: SubjectId
    options: Mapping[str, Any]
    hash: str
    enqueued_at: datetime
    running: bool = False
    started_at: datetime | None = None
    attempts: int = field(default=0)

    @property
    def key(self) -> str:
        return self.kind.key_prefix + self.hash

    @property
    def state(self) -> JobState:
        return JobState.RUNNING if self.running else JobState.PENDING

    def claimed(self, at: datetime) -> "PendingJob":
        return replace(self, running=True, started_at=at, attempts=self.attempts + 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "subject_id": self.subject_id,
            "options": dict(self.options),
            "hash": self.hash,
            "enqueued_at": format_utc(self.enqueued_at),
            "running": self.running,
            "started_at": format_utc(self.started_at) if self.started_at else None,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "PendingJob":
        """
        Parse a stored record.

        Raises
        ------
        JobError
            If the record is malformed.
        """
        try:
            started = payload.get("started_at")
            return cls(
                kind=JobKind(payload["kind"]),
                subject_id=payload["subject_id"],
                options=dict(payload.get("options") or {}),
                hash=str(payload["hash"]),
                enqueued_at=parse_utc(str(payload["enqueued_at"])),
                running=bool(payload.get("running", False)),
                started_at=parse_utc(str(started)) if started else None,
                attempts=int(payload.get("attempts", 0)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise JobError(f"Invalid pending job record: {exc}") from exc

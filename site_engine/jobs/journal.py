"""
Job journal.

One JSON object per line under ``logs/jobs.jsonl``: ``ts`` (ISO-8601),
``event`` and ``data``. Events are written for every pending-job transition
(``export_enqueued``, ``export_completed``, ``export_failed``,
``import_enqueued``, ``import_claimed``, ``import_reclaimed``,
``import_completed``, ``import_failed``, ``job_cancelled``).

The journal is for operators. Job state lives in the pending job store and is
never rebuilt from these lines.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Mapping

from ..clock import Clock
from ..json_io import dumps_canonical

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class JournalEvent:
    """
    One journal line.

    Parameters
    ----------
    timestamp : datetime
        Event time (timezone-aware).
    event : str
        Event name.
    data : Mapping[str, Any]
        JSON-serializable payload.
    """

    timestamp: datetime
    event: str
    data: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"ts": self.timestamp.isoformat(), "event": self.event, "data": dict(self.data)}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "JournalEvent":
        return cls(
            timestamp=datetime.fromisoformat(str(payload["ts"])),
            event=str(payload["event"]),
            data=dict(payload.get("data") or {}),
        )


class JobJournal:
    """Append-only JSONL journal of job lifecycle events."""

    def __init__(self, journal_path: Path, *, clock: Clock) -> None:
        self._journal_path = journal_path
        self._clock = clock
        self._journal_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._journal_path

    def append(self, event: str, data: Mapping[str, Any]) -> JournalEvent:
        """
        Append one event.

        Raises
        ------
        OSError
            If the journal cannot be written.
        TypeError
            If `data` is not JSON-serializable.
        """
        record = JournalEvent(timestamp=self._clock.now(), event=event, data=data)
        line = dumps_canonical(record.to_dict(), compact=True)
        with self._journal_path.open("a", encoding="utf-8", newline="\n") as handle:
            handle.write(line + "\n")
        logger.debug("journal %s %s", event, line)
        return record

    def events(self) -> Iterator[JournalEvent]:
        """Yield recorded events in order. Damaged lines are skipped."""
        if not self._journal_path.exists():
            return
        with self._journal_path.open("r", encoding="utf-8") as handle:
            for number, raw in enumerate(handle, start=1):
                if not raw.strip():
                    continue
                try:
                    yield JournalEvent.from_dict(json.loads(raw))
                except (json.JSONDecodeError, KeyError, TypeError, ValueError):
                    logger.warning("skipping damaged journal line %d in %s", number, self._journal_path)

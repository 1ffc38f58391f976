"""
Time source.

Notes
-----
Engine code asks a :class:`Clock` for the time instead of reading the system
clock, so pending-job expiry, export names and measured durations can be
pinned in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    """Anything with a ``now()`` returning an aware datetime."""

    def now(self) -> datetime:
        ...


@dataclass(frozen=True, slots=True)
class SystemClock:
    """Current system time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


def elapsed_seconds(clock: Clock, started: datetime) -> float:
    """Return the seconds elapsed on `clock` since `started` (never negative)."""
    return max(0.0, (clock.now() - started).total_seconds())


def format_utc(dt: datetime) -> str:
    """Format an aware datetime as ``YYYY-MM-DDTHH:MM:SSZ``."""
    if dt.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_utc(value: str) -> datetime:
    """Parse a ``YYYY-MM-DDTHH:MM:SSZ`` (or any ISO-8601) timestamp as an aware datetime."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed

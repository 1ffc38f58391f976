"""
SQLite key-value store with expiry.

This module owns the on-disk persistence of engine state that is not part of a
tenant database: pending job records and recorded generation/import times.

Notes
-----
The database is placed under EnginePaths.index_root because it is rebuildable
index state. Values are stored as JSON text. An entry whose expiry has passed
reads as absent and is purged lazily.

Threading
---------
sqlite3 connections are opened per call and never shared across threads.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .clock import Clock, SystemClock

SCHEMA_V1 = """
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS kv_entries (
    key        TEXT PRIMARY KEY,
    value      TEXT NOT NULL,
    expires_at REAL NULL
);

CREATE INDEX IF NOT EXISTS idx_kv_expires ON kv_entries(expires_at);
"""


@dataclass(frozen=True, slots=True)
class KeyValueStore:
    """
    SQLite-backed key-value store.

    Parameters
    ----------
    db_path:
        Path to the SQLite database. Created if absent.
    clock:
        Source of time for expiry decisions.
    """

    db_path: Path
    clock: Clock = field(default_factory=SystemClock)

    def __post_init__(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA_V1)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _now(self) -> float:
        return self.clock.now().timestamp()

    def set(self, key: str, value: Any, *, ttl_seconds: int | None = None) -> None:
        """
        Store a JSON-serializable value.

        An existing key keeps its position in scan order.
        """
        expires_at = self._now() + ttl_seconds if ttl_seconds is not None else None
        encoded = json.dumps(value, sort_keys=True, separators=(",", ":"))
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO kv_entries(key, value, expires_at) VALUES(?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, "
                "expires_at = excluded.expires_at",
                (key, encoded, expires_at),
            )

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value, or `default` when absent or expired."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value, expires_at FROM kv_entries WHERE key = ?",
                (key,),
            ).fetchone()
            if row is None:
                return default
            if self._expired(row["expires_at"]):
                conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
                return default
        return json.loads(row["value"])

    def delete(self, key: str) -> bool:
        """Delete a key. Returns True when something was removed."""
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
            return cur.rowcount > 0

    def scan(self, prefix: str) -> list[tuple[str, Any]]:
        """
        Return live entries whose key starts with `prefix`, in insertion order.
        """
        now = self._now()
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM kv_entries WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (now,),
            )
            rows = conn.execute(
                "SELECT key, value FROM kv_entries WHERE substr(key, 1, ?) = ? ORDER BY rowid ASC",
                (len(prefix), prefix),
            ).fetchall()
        return [(str(r["key"]), json.loads(r["value"])) for r in rows]

    def _expired(self, expires_at: float | None) -> bool:
        return expires_at is not None and float(expires_at) <= self._now()

"""
Search-replace run reports.

Reports are the error channel of a run: non-fatal problems (undecodable
values, tables without a primary key, failed row updates) are recorded here
and the report is always returned, in dry-run and commit mode alike.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..json_io import write_json_atomic


@dataclass(frozen=True, slots=True)
class CellChange:
    """
    One changed cell.

    Attributes
    ----------
    row:
        1-based position of the row in scan order.
    column:
        Column name.
    before:
        Stored value before the rewrite.
    after:
        Value after the rewrite (what was, or would be, written).
    """

    row: int
    column: str
    before: str
    after: str

    def to_dict(self) -> dict[str, Any]:
        return {"row": self.row, "column": self.column, "from": self.before, "to": self.after}


@dataclass(slots=True)
class TableChangeReport:
    """Per-table outcome of a search-replace run."""

    table: str
    rows_scanned: int = 0
    cells_changed: int = 0
    updates_executed: int = 0
    errors: list[str] = field(default_factory=list)
    change_log: list[CellChange] = field(default_factory=list)
    duration_seconds: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "table": self.table,
            "rows_scanned": self.rows_scanned,
            "cells_changed": self.cells_changed,
            "updates_executed": self.updates_executed,
            "errors": list(self.errors),
            "changes": [c.to_dict() for c in self.change_log],
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(slots=True)
class RunReport:
    """
    Outcome of one search-replace run over a set of tables.

    Attributes
    ----------
    dry_run:
        True when no update was issued.
    per_table:
        Table reports keyed by table name, in processing order.
    """

    dry_run: bool
    per_table: dict[str, TableChangeReport] = field(default_factory=dict)

    @property
    def tables_touched(self) -> int:
        return len(self.per_table)

    @property
    def total_changes(self) -> int:
        return sum(r.cells_changed for r in self.per_table.values())

    @property
    def updates_executed(self) -> int:
        return sum(r.updates_executed for r in self.per_table.values())

    @property
    def errors(self) -> dict[str, list[str]]:
        """Errors by table, omitting tables without errors."""
        return {name: list(r.errors) for name, r in self.per_table.items() if r.errors}

    def add(self, table_report: TableChangeReport) -> None:
        self.per_table[table_report.table] = table_report

    def to_dict(self) -> dict[str, Any]:
        return {
            "dry_run": self.dry_run,
            "tables_touched": self.tables_touched,
            "total_changes": self.total_changes,
            "updates_executed": self.updates_executed,
            "errors": self.errors,
            "per_table": {name: r.to_dict() for name, r in self.per_table.items()},
        }


def write_run_report(path: Path, report: RunReport) -> Path:
    """Write a run report as JSON, atomically."""
    write_json_atomic(path, report.to_dict())
    return path

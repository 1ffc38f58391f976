"""
Streaming SQL importer.

Materializes a SQL dump into a destination store one statement at a time,
without reading the whole file into memory.

Notes
-----
The import is best-effort: a failing statement is recorded in the report and
the remaining statements still run. Callers that prefer to stop at the first
failure set ``ImportOptions.stop_on_error``. Either way the report is always
returned.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..config import ImportOptions, StoreSettings
from ..errors import DumpFileNotFoundError, StoreError
from .catalog import TableCatalog
from .store import Store

logger = logging.getLogger(__name__)

PREVIEW_CHARS = 120


@dataclass(frozen=True, slots=True)
class StatementError:
    """
    One failed statement.

    Attributes
    ----------
    line:
        Line number (1-based) where the statement ended.
    preview:
        Start of the statement text.
    message:
        Error reported by the store.
    """

    line: int
    preview: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"line": self.line, "preview": self.preview, "message": self.message}


@dataclass(slots=True)
class ImportReport:
    """Outcome of one dump import."""

    statements_executed: int = 0
    statements_failed: int = 0
    errors: list[StatementError] = field(default_factory=list)
    tables_dropped: list[str] = field(default_factory=list)
    stopped_early: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "statements_executed": self.statements_executed,
            "statements_failed": self.statements_failed,
            "errors": [e.to_dict() for e in self.errors],
            "tables_dropped": list(self.tables_dropped),
            "stopped_early": self.stopped_early,
        }


def _preview(statement: str) -> str:
    flat = " ".join(statement.split())
    if len(flat) <= PREVIEW_CHARS:
        return flat
    return flat[: PREVIEW_CHARS - 3] + "..."


class StreamingImporter:
    """
    Imports SQL dumps into one destination store.

    Parameters
    ----------
    store:
        Destination store. The importer never uses the caller's source store.
    options:
        Drop and error-handling options.
    catalog:
        Catalog over `store`, used to find the tenant's tables to drop.
    """

    def __init__(
        self,
        store: Store,
        options: ImportOptions | None = None,
        catalog: TableCatalog | None = None,
    ) -> None:
        self._store = store
        self._options = options or ImportOptions()
        self._catalog = catalog or TableCatalog(store=store)

    @property
    def store(self) -> Store:
        return self._store

    def drop_tenant_tables(self, tenant_id: int) -> list[str]:
        """
        Drop the tenant's existing tables.

        Tables whose name contains ``user`` are kept, since user tables are
        shared between tenants. With ``force_drop`` each DROP runs between
        foreign-key-off and foreign-key-on statements on one connection.

        Returns
        -------
        list[str]
            Tables dropped.
        """
        dropped: list[str] = []
        toggles = self._store.foreign_key_toggles() if self._options.force_drop else None
        for name in self._catalog.list_tables(tenant_id):
            if "user" in name:
                continue
            drop = f"DROP TABLE {self._store.quote(name)}"
            statements = [toggles[0], drop, toggles[1]] if toggles else [drop]
            try:
                self._store.execute_batch(statements)
            except StoreError as exc:
                logger.warning("could not drop %s: %s", name, exc)
                continue
            dropped.append(name)
        logger.info("dropped %d table(s) for tenant %s", len(dropped), tenant_id)
        return dropped

    def import_file(self, path: Path, *, tenant_id: int | None = None) -> ImportReport:
        """
        Execute every statement of a dump file.

        Parameters
        ----------
        path:
            SQL dump.
        tenant_id:
            If given and ``drop_tables`` is set, the tenant's tables are dropped
            first.

        Raises
        ------
        DumpFileNotFoundError
            If `path` does not exist.
        """
        if not path.is_file():
            raise DumpFileNotFoundError(f"SQL dump not found: {path}")

        report = ImportReport()
        if tenant_id is not None and self._options.drop_tables:
            report.tables_dropped = self.drop_tenant_tables(tenant_id)

        buffer: list[str] = []
        line_number = 0
        with path.open("r", encoding="utf-8", errors="surrogateescape", newline="") as handle:
            for raw_line in handle:
                line_number += 1
                line = raw_line.rstrip("\r\n")
                stripped = line.strip()
                if not stripped or stripped.startswith("--"):
                    continue
                buffer.append(line)
                if not stripped.endswith(";"):
                    continue

                statement = "\n".join(buffer)
                buffer = []
                if not self._run(statement, line_number, report):
                    if self._options.stop_on_error:
                        report.stopped_early = True
                        break

        if buffer and not report.stopped_early:
            report.statements_failed += 1
            report.errors.append(
                StatementError(
                    line=line_number,
                    preview=_preview("\n".join(buffer)),
                    message="Unterminated statement at end of file (not executed)",
                )
            )

        logger.info(
            "imported %s: %d statement(s), %d failed",
            path.name,
            report.statements_executed,
            report.statements_failed,
        )
        return report

    def _run(self, statement: str, line_number: int, report: ImportReport) -> bool:
        try:
            self._store.execute(statement)
        except StoreError as exc:
            report.statements_failed += 1
            report.errors.append(
                StatementError(line=line_number, preview=_preview(statement), message=str(exc))
            )
            logger.warning("statement ending on line %d failed: %s", line_number, exc)
            return False
        report.statements_executed += 1
        return True


def open_importer(
    settings: StoreSettings,
    options: ImportOptions | None = None,
    *,
    base_prefix: str = "wp_",
    multisite: bool = True,
) -> StreamingImporter:
    """
    Connect to a destination with its own credentials and return an importer.

    Raises
    ------
    StoreConnectionError
        If the destination cannot be reached.
    """
    store = Store.connect(settings)
    catalog = TableCatalog(store=store, base_prefix=base_prefix, multisite=multisite)
    return StreamingImporter(store, options, catalog)

"""
SQL dump writer.

The dump is read back by the line-oriented importer, so its layout is part of
the archive contract:

- comment lines start with ``--``
- every statement ends with ``;`` at the end of a line
- every INSERT is exactly one line; string literals never contain a raw line
  break (MySQL escapes them, other dialects splice ``char(10)``/``chr(10)``)
"""

from __future__ import annotations

import datetime as dt
import math
import decimal
import logging
from dataclasses import dataclass
from typing import Any, Iterable, TextIO

from .catalog import TableCatalog

logger = logging.getLogger(__name__)

_MYSQL_ESCAPES = {
    "\\": "\\\\",
    "\0": "\\0",
    "\n": "\\n",
    "\r": "\\r",
    "\x1a": "\\Z",
    "'": "\\'",
}
_MYSQL_DIALECTS = frozenset({"mysql", "mariadb"})


@dataclass(frozen=True, slots=True)
class DumpSummary:
    """Counts for a written dump."""

    tables: tuple[str, ...]
    rows_written: int
    rows_by_table: dict[str, int]

    def to_dict(self) -> dict[str, Any]:
        return {
            "tables": list(self.tables),
            "rows_written": self.rows_written,
            "rows_by_table": dict(self.rows_by_table),
        }


def render_literal(value: Any, dialect: str) -> str:
    """Render a Python value as a SQL literal for `dialect`."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (int, decimal.Decimal)):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            logger.warning("non-finite float %r exported as NULL", value)
            return "NULL"
        return repr(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "X'" + bytes(value).hex().upper() + "'"
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return "'" + str(value) + "'"
    return _render_string(str(value), dialect)


def _render_string(text: str, dialect: str) -> str:
    if dialect in _MYSQL_DIALECTS:
        return "'" + "".join(_MYSQL_ESCAPES.get(ch, ch) for ch in text) + "'"

    char_fn = "char" if dialect == "sqlite" else "chr"
    parts: list[str] = []
    chunk: list[str] = []
    for ch in text:
        if ch in ("\n", "\r"):
            parts.append("'" + "".join(chunk).replace("'", "''") + "'")
            parts.append(f"{char_fn}({ord(ch)})")
            chunk = []
        else:
            chunk.append(ch)
    parts.append("'" + "".join(chunk).replace("'", "''") + "'")
    if len(parts) == 1:
        return parts[0]
    return "(" + " || ".join(p for p in parts if p != "''") + ")"


def write_sql_dump(
    catalog: TableCatalog,
    tables: Iterable[str],
    handle: TextIO,
    *,
    title: str = "siteport SQL dump",
) -> DumpSummary:
    """
    Write DROP/CREATE/INSERT statements for `tables` to `handle`.

    Parameters
    ----------
    catalog:
        Catalog of the source store.
    tables:
        Tables to dump, in order.
    handle:
        Text stream receiving the dump.
    title:
        First comment line.

    Returns
    -------
    DumpSummary
        What was written.
    """
    store = catalog.store
    dialect = store.dialect_name
    names = list(tables)

    handle.write(f"-- {title}\n")
    handle.write(f"-- dialect: {dialect}\n")
    handle.write(f"-- tables: {len(names)}\n\n")

    rows_by_table: dict[str, int] = {}
    for name in names:
        _primary_key, columns = catalog.columns_of(name)
        quoted_table = store.quote(name)
        handle.write(f"--\n-- Table {name}\n--\n")
        handle.write(f"DROP TABLE IF EXISTS {quoted_table};\n")
        handle.write(store.create_table_sql(name).rstrip().rstrip(";") + ";\n")

        column_list = ", ".join(store.quote(c) for c in columns)
        count = 0
        for page in catalog.iter_pages(name):
            for row in page:
                values = ", ".join(render_literal(row.get(c), dialect) for c in columns)
                handle.write(f"INSERT INTO {quoted_table} ({column_list}) VALUES ({values});\n")
                count += 1
        rows_by_table[name] = count
        handle.write("\n")
        logger.debug("dumped %s (%d rows)", name, count)

    return DumpSummary(
        tables=tuple(names),
        rows_written=sum(rows_by_table.values()),
        rows_by_table=rows_by_table,
    )

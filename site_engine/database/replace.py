"""
Search-replace across tenant tables.

Cells may hold plain text or S-format structures nested to any depth. Plain
text is rewritten by substring replacement. Serialized cells are decoded,
rewritten leaf by leaf, and re-encoded so every length prefix stays correct.

Notes
-----
A replacement can make a leaf string look like an S-format value by accident
(for example when the replacement text itself resembles ``s:3:"abc";``). When
that happens the replacement is redone with :data:`SENTINEL` in front of the
replacement text, so the stored value can never be mistaken for a structure by
a later decode.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence

from ..clock import Clock, SystemClock, elapsed_seconds
from ..config import ReplaceOptions
from ..errors import ReplaceValidationError, SerializationError, StoreError
from .catalog import TableCatalog
from .max_runtime import MaxRuntimeGuard
from .reports import CellChange, RunReport, TableChangeReport
from .serialization import (
    TRIM_CHARS,
    PhpArray,
    PhpObject,
    PhpOpaque,
    Value,
    dumps,
    is_serialized,
    loads,
    maybe_loads,
)

logger = logging.getLogger(__name__)

SENTINEL = "|"

ErrorHandler = Callable[[str], None]


@dataclass(frozen=True, slots=True)
class ReplacePair:
    """One ``search -> replace`` substitution."""

    search: str
    replace: str


def load_replace_pairs_csv(text: str) -> list[ReplacePair]:
    """
    Parse ``search,replace`` lines.

    Blank lines are skipped. Fields may be quoted to contain commas.

    Raises
    ------
    ReplaceValidationError
        If a line does not hold exactly two fields.
    """
    pairs: list[ReplacePair] = []
    reader = csv.reader(io.StringIO(text))
    for row in reader:
        if not row or all(not cell.strip() for cell in row):
            continue
        if len(row) != 2:
            raise ReplaceValidationError(
                f"Line {reader.line_num}: expected 'search,replace', got {len(row)} field(s)"
            )
        pairs.append(ReplacePair(search=row[0], replace=row[1]))
    return pairs


def validate_pairs(
    search: str,
    replace: str,
    csv_pairs: Sequence[ReplacePair] = (),
) -> list[ReplacePair]:
    """
    Build the ordered pair list for a run.

    Pairs with an empty search or identical search and replace are dropped.
    The returned list can be empty; callers report that per table.

    Raises
    ------
    ReplaceValidationError
        If `search` equals `replace` (and is non-empty) with no CSV batch.
    """
    if search and search == replace and not csv_pairs:
        raise ReplaceValidationError("Search and replace pattern can't be the same!")
    pairs: list[ReplacePair] = []
    if search and search != replace:
        pairs.append(ReplacePair(search=search, replace=replace))
    pairs.extend(p for p in csv_pairs if p.search and p.search != p.replace)
    return pairs


def replace_text(text: str, pairs: Iterable[ReplacePair]) -> str:
    """Apply each pair in order to a plain string, guarding against accidental S-format."""
    for pair in pairs:
        replaced = text.replace(pair.search, pair.replace)
        if replaced != text and is_serialized(replaced, strict=False):
            replaced = text.replace(pair.search, SENTINEL + pair.replace)
        text = replaced
    return text


def rewrite(
    value: Value,
    pairs: Sequence[ReplacePair],
    on_error: ErrorHandler | None = None,
) -> tuple[Value, bool]:
    """
    Rewrite every string leaf of a decoded value.

    Array keys and object field names are never rewritten. Strings that hold a
    serialized value of their own are rewritten inside and stay strings.
    Opaque values are returned untouched; if one contains a search term it is
    reported through `on_error`.

    Returns
    -------
    tuple[Value, bool]
        The rewritten value and whether anything changed.
    """
    if isinstance(value, str):
        return _rewrite_string(value, pairs, on_error)

    if isinstance(value, PhpArray):
        items, changed = _rewrite_pairs(value.items, pairs, on_error)
        return (PhpArray(items=items) if changed else value), changed

    if isinstance(value, PhpObject):
        fields, changed = _rewrite_pairs(value.fields, pairs, on_error)
        if not changed:
            return value, False
        return PhpObject(class_name=value.class_name, fields=fields), True

    if isinstance(value, PhpOpaque) and on_error is not None:
        for pair in pairs:
            if pair.search in value.raw:
                on_error(f"Skipped a non-rewritable value containing {pair.search!r}")
                break

    return value, False


def rewrite_cell(
    text: Any,
    pairs: Sequence[ReplacePair],
    on_error: ErrorHandler | None = None,
    strict: bool = False,
) -> tuple[Any, bool]:
    """
    Rewrite one stored cell.

    Parameters
    ----------
    text:
        Cell value as read from the store. Non-strings are returned as-is.
    pairs:
        Ordered substitutions.
    on_error:
        Receives a message for every value that cannot be processed.
    strict:
        If True, a decode failure is raised instead of reported.

    Returns
    -------
    tuple[Any, bool]
        The new cell value and whether it differs from `text`.

    Raises
    ------
    SerializationError
        In strict mode, when a cell that looks serialized cannot be decoded.
    """
    if not isinstance(text, str) or not pairs:
        return text, False

    if not is_serialized(text, strict=False):
        rewritten = replace_text(text, pairs)
        return rewritten, rewritten != text

    try:
        value = loads(text.strip(TRIM_CHARS))
    except SerializationError as exc:
        if strict:
            raise
        if on_error is not None:
            on_error(f"Undecodable serialized value left unmodified ({exc})")
        return text, False

    new_value, changed = rewrite(value, pairs, on_error)
    if not changed:
        return text, False
    encoded = dumps(new_value)
    return encoded, encoded != text


def _rewrite_string(
    text: str,
    pairs: Sequence[ReplacePair],
    on_error: ErrorHandler | None,
) -> tuple[str, bool]:
    decoded, inner = maybe_loads(text)
    if decoded:
        new_inner, changed = rewrite(inner, pairs, on_error)
        if not changed:
            return text, False
        return dumps(new_inner), True
    rewritten = replace_text(text, pairs)
    return rewritten, rewritten != text


def _rewrite_pairs(
    items: tuple[tuple[Any, Any], ...],
    pairs: Sequence[ReplacePair],
    on_error: ErrorHandler | None,
) -> tuple[tuple[tuple[Any, Any], ...], bool]:
    out = []
    changed = False
    for key, item in items:
        new_item, item_changed = rewrite(item, pairs, on_error)
        changed = changed or item_changed
        out.append((key, new_item))
    return tuple(out), changed


def no_primary_key_message(table_name: str) -> str:
    return f'The table "{table_name}" has no primary key. Changes will have to be made manually.'


class SearchReplaceEngine:
    """
    Runs search-replace over tables of one catalog.

    Parameters
    ----------
    catalog:
        Catalog of the store to rewrite.
    options:
        Run options. Dry-run unless ``options.dry_run`` is False.
    guard_factory:
        Builds the runtime guard held for the whole run.
    clock:
        Used to measure per-table duration.
    """

    def __init__(
        self,
        catalog: TableCatalog,
        options: ReplaceOptions | None = None,
        *,
        guard_factory: Callable[[], MaxRuntimeGuard] = MaxRuntimeGuard,
        clock: Clock | None = None,
    ) -> None:
        self._catalog = catalog
        self._options = options or ReplaceOptions()
        self._guard_factory = guard_factory
        self._clock = clock or SystemClock()

    @property
    def options(self) -> ReplaceOptions:
        return self._options

    def run(
        self,
        search: str,
        replace: str,
        tables: Iterable[str],
        csv: str | None = None,
    ) -> RunReport:
        """
        Rewrite every matching cell in `tables`.

        Raises
        ------
        ReplaceValidationError
            Before any table is read, if the input is rejected.
        """
        csv_pairs = load_replace_pairs_csv(csv) if csv else []
        pairs = validate_pairs(search, replace, csv_pairs)

        report = RunReport(dry_run=self._options.dry_run)
        with self._guard_factory():
            for table_name in tables:
                report.add(self.replace_table(table_name, pairs))

        logger.info(
            "search-replace %s: %d table(s), %d change(s), %d update(s)",
            "dry run" if report.dry_run else "commit",
            report.tables_touched,
            report.total_changes,
            report.updates_executed,
        )
        return report

    def replace_table(self, table_name: str, pairs: Sequence[ReplacePair]) -> TableChangeReport:
        """Rewrite one table and return its report."""
        report = TableChangeReport(table=table_name)
        started = self._clock.now()

        if not pairs:
            report.errors.append("Search string is empty")
            return report

        primary_key, columns = self._catalog.columns_of(table_name)
        if not columns:
            report.errors.append(f'The table "{table_name}" could not be described.')
            return report
        if primary_key is None:
            report.errors.append(no_primary_key_message(table_name))
            logger.warning(no_primary_key_message(table_name))

        protected = set(self._options.protected_columns)
        if primary_key is not None:
            protected.add(primary_key)
        candidates = [c for c in columns if c not in protected]
        writes_allowed = primary_key is not None and not self._options.dry_run

        try:
            for page in self._catalog.iter_pages(table_name):
                for row in page:
                    report.rows_scanned += 1
                    changes = self._rewrite_row(report, row, candidates, pairs)
                    if not changes or not writes_allowed:
                        continue
                    try:
                        self._catalog.apply_update(table_name, changes, (primary_key, row[primary_key]))
                    except StoreError as exc:
                        report.errors.append(f"Error updating row: {report.rows_scanned}.")
                        logger.warning("update of %s row %d failed: %s", table_name, report.rows_scanned, exc)
                    else:
                        report.updates_executed += 1
        except StoreError as exc:
            report.errors.append(f"Reading {table_name} failed: {exc}")
            logger.warning("reading %s failed: %s", table_name, exc)

        report.duration_seconds = elapsed_seconds(self._clock, started)
        return report

    def _rewrite_row(
        self,
        report: TableChangeReport,
        row: dict[str, Any],
        candidates: Sequence[str],
        pairs: Sequence[ReplacePair],
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        row_number = report.rows_scanned
        for column_name in candidates:
            before = row.get(column_name)

            def on_error(message: str, column_name: str = column_name) -> None:
                entry = f"Row {row_number}, column {column_name}: {message}"
                report.errors.append(entry)
                logger.warning("%s: %s", report.table, entry)

            after, changed = rewrite_cell(before, pairs, on_error=on_error, strict=self._options.strict)
            if not changed:
                continue
            changes[column_name] = after
            report.cells_changed += 1
            report.change_log.append(
                CellChange(row=row_number, column=column_name, before=before, after=after)
            )
        return changes

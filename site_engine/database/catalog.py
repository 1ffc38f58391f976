"""
Table catalog for one multi-tenant schema.

Every tenant owns the tables whose names start with its storage prefix. In a
multisite schema the root tenant uses the bare base prefix (``wp_``) while
tenant ``n`` uses ``wp_n_``; a prefix match for the root would therefore also
return every other tenant's tables, so the root is special-cased to the shared
tables only.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterator, Mapping

from ..errors import StoreError, StoreQueryError
from .store import Store

logger = logging.getLogger(__name__)

ROOT_TENANT_IDS = frozenset({0, 1})

Row = dict[str, Any]


@dataclass(frozen=True, slots=True)
class TableDescriptor:
    """
    Static description of one tenant table.

    Attributes
    ----------
    name:
        Table name.
    primary_key:
        Single-column primary key, or None. Tables without one are read-only.
    columns:
        Column names in table order.
    row_count:
        Rows at the time the table was described.
    """

    name: str
    primary_key: str | None
    columns: tuple[str, ...]
    row_count: int

    @property
    def writable(self) -> bool:
        return self.primary_key is not None


@dataclass(slots=True)
class TableCatalog:
    """
    Enumerates and pages through a tenant's tables.

    Parameters
    ----------
    store:
        Connected store.
    base_prefix:
        Shared table prefix.
    multisite:
        If False every tenant id maps to the base prefix.
    page_size:
        Rows per page.
    """

    store: Store
    base_prefix: str = "wp_"
    multisite: bool = True
    page_size: int = 100
    _numbered: re.Pattern[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        if self.page_size <= 0:
            raise ValueError("page_size must be positive")
        self._numbered = re.compile(re.escape(self.base_prefix) + r"[0-9]+_")

    def is_root(self, tenant_id: int) -> bool:
        return not self.multisite or tenant_id in ROOT_TENANT_IDS

    def tenant_prefix(self, tenant_id: int) -> str:
        if self.is_root(tenant_id):
            return self.base_prefix
        return f"{self.base_prefix}{int(tenant_id)}_"

    def list_tables(self, tenant_id: int) -> list[str]:
        """Return the tenant's tables, sorted by name."""
        prefix = self.tenant_prefix(tenant_id)
        names = [n for n in self.store.table_names() if n.startswith(prefix)]
        if self.is_root(tenant_id) and self.multisite:
            names = [n for n in names if not self._numbered.match(n)]
        return names

    def columns_of(self, table_name: str) -> tuple[str | None, list[str]]:
        """
        Return ``(primary_key, columns)``.

        Fails soft: when the table cannot be described the primary key is None
        and the column list is empty.
        """
        try:
            return self.store.describe(table_name)
        except StoreError as exc:
            logger.warning("cannot describe %s: %s", table_name, exc)
            return None, []

    def row_count(self, table_name: str) -> int:
        return self.store.count_rows(table_name)

    def describe(self, table_name: str) -> TableDescriptor:
        primary_key, columns = self.columns_of(table_name)
        return TableDescriptor(
            name=table_name,
            primary_key=primary_key,
            columns=tuple(columns),
            row_count=self.row_count(table_name),
        )

    def page(self, table_name: str, offset: int, limit: int | None = None) -> list[Row]:
        primary_key, _columns = self.columns_of(table_name)
        return self.store.fetch_rows(
            table_name,
            offset=offset,
            limit=limit or self.page_size,
            order_by=(primary_key,) if primary_key else (),
        )

    def iter_pages(self, table_name: str) -> Iterator[list[Row]]:
        """Yield the table one page at a time."""
        primary_key, _columns = self.columns_of(table_name)
        order_by = (primary_key,) if primary_key else ()
        total = self.row_count(table_name)
        for offset in range(0, total, self.page_size):
            rows = self.store.fetch_rows(
                table_name, offset=offset, limit=self.page_size, order_by=order_by
            )
            if not rows:
                return
            yield rows

    def apply_update(
        self,
        table_name: str,
        changes: Mapping[str, Any],
        where: tuple[str, Any],
    ) -> None:
        """
        Update a single row.

        Raises
        ------
        StoreQueryError
            If the update fails or no row matched `where`.
        """
        if not changes:
            return
        matched = self.store.update_row(table_name, changes, where)
        if matched == 0:
            raise StoreQueryError(f"No row in {table_name} where {where[0]} = {where[1]!r}")

    def sizes(self, tables: list[str]) -> dict[str, float | None]:
        return {name: self.store.table_size_kb(name) for name in tables}

    def read_option(self, tenant_id: int, name: str) -> str | None:
        """Read one value from the tenant's ``options`` table, or None."""
        options_table = self.tenant_prefix(tenant_id) + "options"
        sql = (
            f"SELECT option_value FROM {self.store.quote(options_table)} "
            "WHERE option_name = :name"
        )
        try:
            value = self.store.scalar(sql, {"name": name})
        except StoreQueryError as exc:
            logger.warning("cannot read option %s from %s: %s", name, options_table, exc)
            return None
        return None if value is None else str(value)

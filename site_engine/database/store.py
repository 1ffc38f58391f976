"""
Explicit database handle.

A :class:`Store` wraps one SQLAlchemy engine. Every component that touches a
tenant database receives its Store through its constructor; nothing holds an
ambient, process-wide connection. Source and destination stores can therefore
coexist, and an importer always connects with its own credentials.

Notes
-----
Reflection uses a fresh ``sqlalchemy.inspect`` per call so tables created or
dropped by an import are seen immediately.
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import MetaData, Table, column, create_engine, inspect, table, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import CreateTable

from ..config import StoreSettings
from ..errors import StoreConnectionError, StoreQueryError

logger = logging.getLogger(__name__)

_FOREIGN_KEY_TOGGLES: dict[str, tuple[str, str]] = {
    "mysql": ("SET FOREIGN_KEY_CHECKS=0", "SET FOREIGN_KEY_CHECKS=1"),
    "mariadb": ("SET FOREIGN_KEY_CHECKS=0", "SET FOREIGN_KEY_CHECKS=1"),
    "sqlite": ("PRAGMA foreign_keys=OFF", "PRAGMA foreign_keys=ON"),
}


class Store:
    """
    A connected database store.

    Use :meth:`connect` rather than the constructor; it verifies the
    connection before returning.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    @classmethod
    def connect(cls, settings: StoreSettings) -> "Store":
        """
        Open a new store with its own engine and connection pool.

        Raises
        ------
        StoreConnectionError
            If the URL is invalid, the driver is missing, or the database
            cannot be reached.
        """
        try:
            engine = create_engine(settings.url)
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, ImportError) as exc:
            raise StoreConnectionError(f"Cannot connect to store: {exc}") from exc
        logger.debug("connected to %s store", engine.dialect.name)
        return cls(engine)

    @property
    def engine(self) -> Engine:
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self._engine.dialect.name

    def quote(self, identifier: str) -> str:
        """Quote a table or column name for the store's dialect."""
        return self._engine.dialect.identifier_preparer.quote_identifier(identifier)

    def table_names(self) -> list[str]:
        try:
            return sorted(inspect(self._engine).get_table_names())
        except SQLAlchemyError as exc:
            raise StoreQueryError(f"Cannot list tables: {exc}") from exc

    def describe(self, table_name: str) -> tuple[str | None, list[str]]:
        """
        Return ``(primary_key, columns)`` for a table.

        A composite primary key cannot address a single row by one column, so
        it is reported as no primary key.
        """
        try:
            inspector = inspect(self._engine)
            columns = [str(c["name"]) for c in inspector.get_columns(table_name)]
            pk_columns = inspector.get_pk_constraint(table_name).get("constrained_columns") or []
        except SQLAlchemyError as exc:
            raise StoreQueryError(f"Cannot describe table {table_name}: {exc}") from exc
        primary_key = str(pk_columns[0]) if len(pk_columns) == 1 else None
        return primary_key, columns

    def count_rows(self, table_name: str) -> int:
        sql = f"SELECT COUNT(*) FROM {self.quote(table_name)}"
        try:
            with self._engine.connect() as conn:
                return int(conn.execute(text(sql)).scalar_one())
        except SQLAlchemyError as exc:
            raise StoreQueryError(f"Cannot count rows of {table_name}: {exc}") from exc

    def fetch_rows(
        self,
        table_name: str,
        *,
        offset: int,
        limit: int,
        order_by: Sequence[str] = (),
    ) -> list[dict[str, Any]]:
        """Return one page of rows as dictionaries keyed by column name."""
        sql = f"SELECT * FROM {self.quote(table_name)}"
        if order_by:
            sql += " ORDER BY " + ", ".join(self.quote(c) for c in order_by)
        sql += " LIMIT :limit OFFSET :offset"
        try:
            with self._engine.connect() as conn:
                result = conn.execute(text(sql), {"limit": int(limit), "offset": int(offset)})
                return [dict(row._mapping) for row in result]
        except SQLAlchemyError as exc:
            raise StoreQueryError(f"Cannot read rows of {table_name}: {exc}") from exc

    def update_row(
        self,
        table_name: str,
        changes: Mapping[str, Any],
        key: tuple[str, Any],
    ) -> int:
        """
        Update one row addressed by ``key = (column, value)``.

        Returns
        -------
        int
            Number of rows the store reports as matched.

        Raises
        ------
        StoreQueryError
            If the statement fails.
        """
        key_column, key_value = key
        names = list(changes)
        target = table(table_name, *(column(name) for name in {*names, key_column}))
        statement = (
            update(target)
            .where(target.c[key_column] == key_value)
            .values({target.c[name]: changes[name] for name in names})
        )
        try:
            with self._engine.begin() as conn:
                return int(conn.execute(statement).rowcount)
        except SQLAlchemyError as exc:
            raise StoreQueryError(f"Cannot update {table_name}: {exc}") from exc

    def execute(self, statement: str) -> None:
        """
        Run one raw SQL statement and commit it.

        The statement is passed to the driver verbatim, with no parameter
        substitution.
        """
        self.execute_batch([statement])

    def execute_batch(self, statements: Iterable[str]) -> None:
        """Run several raw statements on one connection, then commit."""
        try:
            with self._engine.connect() as conn:
                raw = conn.execution_options(no_parameters=True)
                for statement in statements:
                    raw.exec_driver_sql(statement)
                conn.commit()
        except SQLAlchemyError as exc:
            raise StoreQueryError(str(getattr(exc, "orig", None) or exc)) from exc

    def scalar(self, sql: str, params: Mapping[str, Any] | None = None) -> Any:
        """Run a parameterized query and return its single value, or None."""
        try:
            with self._engine.connect() as conn:
                return conn.execute(text(sql), dict(params or {})).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StoreQueryError(str(exc)) from exc

    def foreign_key_toggles(self) -> tuple[str, str] | None:
        """Return ``(disable, enable)`` statements, or None if the dialect has none."""
        return _FOREIGN_KEY_TOGGLES.get(self.dialect_name)

    def create_table_sql(self, table_name: str) -> str:
        """Return the CREATE TABLE statement for an existing table (no trailing ';')."""
        try:
            with self._engine.connect() as conn:
                if self.dialect_name in ("mysql", "mariadb"):
                    row = conn.execute(text(f"SHOW CREATE TABLE {self.quote(table_name)}")).one()
                    return str(row[1]).strip()
                if self.dialect_name == "sqlite":
                    ddl = conn.execute(
                        text("SELECT sql FROM sqlite_master WHERE type = 'table' AND name = :name"),
                        {"name": table_name},
                    ).scalar_one_or_none()
                    if ddl:
                        return str(ddl).strip()
            reflected = Table(table_name, MetaData(), autoload_with=self._engine)
            return str(CreateTable(reflected).compile(dialect=self._engine.dialect)).strip()
        except SQLAlchemyError as exc:
            raise StoreQueryError(f"Cannot read the definition of {table_name}: {exc}") from exc

    def table_size_kb(self, table_name: str) -> float | None:
        """Approximate on-disk size, where the dialect exposes it."""
        if self.dialect_name in ("mysql", "mariadb"):
            sql = (
                "SELECT (data_length + index_length) / 1024 FROM information_schema.TABLES "
                "WHERE table_schema = DATABASE() AND table_name = :name"
            )
        elif self.dialect_name == "postgresql":
            sql = "SELECT pg_total_relation_size(CAST(:name AS regclass)) / 1024.0"
        else:
            return None
        try:
            with self._engine.connect() as conn:
                value = conn.execute(text(sql), {"name": table_name}).scalar_one_or_none()
        except SQLAlchemyError as exc:
            logger.warning("size of %s unavailable: %s", table_name, exc)
            return None
        return round(float(value), 2) if value is not None else None

    def dispose(self) -> None:
        self._engine.dispose()

    def __enter__(self) -> "Store":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.dispose()

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator

import pytest

from site_engine.config import StoreSettings
from site_engine.database.catalog import TableCatalog
from site_engine.database.max_runtime import MaxRuntimeGuard, NullLimiter
from site_engine.database.store import Store
from site_fixtures import MutableClock, build_site_db, sqlite_url


@pytest.fixture
def site_db(tmp_path: Path) -> Path:
    return build_site_db(tmp_path / "site.sqlite")


@pytest.fixture
def store(site_db: Path) -> Iterator[Store]:
    handle = Store.connect(StoreSettings(url=sqlite_url(site_db)))
    try:
        yield handle
    finally:
        handle.dispose()


@pytest.fixture
def catalog(store: Store) -> TableCatalog:
    return TableCatalog(store=store, base_prefix="wp_", multisite=True, page_size=2)


@pytest.fixture
def null_guard() -> Callable[[], MaxRuntimeGuard]:
    return lambda: MaxRuntimeGuard(limit_seconds=0, limiter=NullLimiter())


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))

from __future__ import annotations

from pathlib import Path

from site_engine.kv_store import KeyValueStore
from site_fixtures import MutableClock


def test_set_get_delete(tmp_path: Path, clock: MutableClock) -> None:
    kv = KeyValueStore(tmp_path / "index" / "kv.sqlite", clock)

    kv.set("a", {"x": [1, 2]})

    assert kv.get("a") == {"x": [1, 2]}
    assert kv.get("missing", "default") == "default"
    assert kv.delete("a") is True
    assert kv.delete("a") is False
    assert kv.get("a") is None


def test_values_survive_reopening(tmp_path: Path, clock: MutableClock) -> None:
    path = tmp_path / "kv.sqlite"
    KeyValueStore(path, clock).set("times", {"f.zip": 1.5})

    assert KeyValueStore(path, clock).get("times") == {"f.zip": 1.5}


def test_expired_entries_read_as_absent(tmp_path: Path, clock: MutableClock) -> None:
    kv = KeyValueStore(tmp_path / "kv.sqlite", clock)
    kv.set("short", 1, ttl_seconds=60)
    kv.set("forever", 2)

    clock.advance(59)
    assert kv.get("short") == 1

    clock.advance(1)
    assert kv.get("short") is None
    assert kv.get("forever") == 2
    assert kv.scan("") == [("forever", 2)]


def test_scan_filters_by_prefix_in_insertion_order(tmp_path: Path, clock: MutableClock) -> None:
    kv = KeyValueStore(tmp_path / "kv.sqlite", clock)
    kv.set("pending_import_b", "b")
    kv.set("pending_export_x", "x")
    kv.set("pending_import_a", "a")
    kv.set("pending_import_b", "b2")

    assert kv.scan("pending_import_") == [("pending_import_b", "b2"), ("pending_import_a", "a")]


def test_scan_treats_like_wildcards_literally(tmp_path: Path, clock: MutableClock) -> None:
    kv = KeyValueStore(tmp_path / "kv.sqlite", clock)
    kv.set("a_b", 1)
    kv.set("axb", 2)

    assert kv.scan("a_") == [("a_b", 1)]

from __future__ import annotations

import json
from pathlib import Path

import pytest

from site_engine.compression import CompressionFormat, compress_directory
from site_engine.errors import ArchiveError, ExportError
from site_engine.export.bundle import MANIFEST_NAME, ArchiveManifest
from site_engine.export.records import (
    delete_export,
    get_generation_time,
    get_import_time,
    list_exports,
    save_generation_time,
    save_import_time,
    tenant_from_export_name,
)
from site_engine.kv_store import KeyValueStore
from site_engine.paths_and_safety import (
    EnginePaths,
    SafetyViolationError,
    ensure_engine_directories,
    resolve_engine_paths,
)
from site_fixtures import MutableClock


def _paths(tmp_path: Path) -> EnginePaths:
    paths = resolve_engine_paths(tmp_path / "data")
    ensure_engine_directories(paths)
    return paths


def _make_export(paths: EnginePaths, tmp_path: Path, name: str, tenant_id: int, created: str) -> Path:
    staging = tmp_path / f"stage-{name}"
    staging.mkdir()
    manifest = ArchiveManifest(
        schema_version=1,
        tenant_id=tenant_id,
        base_prefix="wp_",
        site_url="http://old.test",
        created_at_utc=created,
        tables=("wp_2_posts",),
        included_assets=("uploads",),
    )
    (staging / MANIFEST_NAME).write_text(json.dumps(manifest.to_dict()), encoding="utf-8")
    archive = paths.exports_root / name
    compress_directory(source_root=staging, output_path=archive, format=CompressionFormat.ZIP)
    return archive


def test_list_exports_newest_first(tmp_path: Path, clock: MutableClock) -> None:
    paths = _paths(tmp_path)
    kv = KeyValueStore(paths.kv_path, clock)
    _make_export(paths, tmp_path, "site-export-2-2024-01-01-1704067200.zip", 2, "2024-01-01T00:00:00Z")
    _make_export(paths, tmp_path, "site-export-3-2024-02-01-1706745600.zip", 3, "2024-02-01T00:00:00Z")
    (paths.exports_root / "unrelated.zip").write_bytes(b"PK\x03\x04")
    save_generation_time(kv, "site-export-3-2024-02-01-1706745600.zip", 12.5)

    records = list_exports(paths, kv)

    assert [r.tenant_id for r in records] == [3, 2]
    assert records[0].generation_seconds == 12.5
    assert records[1].generation_seconds is None
    assert records[0].included_assets == ("uploads",)


def test_delete_export_removes_archive_and_time(tmp_path: Path, clock: MutableClock) -> None:
    paths = _paths(tmp_path)
    kv = KeyValueStore(paths.kv_path, clock)
    name = "site-export-2-2024-01-01-1704067200.zip"
    archive = _make_export(paths, tmp_path, name, 2, "2024-01-01T00:00:00Z")
    save_generation_time(kv, name, 3.0)

    assert delete_export(paths, name, kv) == archive
    assert not archive.exists()
    assert get_generation_time(kv, name) is None

    with pytest.raises(ExportError):
        delete_export(paths, name, kv)


@pytest.mark.parametrize(
    "bad_name",
    ["", "../site-export-2-x.zip", "site-export-x.zip", "other.zip", "site-export-2-a/b.zip"],
)
def test_delete_export_rejects_invalid_names(tmp_path: Path, bad_name: str) -> None:
    with pytest.raises(SafetyViolationError):
        delete_export(_paths(tmp_path), bad_name)


def test_tenant_from_export_name() -> None:
    assert tenant_from_export_name("site-export-12-2024-01-01-1.tar.zst") == 12
    assert tenant_from_export_name("backup.zip") is None


def test_import_times_are_recorded(tmp_path: Path, clock: MutableClock) -> None:
    kv = KeyValueStore(tmp_path / "kv.sqlite", clock)
    save_import_time(kv, "a.zip", 1.23456)
    assert get_import_time(kv, "a.zip") == 1.235
    assert get_import_time(kv, "b.zip") is None


def test_manifest_rejects_unknown_schema_and_unsafe_sql_path() -> None:
    base = {
        "schema_version": 1,
        "tenant_id": 2,
        "base_prefix": "wp_",
        "created_at_utc": "2024-01-01T00:00:00Z",
    }
    assert ArchiveManifest.from_dict(base).sql_path == "database/site.sql"

    with pytest.raises(ArchiveError):
        ArchiveManifest.from_dict({**base, "schema_version": 9})
    with pytest.raises(ArchiveError):
        ArchiveManifest.from_dict({**base, "sql_path": "../../etc/passwd"})
    with pytest.raises(ArchiveError):
        ArchiveManifest.from_dict({"tenant_id": 2})

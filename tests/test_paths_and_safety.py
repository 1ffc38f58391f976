from __future__ import annotations

from pathlib import Path

import pytest

from site_engine.paths_and_safety import (
    SafetyViolationError,
    assert_within,
    default_data_root,
    ensure_engine_directories,
    remove_work_directory,
    resolve_engine_paths,
    validate_export_name,
)

_ROOT_VARIABLES = ("SITEPORT_DATA_ROOT", "LOCALAPPDATA", "APPDATA", "XDG_DATA_HOME")


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for variable in _ROOT_VARIABLES:
        monkeypatch.delenv(variable, raising=False)
    return monkeypatch


def test_default_data_root_prefers_explicit_override(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("SITEPORT_DATA_ROOT", str(tmp_path / "explicit"))
    clean_env.setenv("LOCALAPPDATA", str(tmp_path / "Local"))

    assert default_data_root() == tmp_path / "explicit"


def test_default_data_root_prefers_local_appdata(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("LOCALAPPDATA", str(tmp_path / "Local"))
    clean_env.setenv("APPDATA", str(tmp_path / "Roaming"))

    assert default_data_root() == tmp_path / "Local" / "siteport"


def test_default_data_root_falls_back_to_xdg(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("XDG_DATA_HOME", str(tmp_path / "share"))

    assert default_data_root() == tmp_path / "share" / "siteport"


def test_default_data_root_falls_back_to_home(clean_env: pytest.MonkeyPatch, tmp_path: Path) -> None:
    clean_env.setenv("HOME", str(tmp_path))

    assert default_data_root() == tmp_path / ".local" / "share" / "siteport"


def test_engine_paths_resolve_within_data_root(tmp_path: Path) -> None:
    paths = resolve_engine_paths(tmp_path)
    ensure_engine_directories(paths)

    for directory in (
        paths.exports_root,
        paths.work_root,
        paths.downloads_root,
        paths.index_root,
        paths.logs_root,
    ):
        assert directory.is_dir()
        assert directory.parent == tmp_path.resolve()
    assert paths.kv_path.parent == paths.index_root
    assert paths.journal_path.parent == paths.logs_root


def test_validate_export_name_returns_tenant() -> None:
    assert validate_export_name("site-export-12-2024-01-02-1704164645.zip") == 12
    assert validate_export_name(" site-export-3-x.tar.zst ") == 3


@pytest.mark.parametrize(
    "bad_name",
    ["", ".", "..", "export.zip", "site-export-x-1.zip", "../site-export-1-a.zip", r"a\site-export-1-a.zip", "c:site-export-1-a.zip"],
)
def test_validate_export_name_rejects_bad_names(bad_name: str) -> None:
    with pytest.raises(SafetyViolationError):
        validate_export_name(bad_name)


def test_remove_work_directory_deletes_staging(tmp_path: Path) -> None:
    paths = resolve_engine_paths(tmp_path)
    ensure_engine_directories(paths)
    staging = paths.work_root / "export-2-abc"
    (staging / "database").mkdir(parents=True)
    (staging / "database" / "site.sql").write_text("SELECT 1;\n", encoding="utf-8")

    remove_work_directory(paths, staging)

    assert not staging.exists()
    assert paths.work_root.is_dir()


def test_remove_work_directory_refuses_outside_and_root(tmp_path: Path) -> None:
    paths = resolve_engine_paths(tmp_path / "data")
    ensure_engine_directories(paths)
    outside = tmp_path / "elsewhere"
    outside.mkdir()

    with pytest.raises(SafetyViolationError):
        remove_work_directory(paths, outside)
    with pytest.raises(SafetyViolationError):
        remove_work_directory(paths, paths.work_root)
    with pytest.raises(SafetyViolationError):
        remove_work_directory(paths, paths.work_root / ".." / "exports")

    assert outside.is_dir()
    assert paths.exports_root.is_dir()


def test_assert_within_rejects_escape(tmp_path: Path) -> None:
    assert_within(tmp_path, tmp_path / "a" / "b.sql", purpose="test")
    with pytest.raises(SafetyViolationError):
        assert_within(tmp_path / "a", tmp_path / "a" / ".." / "b.sql", purpose="test")

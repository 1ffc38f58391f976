"""Engine initialization.

Creates the engine directory structure under a data root and writes
``settings.json``. Existing settings are kept; only the values passed in are
changed.

No file deletion is performed by this module.
"""

from __future__ import annotations

from dataclasses import asdict, replace
from pathlib import Path
from typing import Any

from .config import ARCHIVE_FORMATS, load_settings, save_settings
from .paths_and_safety import EnginePaths, ensure_engine_directories, resolve_engine_paths


def init_engine(data_root: Path | None = None, **overrides: Any) -> EnginePaths:
    """Initialize the data root and persist settings.

    Parameters
    ----------
    data_root:
        Optional override for the data root.
    **overrides:
        ``EngineSettings`` fields to set. None values are ignored.

    Returns
    -------
    EnginePaths
        The resolved paths that were initialized.

    Raises
    ------
    ValueError
        If an override names an unknown field or an unsupported archive format.
    """
    paths = resolve_engine_paths(data_root)
    ensure_engine_directories(paths)

    changes = {key: value for key, value in overrides.items() if value is not None}
    if changes.get("archive_format") not in (None, *ARCHIVE_FORMATS):
        raise ValueError(f"Unsupported archive format: {changes['archive_format']}")
    if "content_root" in changes:
        changes["content_root"] = Path(changes["content_root"]).expanduser()

    settings = load_settings(data_root=paths.data_root)
    try:
        settings = replace(settings, **changes)
    except TypeError as exc:
        raise ValueError(str(exc)) from exc
    save_settings(data_root=paths.data_root, settings=settings)
    return paths


def engine_paths_as_text(paths: EnginePaths) -> str:
    """Render EnginePaths as a readable multi-line string."""
    items = asdict(paths)
    lines = [f"{key}: {items[key]}" for key in (
        "data_root",
        "exports_root",
        "work_root",
        "downloads_root",
        "index_root",
        "logs_root",
    )]
    lines.append(f"settings: {paths.settings_path}")
    return "\n".join(lines)

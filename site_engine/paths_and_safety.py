"""
Filesystem path policy and safety gates.

This module is the single choke point for determining where the site engine is
allowed to read and write data:

- Runtime data lives under a "data root" (default: %LOCALAPPDATA%\\siteport or
  the XDG data directory on POSIX).
- Export archives live under ``exports/``; staging and extraction happen under
  ``work/``, which is the only directory the engine ever deletes from.
- Export names and archive downloads are validated before anything touches disk.
"""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from .errors import SiteEngineError

EXPORT_NAME_PATTERN = re.compile(r"^site-export-([0-9]+)-[A-Za-z0-9_.-]+$")


@dataclass(frozen=True, slots=True)
class EnginePaths:
    """
    Concrete resolved paths for the site engine.

    Attributes
    ----------
    data_root:
        The root directory for all runtime data.
    exports_root:
        Generated export archives.
    work_root:
        Staging for exports and extraction for imports. Eligible for cleanup.
    downloads_root:
        Archives downloaded from https sources before they are imported.
    index_root:
        SQLite key-value store (pending jobs, generation times).
    logs_root:
        Job journal.
    """

    data_root: Path
    exports_root: Path
    work_root: Path
    downloads_root: Path
    index_root: Path
    logs_root: Path

    @property
    def settings_path(self) -> Path:
        """Path of the persisted engine settings."""
        return self.data_root / "settings.json"

    @property
    def kv_path(self) -> Path:
        """Path of the SQLite key-value database."""
        return self.index_root / "siteport.sqlite"

    @property
    def journal_path(self) -> Path:
        """Path of the JSONL job journal."""
        return self.logs_root / "jobs.jsonl"


class SafetyViolationError(SiteEngineError):
    """Raised when an operation is blocked by safety policy."""


def default_data_root() -> Path:
    """
    Resolve the default data root.

    Preference order:
    1) %SITEPORT_DATA_ROOT% if set
    2) %LOCALAPPDATA%\\siteport
    3) %APPDATA%\\siteport
    4) $XDG_DATA_HOME/siteport
    5) ~/.local/share/siteport
    """
    explicit = os.environ.get("SITEPORT_DATA_ROOT")
    if explicit:
        return Path(explicit)

    for variable in ("LOCALAPPDATA", "APPDATA", "XDG_DATA_HOME"):
        value = os.environ.get(variable)
        if value:
            return Path(value) / "siteport"

    return Path.home() / ".local" / "share" / "siteport"


def resolve_engine_paths(data_root: Path | None = None) -> EnginePaths:
    """
    Resolve and return all filesystem paths under a data root.

    Parameters
    ----------
    data_root:
        Optional override for the data root.

    Returns
    -------
    EnginePaths
        Resolved paths (not created).
    """
    root = (data_root or default_data_root()).expanduser().resolve()
    return EnginePaths(
        data_root=root,
        exports_root=root / "exports",
        work_root=root / "work",
        downloads_root=root / "downloads",
        index_root=root / "index",
        logs_root=root / "logs",
    )


def ensure_engine_directories(paths: EnginePaths) -> None:
    """Create the directory structure if it does not already exist."""
    for directory in (
        paths.data_root,
        paths.exports_root,
        paths.work_root,
        paths.downloads_root,
        paths.index_root,
        paths.logs_root,
    ):
        directory.mkdir(parents=True, exist_ok=True)


def validate_export_name(name: str) -> int:
    """
    Validate an export archive file name and return the tenant id it encodes.

    Raises
    ------
    SafetyViolationError
        If the name is not a bare ``site-export-<id>-...`` file name.
    """
    cleaned = name.strip()
    if any(sep in cleaned for sep in ("/", "\\", ":")) or cleaned in {".", ".."}:
        raise SafetyViolationError(f"Invalid export file name: {name!r}")
    match = EXPORT_NAME_PATTERN.match(cleaned)
    if match is None:
        raise SafetyViolationError(f"Invalid export file name: {name!r}")
    return int(match.group(1))


def remove_work_directory(paths: EnginePaths, directory: Path) -> None:
    """
    Delete a staging directory, refusing anything outside the work root.

    Raises
    ------
    SafetyViolationError
        If `directory` is not strictly inside ``paths.work_root``.
    """
    resolved = directory.resolve()
    work_root = paths.work_root.resolve()
    _assert_within(work_root, resolved, purpose="work directory cleanup")
    if resolved == work_root:
        raise SafetyViolationError("Refusing to delete the work root itself.")
    shutil.rmtree(resolved, ignore_errors=True)


def assert_within(base: Path, candidate: Path, purpose: str) -> None:
    """Public wrapper around the containment check."""
    _assert_within(base.resolve(), candidate.resolve(), purpose=purpose)


def _assert_within(base: Path, candidate: Path, purpose: str) -> None:
    """Ensure candidate is within base after resolution."""
    try:
        candidate.relative_to(base)
    except ValueError as exc:
        raise SafetyViolationError(
            f"Unsafe path for {purpose}: {candidate} is not within {base}"
        ) from exc

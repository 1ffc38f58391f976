"""
Engine configuration.

Notes
-----
Settings are persisted as ``settings.json`` in the data root. Missing or
unreadable files yield defaults, and unknown or invalid values fall back to the
default for that field, so a damaged settings file never blocks the CLI.

Per-operation options are explicit typed structs. There is no dynamic option
lookup: anything an operation recognizes is a field here.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from sqlalchemy.engine import URL

from .errors import StoreConnectionError
from .paths_and_safety import default_data_root

DEFAULT_BASE_PREFIX = "wp_"
DEFAULT_PAGE_SIZE = 100
DEFAULT_PLUGIN_EXCLUSIONS: tuple[str, ...] = ("ultimate-multisite*", "wp-ultimo*")
ARCHIVE_FORMATS = frozenset({"zip", "tar.zst"})


@dataclass(frozen=True, slots=True)
class StoreSettings:
    """
    Connection settings for one database store.

    Attributes
    ----------
    url:
        SQLAlchemy database URL, e.g. ``mysql+pymysql://user:pw@host/db`` or
        ``sqlite:///path/to/site.db``.
    """

    url: str

    @classmethod
    def from_parts(
        cls,
        *,
        dialect: str,
        database: str,
        host: str | None = None,
        username: str | None = None,
        password: str | None = None,
        port: int | None = None,
    ) -> "StoreSettings":
        """Build settings from discrete credentials."""
        url = URL.create(
            drivername=dialect,
            username=username,
            password=password,
            host=host,
            port=port,
            database=database,
        )
        return cls(url=url.render_as_string(hide_password=False))


@dataclass(frozen=True, slots=True)
class EngineSettings:
    """
    Persisted engine settings.

    Attributes
    ----------
    database_url:
        Source store URL. Required by every database operation.
    base_prefix:
        Shared table prefix of the multi-tenant schema.
    multisite:
        True when tenants other than the root have numbered table prefixes.
    content_root:
        Directory holding ``themes/``, ``plugins/`` and ``uploads/``.
    page_size:
        Rows fetched per page by the catalog.
    archive_format:
        "zip" | "tar.zst"
    trusted_download_prefix:
        If set, import URLs must start with this https prefix.
    stale_import_seconds:
        If set, a running import older than this is reclaimed by the next tick.
    plugin_exclusions:
        Glob patterns of top-level plugin entries never bundled into exports.
    """

    database_url: str | None = None
    base_prefix: str = DEFAULT_BASE_PREFIX
    multisite: bool = True
    content_root: Path | None = None
    page_size: int = DEFAULT_PAGE_SIZE
    archive_format: str = "zip"
    trusted_download_prefix: str | None = None
    stale_import_seconds: int | None = None
    plugin_exclusions: tuple[str, ...] = DEFAULT_PLUGIN_EXCLUSIONS

    @staticmethod
    def defaults() -> "EngineSettings":
        return EngineSettings()

    def store_settings(self) -> StoreSettings:
        """Return the source store settings, or raise if none are configured."""
        if not self.database_url:
            raise StoreConnectionError("database_url is not configured (see settings.json).")
        return StoreSettings(url=self.database_url)


@dataclass(frozen=True, slots=True)
class ReplaceOptions:
    """Options for a search-replace run. Dry-run is the default."""

    dry_run: bool = True
    strict: bool = False
    page_size: int = DEFAULT_PAGE_SIZE
    protected_columns: tuple[str, ...] = ("guid",)


@dataclass(frozen=True, slots=True)
class ImportOptions:
    """Options for the streaming SQL importer."""

    drop_tables: bool = True
    force_drop: bool = False
    stop_on_error: bool = False


@dataclass(frozen=True, slots=True)
class ExportOptions:
    """Which file trees to bundle next to the SQL dump."""

    themes: bool = False
    plugins: bool = False
    uploads: bool = True

    @property
    def included_assets(self) -> frozenset[str]:
        return frozenset(
            name
            for name, enabled in (
                ("themes", self.themes),
                ("plugins", self.plugins),
                ("uploads", self.uploads),
            )
            if enabled
        )

    def to_dict(self) -> dict[str, bool]:
        return {"themes": self.themes, "plugins": self.plugins, "uploads": self.uploads}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ExportOptions":
        return cls(
            themes=bool(payload.get("themes", False)),
            plugins=bool(payload.get("plugins", False)),
            uploads=bool(payload.get("uploads", True)),
        )


@dataclass(frozen=True, slots=True)
class ImportRequest:
    """
    An operator's import request.

    Attributes
    ----------
    new_url:
        URL of the destination site; old-site references are rewritten to it.
    delete_archive:
        Delete the uploaded archive once the import succeeds.
    drop_tables:
        Drop the tenant's existing tables in the destination first.
    force_drop:
        Disable foreign-key checks around the drop.
    destination_url:
        Destination store URL. Defaults to the configured source store.
    """

    new_url: str
    delete_archive: bool = False
    drop_tables: bool = True
    force_drop: bool = False
    destination_url: str | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def import_options(self) -> ImportOptions:
        return ImportOptions(drop_tables=self.drop_tables, force_drop=self.force_drop)

    def to_dict(self) -> dict[str, Any]:
        return {
            "new_url": self.new_url,
            "delete_archive": self.delete_archive,
            "drop_tables": self.drop_tables,
            "force_drop": self.force_drop,
            "destination_url": self.destination_url,
            "extra": dict(self.extra),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ImportRequest":
        return cls(
            new_url=str(payload.get("new_url", "")),
            delete_archive=bool(payload.get("delete_archive", False)),
            drop_tables=bool(payload.get("drop_tables", True)),
            force_drop=bool(payload.get("force_drop", False)),
            destination_url=payload.get("destination_url") or None,
            extra=dict(payload.get("extra") or {}),
        )


def _settings_path(data_root: Path | None) -> Path:
    root = default_data_root() if data_root is None else data_root
    return root / "settings.json"


def load_settings(*, data_root: Path | None) -> EngineSettings:
    """
    Load engine settings from disk.

    Parameters
    ----------
    data_root:
        Engine data root. If None, the default is used.

    Returns
    -------
    EngineSettings
        Loaded settings, or defaults if missing/unreadable.
    """
    path = _settings_path(data_root)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return EngineSettings.defaults()
    if not isinstance(payload, dict):
        return EngineSettings.defaults()
    return settings_from_dict(payload)


def settings_from_dict(payload: Mapping[str, Any]) -> EngineSettings:
    """Build settings from a mapping, replacing invalid values by defaults."""
    defaults = EngineSettings.defaults()

    def _str_or_none(value: object) -> str | None:
        if isinstance(value, str) and value.strip():
            return value.strip()
        return None

    def _positive_int(value: object, fallback: int | None) -> int | None:
        if isinstance(value, int) and not isinstance(value, bool) and value > 0:
            return value
        return fallback

    content_root = _str_or_none(payload.get("content_root"))
    archive_format = payload.get("archive_format", defaults.archive_format)
    if archive_format not in ARCHIVE_FORMATS:
        archive_format = defaults.archive_format

    exclusions = payload.get("plugin_exclusions")
    if isinstance(exclusions, list) and all(isinstance(x, str) for x in exclusions):
        plugin_exclusions = tuple(exclusions)
    else:
        plugin_exclusions = defaults.plugin_exclusions

    return EngineSettings(
        database_url=_str_or_none(payload.get("database_url")),
        base_prefix=_str_or_none(payload.get("base_prefix")) or defaults.base_prefix,
        multisite=bool(payload.get("multisite", defaults.multisite)),
        content_root=Path(content_root) if content_root else None,
        page_size=_positive_int(payload.get("page_size"), defaults.page_size) or defaults.page_size,
        archive_format=str(archive_format),
        trusted_download_prefix=_str_or_none(payload.get("trusted_download_prefix")),
        stale_import_seconds=_positive_int(payload.get("stale_import_seconds"), None),
        plugin_exclusions=plugin_exclusions,
    )


def save_settings(*, data_root: Path | None, settings: EngineSettings) -> Path:
    """
    Save engine settings to disk.

    Returns
    -------
    pathlib.Path
        The settings file written.
    """
    path = _settings_path(data_root)
    path.parent.mkdir(parents=True, exist_ok=True)

    payload = {
        "database_url": settings.database_url,
        "base_prefix": settings.base_prefix,
        "multisite": settings.multisite,
        "content_root": str(settings.content_root) if settings.content_root is not None else None,
        "page_size": settings.page_size,
        "archive_format": settings.archive_format,
        "trusted_download_prefix": settings.trusted_download_prefix,
        "stale_import_seconds": settings.stale_import_seconds,
        "plugin_exclusions": list(settings.plugin_exclusions),
    }
    path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    return path

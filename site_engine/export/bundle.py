"""
Archive layout and file bundling.

Archive root
------------
- ``manifest.json`` -- :class:`ArchiveManifest`
- ``database/site.sql`` -- SQL dump of the tenant's tables
- ``themes/``, ``plugins/``, ``uploads/`` -- optional file trees, mirroring the
  content directory of the source installation

In a multisite install the root tenant's media lives directly in ``uploads/``
and tenant ``n`` keeps its media in ``uploads/sites/<n>``. Exports of the root
never include ``uploads/sites``.
"""

from __future__ import annotations

import fnmatch
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Mapping

from ..database.catalog import ROOT_TENANT_IDS
from ..errors import ArchiveError

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
ARCHIVE_SQL_PATH = "database/site.sql"
ASSET_KINDS: tuple[str, ...] = ("themes", "plugins", "uploads")
MANIFEST_SCHEMA_VERSION = 1


@dataclass(frozen=True, slots=True)
class SiteLayout:
    """File layout of an installation's content directory."""

    content_root: Path

    @property
    def themes(self) -> Path:
        return self.content_root / "themes"

    @property
    def plugins(self) -> Path:
        return self.content_root / "plugins"

    def uploads_for(self, tenant_id: int, multisite: bool = True) -> Path:
        uploads = self.content_root / "uploads"
        if multisite and tenant_id not in ROOT_TENANT_IDS:
            return uploads / "sites" / str(int(tenant_id))
        return uploads

    def source_for(self, kind: str, tenant_id: int, multisite: bool = True) -> Path:
        if kind == "themes":
            return self.themes
        if kind == "plugins":
            return self.plugins
        if kind == "uploads":
            return self.uploads_for(tenant_id, multisite)
        raise ValueError(f"Unknown asset kind: {kind!r}")


@dataclass(frozen=True, slots=True)
class ArchiveManifest:
    """
    Describes the contents of one export archive.

    Attributes
    ----------
    schema_version:
        Manifest schema identifier.
    tenant_id:
        Tenant the archive was exported from.
    base_prefix:
        Base table prefix of the source schema.
    site_url:
        Source site URL, rewritten to the destination URL on import.
    created_at_utc:
        Export time, ``YYYY-MM-DDTHH:MM:SSZ``.
    tables:
        Tables contained in the SQL dump.
    included_assets:
        File trees contained in the archive.
    sql_path:
        Archive-relative path of the SQL dump.
    """

    schema_version: int
    tenant_id: int
    base_prefix: str
    site_url: str | None
    created_at_utc: str
    tables: tuple[str, ...]
    included_assets: tuple[str, ...]
    sql_path: str = ARCHIVE_SQL_PATH

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": self.schema_version,
            "tenant_id": self.tenant_id,
            "base_prefix": self.base_prefix,
            "site_url": self.site_url,
            "created_at_utc": self.created_at_utc,
            "tables": list(self.tables),
            "included_assets": list(self.included_assets),
            "sql_path": self.sql_path,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ArchiveManifest":
        """
        Parse a manifest payload.

        Raises
        ------
        ArchiveError
            If required fields are missing or malformed.
        """
        try:
            schema_version = int(payload["schema_version"])
            tenant_id = int(payload["tenant_id"])
            base_prefix = str(payload["base_prefix"])
            created_at_utc = str(payload["created_at_utc"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ArchiveError(f"Invalid archive manifest: {exc}") from exc
        if schema_version != MANIFEST_SCHEMA_VERSION:
            raise ArchiveError(f"Unsupported manifest schema_version: {schema_version}")

        sql_path = str(payload.get("sql_path") or ARCHIVE_SQL_PATH)
        if sql_path.startswith("/") or ".." in Path(sql_path).parts:
            raise ArchiveError(f"Invalid sql_path in manifest: {sql_path!r}")

        site_url = payload.get("site_url")
        return cls(
            schema_version=schema_version,
            tenant_id=tenant_id,
            base_prefix=base_prefix,
            site_url=str(site_url) if site_url else None,
            created_at_utc=created_at_utc,
            tables=tuple(str(t) for t in payload.get("tables") or ()),
            included_assets=tuple(
                str(a) for a in payload.get("included_assets") or () if a in ASSET_KINDS
            ),
            sql_path=sql_path,
        )


def _count_files(root: Path) -> int:
    return sum(1 for p in root.rglob("*") if p.is_file())


def bundle_assets(
    layout: SiteLayout,
    staging_root: Path,
    assets: Iterable[str],
    tenant_id: int,
    *,
    multisite: bool = True,
    exclusions: Iterable[str] = (),
) -> dict[str, int]:
    """
    Copy the requested file trees into the staging directory.

    Parameters
    ----------
    layout:
        Source content layout.
    staging_root:
        Export staging directory; trees land in ``staging_root/<kind>``.
    assets:
        Asset kinds to include.
    tenant_id:
        Exported tenant.
    multisite:
        Whether subsites keep media under ``uploads/sites/<id>``.
    exclusions:
        Glob patterns; matching top-level plugin entries are skipped.

    Returns
    -------
    dict[str, int]
        Files copied per asset kind. Kinds whose source is missing are absent.
    """
    patterns = tuple(exclusions)
    copied: dict[str, int] = {}
    for kind in sorted(set(assets)):
        source = layout.source_for(kind, tenant_id, multisite)
        if not source.is_dir():
            logger.info("no %s directory at %s; skipped", kind, source)
            continue
        destination = staging_root / kind
        destination.mkdir(parents=True, exist_ok=True)

        if kind == "plugins":
            for entry in sorted(source.iterdir()):
                if any(fnmatch.fnmatch(entry.name, pattern) for pattern in patterns):
                    logger.debug("plugin %s excluded", entry.name)
                    continue
                if entry.is_dir():
                    shutil.copytree(entry, destination / entry.name, dirs_exist_ok=True)
                elif entry.is_file():
                    shutil.copy2(entry, destination / entry.name)
        elif kind == "uploads" and multisite and tenant_id in ROOT_TENANT_IDS:
            shutil.copytree(
                source,
                destination,
                dirs_exist_ok=True,
                ignore=lambda directory, names: (
                    {"sites"} if Path(directory) == source else set()
                ),
            )
        else:
            shutil.copytree(source, destination, dirs_exist_ok=True)

        copied[kind] = _count_files(destination)
    return copied


def install_assets(
    extracted_root: Path,
    layout: SiteLayout,
    tenant_id: int,
    *,
    multisite: bool = True,
) -> dict[str, int]:
    """
    Copy file trees from an extracted archive into the destination layout.

    Existing files are overwritten; files not in the archive are kept.

    Returns
    -------
    dict[str, int]
        Files installed per asset kind.
    """
    installed: dict[str, int] = {}
    for kind in ASSET_KINDS:
        source = extracted_root / kind
        if not source.is_dir():
            continue
        destination = layout.source_for(kind, tenant_id, multisite)
        destination.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, destination, dirs_exist_ok=True)
        installed[kind] = _count_files(source)
    return installed

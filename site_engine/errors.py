"""
Domain exceptions for the site engine.

Notes
-----
Engine code avoids raising generic exceptions. Every expected failure mode maps
to a domain exception with a clear meaning, and callers decide whether the
failure is fatal (connection, validation) or per-item (statement, row, value).
"""

from __future__ import annotations


class SiteEngineError(RuntimeError):
    """Base exception for all site engine domain failures."""


class StoreError(SiteEngineError):
    """Raised when a database store operation fails."""


class StoreConnectionError(StoreError):
    """Raised when a source or destination store cannot be reached."""


class StoreQueryError(StoreError):
    """Raised when a single statement or row update fails."""


class SerializationError(SiteEngineError):
    """Raised when an S-format payload cannot be decoded or encoded."""


class ReplaceError(SiteEngineError):
    """Raised when a search-replace run cannot be performed."""


class ReplaceValidationError(ReplaceError):
    """Raised when search/replace input is rejected before any table is read."""


class ImportValidationError(SiteEngineError):
    """Raised when an import request is rejected before it is enqueued."""


class ArchiveNotFoundError(ImportValidationError):
    """Raised when the archive to import does not exist."""


class InsecureUrlError(ImportValidationError):
    """Raised when an archive download URL is not https or not trusted."""


class DumpFileNotFoundError(SiteEngineError):
    """Raised when the SQL dump to import is missing."""


class ArchiveError(SiteEngineError):
    """Raised when an archive cannot be created, read or extracted."""


class ExportError(SiteEngineError):
    """Raised when a site export cannot be produced."""


class JobError(SiteEngineError):
    """Raised when a pending job record is missing or in the wrong state."""

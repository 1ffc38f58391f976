"""
JSON artifact I/O.

Archive manifests and run reports are written with the same helper: UTF-8,
sorted keys, trailing newline, replaced atomically so a reader never sees a
partial file.
"""

from __future__ import annotations

import json
import os
import uuid
from pathlib import Path
from typing import Any, Mapping

from .errors import ArchiveError


def dumps_canonical(payload: Mapping[str, Any], *, compact: bool = False) -> str:
    """Serialize `payload` deterministically."""
    if compact:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def write_json_atomic(json_path: Path, payload: Mapping[str, Any], *, compact: bool = False) -> Path:
    """
    Write `payload` to `json_path` through a sibling temp file.

    Returns
    -------
    pathlib.Path
        The written path.

    Raises
    ------
    ArchiveError
        If the file cannot be written.
    """
    target = json_path.expanduser()
    target.parent.mkdir(parents=True, exist_ok=True)
    temp_path = target.with_name(f".{target.name}.{uuid.uuid4().hex[:8]}.tmp")
    text = dumps_canonical(payload, compact=compact)
    try:
        temp_path.write_text(text, encoding="utf-8", newline="\n")
        os.replace(temp_path, target)
    except OSError as exc:
        temp_path.unlink(missing_ok=True)
        raise ArchiveError(f"Failed to write JSON: {target} ({exc!s})") from exc
    return target


def read_json(json_path: Path) -> dict[str, Any]:
    """
    Read a JSON object from disk.

    Raises
    ------
    ArchiveError
        If the file is missing, unreadable, or not a JSON object.
    """
    try:
        payload = json.loads(json_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ArchiveError(f"Failed to read JSON: {json_path} ({exc!s})") from exc
    if not isinstance(payload, dict):
        raise ArchiveError(f"Expected a JSON object in {json_path}")
    return payload

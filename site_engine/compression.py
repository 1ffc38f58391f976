from __future__ import annotations

import tarfile
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable

import zstandard as zstd

from .errors import ArchiveError


class CompressionFormat(str, Enum):
    """
    Supported archive formats for site exports.
    """

    ZIP = "zip"
    TAR_ZST = "tar.zst"

    @property
    def suffix(self) -> str:
        return "." + self.value


@dataclass(frozen=True, slots=True)
class CompressionResult:
    """
    Result of compressing a staging directory.

    Attributes
    ----------
    format:
        Compression format actually used.
    archive_path:
        Path to the created archive file.
    member_count:
        Number of files written into the archive.
    """

    format: CompressionFormat
    archive_path: Path
    member_count: int


def detect_format(archive_path: Path) -> CompressionFormat | None:
    """Return the archive format implied by the file name, or None."""
    lower = archive_path.name.lower()
    if lower.endswith(".zip"):
        return CompressionFormat.ZIP
    if lower.endswith(".tar.zst"):
        return CompressionFormat.TAR_ZST
    return None


def compress_directory(
    *,
    source_root: Path,
    output_path: Path,
    format: CompressionFormat,
    overwrite: bool = False,
) -> CompressionResult:
    """
    Create an archive from a staged export directory.

    Entries are stored relative to `source_root`, so extracting the archive
    yields ``manifest.json`` and ``database/`` at the top level.

    Parameters
    ----------
    source_root:
        Staging directory (contains manifest.json and database/site.sql).
    output_path:
        Target archive file path.
    format:
        Compression format to use.
    overwrite:
        If True, overwrite an existing output_path.

    Returns
    -------
    CompressionResult
        Compression result.

    Raises
    ------
    ArchiveError
        If inputs are invalid or the archive cannot be written.
    """
    source_root = source_root.resolve()
    if not source_root.is_dir():
        raise ArchiveError(f"source_root must be an existing directory: {source_root}")

    output_path = output_path.resolve()
    output_path.parent.mkdir(parents=True, exist_ok=True)

    if output_path.exists():
        if not overwrite:
            raise ArchiveError(f"Refusing to overwrite existing archive: {output_path}")
        output_path.unlink()

    try:
        if format is CompressionFormat.ZIP:
            count = _write_zip(source_root=source_root, output_path=output_path)
        elif format is CompressionFormat.TAR_ZST:
            count = _write_tar_zst(source_root=source_root, output_path=output_path)
        else:
            raise ArchiveError(f"Unsupported compression format: {format!r}")
    except OSError as exc:
        output_path.unlink(missing_ok=True)
        raise ArchiveError(f"Failed to write archive {output_path}: {exc}") from exc

    return CompressionResult(format=format, archive_path=output_path, member_count=count)


def extract_archive(
    *,
    archive_path: Path,
    destination_dir: Path,
) -> Path:
    """
    Extract a supported archive into destination_dir.

    Parameters
    ----------
    archive_path:
        Path to .zip or .tar.zst archive.
    destination_dir:
        Directory to extract into (created if missing).

    Returns
    -------
    pathlib.Path
        The destination_dir after extraction.

    Raises
    ------
    ArchiveError
        If the archive type is unsupported, an entry escapes the destination,
        or extraction fails.
    """
    archive_path = archive_path.resolve()
    destination_dir = destination_dir.resolve()
    destination_dir.mkdir(parents=True, exist_ok=True)

    fmt = detect_format(archive_path)
    try:
        if fmt is CompressionFormat.ZIP:
            with zipfile.ZipFile(archive_path, "r") as zf:
                for name in zf.namelist():
                    _check_member(destination_dir, name)
                zf.extractall(destination_dir)
            return destination_dir

        if fmt is CompressionFormat.TAR_ZST:
            _extract_tar_zst(archive_path=archive_path, destination_dir=destination_dir)
            return destination_dir
    except (OSError, zipfile.BadZipFile, tarfile.TarError, zstd.ZstdError) as exc:
        raise ArchiveError(f"Failed to extract {archive_path.name}: {exc}") from exc

    raise ArchiveError(f"Unsupported archive type: {archive_path}")


def read_member(archive_path: Path, member: str) -> bytes | None:
    """
    Read one archive member without extracting the rest.

    Returns None when the member is absent.
    """
    fmt = detect_format(archive_path)
    try:
        if fmt is CompressionFormat.ZIP:
            with zipfile.ZipFile(archive_path, "r") as zf:
                try:
                    return zf.read(member)
                except KeyError:
                    return None
        if fmt is CompressionFormat.TAR_ZST:
            with archive_path.open("rb") as raw:
                dctx = zstd.ZstdDecompressor()
                with dctx.stream_reader(raw) as reader:
                    with tarfile.open(fileobj=reader, mode="r|") as tf:
                        for info in tf:
                            if info.name == member and info.isfile():
                                extracted = tf.extractfile(info)
                                return extracted.read() if extracted is not None else None
            return None
    except (OSError, zipfile.BadZipFile, tarfile.TarError, zstd.ZstdError) as exc:
        raise ArchiveError(f"Failed to read {member} from {archive_path.name}: {exc}") from exc
    raise ArchiveError(f"Unsupported archive type: {archive_path}")


def _check_member(destination_dir: Path, name: str) -> None:
    target = (destination_dir / name).resolve()
    try:
        target.relative_to(destination_dir)
    except ValueError as exc:
        raise ArchiveError(f"Archive entry escapes destination: {name}") from exc


def _iter_files_for_archive(source_root: Path) -> Iterable[Path]:
    for p in sorted(source_root.rglob("*")):
        if p.is_file():
            yield p


def _write_zip(*, source_root: Path, output_path: Path) -> int:
    count = 0
    with zipfile.ZipFile(output_path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for file_path in _iter_files_for_archive(source_root):
            zf.write(file_path, file_path.relative_to(source_root).as_posix())
            count += 1
    return count


def _write_tar_zst(*, source_root: Path, output_path: Path) -> int:
    count = 0
    with output_path.open("wb") as raw:
        cctx = zstd.ZstdCompressor()
        with cctx.stream_writer(raw) as zst_stream:
            with tarfile.open(fileobj=zst_stream, mode="w|") as tf:
                for file_path in _iter_files_for_archive(source_root):
                    arcname = file_path.relative_to(source_root).as_posix()
                    tf.add(file_path, arcname=arcname, recursive=False)
                    count += 1
    return count


def _extract_tar_zst(*, archive_path: Path, destination_dir: Path) -> None:
    with archive_path.open("rb") as raw:
        dctx = zstd.ZstdDecompressor()
        with dctx.stream_reader(raw) as reader:
            with tarfile.open(fileobj=reader, mode="r|") as tf:
                for info in tf:
                    _check_member(destination_dir, info.name)
                    if info.isdir():
                        (destination_dir / info.name).mkdir(parents=True, exist_ok=True)
                        continue
                    if not info.isfile():
                        continue
                    target = destination_dir / info.name
                    target.parent.mkdir(parents=True, exist_ok=True)
                    extracted = tf.extractfile(info)
                    if extracted is None:
                        continue
                    with target.open("wb") as handle:
                        handle.write(extracted.read())

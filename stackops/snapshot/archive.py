"""Archive primitives for snapshot members.

Naming convention, shared with the retention pruner:

    <prefix>-<YYYYmmddHHMMSS>            uncompressed snapshot directory
    <prefix>-<YYYYmmddHHMMSS>.tar.gz     compressed snapshot bundle

Ids are fixed-width timestamps so lexical order equals creation order.
Compressed output is written with a zeroed gzip header time and a sorted
member walk, so equal inputs give byte-identical archives.
"""

from __future__ import annotations

import gzip
import hashlib
import os
import re
import shutil
import tarfile
from datetime import datetime
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

ID_FORMAT = "%Y%m%d%H%M%S"
ARCHIVE_EXT = ".tar.gz"
PARTIAL_SUFFIX = ".partial"
MANIFEST_NAME = "manifest.json"

_ID_PATTERN = r"(?P<id>\d{14})"


def snapshot_id(moment: datetime) -> str:
    return moment.strftime(ID_FORMAT)


def snapshot_name(prefix: str, snap_id: str, compressed: bool) -> str:
    name = f"{prefix}-{snap_id}"
    return name + ARCHIVE_EXT if compressed else name


def parse_snapshot_name(prefix: str, name: str) -> tuple[str, bool] | None:
    """Return ``(id, compressed)`` for a store entry name, or None if foreign."""
    pattern = re.compile(rf"^{re.escape(prefix)}-{_ID_PATTERN}(?P<ext>{re.escape(ARCHIVE_EXT)})?$")
    match = pattern.match(name)
    if not match:
        return None
    return match.group("id"), bool(match.group("ext"))


def staging_name(name: str) -> str:
    """Hidden name used while a snapshot is being written."""
    return f".{name}{PARTIAL_SUFFIX}"


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def path_size(path: Path) -> int:
    """Total byte size of a file or a directory tree."""
    if path.is_file():
        return path.stat().st_size
    total = 0
    for root, _, files in os.walk(path):
        for name in files:
            candidate = Path(root) / name
            if candidate.is_symlink():
                continue
            total += candidate.stat().st_size
    return total


def _add_sorted(archive: tarfile.TarFile, source: Path, arcname: str) -> None:
    archive.add(str(source), arcname=arcname, recursive=False)
    if source.is_dir() and not source.is_symlink():
        for child in sorted(source.iterdir(), key=lambda p: p.name):
            _add_sorted(archive, child, f"{arcname}/{child.name}")


def write_tar_member(sources: list[tuple[Path, str]], dest: Path) -> int:
    """Write ``(path, arcname)`` pairs into a deterministic gzip tarball.

    Returns the archive size in bytes.
    """
    dest.parent.mkdir(parents=True, exist_ok=True)
    with open(dest, "wb") as raw, gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
        with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as archive:
            for source, arcname in sources:
                _add_sorted(archive, source, arcname)
    size = dest.stat().st_size
    logger.debug("Wrote archive member", dest=str(dest), size_bytes=size)
    return size


def copy_member(source: Path, dest: Path) -> int:
    """Copy a file or directory tree to ``dest``; returns the copied size."""
    if source.is_dir():
        shutil.copytree(source, dest, symlinks=True)
    else:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)
    return path_size(dest)


def bundle_directory(root: Path, dest: Path) -> int:
    """Bundle ``root`` as a single compressed archive rooted at its own name."""
    return write_tar_member([(root, root.name)], dest)


def _is_within(base: Path, target: Path) -> bool:
    try:
        target.resolve().relative_to(base.resolve())
    except ValueError:
        return False
    return True


def extract_archive(archive_path: Path, target_dir: Path) -> list[str]:
    """Extract a gzip tarball into ``target_dir`` refusing paths that escape it."""
    target_dir.mkdir(parents=True, exist_ok=True)
    extracted: list[str] = []
    with tarfile.open(archive_path, "r:gz") as archive:
        # keep group/other permission bits; paths are checked below
        archive.extraction_filter = getattr(tarfile, "tar_filter", None)
        members = archive.getmembers()
        for member in members:
            if member.name.startswith("/") or not _is_within(target_dir, target_dir / member.name):
                raise tarfile.TarError(f"unsafe member path in {archive_path.name}: {member.name}")
        for member in members:
            archive.extract(member, target_dir, set_attrs=True)
            extracted.append(member.name)
    return extracted


def remove_path(path: Path) -> bool:
    """Remove a file or tree; returns False when it was already gone."""
    try:
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink()
    except FileNotFoundError:
        return False
    return True


__all__ = [
    "ARCHIVE_EXT",
    "ID_FORMAT",
    "MANIFEST_NAME",
    "PARTIAL_SUFFIX",
    "bundle_directory",
    "copy_member",
    "extract_archive",
    "parse_snapshot_name",
    "path_size",
    "remove_path",
    "sha256_file",
    "snapshot_id",
    "snapshot_name",
    "staging_name",
    "write_tar_member",
]

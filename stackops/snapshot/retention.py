"""Retention enforcement for a snapshot store."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import structlog

from .archive import ARCHIVE_EXT, parse_snapshot_name, path_size, remove_path

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class StoredSnapshot:
    """A snapshot entry found in a store listing."""

    id: str
    name: str
    path: Path
    compressed: bool

    @property
    def label(self) -> str:
        """Snapshot name without the archive extension."""
        return self.name[: -len(ARCHIVE_EXT)] if self.compressed else self.name

    def size_bytes(self) -> int:
        return path_size(self.path)


@dataclass
class PruneResult:
    removed: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


def list_snapshots(store: Path, prefix: str) -> list[StoredSnapshot]:
    """All snapshots in ``store``, newest first.

    Both layouts (compressed bundle and plain directory) are listed together;
    staging entries and foreign files are ignored.
    """
    if not store.exists():
        return []
    items: list[StoredSnapshot] = []
    for child in store.iterdir():
        parsed = parse_snapshot_name(prefix, child.name)
        if parsed is None:
            continue
        snap_id, compressed = parsed
        if compressed and not child.is_file():
            continue
        if not compressed and not child.is_dir():
            continue
        items.append(StoredSnapshot(id=snap_id, name=child.name, path=child, compressed=compressed))
    items.sort(key=lambda item: item.id, reverse=True)
    return items


def find_snapshot(store: Path, prefix: str, snap_id: str) -> StoredSnapshot | None:
    for item in list_snapshots(store, prefix):
        if snap_id in (item.id, item.name, item.label):
            return item
    return None


def prune(store: Path, keep_count: int, prefix: str) -> PruneResult:
    """Remove every snapshot beyond the ``keep_count`` newest.

    ``keep_count <= 0`` keeps everything. Entries that disappear while
    pruning count as removed.
    """
    items = list_snapshots(store, prefix)
    result = PruneResult()
    if keep_count <= 0:
        result.kept = [item.label for item in items]
        logger.info("Retention disabled, nothing pruned", store=str(store), snapshots=len(items))
        return result

    keep, drop = items[:keep_count], items[keep_count:]
    result.kept = [item.label for item in keep]
    for item in drop:
        try:
            existed = remove_path(item.path)
        except OSError as e:
            logger.error("Failed to remove snapshot", snapshot=item.name, error=str(e))
            result.errors[item.label] = str(e)
            continue
        result.removed.append(item.label)
        logger.info("Removed snapshot", snapshot=item.name, already_gone=not existed)

    logger.info("Retention applied",
                store=str(store),
                keep_count=keep_count,
                removed=len(result.removed),
                kept=len(result.kept),
                errors=len(result.errors))
    return result


__all__ = ["PruneResult", "StoredSnapshot", "find_snapshot", "list_snapshots", "prune"]

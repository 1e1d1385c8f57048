"""Snapshot creation, retention, verification and restore."""

from .manager import BackupResult, SnapshotManager
from .restore import RestoreResult, restore_snapshot
from .retention import PruneResult, StoredSnapshot, find_snapshot, list_snapshots, prune
from .verify import verify_snapshot

__all__ = [
    "BackupResult",
    "PruneResult",
    "RestoreResult",
    "SnapshotManager",
    "StoredSnapshot",
    "find_snapshot",
    "list_snapshots",
    "prune",
    "restore_snapshot",
    "verify_snapshot",
]

"""Restore service data (and optionally config) from a stored snapshot.

Current contents are moved aside as ``<path>.pre-restore-<timestamp>`` before
the snapshot copy lands, and moved back if any service fails to restore.
Callers are expected to stop the affected services first.
"""

from __future__ import annotations

import os
import shutil
import tarfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Sequence

import structlog

from ..config import ManagedService
from ..errors import RestoreError, SnapshotVerificationError
from .archive import ID_FORMAT, extract_archive, remove_path
from .retention import StoredSnapshot
from .verify import load_manifest, opened_snapshot

logger = structlog.get_logger(__name__)


@dataclass
class RestoreResult:
    snapshot: str
    restored: list[str] = field(default_factory=list)
    set_aside: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "snapshot": self.snapshot,
            "restored": list(self.restored),
            "set_aside": dict(self.set_aside),
        }


@dataclass
class _Move:
    target: Path
    aside: Path | None


def _copy_into_place(source: Path, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    if source.is_dir():
        shutil.copytree(source, target, symlinks=True)
    else:
        shutil.copy2(source, target)


class _Restorer:
    """Tracks moved-aside paths so a failed restore can be rolled back."""

    def __init__(self, stamp: str):
        self.stamp = stamp
        self.moves: list[_Move] = []

    def replace(self, source: Path, target: Path) -> Path | None:
        if not source.exists():
            raise RestoreError(f"snapshot member {source.name} is missing")
        aside = None
        if target.exists() or target.is_symlink():
            aside = target.with_name(f"{target.name}.pre-restore-{self.stamp}")
            os.rename(target, aside)
        self.moves.append(_Move(target=target, aside=aside))
        _copy_into_place(source, target)
        return aside

    def rollback(self) -> None:
        for move in reversed(self.moves):
            remove_path(move.target)
            if move.aside is not None:
                os.rename(move.aside, move.target)
            logger.warning("Rolled back restore", path=str(move.target))
        self.moves.clear()


def _member_source(root: Path, scratch: Path, service: str, kind: str, compressed: bool) -> Path:
    if not compressed:
        return root / service if kind == "data" else root / "config" / service
    member = root / f"{service}-{kind}.tar.gz"
    if not member.exists():
        raise RestoreError(f"snapshot has no {kind} member for {service}")
    dest = scratch / kind / service
    extract_archive(member, dest)
    return dest / service if kind == "data" else dest


def restore_snapshot(
    snapshot: StoredSnapshot,
    services: Sequence[ManagedService],
    include_config: bool = False,
    clock: Callable[[], datetime] | None = None,
) -> RestoreResult:
    """Copy each service's data (and config, if asked) back from ``snapshot``.

    Either every requested service is restored, or none is.
    """
    stamp = (clock or datetime.now)().strftime(ID_FORMAT)
    result = RestoreResult(snapshot=snapshot.label)
    restorer = _Restorer(stamp)

    try:
        with opened_snapshot(snapshot) as root:
            manifest = load_manifest(root)
            available = manifest.get("services") or {}
            compressed = bool(manifest.get("compressed", snapshot.compressed))
            scratch = root.parent / f".{snapshot.label}-restore"

            missing = [s.name for s in services if s.name not in available]
            if missing:
                raise RestoreError(f"snapshot {snapshot.label} has no entry for: {', '.join(missing)}")

            try:
                for service in services:
                    kinds = {entry.get("kind") for entry in available[service.name]}
                    touched = False

                    if service.data_path is not None and "data" in kinds:
                        source = _member_source(root, scratch, service.name, "data", compressed)
                        aside = restorer.replace(source, Path(service.data_path))
                        if aside is not None:
                            result.set_aside[str(service.data_path)] = str(aside)
                        touched = True

                    if include_config and "config" in kinds:
                        config_root = _member_source(root, scratch, service.name, "config", compressed)
                        for config_path in service.config_paths:
                            config_path = Path(config_path)
                            aside = restorer.replace(config_root / config_path.name, config_path)
                            if aside is not None:
                                result.set_aside[str(config_path)] = str(aside)
                            touched = True

                    if touched:
                        result.restored.append(service.name)
                        logger.info("Restored service", service=service.name, snapshot=snapshot.label)
            finally:
                remove_path(scratch)
    except (OSError, tarfile.TarError) as e:
        restorer.rollback()
        raise RestoreError(f"restore from {snapshot.label} failed: {e}") from e
    except (RestoreError, SnapshotVerificationError):
        restorer.rollback()
        raise

    if result.set_aside:
        logger.info("Previous contents kept", paths=sorted(result.set_aside.values()))
    return result


__all__ = ["RestoreResult", "restore_snapshot"]

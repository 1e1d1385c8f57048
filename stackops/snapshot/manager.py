"""Create point-in-time snapshots of the managed services.

A snapshot is assembled in a hidden staging entry inside the store and only
renamed to its final name once every member has been written, so a failed or
interrupted run never leaves a visible partial snapshot behind.

Layout, uncompressed::

    <prefix>-<id>/manifest.json
    <prefix>-<id>/<service>/...                    data directory copy
    <prefix>-<id>/config/<service>/<config name>   config copies

Layout, compressed (one bundle holding the directory above, with members
compressed individually)::

    <prefix>-<id>.tar.gz
        <prefix>-<id>/manifest.json
        <prefix>-<id>/<service>-data.tar.gz
        <prefix>-<id>/<service>-config.tar.gz
"""

from __future__ import annotations

import json
import os
import tarfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Sequence

import structlog

from .. import __version__
from ..config import ManagedService
from ..errors import PreconditionError, SnapshotIOError
from ..models import Snapshot, SnapshotMember
from .archive import (
    MANIFEST_NAME,
    PARTIAL_SUFFIX,
    copy_member,
    path_size,
    remove_path,
    sha256_file,
    snapshot_id,
    snapshot_name,
    staging_name,
    write_tar_member,
)
from .retention import PruneResult, list_snapshots, prune

logger = structlog.get_logger(__name__)

MANIFEST_VERSION = 1


@dataclass
class BackupResult:
    """A created snapshot plus the pruning that followed it."""

    snapshot: Snapshot
    prune: PruneResult


class SnapshotManager:
    """Writes all-or-nothing snapshots into a backup store."""

    def __init__(self, prefix: str, clock: Callable[[], datetime] | None = None):
        self.prefix = prefix
        self.clock = clock or datetime.now

    def create_snapshot(
        self,
        services: Sequence[ManagedService],
        store: Path,
        compress: bool,
    ) -> Snapshot:
        """Archive every service's data and config paths into one new snapshot."""
        self._check_inputs(services)
        store.mkdir(parents=True, exist_ok=True)
        self._sweep_partials(store)

        created_at = self.clock()
        snap_id = snapshot_id(created_at)
        self._check_id(store, snap_id)

        base_name = snapshot_name(self.prefix, snap_id, compressed=False)
        final_path = store / snapshot_name(self.prefix, snap_id, compressed=compress)
        staging = store / staging_name(base_name)
        partial_bundle = store / staging_name(final_path.name)

        logger.info("Starting snapshot", snapshot=final_path.name, services=[s.name for s in services], compressed=compress)

        try:
            staging.mkdir(parents=True)
            entries, failures = self._write_members(services, staging, compress)
            if failures:
                raise SnapshotIOError(
                    f"snapshot {base_name} failed for {len(failures)} member(s)", failures
                )

            self._write_manifest(staging / MANIFEST_NAME, snap_id, created_at, compress, entries)

            if compress:
                try:
                    write_tar_member([(staging, base_name)], partial_bundle)
                except (OSError, tarfile.TarError) as e:
                    raise SnapshotIOError(f"bundling {base_name} failed: {e}", {"bundle": str(e)}) from e
                os.replace(partial_bundle, final_path)
            else:
                os.rename(staging, final_path)
        except SnapshotIOError as e:
            logger.error("Snapshot aborted, partial output removed", snapshot=base_name, failures=e.failures)
            raise
        except OSError as e:
            logger.error("Snapshot aborted, partial output removed", snapshot=base_name, error=str(e))
            raise SnapshotIOError(f"snapshot {base_name} failed: {e}", {"snapshot": str(e)}) from e
        finally:
            remove_path(staging)
            remove_path(partial_bundle)

        snapshot = Snapshot(
            id=snap_id,
            name=final_path.name,
            path=final_path,
            compressed=compress,
            created_at=created_at,
            size_bytes=path_size(final_path),
            entries=entries,
        )
        logger.info("Created snapshot", snapshot=snapshot.name, size_bytes=snapshot.size_bytes)
        return snapshot

    def run_backup(
        self,
        services: Sequence[ManagedService],
        store: Path,
        compress: bool,
        keep_count: int,
    ) -> BackupResult:
        """Create a snapshot, then prune the store to ``keep_count`` entries."""
        snapshot = self.create_snapshot(services, store, compress)
        pruned = prune(store, keep_count, self.prefix)
        return BackupResult(snapshot=snapshot, prune=pruned)

    def _check_inputs(self, services: Sequence[ManagedService]) -> None:
        problems = []
        for service in services:
            if service.data_path is not None:
                data = Path(service.data_path)
                if not data.is_dir():
                    problems.append(f"{service.name}: data path {data} does not exist")
                elif not os.access(data, os.R_OK | os.X_OK):
                    problems.append(f"{service.name}: data path {data} is not readable")
            for config_path in service.config_paths:
                if not Path(config_path).exists():
                    problems.append(f"{service.name}: config path {config_path} does not exist")
                elif not os.access(config_path, os.R_OK):
                    problems.append(f"{service.name}: config path {config_path} is not readable")
        if problems:
            raise PreconditionError("; ".join(problems))

    def _check_id(self, store: Path, snap_id: str) -> None:
        existing = list_snapshots(store, self.prefix)
        if any(item.id == snap_id for item in existing):
            raise PreconditionError(f"snapshot id {snap_id} already exists in {store}")
        if existing and existing[0].id > snap_id:
            raise PreconditionError(
                f"snapshot id {snap_id} is older than newest snapshot {existing[0].id}; check the system clock"
            )

    def _sweep_partials(self, store: Path) -> None:
        marker = f".{self.prefix}-"
        for child in store.iterdir():
            if child.name.startswith(marker) and child.name.endswith(PARTIAL_SUFFIX):
                logger.warning("Removing leftover partial snapshot", entry=child.name)
                remove_path(child)

    def _write_members(
        self,
        services: Sequence[ManagedService],
        staging: Path,
        compress: bool,
    ) -> tuple[dict[str, list[SnapshotMember]], dict[str, str]]:
        entries: dict[str, list[SnapshotMember]] = {}
        failures: dict[str, str] = {}

        for service in services:
            members: list[SnapshotMember] = []

            if service.data_path is not None:
                key = f"{service.name}/data"
                try:
                    members.append(self._write_data(service, staging, compress))
                except (OSError, tarfile.TarError) as e:
                    logger.error("Failed to archive data", service=service.name, error=str(e))
                    failures[key] = str(e)

            if service.config_paths:
                key = f"{service.name}/config"
                try:
                    members.extend(self._write_config(service, staging, compress))
                except (OSError, tarfile.TarError) as e:
                    logger.error("Failed to archive config", service=service.name, error=str(e))
                    failures[key] = str(e)

            entries[service.name] = members
        return entries, failures

    def _write_data(self, service: ManagedService, staging: Path, compress: bool) -> SnapshotMember:
        source = Path(service.data_path)
        if compress:
            dest = staging / f"{service.name}-data.tar.gz"
            size = write_tar_member([(source, service.name)], dest)
            checksum = sha256_file(dest)
        else:
            dest = staging / service.name
            size = copy_member(source, dest)
            checksum = None
        logger.info("Archived data", service=service.name, member=dest.name, size_bytes=size)
        return SnapshotMember(
            service=service.name,
            kind="data",
            path=dest.relative_to(staging).as_posix(),
            size_bytes=size,
            sha256=checksum,
        )

    def _write_config(self, service: ManagedService, staging: Path, compress: bool) -> list[SnapshotMember]:
        sources = [Path(p) for p in service.config_paths]
        if compress:
            dest = staging / f"{service.name}-config.tar.gz"
            size = write_tar_member([(p, p.name) for p in sources], dest)
            logger.info("Archived config", service=service.name, member=dest.name, size_bytes=size)
            return [
                SnapshotMember(
                    service=service.name,
                    kind="config",
                    path=dest.relative_to(staging).as_posix(),
                    size_bytes=size,
                    sha256=sha256_file(dest),
                )
            ]

        members = []
        for source in sources:
            dest = staging / "config" / service.name / source.name
            size = copy_member(source, dest)
            members.append(
                SnapshotMember(
                    service=service.name,
                    kind="config",
                    path=dest.relative_to(staging).as_posix(),
                    size_bytes=size,
                    sha256=sha256_file(dest) if dest.is_file() else None,
                )
            )
        logger.info("Archived config", service=service.name, members=len(members))
        return members

    def _write_manifest(
        self,
        path: Path,
        snap_id: str,
        created_at: datetime,
        compress: bool,
        entries: dict[str, list[SnapshotMember]],
    ) -> None:
        data = {
            "version": MANIFEST_VERSION,
            "tool_version": __version__,
            "id": snap_id,
            "prefix": self.prefix,
            "created_at": created_at.isoformat(),
            "compressed": compress,
            "services": {
                service: [member.to_dict() for member in members]
                for service, members in entries.items()
            },
        }
        with path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2, sort_keys=True)


__all__ = ["BackupResult", "SnapshotManager"]

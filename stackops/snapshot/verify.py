"""Verify snapshot members against their manifest."""

from __future__ import annotations

import json
import shutil
import tarfile
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import structlog

from ..errors import SnapshotVerificationError
from .archive import MANIFEST_NAME, extract_archive, path_size, sha256_file
from .retention import StoredSnapshot

logger = structlog.get_logger(__name__)


@contextmanager
def opened_snapshot(snapshot: StoredSnapshot) -> Iterator[Path]:
    """Yield the snapshot root directory, unpacking compressed bundles to a temp dir."""
    if not snapshot.compressed:
        yield snapshot.path
        return
    workdir = Path(tempfile.mkdtemp(prefix=f".{snapshot.label}-", dir=snapshot.path.parent))
    try:
        try:
            extract_archive(snapshot.path, workdir)
        except (OSError, tarfile.TarError) as e:
            raise SnapshotVerificationError(f"cannot unpack {snapshot.name}: {e}") from e
        yield workdir / snapshot.label
    finally:
        shutil.rmtree(workdir, ignore_errors=True)


def load_manifest(root: Path) -> dict[str, Any]:
    manifest_path = root / MANIFEST_NAME
    if not manifest_path.exists():
        raise SnapshotVerificationError(f"manifest not found at {manifest_path}")
    try:
        with manifest_path.open("r", encoding="utf-8") as handle:
            manifest = json.load(handle)
    except (OSError, ValueError) as e:
        raise SnapshotVerificationError(f"unreadable manifest at {manifest_path}: {e}") from e
    if not isinstance(manifest, dict):
        raise SnapshotVerificationError(f"invalid manifest structure at {manifest_path}")
    return manifest


def verify_snapshot(snapshot: StoredSnapshot) -> dict[str, Any]:
    """Check every manifest member's presence, size and checksum."""
    with opened_snapshot(snapshot) as root:
        manifest = load_manifest(root)
        services = manifest.get("services")
        if not isinstance(services, dict):
            raise SnapshotVerificationError("invalid manifest structure")

        checked = 0
        for service, members in services.items():
            if not isinstance(members, list):
                raise SnapshotVerificationError(f"{service}: invalid manifest members")
            for entry in members:
                rel = entry.get("path") if isinstance(entry, dict) else None
                if not isinstance(rel, str):
                    raise SnapshotVerificationError(f"{service}: manifest entry without path")
                member = root / rel
                if not member.exists():
                    raise SnapshotVerificationError(f"{service}: missing member {rel}")
                expected_size = entry.get("bytes")
                if expected_size is not None and not isinstance(expected_size, int):
                    raise SnapshotVerificationError(f"{service}: invalid size for {rel}")
                if expected_size is not None and expected_size != path_size(member):
                    raise SnapshotVerificationError(f"{service}: size mismatch for {rel}")
                expected_sha = entry.get("sha256")
                if expected_sha and sha256_file(member) != expected_sha:
                    raise SnapshotVerificationError(f"{service}: checksum mismatch for {rel}")
                checked += 1

    logger.info("Verified snapshot", snapshot=snapshot.name, members=checked)
    return {
        "id": snapshot.id,
        "name": snapshot.name,
        "services": sorted(services),
        "member_count": checked,
    }


__all__ = ["load_manifest", "opened_snapshot", "verify_snapshot"]

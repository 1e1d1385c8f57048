"""Shared value types for snapshots and runtime state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class DesiredState(str, Enum):
    """Target state a managed service is driven to."""

    RUNNING = "running"
    STOPPED = "stopped"
    ABSENT = "absent"


class ObservedStatus(str, Enum):
    """Runtime status as reported by a runtime adapter."""

    ABSENT = "absent"
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class Verb(str, Enum):
    """Lifecycle verbs a runtime adapter understands."""

    CREATE = "create"
    START = "start"
    STOP = "stop"
    REMOVE = "remove"


@dataclass(frozen=True)
class Action:
    """One runtime action for one service.

    ``force`` on a STOP means a kill signal rather than a graceful stop.
    """

    service: str
    verb: Verb
    force: bool = False

    def __str__(self) -> str:
        suffix = "!" if self.force else ""
        return f"{self.verb.value}{suffix}:{self.service}"


@dataclass(frozen=True)
class Observation:
    """Result of probing one service; ``detail`` explains UNKNOWN results."""

    service: str
    status: ObservedStatus
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"service": self.service, "status": self.status.value, "detail": self.detail}


@dataclass
class SnapshotMember:
    """One archived path inside a snapshot."""

    service: str
    kind: str  # "data" or "config"
    path: str
    size_bytes: int
    sha256: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "kind": self.kind,
            "path": self.path,
            "bytes": self.size_bytes,
            "sha256": self.sha256,
        }


@dataclass
class Snapshot:
    """A written snapshot in a backup store."""

    id: str
    name: str
    path: Path
    compressed: bool
    created_at: datetime
    size_bytes: int = 0
    entries: dict[str, list[SnapshotMember]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "path": str(self.path),
            "compressed": self.compressed,
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
            "entries": {
                service: [member.to_dict() for member in members]
                for service, members in self.entries.items()
            },
        }


__all__ = [
    "Action",
    "DesiredState",
    "Observation",
    "ObservedStatus",
    "Snapshot",
    "SnapshotMember",
    "Verb",
]

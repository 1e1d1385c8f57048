"""Error hierarchy for backup and reconcile operations."""

from __future__ import annotations


class StackOpsError(RuntimeError):
    """Base exception for stack operation failures."""


class PreconditionError(StackOpsError):
    """A required input path, privilege or external binary is missing."""


class SnapshotIOError(StackOpsError):
    """Writing or reading a snapshot member failed.

    ``failures`` maps each failing member (``<service>/data``,
    ``<service>/config`` or ``bundle``) to the error text.
    """

    def __init__(self, message: str, failures: dict[str, str] | None = None):
        super().__init__(message)
        self.failures = dict(failures or {})


class SnapshotVerificationError(StackOpsError):
    """A snapshot member does not match its manifest entry."""


class RestoreError(StackOpsError):
    """Restoring a snapshot failed; existing data was rolled back."""


class RuntimeObservationError(StackOpsError):
    """The container runtime is unreachable or gave an ambiguous answer."""


class TransitionError(StackOpsError):
    """A runtime action was applied but did not succeed."""


__all__ = [
    "StackOpsError",
    "PreconditionError",
    "SnapshotIOError",
    "SnapshotVerificationError",
    "RestoreError",
    "RuntimeObservationError",
    "TransitionError",
]

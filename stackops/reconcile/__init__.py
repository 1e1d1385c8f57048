"""Desired-state reconciliation for managed services."""

from .planner import is_converged, plan
from .reconciler import ReconcileOutcome, ReconcileStatus, Reconciler

__all__ = ["ReconcileOutcome", "ReconcileStatus", "Reconciler", "is_converged", "plan"]

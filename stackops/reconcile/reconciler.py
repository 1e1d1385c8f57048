"""Service reconciler: observe, plan, act, verify, retry once."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from ..config import ManagedService, ReconcileConfig
from ..errors import StackOpsError
from ..models import Action, DesiredState, Observation, ObservedStatus, Verb
from ..runtime.probe import RuntimeProbe
from .planner import is_converged, plan

logger = structlog.get_logger(__name__)


class ReconcileStatus(str, Enum):
    CONVERGED = "converged"
    RETRIED = "retried"
    FAILED = "failed"


@dataclass
class ReconcileOutcome:
    """Result for one service, with every action applied in order."""

    service: str
    desired: DesiredState
    status: ReconcileStatus
    actions: List[Action] = field(default_factory=list)
    observation: Optional[Observation] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not ReconcileStatus.FAILED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "service": self.service,
            "desired": self.desired.value,
            "status": self.status.value,
            "actions": [str(action) for action in self.actions],
            "observation": self.observation.to_dict() if self.observation else None,
            "reason": self.reason,
        }


class Reconciler:
    """Drives services to their desired state through a runtime probe.

    Each call re-observes the runtime; nothing is cached between calls.
    A non-converging service gets exactly one forced retry before it is
    reported as failed.
    """

    def __init__(
        self,
        probe: RuntimeProbe,
        settings: Optional[ReconcileConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.probe = probe
        self.settings = settings or ReconcileConfig()
        self.sleep = sleep

    def reconcile(self, service: ManagedService, desired: Optional[DesiredState] = None) -> ReconcileOutcome:
        desired = desired or service.desired_state
        applied: List[Action] = []

        observation = self.probe.observe(service)
        if observation.status is ObservedStatus.UNKNOWN:
            return self._failed(service, desired, applied, observation, observation.detail or "runtime state unknown")
        if is_converged(observation.status, desired):
            logger.info("Service already converged", service=service.name, status=observation.status.value)
            return self._outcome(service, desired, ReconcileStatus.CONVERGED, applied, observation)

        logger.info("Reconciling service",
                    service=service.name,
                    observed=observation.status.value,
                    desired=desired.value)
        try:
            self._apply(service, plan(service.name, observation.status, desired), applied)
        except StackOpsError as e:
            logger.warning("Transition failed, retrying once", service=service.name, error=str(e))
        else:
            self.sleep(self.settings.settle_seconds)
            observation = self.probe.observe(service)
            if is_converged(observation.status, desired):
                return self._outcome(service, desired, ReconcileStatus.CONVERGED, applied, observation)
            logger.warning("Service did not converge, retrying once",
                           service=service.name,
                           observed=observation.status.value,
                           desired=desired.value)

        return self._retry(service, desired, applied)

    def reconcile_all(
        self,
        services: Sequence[ManagedService],
        desired: Optional[DesiredState] = None,
    ) -> List[ReconcileOutcome]:
        """Reconcile in the given order; one failure never stops the rest."""
        return [self.reconcile(service, desired) for service in services]

    def _retry(self, service: ManagedService, desired: DesiredState, applied: List[Action]) -> ReconcileOutcome:
        self.sleep(self.settings.retry_backoff_seconds)
        observation = self.probe.observe(service)
        if observation.status is ObservedStatus.UNKNOWN:
            return self._failed(service, desired, applied, observation, observation.detail or "runtime state unknown")
        if is_converged(observation.status, desired):
            return self._outcome(service, desired, ReconcileStatus.RETRIED, applied, observation)

        if observation.status is not ObservedStatus.ABSENT:
            kill = Action(service=service.name, verb=Verb.STOP, force=True)
            try:
                self._apply(service, [kill], applied)
            except StackOpsError as e:
                logger.warning("Forced stop failed", service=service.name, error=str(e))
            observation = self.probe.observe(service)
            if observation.status is ObservedStatus.UNKNOWN:
                return self._failed(service, desired, applied, observation, observation.detail or "runtime state unknown")

        try:
            self._apply(service, plan(service.name, observation.status, desired), applied)
        except StackOpsError as e:
            return self._failed(service, desired, applied, self.probe.observe(service), str(e))

        self.sleep(self.settings.settle_seconds)
        observation = self.probe.observe(service)
        if is_converged(observation.status, desired):
            return self._outcome(service, desired, ReconcileStatus.RETRIED, applied, observation)
        reason = f"observed {observation.status.value} after retry, wanted {desired.value}"
        return self._failed(service, desired, applied, observation, reason)

    def _apply(self, service: ManagedService, actions: List[Action], applied: List[Action]) -> None:
        adapter = self.probe.adapter_for(service)
        for action in actions:
            applied.append(action)
            logger.info("Applying action", action=str(action))
            adapter.execute(action, service)

    def _outcome(
        self,
        service: ManagedService,
        desired: DesiredState,
        status: ReconcileStatus,
        applied: List[Action],
        observation: Observation,
    ) -> ReconcileOutcome:
        logger.info("Reconcile finished", service=service.name, status=status.value, actions=[str(a) for a in applied])
        return ReconcileOutcome(
            service=service.name,
            desired=desired,
            status=status,
            actions=list(applied),
            observation=observation,
        )

    def _failed(
        self,
        service: ManagedService,
        desired: DesiredState,
        applied: List[Action],
        observation: Observation,
        reason: str,
    ) -> ReconcileOutcome:
        logger.error("Reconcile failed", service=service.name, reason=reason, actions=[str(a) for a in applied])
        return ReconcileOutcome(
            service=service.name,
            desired=desired,
            status=ReconcileStatus.FAILED,
            actions=list(applied),
            observation=observation,
            reason=reason,
        )


__all__ = ["ReconcileOutcome", "ReconcileStatus", "Reconciler"]

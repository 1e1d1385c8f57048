"""systemd adapter for host services such as the reverse proxy.

Lifecycle mapping: create = enable, remove = disable. An enabled but
inactive unit is STOPPED; a disabled or missing unit is ABSENT.
"""

from __future__ import annotations

import structlog

from ..config import ManagedService
from ..errors import RuntimeObservationError
from ..models import ObservedStatus
from .base import CommandRunner, RuntimeAdapter

logger = structlog.get_logger(__name__)

ENABLED_STATES = ("enabled", "enabled-runtime", "static", "alias", "indirect", "generated")
MISSING = ("not-found", "not found", "no such file", "does not exist")


class SystemdRuntime(RuntimeAdapter):
    kind = "systemd"

    def __init__(self, binary: str = "systemctl", runner: CommandRunner | None = None):
        super().__init__(runner)
        self.binary = binary

    def inspect(self, service: ManagedService) -> ObservedStatus:
        unit = service.unit_name
        active = self._query([self.binary, "is-active", unit]).stdout.strip()
        if active in ("active", "reloading"):
            return ObservedStatus.RUNNING
        if active == "activating":
            return ObservedStatus.CREATED

        enabled = self._query([self.binary, "is-enabled", unit])
        state = enabled.stdout.strip()
        if state in ENABLED_STATES:
            return ObservedStatus.STOPPED
        if state in ("disabled", "masked", "") or enabled.mentions(MISSING):
            return ObservedStatus.ABSENT
        raise RuntimeObservationError(f"unit {unit}: unexpected state active={active!r} enabled={state!r}")

    def create(self, service: ManagedService) -> None:
        self._act([self.binary, "enable", service.unit_name])
        logger.info("Enabled unit", service=service.name, unit=service.unit_name)

    def start(self, service: ManagedService) -> None:
        self._act([self.binary, "start", service.unit_name])
        logger.info("Started unit", service=service.name, unit=service.unit_name)

    def stop(self, service: ManagedService, force: bool = False) -> None:
        if force:
            self._act([self.binary, "kill", "--signal=SIGKILL", service.unit_name], tolerate=MISSING + ("not loaded",))
        self._act([self.binary, "stop", service.unit_name], tolerate=MISSING + ("not loaded",))
        logger.info("Stopped unit", service=service.name, unit=service.unit_name, force=force)

    def remove(self, service: ManagedService) -> None:
        self._act([self.binary, "disable", service.unit_name], tolerate=MISSING)
        logger.info("Disabled unit", service=service.name, unit=service.unit_name)


__all__ = ["SystemdRuntime"]

"""Runtime state probe: one fresh observation per call, never cached."""

from __future__ import annotations

from typing import Dict, Mapping, Sequence

import structlog

from ..config import ManagedService, StackConfig
from ..errors import RuntimeObservationError
from ..models import Observation, ObservedStatus
from .base import CommandRunner, RuntimeAdapter
from .ctr import CtrRuntime
from .docker import DockerRuntime
from .systemd import SystemdRuntime

logger = structlog.get_logger(__name__)


def build_adapters(config: StackConfig, runner: CommandRunner | None = None) -> Dict[str, RuntimeAdapter]:
    """One adapter per runtime kind, sharing a runner with the configured timeout."""
    runner = runner or CommandRunner(timeout=config.runtime.command_timeout)
    return {
        "containerd": CtrRuntime(
            namespace=config.runtime.namespace,
            binary=config.runtime.ctr_binary,
            runner=runner,
        ),
        "docker": DockerRuntime(binary=config.runtime.docker_binary, runner=runner),
        "systemd": SystemdRuntime(binary=config.runtime.systemctl_binary, runner=runner),
    }


class RuntimeProbe:
    """Maps services to their adapters and turns runtime errors into UNKNOWN."""

    def __init__(self, config: StackConfig, adapters: Mapping[str, RuntimeAdapter]):
        self.config = config
        self.adapters = dict(adapters)

    def adapter_for(self, service: ManagedService) -> RuntimeAdapter:
        kind = self.config.runtime_for(service)
        try:
            return self.adapters[kind]
        except KeyError:
            raise RuntimeObservationError(f"no adapter for runtime kind {kind!r}") from None

    def observe(self, service: ManagedService) -> Observation:
        try:
            status = self.adapter_for(service).inspect(service)
        except RuntimeObservationError as e:
            logger.warning("Runtime observation failed", service=service.name, error=str(e))
            return Observation(service=service.name, status=ObservedStatus.UNKNOWN, detail=str(e))
        logger.debug("Observed service", service=service.name, status=status.value)
        return Observation(service=service.name, status=status)

    def observe_all(self, services: Sequence[ManagedService]) -> Dict[str, Observation]:
        return {service.name: self.observe(service) for service in services}


__all__ = ["RuntimeProbe", "build_adapters"]

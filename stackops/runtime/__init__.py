"""Runtime adapters and the state probe built on them."""

from .base import CommandResult, CommandRunner, RuntimeAdapter
from .ctr import CtrRuntime
from .docker import DockerRuntime
from .probe import RuntimeProbe, build_adapters
from .systemd import SystemdRuntime

__all__ = [
    "CommandResult",
    "CommandRunner",
    "CtrRuntime",
    "DockerRuntime",
    "RuntimeAdapter",
    "RuntimeProbe",
    "SystemdRuntime",
    "build_adapters",
]

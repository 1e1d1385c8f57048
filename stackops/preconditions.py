"""Host preconditions checked before any state change is attempted."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Iterable

from .config import StackConfig
from .errors import PreconditionError


def require_root() -> None:
    if os.geteuid() != 0:
        raise PreconditionError("this operation must run as root")


def require_binaries(binaries: Iterable[str]) -> None:
    missing = [binary for binary in binaries if shutil.which(binary) is None]
    if missing:
        raise PreconditionError(f"required binaries not found on PATH: {', '.join(missing)}")


def require_paths(paths: Iterable[Path]) -> None:
    missing = [str(path) for path in paths if not Path(path).exists()]
    if missing:
        raise PreconditionError(f"required paths do not exist: {', '.join(missing)}")


def runtime_binaries(config: StackConfig, services=None) -> list[str]:
    """Binaries needed to control ``services`` (default: all of them)."""
    binaries = {
        "containerd": config.runtime.ctr_binary,
        "docker": config.runtime.docker_binary,
        "systemd": config.runtime.systemctl_binary,
    }
    services = config.services if services is None else services
    return sorted({binaries[config.runtime_for(service)] for service in services})


def check_host(config: StackConfig, services=None) -> None:
    """Privilege and runtime binaries, honouring ``require_root``."""
    if config.require_root:
        require_root()
    require_binaries(runtime_binaries(config, services))


__all__ = ["check_host", "require_binaries", "require_paths", "require_root", "runtime_binaries"]

"""Docker adapter driving the ``docker`` CLI."""

from __future__ import annotations

import structlog

from ..config import ManagedService
from ..errors import RuntimeObservationError
from ..models import ObservedStatus
from .base import CommandRunner, RuntimeAdapter

logger = structlog.get_logger(__name__)

NOT_FOUND = ("no such container", "no such object", "no such image")

CONTAINER_STATUSES = {
    "created": ObservedStatus.CREATED,
    "running": ObservedStatus.RUNNING,
    "exited": ObservedStatus.STOPPED,
    "dead": ObservedStatus.STOPPED,
}


class DockerRuntime(RuntimeAdapter):
    kind = "docker"

    def __init__(self, binary: str = "docker", runner: CommandRunner | None = None):
        super().__init__(runner)
        self.binary = binary

    def inspect(self, service: ManagedService) -> ObservedStatus:
        result = self._query([self.binary, "inspect", "--type", "container", "--format", "{{.State.Status}}", service.name])
        if not result.ok:
            if result.mentions(NOT_FOUND):
                return ObservedStatus.ABSENT
            raise RuntimeObservationError(f"docker inspect {service.name} failed: {result.output}")
        state = result.stdout.strip().lower()
        status = CONTAINER_STATUSES.get(state)
        if status is None:
            # paused, restarting and removing have no stable counterpart
            raise RuntimeObservationError(f"container {service.name} in unsupported state {state!r}")
        return status

    def pull(self, service: ManagedService) -> None:
        if not service.image:
            return
        logger.info("Pulling image", service=service.name, image=service.image)
        self._act([self.binary, "pull", service.image])

    def remove_image(self, service: ManagedService) -> None:
        if not service.image:
            return
        self._act([self.binary, "rmi", service.image], tolerate=NOT_FOUND)
        logger.info("Removed image", service=service.name, image=service.image)

    def create(self, service: ManagedService) -> None:
        command = [self.binary, "create", "--name", service.name]
        if service.net_host:
            command.extend(["--network", "host"])
        for mount in service.mounts:
            suffix = ":ro" if mount.read_only else ""
            command.extend(["-v", f"{mount.source}:{mount.target}{suffix}"])
        for key, value in sorted(service.env.items()):
            command.extend(["-e", f"{key}={value}"])
        command.extend([service.image, *service.args])
        self._act(command)
        logger.info("Created container", service=service.name, image=service.image)

    def start(self, service: ManagedService) -> None:
        self._act([self.binary, "start", service.name])
        logger.info("Started container", service=service.name)

    def stop(self, service: ManagedService, force: bool = False) -> None:
        if force:
            self._act([self.binary, "kill", service.name], tolerate=NOT_FOUND + ("is not running",))
        else:
            self._act([self.binary, "stop", service.name], tolerate=NOT_FOUND)
        logger.info("Stopped container", service=service.name, force=force)

    def remove(self, service: ManagedService) -> None:
        self._act([self.binary, "rm", service.name], tolerate=NOT_FOUND)
        logger.info("Removed container", service=service.name)


__all__ = ["DockerRuntime"]

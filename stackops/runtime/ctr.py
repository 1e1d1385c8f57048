"""containerd adapter driving ``ctr -n <namespace>``."""

from __future__ import annotations

import structlog

from ..config import ManagedService
from ..errors import RuntimeObservationError
from ..models import ObservedStatus
from .base import CommandRunner, RuntimeAdapter

logger = structlog.get_logger(__name__)

NOT_FOUND = ("not found", "no such")

TASK_STATUSES = {
    "RUNNING": ObservedStatus.RUNNING,
    "STOPPED": ObservedStatus.STOPPED,
    "CREATED": ObservedStatus.CREATED,
}


class CtrRuntime(RuntimeAdapter):
    """Containers and tasks in one containerd namespace.

    A container without a task is reported as CREATED.
    """

    kind = "containerd"

    def __init__(self, namespace: str = "monitoring", binary: str = "ctr", runner: CommandRunner | None = None):
        super().__init__(runner)
        self.namespace = namespace
        self.binary = binary

    def _cmd(self, *args: str) -> list[str]:
        return [self.binary, "-n", self.namespace, *args]

    def inspect(self, service: ManagedService) -> ObservedStatus:
        info = self._query(self._cmd("container", "info", service.name))
        if not info.ok:
            if info.mentions(NOT_FOUND):
                return ObservedStatus.ABSENT
            raise RuntimeObservationError(f"container info {service.name} failed: {info.output}")

        tasks = self._query(self._cmd("task", "ls"))
        if not tasks.ok:
            raise RuntimeObservationError(f"task ls failed: {tasks.output}")
        return self._task_status(service.name, tasks.stdout)

    @staticmethod
    def _task_status(name: str, listing: str) -> ObservedStatus:
        # TASK  PID  STATUS
        for line in listing.splitlines()[1:]:
            fields = line.split()
            if not fields or fields[0] != name:
                continue
            if len(fields) < 3:
                raise RuntimeObservationError(f"unparseable task line for {name}: {line!r}")
            status = TASK_STATUSES.get(fields[-1].upper())
            if status is None:
                raise RuntimeObservationError(f"task {name} in unsupported status {fields[-1]}")
            return status
        return ObservedStatus.CREATED

    def _has_image(self, image: str) -> bool:
        result = self._query(self._cmd("images", "ls", "-q"))
        return result.ok and image in result.stdout.splitlines()

    def pull(self, service: ManagedService) -> None:
        if not service.image:
            return
        logger.info("Pulling image", service=service.name, image=service.image)
        self._act(self._cmd("images", "pull", service.image))

    def remove_image(self, service: ManagedService) -> None:
        if not service.image:
            return
        self._act(self._cmd("images", "rm", service.image), tolerate=NOT_FOUND)
        logger.info("Removed image", service=service.name, image=service.image)

    def create(self, service: ManagedService) -> None:
        if not self._has_image(service.image):
            self.pull(service)
        command = self._cmd("container", "create")
        if service.net_host:
            command.append("--net-host")
        for mount in service.mounts:
            options = "rbind:ro" if mount.read_only else "rbind:rw"
            command.extend(["--mount", f"type=bind,src={mount.source},dst={mount.target},options={options}"])
        for key, value in sorted(service.env.items()):
            command.extend(["--env", f"{key}={value}"])
        command.extend([service.image, service.name, *service.args])
        self._act(command)
        logger.info("Created container", service=service.name, image=service.image)

    def start(self, service: ManagedService) -> None:
        # an exited task must be deleted before a new one can start
        self._act(self._cmd("task", "delete", service.name), tolerate=NOT_FOUND)
        self._act(self._cmd("task", "start", "--detach", service.name))
        logger.info("Started task", service=service.name)

    def stop(self, service: ManagedService, force: bool = False) -> None:
        signal = "SIGKILL" if force else "SIGTERM"
        self._act(
            self._cmd("task", "kill", "--signal", signal, service.name),
            tolerate=NOT_FOUND + ("process already finished",),
        )
        logger.info("Signalled task", service=service.name, signal=signal)

    def remove(self, service: ManagedService) -> None:
        self._act(self._cmd("task", "delete", service.name), tolerate=NOT_FOUND)
        self._act(self._cmd("container", "rm", service.name), tolerate=NOT_FOUND)
        logger.info("Removed container", service=service.name)


__all__ = ["CtrRuntime"]

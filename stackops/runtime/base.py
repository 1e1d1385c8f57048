"""Runtime adapter interface and the command runner adapters share."""

from __future__ import annotations

import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

import structlog

from ..config import ManagedService
from ..errors import RuntimeObservationError, TransitionError
from ..models import Action, ObservedStatus, Verb

logger = structlog.get_logger(__name__)

# stderr fragments meaning the runtime itself cannot be reached
UNREACHABLE_MARKERS = (
    "connection refused",
    "failed to dial",
    "cannot connect",
    "failed to connect to bus",
    "is the docker daemon running",
    "error while dialing",
)


@dataclass
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}".strip()

    def mentions(self, fragments: Iterable[str]) -> bool:
        text = self.output.lower()
        return any(fragment in text for fragment in fragments)


class CommandRunner:
    """Runs external commands with an explicit timeout.

    Raises ``subprocess.TimeoutExpired`` on timeout and ``OSError`` when the
    binary cannot be executed; a non-zero exit is returned, not raised.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def run(self, command: list[str], input: str | None = None) -> CommandResult:
        logger.debug("Running command", command=" ".join(command))
        result = subprocess.run(
            command,
            input=input,
            capture_output=True,
            text=True,
            timeout=self.timeout,
            check=False,
        )
        return CommandResult(
            command=list(command),
            returncode=result.returncode,
            stdout=result.stdout.strip(),
            stderr=result.stderr.strip(),
        )


class RuntimeAdapter(ABC):
    """Drives one kind of runtime (containerd, docker, systemd).

    ``inspect`` never raises for a missing unit; it raises
    ``RuntimeObservationError`` only when the runtime cannot answer.
    Lifecycle calls raise ``TransitionError`` when the runtime rejects them.
    """

    kind = "abstract"

    def __init__(self, runner: CommandRunner | None = None):
        self.runner = runner or CommandRunner()

    @abstractmethod
    def inspect(self, service: ManagedService) -> ObservedStatus:
        ...

    @abstractmethod
    def create(self, service: ManagedService) -> None:
        ...

    @abstractmethod
    def start(self, service: ManagedService) -> None:
        ...

    @abstractmethod
    def stop(self, service: ManagedService, force: bool = False) -> None:
        ...

    @abstractmethod
    def remove(self, service: ManagedService) -> None:
        ...

    def pull(self, service: ManagedService) -> None:
        """Fetch the service's image; runtimes without images do nothing."""

    def remove_image(self, service: ManagedService) -> None:
        """Delete the service's image; runtimes without images do nothing."""

    def execute(self, action: Action, service: ManagedService) -> None:
        if action.verb is Verb.CREATE:
            self.create(service)
        elif action.verb is Verb.START:
            self.start(service)
        elif action.verb is Verb.STOP:
            self.stop(service, force=action.force)
        elif action.verb is Verb.REMOVE:
            self.remove(service)
        else:
            raise TransitionError(f"unsupported verb {action.verb!r}")

    def _query(self, command: list[str]) -> CommandResult:
        """Run a read-only command; runtime failures become observation errors."""
        try:
            result = self.runner.run(command)
        except subprocess.TimeoutExpired as e:
            raise RuntimeObservationError(f"{self.kind} query timed out after {e.timeout}s") from e
        except OSError as e:
            raise RuntimeObservationError(f"{self.kind} unavailable: {e}") from e
        if not result.ok and result.mentions(UNREACHABLE_MARKERS):
            raise RuntimeObservationError(f"{self.kind} unreachable: {result.output}")
        return result

    def _act(self, command: list[str], tolerate: Iterable[str] = ()) -> CommandResult:
        """Run a mutating command; failures not matching ``tolerate`` raise."""
        try:
            result = self.runner.run(command)
        except subprocess.TimeoutExpired as e:
            raise TransitionError(f"'{' '.join(command)}' timed out after {e.timeout}s") from e
        except OSError as e:
            raise TransitionError(f"'{' '.join(command)}' could not run: {e}") from e
        if result.ok:
            return result
        tolerate = tuple(tolerate)
        if tolerate and result.mentions(tolerate):
            logger.debug("Tolerated command failure", command=" ".join(command), output=result.output)
            return result
        raise TransitionError(f"'{' '.join(command)}' failed ({result.returncode}): {result.output}")


__all__ = ["CommandResult", "CommandRunner", "RuntimeAdapter", "UNREACHABLE_MARKERS"]

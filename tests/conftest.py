from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest

from stackops.config import ManagedService, MountSpec, StackConfig
from stackops.errors import RuntimeObservationError, TransitionError
from stackops.models import ObservedStatus
from stackops.runtime.base import CommandResult, RuntimeAdapter


class FakeRuntime(RuntimeAdapter):
    """In-memory runtime with scriptable misbehaviour.

    ``ignore_start`` starts are accepted but leave the state unchanged;
    ``fail_verbs`` makes the next N calls of a verb raise TransitionError.
    """

    kind = "fake"

    def __init__(self, states: Optional[Dict[str, ObservedStatus]] = None):
        super().__init__()
        self.states: Dict[str, ObservedStatus] = dict(states or {})
        self.log: List[str] = []
        self.unreachable: set[str] = set()
        self.ignore_start = 0
        self.fail_verbs: Dict[str, int] = {}
        self.pulled: List[str] = []
        self.removed_images: List[str] = []

    def _record(self, entry: str, verb: str) -> None:
        self.log.append(entry)
        if self.fail_verbs.get(verb):
            self.fail_verbs[verb] -= 1
            raise TransitionError(f"scripted {verb} failure")

    def inspect(self, service: ManagedService) -> ObservedStatus:
        if service.name in self.unreachable:
            raise RuntimeObservationError("fake runtime unreachable")
        return self.states.get(service.name, ObservedStatus.ABSENT)

    def create(self, service: ManagedService) -> None:
        self._record(f"create:{service.name}", "create")
        if service.name in self.states:
            raise TransitionError(f"{service.name} already exists")
        self.states[service.name] = ObservedStatus.CREATED

    def start(self, service: ManagedService) -> None:
        self._record(f"start:{service.name}", "start")
        if self.ignore_start:
            self.ignore_start -= 1
            return
        self.states[service.name] = ObservedStatus.RUNNING

    def stop(self, service: ManagedService, force: bool = False) -> None:
        self._record(f"stop{'!' if force else ''}:{service.name}", "stop")
        if self.states.get(service.name) is ObservedStatus.RUNNING:
            self.states[service.name] = ObservedStatus.STOPPED

    def remove(self, service: ManagedService) -> None:
        self._record(f"remove:{service.name}", "remove")
        if self.states.get(service.name) is ObservedStatus.RUNNING:
            raise TransitionError(f"{service.name} is running")
        self.states.pop(service.name, None)

    def pull(self, service: ManagedService) -> None:
        self.pulled.append(service.name)

    def remove_image(self, service: ManagedService) -> None:
        self.removed_images.append(service.name)


class ScriptedRunner:
    """Stands in for CommandRunner; answers by longest matching command prefix."""

    def __init__(self, responses: Optional[Dict[Tuple[str, ...], Tuple[int, str, str]]] = None):
        self.responses = dict(responses or {})
        self.commands: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.raise_for: Dict[Tuple[str, ...], Exception] = {}

    def run(self, command: List[str], input: Optional[str] = None) -> CommandResult:
        self.commands.append(list(command))
        self.inputs.append(input)
        for prefix, error in self.raise_for.items():
            if tuple(command[: len(prefix)]) == prefix:
                raise error
        matches = [key for key in self.responses if tuple(command[: len(key)]) == key]
        if not matches:
            return CommandResult(command=list(command), returncode=0, stdout="", stderr="")
        returncode, stdout, stderr = self.responses[max(matches, key=len)]
        return CommandResult(command=list(command), returncode=returncode, stdout=stdout, stderr=stderr)


def ticking_clock(start: datetime = datetime(2024, 1, 1, 0, 0, 0), step: timedelta = timedelta(seconds=1)) -> Callable[[], datetime]:
    moments = {"now": start - step}

    def clock() -> datetime:
        moments["now"] += step
        return moments["now"]

    return clock


def _write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    return path


@pytest.fixture
def host(tmp_path: Path) -> Path:
    """A fake host filesystem with service data and config."""
    root = tmp_path / "host"
    _write(root / "data" / "prometheus" / "wal" / "00000001", "prometheus wal segment\n")
    _write(root / "data" / "prometheus" / "queries.active", "")
    _write(root / "data" / "grafana" / "grafana.db", "grafana sqlite bytes\n")
    _write(root / "etc" / "prometheus" / "prometheus.yml", "scrape_configs: []\n")
    _write(root / "etc" / "grafana" / "grafana.ini", "[server]\nhttp_port = 3000\n")
    _write(root / "etc" / "nginx" / "prometheus.conf", "server { listen 8080; }\n")
    return root


@pytest.fixture
def stack_config(tmp_path: Path, host: Path) -> StackConfig:
    return StackConfig(
        reports_directory=tmp_path / "reports",
        require_root=False,
        backup={"directory": tmp_path / "backups", "retention": 3, "compress": True, "prefix": "m"},
        reconcile={"settle_seconds": 0, "retry_backoff_seconds": 0},
        services=[
            ManagedService(name="agent", image="prom/node-exporter:latest"),
            ManagedService(
                name="metrics-collector",
                image="prom/prometheus:latest",
                data_path=host / "data" / "prometheus",
                config_paths=[host / "etc" / "prometheus"],
                mounts=[MountSpec(source=host / "data" / "prometheus", target="/prometheus")],
            ),
            ManagedService(
                name="dashboard",
                image="grafana/grafana:latest",
                data_path=host / "data" / "grafana",
                config_paths=[host / "etc" / "grafana" / "grafana.ini"],
            ),
            ManagedService(
                name="proxy",
                runtime="systemd",
                unit="nginx",
                config_paths=[host / "etc" / "nginx" / "prometheus.conf"],
            ),
        ],
    )


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def adapters(fake_runtime: FakeRuntime) -> Dict[str, RuntimeAdapter]:
    return {"containerd": fake_runtime, "docker": fake_runtime, "systemd": fake_runtime}

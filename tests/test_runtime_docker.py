from __future__ import annotations

from pathlib import Path

import pytest
from conftest import ScriptedRunner

from stackops.config import ManagedService, MountSpec
from stackops.errors import RuntimeObservationError
from stackops.models import ObservedStatus
from stackops.runtime.docker import DockerRuntime

COLLECTOR = ManagedService(
    name="metrics-collector",
    image="prom/prometheus:latest",
    mounts=[MountSpec(source=Path("/etc/prometheus"), target="/etc/prometheus", read_only=True)],
    args=["--config.file=/etc/prometheus/prometheus.yml"],
)


@pytest.mark.parametrize(
    ("state", "expected"),
    [
        ("running", ObservedStatus.RUNNING),
        ("created", ObservedStatus.CREATED),
        ("exited", ObservedStatus.STOPPED),
    ],
)
def test_container_state_mapping(state: str, expected: ObservedStatus) -> None:
    runner = ScriptedRunner({("docker", "inspect"): (0, f"{state}\n", "")})

    assert DockerRuntime(runner=runner).inspect(COLLECTOR) is expected


def test_missing_container_is_absent() -> None:
    runner = ScriptedRunner({("docker", "inspect"): (1, "", "Error: No such container: metrics-collector")})

    assert DockerRuntime(runner=runner).inspect(COLLECTOR) is ObservedStatus.ABSENT


def test_paused_container_is_ambiguous() -> None:
    runner = ScriptedRunner({("docker", "inspect"): (0, "paused", "")})

    with pytest.raises(RuntimeObservationError, match="paused"):
        DockerRuntime(runner=runner).inspect(COLLECTOR)


def test_daemon_down_is_an_observation_error() -> None:
    runner = ScriptedRunner({
        ("docker", "inspect"): (1, "", "Cannot connect to the Docker daemon at unix:///var/run/docker.sock."),
    })

    with pytest.raises(RuntimeObservationError, match="unreachable"):
        DockerRuntime(runner=runner).inspect(COLLECTOR)


def test_create_uses_host_network_and_read_only_mounts() -> None:
    runner = ScriptedRunner()

    DockerRuntime(runner=runner).create(COLLECTOR)

    assert runner.commands == [[
        "docker", "create", "--name", "metrics-collector", "--network", "host",
        "-v", "/etc/prometheus:/etc/prometheus:ro",
        "prom/prometheus:latest", "--config.file=/etc/prometheus/prometheus.yml",
    ]]


def test_kill_of_stopped_container_is_tolerated() -> None:
    runner = ScriptedRunner({("docker", "kill"): (1, "", "Error response from daemon: container abc is not running")})

    DockerRuntime(runner=runner).stop(COLLECTOR, force=True)

    assert runner.commands == [["docker", "kill", "metrics-collector"]]

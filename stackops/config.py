"""Configuration management for the monitoring stack operations."""

import os
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from .models import DesiredState

RUNTIME_KINDS = ("containerd", "docker", "systemd")
CONTAINER_RUNTIMES = ("containerd", "docker")


class MountSpec(BaseModel):
    """Bind mount from the host into a container."""
    source: Path
    target: str
    read_only: bool = False


class ManagedService(BaseModel):
    """A named unit under lifecycle control.

    Registered once from the static service table. Only ``desired_state``
    changes at runtime, and only through ``with_desired``.
    """
    name: str = Field(description="Unique service identifier")
    runtime: Optional[str] = Field(default=None, description="Runtime kind; falls back to runtime.default")
    image: Optional[str] = Field(default=None, description="Container image reference")
    unit: Optional[str] = Field(default=None, description="systemd unit name for systemd services")
    data_path: Optional[Path] = Field(default=None, description="Durable state directory")
    config_paths: List[Path] = Field(default_factory=list, description="Read-only configuration inputs")
    desired_state: DesiredState = Field(default=DesiredState.RUNNING)
    mounts: List[MountSpec] = Field(default_factory=list)
    env: Dict[str, str] = Field(default_factory=dict)
    net_host: bool = Field(default=True, description="Share the host network namespace")
    args: List[str] = Field(default_factory=list, description="Extra container command arguments")

    model_config = {"frozen": True}

    @field_validator("config_paths")
    @classmethod
    def _unique_basenames(cls, value: List[Path]) -> List[Path]:
        # snapshot members are keyed by basename
        names = [path.name for path in value]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"config paths share a file name: {', '.join(duplicates)}")
        return value

    @property
    def stateful(self) -> bool:
        """True when the service has data or config worth snapshotting."""
        return self.data_path is not None or bool(self.config_paths)

    @property
    def unit_name(self) -> str:
        unit = self.unit or self.name
        return unit if "." in unit else f"{unit}.service"

    def with_desired(self, desired: DesiredState) -> "ManagedService":
        return self.model_copy(update={"desired_state": desired})


class BackupConfig(BaseModel):
    """Snapshot store settings."""
    directory: Path = Field(default=Path("/root/monitoring-backups"), description="Backup store directory")
    retention: int = Field(default=7, description="Snapshots to keep; 0 keeps all")
    compress: bool = Field(default=True, description="Write compressed archives")
    prefix: str = Field(default="monitoring-backup", description="Snapshot name prefix")

    @field_validator("retention")
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retention must be a non-negative integer")
        return value

    @field_validator("prefix")
    @classmethod
    def _plain_prefix(cls, value: str) -> str:
        if not value or "/" in value or value.startswith("."):
            raise ValueError(f"invalid snapshot prefix: {value!r}")
        return value


class RuntimeConfig(BaseModel):
    """Container runtime access."""
    default: str = Field(default="containerd", description="Runtime kind for services without one")
    namespace: str = Field(default="monitoring", description="containerd namespace")
    ctr_binary: str = Field(default="ctr")
    docker_binary: str = Field(default="docker")
    systemctl_binary: str = Field(default="systemctl")
    command_timeout: float = Field(default=30.0, description="Seconds before a runtime call is abandoned")


class ReconcileConfig(BaseModel):
    """Reconciler timing."""
    settle_seconds: float = Field(default=2.0, description="Wait after actions before re-observing")
    retry_backoff_seconds: float = Field(default=5.0, description="Wait before the single retry")


class ScheduleConfig(BaseModel):
    """Recurring backup trigger."""
    expression: str = Field(default="0 2 * * *", description="Cron expression, passed through untouched")
    entry_point: Optional[str] = Field(default=None, description="Command that runs the backup")
    cron_log: Path = Field(default=Path("/var/log/monitoring-backup-cron.log"))


class HealthCheckSpec(BaseModel):
    """One HTTP probe against the running stack."""
    name: str
    url: str
    expect_status: List[int] = Field(default_factory=lambda: [200])
    timeout: float = 5.0


def default_services() -> List[ManagedService]:
    return [
        ManagedService(
            name="agent",
            image="docker.io/prom/node-exporter:latest",
        ),
        ManagedService(
            name="metrics-collector",
            image="docker.io/prom/prometheus:latest",
            data_path=Path("/data/prometheus"),
            config_paths=[Path("/etc/prometheus")],
            mounts=[
                MountSpec(source=Path("/etc/prometheus"), target="/etc/prometheus", read_only=True),
                MountSpec(source=Path("/data/prometheus"), target="/prometheus"),
            ],
        ),
        ManagedService(
            name="dashboard",
            image="docker.io/grafana/grafana:latest",
            data_path=Path("/data/grafana"),
            config_paths=[Path("/etc/grafana/grafana.ini")],
            mounts=[
                MountSpec(source=Path("/etc/grafana/grafana.ini"), target="/etc/grafana/grafana.ini", read_only=True),
                MountSpec(source=Path("/data/grafana"), target="/var/lib/grafana"),
            ],
        ),
        ManagedService(
            name="proxy",
            runtime="systemd",
            unit="nginx",
            config_paths=[Path("/etc/nginx/conf.d/prometheus.conf")],
        ),
    ]


def default_health_checks() -> List[HealthCheckSpec]:
    return [
        HealthCheckSpec(name="metrics-collector-api", url="http://localhost:9090/api/v1/status/config"),
        HealthCheckSpec(name="proxy-auth", url="http://localhost:8080/", expect_status=[401]),
        HealthCheckSpec(name="dashboard-health", url="http://localhost:3000/api/health", expect_status=[200, 401]),
    ]


class StackConfig(BaseModel):
    """Main configuration, built once per process and passed to every subsystem."""

    log_level: str = Field(default="INFO", description="Logging level")
    log_file: Optional[Path] = Field(default=None, description="Append log lines to this file")
    reports_directory: Path = Field(default=Path("reports"), description="Directory for operation reports")
    require_root: bool = Field(default=True, description="Refuse to run without root privileges")

    services: List[ManagedService] = Field(default_factory=default_services)
    backup: BackupConfig = Field(default_factory=BackupConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    reconcile: ReconcileConfig = Field(default_factory=ReconcileConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    health: List[HealthCheckSpec] = Field(default_factory=default_health_checks)

    @model_validator(mode="after")
    def _check_services(self) -> "StackConfig":
        if self.runtime.default not in RUNTIME_KINDS:
            raise ValueError(f"unknown runtime kind: {self.runtime.default}")
        seen = set()
        for service in self.services:
            if service.name in seen:
                raise ValueError(f"duplicate service name: {service.name}")
            seen.add(service.name)
            kind = self.runtime_for(service)
            if kind not in RUNTIME_KINDS:
                raise ValueError(f"service {service.name}: unknown runtime kind {kind}")
            if kind in CONTAINER_RUNTIMES and not service.image:
                raise ValueError(f"service {service.name}: container services need an image")
        return self

    def runtime_for(self, service: ManagedService) -> str:
        return service.runtime or self.runtime.default

    def service(self, name: str) -> ManagedService:
        for service in self.services:
            if service.name == name:
                return service
        raise KeyError(name)

    def select(self, names: Optional[List[str]] = None) -> List[ManagedService]:
        """Services in declared order, optionally limited to ``names``."""
        if not names:
            return list(self.services)
        unknown = [name for name in names if name not in {s.name for s in self.services}]
        if unknown:
            raise KeyError(", ".join(unknown))
        return [service for service in self.services if service.name in names]


def load_config(config_path: Optional[str] = None) -> StackConfig:
    """Load configuration from file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("STACKOPS_CONFIG", "config/stackops.yaml")

    config_data = {}

    if os.path.exists(config_path):
        with open(config_path, 'r') as f:
            config_data = yaml.safe_load(f) or {}

    backup = dict(config_data.get("backup") or {})
    runtime = dict(config_data.get("runtime") or {})

    env_overrides = [
        (backup, "directory", os.getenv("STACKOPS_BACKUP_DIR")),
        (backup, "retention", os.getenv("STACKOPS_RETENTION")),
        (backup, "compress", os.getenv("STACKOPS_COMPRESS")),
        (runtime, "namespace", os.getenv("STACKOPS_NAMESPACE")),
        (runtime, "default", os.getenv("STACKOPS_RUNTIME")),
    ]
    for section, key, value in env_overrides:
        if value is None:
            continue
        if key == "retention":
            value = int(value)
        elif key == "compress":
            value = value.lower() in ("true", "1", "yes")
        section[key] = value

    config_data["backup"] = backup
    config_data["runtime"] = runtime
    if os.getenv("LOG_LEVEL"):
        config_data["log_level"] = os.getenv("LOG_LEVEL")

    return StackConfig(**config_data)

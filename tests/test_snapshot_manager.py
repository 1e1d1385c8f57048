from __future__ import annotations

import json
import tarfile
from datetime import datetime
from pathlib import Path

import pytest
from conftest import ticking_clock

from stackops.config import ManagedService, StackConfig
from stackops.errors import PreconditionError, SnapshotIOError
from stackops.snapshot import manager as manager_module
from stackops.snapshot.manager import SnapshotManager
from stackops.snapshot.retention import list_snapshots


def _store(config: StackConfig) -> Path:
    return Path(config.backup.directory)


def test_compressed_snapshot_is_one_bundle(stack_config: StackConfig) -> None:
    store = _store(stack_config)
    manager = SnapshotManager("m", clock=ticking_clock())

    snapshot = manager.create_snapshot(stack_config.services, store, compress=True)

    assert snapshot.name == "m-20240101000000.tar.gz"
    assert [p.name for p in store.iterdir()] == [snapshot.name]
    assert snapshot.size_bytes == snapshot.path.stat().st_size
    with tarfile.open(snapshot.path, "r:gz") as bundle:
        names = set(bundle.getnames())
        manifest = json.load(bundle.extractfile("m-20240101000000/manifest.json"))
    assert "m-20240101000000/metrics-collector-data.tar.gz" in names
    assert "m-20240101000000/dashboard-config.tar.gz" in names
    assert "m-20240101000000/proxy-config.tar.gz" in names
    assert manifest["id"] == "20240101000000"
    assert manifest["compressed"] is True
    assert set(manifest["services"]) == {"agent", "metrics-collector", "dashboard", "proxy"}
    assert manifest["services"]["agent"] == []
    assert all(member["sha256"] for member in manifest["services"]["dashboard"])


def test_plain_snapshot_mirrors_service_layout(stack_config: StackConfig, host: Path) -> None:
    store = _store(stack_config)
    manager = SnapshotManager("m", clock=ticking_clock())

    snapshot = manager.create_snapshot(stack_config.services, store, compress=False)

    root = store / "m-20240101000000"
    assert snapshot.path == root
    assert (root / "metrics-collector" / "wal" / "00000001").read_text() == "prometheus wal segment\n"
    assert (root / "dashboard" / "grafana.db").exists()
    assert (root / "config" / "metrics-collector" / "prometheus" / "prometheus.yml").exists()
    assert (root / "config" / "dashboard" / "grafana.ini").read_text() == (host / "etc" / "grafana" / "grafana.ini").read_text()
    assert (root / "config" / "proxy" / "prometheus.conf").exists()
    assert (root / "manifest.json").exists()
    assert [m.path for m in snapshot.entries["dashboard"]] == ["dashboard", "config/dashboard/grafana.ini"]


def test_missing_data_path_fails_before_writing(stack_config: StackConfig, tmp_path: Path) -> None:
    services = list(stack_config.services)
    services[2] = services[2].model_copy(update={"data_path": tmp_path / "nowhere"})
    store = _store(stack_config)

    with pytest.raises(PreconditionError, match="dashboard"):
        SnapshotManager("m").create_snapshot(services, store, compress=True)

    assert not store.exists() or list(store.iterdir()) == []


@pytest.mark.parametrize("compress", [True, False])
def test_failure_after_first_service_leaves_nothing(
    stack_config: StackConfig, monkeypatch: pytest.MonkeyPatch, compress: bool
) -> None:
    real_tar = manager_module.write_tar_member
    real_copy = manager_module.copy_member

    def failing_tar(sources, dest):
        if dest.name.startswith("dashboard-data"):
            raise OSError("No space left on device")
        return real_tar(sources, dest)

    def failing_copy(source, dest):
        if dest.name == "dashboard":
            raise OSError("No space left on device")
        return real_copy(source, dest)

    monkeypatch.setattr(manager_module, "write_tar_member", failing_tar)
    monkeypatch.setattr(manager_module, "copy_member", failing_copy)
    store = _store(stack_config)

    with pytest.raises(SnapshotIOError) as excinfo:
        SnapshotManager("m", clock=ticking_clock()).create_snapshot(stack_config.services, store, compress=compress)

    assert list(excinfo.value.failures) == ["dashboard/data"]
    assert list(store.iterdir()) == []


def test_every_failing_member_is_reported(stack_config: StackConfig, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken(sources, dest):
        raise OSError(f"cannot write {dest.name}")

    monkeypatch.setattr(manager_module, "write_tar_member", broken)

    with pytest.raises(SnapshotIOError) as excinfo:
        SnapshotManager("m").create_snapshot(stack_config.services, _store(stack_config), compress=True)

    assert set(excinfo.value.failures) == {
        "metrics-collector/data",
        "metrics-collector/config",
        "dashboard/data",
        "dashboard/config",
        "proxy/config",
    }


def test_existing_snapshots_are_untouched_by_creation(stack_config: StackConfig) -> None:
    store = _store(stack_config)
    manager = SnapshotManager("m", clock=ticking_clock())
    first = manager.create_snapshot(stack_config.services, store, compress=True)
    before = first.path.read_bytes()

    manager.create_snapshot(stack_config.services, store, compress=False)

    assert first.path.read_bytes() == before
    assert [item.name for item in list_snapshots(store, "m")] == ["m-20240101000001", "m-20240101000000.tar.gz"]


def test_id_collision_is_a_precondition_error(stack_config: StackConfig) -> None:
    store = _store(stack_config)
    manager = SnapshotManager("m", clock=lambda: datetime(2024, 1, 1, 12, 0, 0))
    manager.create_snapshot(stack_config.services, store, compress=True)

    with pytest.raises(PreconditionError, match="already exists"):
        manager.create_snapshot(stack_config.services, store, compress=False)
    assert len(list_snapshots(store, "m")) == 1


def test_clock_going_backwards_is_refused(stack_config: StackConfig) -> None:
    store = _store(stack_config)
    SnapshotManager("m", clock=lambda: datetime(2024, 6, 1)).create_snapshot(stack_config.services, store, True)

    with pytest.raises(PreconditionError, match="older"):
        SnapshotManager("m", clock=lambda: datetime(2024, 5, 1)).create_snapshot(stack_config.services, store, True)


def test_leftover_partials_are_swept(stack_config: StackConfig) -> None:
    store = _store(stack_config)
    store.mkdir(parents=True)
    leftover = store / ".m-20231231000000.partial"
    leftover.mkdir()
    (leftover / "junk").write_text("x")

    SnapshotManager("m", clock=ticking_clock()).create_snapshot(stack_config.services, store, compress=True)

    assert not leftover.exists()


def test_run_backup_applies_retention(stack_config: StackConfig) -> None:
    store = _store(stack_config)
    manager = SnapshotManager("m", clock=ticking_clock())

    results = [manager.run_backup(stack_config.services, store, True, keep_count=2) for _ in range(3)]

    assert results[-1].prune.removed == ["m-20240101000000"]
    assert [item.id for item in list_snapshots(store, "m")] == ["20240101000002", "20240101000001"]


def test_stateless_services_produce_empty_entries(tmp_path: Path) -> None:
    services = [ManagedService(name="agent", image="prom/node-exporter")]

    snapshot = SnapshotManager("m", clock=ticking_clock()).create_snapshot(services, tmp_path / "store", False)

    assert snapshot.entries == {"agent": []}
    assert (snapshot.path / "manifest.json").exists()

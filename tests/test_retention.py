from __future__ import annotations

from pathlib import Path

import pytest

from stackops.snapshot import retention
from stackops.snapshot.retention import find_snapshot, list_snapshots, prune


def _make_snapshots(store: Path, ids: list[str], prefix: str = "m") -> None:
    store.mkdir(parents=True, exist_ok=True)
    for index, snap_id in enumerate(ids):
        if index % 2:
            (store / f"{prefix}-{snap_id}").mkdir()
            (store / f"{prefix}-{snap_id}" / "manifest.json").write_text("{}")
        else:
            (store / f"{prefix}-{snap_id}.tar.gz").write_bytes(b"archive")


def test_prune_keeps_two_newest(tmp_path: Path) -> None:
    store = tmp_path / "store"
    store.mkdir()
    for snap_id in ("20240101000000", "20240102000000", "20240103000000"):
        (store / f"m-{snap_id}").mkdir()

    result = prune(store, keep_count=2, prefix="m")

    assert result.removed == ["m-20240101000000"]
    assert result.kept == ["m-20240103000000", "m-20240102000000"]
    assert sorted(p.name for p in store.iterdir()) == ["m-20240102000000", "m-20240103000000"]


def test_keep_count_zero_keeps_everything(tmp_path: Path) -> None:
    store = tmp_path / "store"
    _make_snapshots(store, [f"2024010{day}000000" for day in range(1, 6)])

    result = prune(store, keep_count=0, prefix="m")

    assert result.removed == []
    assert len(list_snapshots(store, "m")) == 5


@pytest.mark.parametrize("count", [1, 2, 5, 6])
@pytest.mark.parametrize("keep", [1, 3])
def test_prune_leaves_the_newest_min_n_k(tmp_path: Path, count: int, keep: int) -> None:
    store = tmp_path / "store"
    ids = [f"202401{day:02d}120000" for day in range(1, count + 1)]
    _make_snapshots(store, ids)

    result = prune(store, keep_count=keep, prefix="m")

    remaining = [item.id for item in list_snapshots(store, "m")]
    assert remaining == sorted(ids, reverse=True)[: min(count, keep)]
    assert len(result.removed) == max(0, count - keep)
    assert result.ok


def test_prune_ignores_foreign_and_staging_entries(tmp_path: Path) -> None:
    store = tmp_path / "store"
    _make_snapshots(store, ["20240101000000", "20240102000000"])
    (store / "notes.txt").write_text("keep me")
    (store / ".m-20230101000000.partial").mkdir()
    (store / "other-20230101000000.tar.gz").write_bytes(b"x")

    prune(store, keep_count=1, prefix="m")

    names = sorted(p.name for p in store.iterdir())
    assert names == [".m-20230101000000.partial", "m-20240102000000", "notes.txt", "other-20230101000000.tar.gz"]


def test_already_removed_snapshot_counts_as_removed(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = tmp_path / "store"
    _make_snapshots(store, ["20240101000000", "20240102000000"])
    monkeypatch.setattr(retention, "remove_path", lambda path: False)

    result = prune(store, keep_count=1, prefix="m")

    assert result.removed == ["m-20240101000000"]
    assert result.errors == {}


def test_removal_error_is_reported_and_pruning_continues(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = tmp_path / "store"
    _make_snapshots(store, ["20240101000000", "20240102000000", "20240103000000"])
    real_remove = retention.remove_path

    def flaky_remove(path: Path) -> bool:
        if "20240101" in path.name:
            raise PermissionError("read-only file system")
        return real_remove(path)

    monkeypatch.setattr(retention, "remove_path", flaky_remove)

    result = prune(store, keep_count=1, prefix="m")

    assert result.removed == ["m-20240102000000"]
    assert "m-20240101000000" in result.errors
    assert not result.ok


def test_list_and_find_across_layouts(tmp_path: Path) -> None:
    store = tmp_path / "store"
    _make_snapshots(store, ["20240101000000", "20240102000000", "20240103000000"])

    items = list_snapshots(store, "m")

    assert [item.id for item in items] == ["20240103000000", "20240102000000", "20240101000000"]
    assert [item.compressed for item in items] == [True, False, True]
    assert find_snapshot(store, "m", "20240102000000").name == "m-20240102000000"
    assert find_snapshot(store, "m", "m-20240103000000").name == "m-20240103000000.tar.gz"
    assert find_snapshot(store, "m", "20990101000000") is None
    assert list_snapshots(tmp_path / "missing", "m") == []

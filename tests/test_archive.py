from __future__ import annotations

import io
import tarfile
from datetime import datetime
from pathlib import Path

import pytest

from stackops.snapshot.archive import (
    extract_archive,
    parse_snapshot_name,
    remove_path,
    snapshot_id,
    snapshot_name,
    staging_name,
    write_tar_member,
)


def test_snapshot_names_are_fixed_width_and_parseable() -> None:
    snap_id = snapshot_id(datetime(2024, 3, 5, 7, 8, 9))
    assert snap_id == "20240305070809"
    assert snapshot_name("m", snap_id, compressed=True) == "m-20240305070809.tar.gz"
    assert snapshot_name("m", snap_id, compressed=False) == "m-20240305070809"
    assert parse_snapshot_name("m", "m-20240305070809.tar.gz") == ("20240305070809", True)
    assert parse_snapshot_name("m", "m-20240305070809") == ("20240305070809", False)


@pytest.mark.parametrize(
    "name",
    [
        "other-20240101000000",
        "m-2024010100000",
        "m-20240101000000.zip",
        staging_name("m-20240101000000"),
        "m-20240101000000.tar.gz.partial",
    ],
)
def test_foreign_and_staging_names_are_ignored(name: str) -> None:
    assert parse_snapshot_name("m", name) is None


def test_write_tar_member_is_deterministic(tmp_path: Path) -> None:
    source = tmp_path / "data"
    (source / "sub").mkdir(parents=True)
    (source / "b.txt").write_text("b")
    (source / "sub" / "a.txt").write_text("a")

    first = tmp_path / "one.tar.gz"
    second = tmp_path / "two.tar.gz"
    write_tar_member([(source, "data")], first)
    write_tar_member([(source, "data")], second)

    assert first.read_bytes() == second.read_bytes()
    with tarfile.open(first, "r:gz") as archive:
        assert archive.getnames() == ["data", "data/b.txt", "data/sub", "data/sub/a.txt"]


def test_extract_archive_rejects_escaping_members(tmp_path: Path) -> None:
    archive_path = tmp_path / "evil.tar.gz"
    payload = b"owned"
    with tarfile.open(archive_path, "w:gz") as archive:
        info = tarfile.TarInfo("../outside.txt")
        info.size = len(payload)
        archive.addfile(info, io.BytesIO(payload))

    with pytest.raises(tarfile.TarError):
        extract_archive(archive_path, tmp_path / "target")
    assert not (tmp_path / "outside.txt").exists()


def test_extract_archive_restores_tree(tmp_path: Path) -> None:
    source = tmp_path / "grafana"
    source.mkdir()
    (source / "grafana.db").write_text("db")
    archive_path = tmp_path / "g.tar.gz"
    write_tar_member([(source, "dashboard")], archive_path)

    names = extract_archive(archive_path, tmp_path / "out")

    assert "dashboard/grafana.db" in names
    assert (tmp_path / "out" / "dashboard" / "grafana.db").read_text() == "db"


def test_remove_path_reports_already_gone(tmp_path: Path) -> None:
    target = tmp_path / "snap"
    target.mkdir()
    (target / "file").write_text("x")

    assert remove_path(target) is True
    assert remove_path(target) is False

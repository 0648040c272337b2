import json
from pathlib import Path
from typing import Any

import pytest

from autopilot.errors import SnapshotError
from autopilot.execution import SnapshotStore


def test_snapshot_and_rollback_restore_previous_content(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    target = tmp_path / "app.cfg"
    target.write_text("debug=0\n", encoding="utf-8")
    store = SnapshotStore(".snapshots", base_directory=tmp_path, event_hook=events.append)

    snapshot = store.snapshot("app.cfg", reason="task-1:step-0")
    target.write_text("debug=1\n", encoding="utf-8")
    restored = store.rollback(snapshot.id)

    assert target.read_text(encoding="utf-8") == "debug=0\n"
    assert restored.id == snapshot.id
    assert snapshot.path == str(target.resolve())
    assert snapshot.reason == "task-1:step-0"
    assert snapshot.size == len("debug=0\n")
    assert [event["event"] for event in events] == ["snapshot_created", "snapshot_restored"]


def test_missing_or_directory_paths_are_not_snapshotted(tmp_path: Path) -> None:
    store = SnapshotStore(persist=False, base_directory=tmp_path)
    (tmp_path / "folder").mkdir()

    assert store.snapshot("nope.txt") is None
    assert store.snapshot("folder") is None
    assert store.list() == []


def test_snapshots_survive_a_new_store_instance(tmp_path: Path) -> None:
    target = tmp_path / "notes.txt"
    target.write_text("v1", encoding="utf-8")
    first = SnapshotStore(".snapshots", base_directory=tmp_path)
    snapshot = first.snapshot(target)
    target.write_text("v2", encoding="utf-8")

    second = SnapshotStore(".snapshots", base_directory=tmp_path)
    second.rollback(snapshot.id)

    assert target.read_text(encoding="utf-8") == "v1"
    assert [item.id for item in second.list()] == [snapshot.id]
    index = json.loads((tmp_path / ".snapshots" / "index.json").read_text(encoding="utf-8"))
    assert index[0]["hash"] == snapshot.hash
    assert (tmp_path / ".snapshots" / "objects" / snapshot.hash).exists()


def test_identical_contents_share_one_object(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("same", encoding="utf-8")
    (tmp_path / "b.txt").write_text("same", encoding="utf-8")
    store = SnapshotStore("snaps", base_directory=tmp_path)

    first = store.snapshot("a.txt")
    second = store.snapshot("b.txt")

    assert first.hash == second.hash
    assert len(list((tmp_path / "snaps" / "objects").iterdir())) == 1


def test_latest_for_returns_most_recent_snapshot(tmp_path: Path) -> None:
    target = tmp_path / "a.txt"
    store = SnapshotStore(persist=False, base_directory=tmp_path)
    target.write_text("one", encoding="utf-8")
    store.snapshot(target)
    target.write_text("two", encoding="utf-8")
    latest = store.snapshot(target)

    assert store.latest_for("a.txt").id == latest.id
    assert store.latest_for("a.txt").content == "two"
    assert store.latest_for("other.txt") is None


def test_rollback_restores_deleted_files_and_binary_content(tmp_path: Path) -> None:
    target = tmp_path / "data" / "blob.bin"
    target.parent.mkdir()
    target.write_bytes(b"\xff\x00raw")
    store = SnapshotStore(".snapshots", base_directory=tmp_path)
    snapshot = store.snapshot(target)

    target.unlink()
    target.parent.rmdir()
    store.rollback(snapshot.id)

    assert target.read_bytes() == b"\xff\x00raw"


def test_unknown_or_corrupt_snapshots_raise(tmp_path: Path) -> None:
    target = tmp_path / "a.txt"
    target.write_text("original", encoding="utf-8")
    store = SnapshotStore(".snapshots", base_directory=tmp_path)
    snapshot = store.snapshot(target)

    with pytest.raises(SnapshotError, match="Unknown snapshot"):
        store.rollback("snap-missing")

    (tmp_path / ".snapshots" / "objects" / snapshot.hash).write_text("tampered", encoding="utf-8")
    reloaded = SnapshotStore(".snapshots", base_directory=tmp_path)
    with pytest.raises(SnapshotError, match="corrupt"):
        reloaded.rollback(snapshot.id)

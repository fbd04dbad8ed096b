import json
from pathlib import Path

import pytest

from taskpilot.errors import StateStoreError
from taskpilot.state import TaskStore


def test_snapshot_roundtrip(tmp_path: Path) -> None:
    store = TaskStore(tmp_path / "state")
    snapshot = {
        "task": {"task_id": "t1", "goal": "build auth", "created_at": "2026-01-01T00:00:00"},
        "conversation": {"turns": []},
        "monitor": {"threshold": 3},
    }

    store.save_snapshot("t1", snapshot)

    assert store.exists("t1")
    assert store.load_snapshot("t1") == snapshot


def test_envelope_wraps_legacy_payload(tmp_path: Path) -> None:
    store = TaskStore(tmp_path)
    task_file = tmp_path / "tasks" / "t1" / "task.json"
    task_file.parent.mkdir(parents=True)
    task_file.write_text(json.dumps({"legacy": True}), encoding="utf-8")

    assert store.get_json("t1", "task") == {"legacy": True}

    store.set_json("t1", "task", {"legacy": False})
    on_disk = json.loads(task_file.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == TaskStore.SCHEMA_VERSION
    assert on_disk["data"] == {"legacy": False}


def test_snapshot_save_checks_task_revision(tmp_path: Path) -> None:
    store = TaskStore(tmp_path)
    snapshot = {"task": {"task_id": "t1"}, "conversation": {"turns": []}, "monitor": {}}
    first = store.save_snapshot("t1", snapshot)
    second = store.save_snapshot("t1", snapshot, expected_revision=first)

    assert second == first + 1
    assert store.task_revision("t1") == second

    stale = {**snapshot, "conversation": {"turns": [{"kind": "request"}]}}
    with pytest.raises(StateStoreError, match="Concurrent"):
        store.save_snapshot("t1", stale, expected_revision=first)
    assert store.get_json("t1", "conversation") == {"turns": []}


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = TaskStore(tmp_path)
    store.set_json("t1", "task", {"goal": "a"})

    with pytest.raises(StateStoreError, match="Concurrent"):
        store.set_json("t1", "task", {"goal": "b"}, expected_revision=0)


def test_newer_schema_and_corrupt_files_are_errors(tmp_path: Path) -> None:
    store = TaskStore(tmp_path)
    task_file = tmp_path / "tasks" / "t1" / "task.json"
    task_file.parent.mkdir(parents=True)

    task_file.write_text(
        json.dumps({"schema_version": 99, "revision": 1, "data": {}}), encoding="utf-8"
    )
    with pytest.raises(StateStoreError, match="newer"):
        store.get_json("t1", "task")

    task_file.write_text("{not json", encoding="utf-8")
    with pytest.raises(StateStoreError, match="Corrupt"):
        store.get_json("t1", "task")


@pytest.mark.parametrize("task_id", ["", "../escape", ".hidden"])
def test_invalid_task_ids_are_rejected(tmp_path: Path, task_id: str) -> None:
    with pytest.raises(StateStoreError):
        TaskStore(tmp_path).task_dir(task_id)


def test_missing_task_cannot_be_loaded(tmp_path: Path) -> None:
    with pytest.raises(StateStoreError, match="No saved task"):
        TaskStore(tmp_path).load_snapshot("ghost")


def test_list_tasks_orders_by_creation(tmp_path: Path) -> None:
    store = TaskStore(tmp_path)
    store.set_json("b", "task", {"task_id": "b", "created_at": "2026-01-02T00:00:00"})
    store.set_json("a", "task", {"task_id": "a", "created_at": "2026-01-03T00:00:00"})
    store.set_json("c", "conversation", {"turns": []})

    assert [record["task_id"] for record in store.list_tasks()] == ["b", "a"]


def test_backend_events_keep_most_recent(tmp_path: Path) -> None:
    store = TaskStore(tmp_path)
    for attempt in range(5):
        store.record_backend_event({"event": "backend_retry", "attempt": attempt}, keep=3)

    events = store.backend_events()

    assert [event["attempt"] for event in events] == [2, 3, 4]
    assert all("at" in event for event in events)

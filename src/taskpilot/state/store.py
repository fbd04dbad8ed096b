from __future__ import annotations

import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from taskpilot.errors import StateStoreError


class TaskStore:
    """Versioned JSON envelopes for resumable tasks, one directory per task."""

    NAMESPACES = {"task", "conversation", "monitor"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.tasks_dir = self.state_dir / "tasks"
        self.tasks_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in TaskStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def task_dir(self, task_id: str) -> Path:
        if not task_id or "/" in task_id or task_id.startswith("."):
            raise StateStoreError(f"Invalid task id: {task_id!r}")
        return self.tasks_dir / task_id

    def _file(self, task_id: str, namespace: str) -> Path:
        return self.task_dir(task_id) / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, task_id: str, timeout_seconds: float = 3.0) -> Iterator[None]:
        lock_file = self.task_dir(task_id) / ".lock"
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError(
                        f"Timed out waiting for state lock of {task_id}."
                    ) from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, task_id: str, namespace: str) -> Any:
        path = self._file(task_id, namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Corrupt state file: {path}") from exc

    def _write_raw_json(self, task_id: str, namespace: str, payload: Any) -> None:
        path = self._file(task_id, namespace)
        temp_path = path.with_suffix(".tmp")
        temp_path.write_text(
            json.dumps(payload, ensure_ascii=False, separators=(",", ":")), encoding="utf-8"
        )
        os.replace(temp_path, path)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            schema_version = int(raw_payload.get("schema_version") or self.SCHEMA_VERSION)
            if schema_version > self.SCHEMA_VERSION:
                raise StateStoreError(
                    f"State schema {schema_version} is newer than supported {self.SCHEMA_VERSION}."
                )
            return {
                "schema_version": schema_version,
                "revision": int(raw_payload.get("revision") or 0),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": self._utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(
        self, task_id: str, namespace: str, default: Any | None = None
    ) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(task_id, namespace), default_value)

    def get_json(self, task_id: str, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(task_id, namespace, default=default).get("data")

    def set_json(
        self,
        task_id: str,
        namespace: str,
        data: Any,
        expected_revision: int | None = None,
    ) -> int:
        self._validate_namespace(namespace)
        with self._state_lock(task_id):
            current = self.get_envelope(task_id, namespace, default={})
            current_revision = int(current.get("revision", 0))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for {task_id}/{namespace}."
                )
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            self._write_raw_json(task_id, namespace, envelope)
            return current_revision + 1

    def exists(self, task_id: str) -> bool:
        return self._file(task_id, "task").exists()

    def task_revision(self, task_id: str) -> int:
        return int(self.get_envelope(task_id, "task").get("revision", 0))

    def save_snapshot(
        self,
        task_id: str,
        snapshot: dict[str, Any],
        expected_revision: int | None = None,
    ) -> int:
        """Persist the task record, its conversation and monitor state.

        ``expected_revision`` is the task record revision the caller last saw; a
        mismatch means another process drives the same task and nothing is written.
        """
        if expected_revision is not None and self.task_revision(task_id) != expected_revision:
            raise StateStoreError(f"Concurrent state update detected for {task_id}/task.")
        for namespace in ("conversation", "monitor"):
            if namespace in snapshot:
                self.set_json(task_id, namespace, snapshot[namespace])
        return self.set_json(
            task_id, "task", snapshot["task"], expected_revision=expected_revision
        )

    def load_snapshot(self, task_id: str) -> dict[str, Any]:
        if not self.exists(task_id):
            raise StateStoreError(f"No saved task with id {task_id}.")
        return {
            "task": self.get_json(task_id, "task"),
            "conversation": self.get_json(task_id, "conversation", default={"turns": []}),
            "monitor": self.get_json(task_id, "monitor"),
        }

    def list_tasks(self) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        for path in sorted(self.tasks_dir.iterdir()):
            if not path.is_dir() or not (path / "task.json").exists():
                continue
            record = self.get_json(path.name, "task")
            if isinstance(record, dict):
                records.append(record)
        records.sort(key=lambda item: str(item.get("created_at", "")))
        return records

    def record_backend_event(self, event: dict[str, Any], *, keep: int = 200) -> None:
        """Keep the most recent backend retry/failover events for ``status``."""
        path = self.state_dir / "backend_events.json"
        events: list[Any] = []
        if path.exists():
            try:
                loaded = json.loads(path.read_text(encoding="utf-8"))
            except json.JSONDecodeError:
                loaded = []
            events = loaded if isinstance(loaded, list) else []
        payload = dict(event)
        payload["at"] = self._utcnow_iso()
        events.append(payload)
        temp_path = path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(events[-keep:], ensure_ascii=False), encoding="utf-8")
        os.replace(temp_path, path)

    def backend_events(self) -> list[dict[str, Any]]:
        path = self.state_dir / "backend_events.json"
        if not path.exists():
            return []
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Corrupt state file: {path}") from exc
        if not isinstance(loaded, list):
            return []
        return [item for item in loaded if isinstance(item, dict)]

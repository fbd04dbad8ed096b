from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from taskpilot.errors import InvariantViolation

LOGGER = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    AWAITING_TOOL_RESULT = "awaiting_tool_result"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = {TaskState.COMPLETED, TaskState.ABORTED, TaskState.FAILED}

_ACTIVE = {TaskState.RUNNING, TaskState.AWAITING_APPROVAL, TaskState.AWAITING_TOOL_RESULT}

ALLOWED_TRANSITIONS: dict[TaskState, set[TaskState]] = {
    TaskState.IDLE: {
        TaskState.RUNNING,
        TaskState.AWAITING_APPROVAL,
        TaskState.ABORTED,
        TaskState.FAILED,
    },
    TaskState.RUNNING: _ACTIVE | TERMINAL_STATES,
    TaskState.AWAITING_APPROVAL: _ACTIVE | TERMINAL_STATES,
    TaskState.AWAITING_TOOL_RESULT: _ACTIVE | TERMINAL_STATES,
    TaskState.COMPLETED: set(),
    TaskState.ABORTED: set(),
    TaskState.FAILED: set(),
}


@dataclass(slots=True)
class Task:
    goal: str
    task_id: str = field(default_factory=lambda: uuid4().hex)
    state: TaskState = TaskState.IDLE
    mode: str = "code"
    aborted: bool = False
    mistakes: int = 0
    mistake_limit: int = 3
    diff_enabled: bool = True
    checkpoints_enabled: bool = True
    parent_id: str | None = None
    child_ids: list[str] = field(default_factory=list)
    request_count: int = 0
    result: str | None = None
    error: str | None = None
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str = field(default_factory=_utcnow_iso)

    def transition(self, target: TaskState) -> TaskState:
        """Move to ``target``; returns the previous state."""
        previous = self.state
        if target == previous:
            return previous
        if target not in ALLOWED_TRANSITIONS[previous]:
            raise InvariantViolation(
                f"Illegal task transition {previous.value} -> {target.value} ({self.task_id})."
            )
        self.state = target
        self.updated_at = _utcnow_iso()
        LOGGER.debug(
            "task_transition",
            extra={"task_id": self.task_id, "from": previous.value, "to": target.value},
        )
        return previous

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "goal": self.goal,
            "state": self.state.value,
            "mode": self.mode,
            "aborted": self.aborted,
            "mistakes": self.mistakes,
            "mistake_limit": self.mistake_limit,
            "diff_enabled": self.diff_enabled,
            "checkpoints_enabled": self.checkpoints_enabled,
            "parent_id": self.parent_id,
            "child_ids": list(self.child_ids),
            "request_count": self.request_count,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        try:
            return cls(
                goal=str(payload["goal"]),
                task_id=str(payload["task_id"]),
                state=TaskState(payload.get("state", TaskState.IDLE.value)),
                mode=str(payload.get("mode", "code")),
                aborted=bool(payload.get("aborted", False)),
                mistakes=int(payload.get("mistakes", 0)),
                mistake_limit=int(payload.get("mistake_limit", 3)),
                diff_enabled=bool(payload.get("diff_enabled", True)),
                checkpoints_enabled=bool(payload.get("checkpoints_enabled", True)),
                parent_id=payload.get("parent_id"),
                child_ids=[str(item) for item in payload.get("child_ids", [])],
                request_count=int(payload.get("request_count", 0)),
                result=payload.get("result"),
                error=payload.get("error"),
                created_at=str(payload.get("created_at") or _utcnow_iso()),
                updated_at=str(payload.get("updated_at") or _utcnow_iso()),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvariantViolation(f"Corrupt task record: {exc}") from exc


@dataclass(slots=True, frozen=True)
class TaskOutcome:
    task_id: str
    state: TaskState
    result: str | None = None
    error: str | None = None

    @property
    def completed(self) -> bool:
        return self.state is TaskState.COMPLETED


class TaskTree:
    """Parent/child task registry keyed by id.

    Children report back only through their outcome future; a parent never
    holds a reference to a child's orchestrator or history.
    """

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._outcomes: dict[str, asyncio.Future[TaskOutcome]] = {}
        self._runners: dict[str, asyncio.Task[Any]] = {}

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def add(self, task: Task) -> None:
        if task.task_id in self._tasks:
            raise InvariantViolation(f"Task {task.task_id} is already registered.")
        if task.parent_id is not None:
            parent = self.get(task.parent_id)
            if task.task_id not in parent.child_ids:
                parent.child_ids.append(task.task_id)
        self._tasks[task.task_id] = task

    def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise InvariantViolation(f"Unknown task id {task_id}.")
        return task

    def children(self, task_id: str) -> list[Task]:
        child_ids = self.get(task_id).child_ids
        return [self._tasks[child] for child in child_ids if child in self._tasks]

    def outcome_future(self, task_id: str) -> asyncio.Future[TaskOutcome]:
        future = self._outcomes.get(task_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._outcomes[task_id] = future
        return future

    def attach_runner(self, task_id: str, runner: asyncio.Task[Any]) -> None:
        self._runners[task_id] = runner

    def deliver(self, outcome: TaskOutcome) -> None:
        future = self.outcome_future(outcome.task_id)
        if not future.done():
            future.set_result(outcome)
        self._runners.pop(outcome.task_id, None)

    async def wait_for(self, task_id: str) -> TaskOutcome:
        return await asyncio.shield(self.outcome_future(task_id))

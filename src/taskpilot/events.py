from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

LOGGER = logging.getLogger(__name__)


class EventKind(str, Enum):
    STATE_CHANGED = "state_changed"
    MODEL_REQUEST = "model_request"
    MODEL_CHUNK = "model_chunk"
    MODEL_RESPONSE = "model_response"
    BACKEND_EVENT = "backend_event"
    TOOL_PROPOSED = "tool_proposed"
    TOOL_RESULT = "tool_result"
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"
    MISTAKE = "mistake"
    ESCALATION = "escalation"
    REPETITION = "repetition"
    COMPACTION = "compaction"
    CHECKPOINT_SAVED = "checkpoint_saved"
    CHECKPOINT_FAILED = "checkpoint_failed"
    SUBTASK_STARTED = "subtask_started"
    SUBTASK_FINISHED = "subtask_finished"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(slots=True, frozen=True)
class TaskEvent:
    kind: EventKind
    task_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {"event": self.kind.value, "task_id": self.task_id, "at": self.at, **self.payload}


Observer = Callable[[TaskEvent], None]


class EventBus:
    """Broadcasts lifecycle events to any number of observers.

    Observers never influence the loop: an observer that raises is logged and
    skipped, and the remaining observers still receive the event.
    """

    def __init__(self) -> None:
        self._observers: list[Observer] = []

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def _unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return _unsubscribe

    def emit(self, kind: EventKind, task_id: str, **payload: Any) -> TaskEvent:
        event = TaskEvent(kind=kind, task_id=task_id, payload=payload)
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception:
                LOGGER.exception(
                    "observer_failed",
                    extra={"event": kind.value, "task_id": task_id},
                )
        return event

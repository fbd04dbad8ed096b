from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from taskpilot.approval import ApprovalDecision, ApprovalGate
from taskpilot.cancellation import CancellationToken
from taskpilot.errors import CheckpointError, TaskCancelled, ToolExecutionError
from taskpilot.events import EventBus, EventKind
from taskpilot.parser import ToolInvocation
from taskpilot.state.checkpoints import CheckpointManager, CheckpointRef
from taskpilot.tools.registry import ExecutorOutput, ToolExecutor, ToolRegistry
from taskpilot.tools.shell import BlockingCommandExecutor, CommandExecutor
from taskpilot.tools.workspace import (
    ListFilesExecutor,
    ReadFileExecutor,
    ReplaceInFileExecutor,
    SearchFilesExecutor,
    Workspace,
    WriteFileExecutor,
)

LOGGER = logging.getLogger(__name__)

StateHook = Callable[[str], None]


class ResultStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    NOT_AVAILABLE = "not_available"


@dataclass(slots=True)
class ToolResult:
    tool: str
    status: ResultStatus
    content: str
    decision: ApprovalDecision | None = None
    checkpoint: CheckpointRef | None = None
    checkpoint_error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is ResultStatus.SUCCESS

    def render(self) -> str:
        text = self.content
        if self.decision is not None and self.decision.feedback:
            text = f"{text}\n\nUser feedback:\n{self.decision.feedback}"
        if self.checkpoint_error:
            text = (
                f"{text}\n\nNote: the workspace checkpoint could not be saved: "
                f"{self.checkpoint_error}"
            )
        return text


class ToolDispatcher:
    """Resolves, authorizes and executes one tool invocation at a time."""

    def __init__(
        self,
        registry: ToolRegistry,
        gate: ApprovalGate,
        *,
        checkpoints: CheckpointManager | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.registry = registry
        self.gate = gate
        self.checkpoints = checkpoints
        self.events = events or EventBus()
        self._executors: dict[str, ToolExecutor] = {}
        self._fallbacks: dict[str, ToolExecutor] = {}

    def register(
        self, name: str, executor: ToolExecutor, *, fallback: ToolExecutor | None = None
    ) -> None:
        self.registry.resolve(name)
        self._executors[name] = executor
        if fallback is not None:
            self._fallbacks[name] = fallback

    async def dispatch(
        self,
        invocation: ToolInvocation,
        *,
        task_id: str,
        mode: str,
        cancel: CancellationToken,
        on_state: StateHook | None = None,
    ) -> ToolResult:
        name = invocation.name
        descriptor = self.registry.descriptors.get(name)
        executor = self._executors.get(name)
        if descriptor is None or executor is None or not self.registry.is_allowed(name, mode):
            LOGGER.info(
                "tool_not_available", extra={"task_id": task_id, "tool": name, "mode": mode}
            )
            available = ", ".join(tool.name for tool in self.registry.tools_for_mode(mode))
            return ToolResult(
                tool=name,
                status=ResultStatus.NOT_AVAILABLE,
                content=(
                    f"Tool '{name}' is not available in '{mode}' mode. "
                    f"Available tools: {available}."
                ),
            )

        summary = invocation.summary()
        if self.gate.needs_interaction(descriptor):
            if on_state is not None:
                on_state("awaiting_approval")
            self.events.emit(EventKind.APPROVAL_REQUESTED, task_id, tool=name, summary=summary)
        try:
            decision = await cancel.race(
                self.gate.check(descriptor, invocation.params, task_id=task_id, summary=summary)
            )
        except TaskCancelled:
            return ToolResult(
                tool=name, status=ResultStatus.CANCELLED, content="Cancelled before approval."
            )
        self.events.emit(
            EventKind.APPROVAL_RESOLVED, task_id, tool=name, status=decision.status.value
        )
        if not decision.approved:
            return ToolResult(
                tool=name,
                status=ResultStatus.REJECTED,
                content=f"The user denied this operation ({decision.reason}).",
                decision=decision,
            )

        if on_state is not None:
            on_state("awaiting_tool_result")
        LOGGER.info("tool_dispatched", extra={"task_id": task_id, "tool": name})
        try:
            output = await self._run(name, executor, invocation, cancel)
        except TaskCancelled:
            LOGGER.info("tool_cancelled", extra={"task_id": task_id, "tool": name})
            return ToolResult(
                tool=name,
                status=ResultStatus.CANCELLED,
                content="The operation was cancelled because the task was aborted.",
                decision=decision,
            )
        except ToolExecutionError as exc:
            return ToolResult(
                tool=name, status=ResultStatus.FAILURE, content=f"Error: {exc}", decision=decision
            )
        except Exception as exc:
            LOGGER.exception("tool_crashed", extra={"task_id": task_id, "tool": name})
            return ToolResult(
                tool=name,
                status=ResultStatus.FAILURE,
                content=f"Error: {type(exc).__name__}: {exc}",
                decision=decision,
            )

        result = ToolResult(
            tool=name,
            status=ResultStatus.SUCCESS if output.success else ResultStatus.FAILURE,
            content=output.content,
            decision=decision,
        )
        if output.success and output.side_effect:
            self._save_checkpoint(result, task_id)
        return result

    async def _run(
        self,
        name: str,
        executor: ToolExecutor,
        invocation: ToolInvocation,
        cancel: CancellationToken,
    ) -> ExecutorOutput:
        try:
            return await cancel.race(executor.execute(invocation.params, cancel))
        except ToolExecutionError as exc:
            fallback = self._fallbacks.get(name)
            if not exc.recoverable or fallback is None:
                raise
            LOGGER.warning(
                "tool_fallback", extra={"tool": name, "error": str(exc)}
            )
            return await cancel.race(fallback.execute(invocation.params, cancel))

    def _save_checkpoint(self, result: ToolResult, task_id: str) -> None:
        if self.checkpoints is None:
            return
        try:
            result.checkpoint = self.checkpoints.save(label=result.tool)
        except CheckpointError as exc:
            result.checkpoint_error = str(exc)
            LOGGER.warning(
                "checkpoint_failed",
                extra={"task_id": task_id, "tool": result.tool, "error": str(exc)},
            )
            self.events.emit(
                EventKind.CHECKPOINT_FAILED, task_id, tool=result.tool, error=str(exc)
            )
            return
        self.events.emit(
            EventKind.CHECKPOINT_SAVED,
            task_id,
            tool=result.tool,
            checkpoint=result.checkpoint.ref_id,
        )


def register_workspace_tools(
    dispatcher: ToolDispatcher, workspace: Workspace, *, command_timeout_seconds: float = 600.0
) -> None:
    """Bind the built-in workspace executors for every tool the registry exposes."""
    executors: dict[str, tuple[ToolExecutor, ToolExecutor | None]] = {
        "read_file": (ReadFileExecutor(workspace), None),
        "list_files": (ListFilesExecutor(workspace), None),
        "search_files": (SearchFilesExecutor(workspace), None),
        "write_to_file": (WriteFileExecutor(workspace), None),
        "replace_in_file": (ReplaceInFileExecutor(workspace), None),
        "execute_command": (
            CommandExecutor(workspace, timeout_seconds=command_timeout_seconds),
            BlockingCommandExecutor(workspace, timeout_seconds=command_timeout_seconds),
        ),
    }
    for name, (executor, fallback) in executors.items():
        if name in dispatcher.registry:
            dispatcher.register(name, executor, fallback=fallback)

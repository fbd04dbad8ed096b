from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from taskpilot import prompts
from taskpilot.approval import ApprovalDecision, ApprovalGate, ApprovalRequest, RequestKind
from taskpilot.backends.base import BackendExecutionError, ModelBackend
from taskpilot.cancellation import CancellationToken
from taskpilot.compactor import ContextCompactor
from taskpilot.conversation import (
    ConversationStore,
    TextContent,
    TokenCounter,
    ToolResultContent,
    TurnKind,
    TurnRole,
)
from taskpilot.dispatcher import ResultStatus, ToolDispatcher, register_workspace_tools
from taskpilot.errors import (
    CheckpointError,
    InvariantViolation,
    ParseError,
    StateStoreError,
    TaskCancelled,
    TaskpilotError,
)
from taskpilot.events import EventBus, EventKind
from taskpilot.monitor import MistakeCounter, RepetitionMonitor
from taskpilot.parser import StreamingParser, ToolInvocation, invocations, parse_message, validate
from taskpilot.state.checkpoints import CheckpointManager
from taskpilot.state.store import TaskStore
from taskpilot.task import Task, TaskOutcome, TaskState, TaskTree
from taskpilot.tools.registry import GROUP_CONTROL, ToolRegistry
from taskpilot.tools.workspace import Workspace

LOGGER = logging.getLogger(__name__)

CheckpointFactory = Callable[[str], CheckpointManager | None]
DispatcherSetup = Callable[[ToolDispatcher], None]


@dataclass(slots=True)
class LoopSettings:
    mistake_limit: int = 3
    repetition_threshold: int = 3
    repetition_window: int = 10
    max_requests: int = 0
    context_window: int = 128_000
    response_reserve: int = 8_192
    keep_recent_turns: int = 4


@dataclass(slots=True)
class EngineContext:
    """Collaborators shared by every task of one session, children included."""

    backend: ModelBackend
    registry: ToolRegistry
    gate: ApprovalGate
    workspace: Workspace
    settings: LoopSettings = field(default_factory=LoopSettings)
    events: EventBus = field(default_factory=EventBus)
    tree: TaskTree = field(default_factory=TaskTree)
    store: TaskStore | None = None
    checkpoint_factory: CheckpointFactory | None = None
    token_counter: TokenCounter | None = None
    command_timeout_seconds: float = 600.0
    dispatcher_setup: DispatcherSetup | None = None
    summarizer: ModelBackend | None = None


class Orchestrator:
    """Runs the inner loop of exactly one task."""

    def __init__(self, context: EngineContext, *, parent_token: CancellationToken | None = None):
        self.context = context
        self.cancel = CancellationToken(parent_token)
        self.task: Task | None = None
        self.conversation: ConversationStore | None = None
        self.monitor: RepetitionMonitor | None = None
        self.mistakes: MistakeCounter | None = None
        self.checkpoints: CheckpointManager | None = None
        self.dispatcher: ToolDispatcher | None = None
        self.compactor = ContextCompactor(
            context.summarizer or context.backend,
            context_window=context.settings.context_window,
            response_reserve=context.settings.response_reserve,
            keep_recent=context.settings.keep_recent_turns,
        )
        self._request_allowance = context.settings.max_requests
        self._resume_action: tuple[str, ToolInvocation | None] | None = None
        self._revision: int | None = None

    @property
    def events(self) -> EventBus:
        return self.context.events

    @property
    def registry(self) -> ToolRegistry:
        return self.context.registry

    @property
    def gate(self) -> ApprovalGate:
        return self.context.gate

    @property
    def task_id(self) -> str:
        return self._task().task_id

    def _task(self) -> Task:
        if self.task is None:
            raise InvariantViolation("Orchestrator has no task; call create_task() first.")
        return self.task

    def _conversation(self) -> ConversationStore:
        if self.conversation is None:
            raise InvariantViolation("Orchestrator has no conversation.")
        return self.conversation

    # -- setup ---------------------------------------------------------------

    def _attach(
        self, task: Task, conversation: ConversationStore, monitor: RepetitionMonitor
    ) -> None:
        self.registry.allowed_groups(task.mode)
        self.task = task
        self.conversation = conversation
        self.monitor = monitor
        self.mistakes = MistakeCounter(limit=task.mistake_limit, count=task.mistakes)
        if task.checkpoints_enabled and self.context.checkpoint_factory is not None:
            self.checkpoints = self.context.checkpoint_factory(task.task_id)
        self.dispatcher = ToolDispatcher(
            self.registry,
            self.gate,
            checkpoints=self.checkpoints,
            events=self.events,
        )
        register_workspace_tools(
            self.dispatcher,
            self.context.workspace,
            command_timeout_seconds=self.context.command_timeout_seconds,
        )
        if self.context.dispatcher_setup is not None:
            self.context.dispatcher_setup(self.dispatcher)
        if task.task_id not in self.context.tree:
            self.context.tree.add(task)

    def create_task(
        self,
        goal: str,
        *,
        mode: str = "code",
        parent_id: str | None = None,
        checkpoints_enabled: bool = True,
    ) -> Task:
        if self.task is not None:
            raise InvariantViolation("Orchestrator already owns a task.")
        settings = self.context.settings
        task = Task(
            goal=goal,
            mode=mode,
            mistake_limit=settings.mistake_limit,
            diff_enabled="replace_in_file" in self.registry,
            checkpoints_enabled=(
                checkpoints_enabled and self.context.checkpoint_factory is not None
            ),
            parent_id=parent_id,
        )
        conversation = ConversationStore(token_counter=self.context.token_counter)
        monitor = RepetitionMonitor(
            threshold=settings.repetition_threshold, window=settings.repetition_window
        )
        self._attach(task, conversation, monitor)
        workspace = self.context.workspace
        conversation.add_text(
            TurnRole.USER,
            TurnKind.REQUEST,
            f"<task>\n{goal}\n</task>",
            prompts.environment_details(str(workspace.root), workspace.files()),
        )
        self._persist()
        LOGGER.info("task_created", extra={"task_id": task.task_id, "mode": mode})
        return task

    def load_task(self, task_id: str) -> Task:
        """Rebuild a saved task so that ``run()`` resumes it."""
        if self.task is not None:
            raise InvariantViolation("Orchestrator already owns a task.")
        if self.context.store is None:
            raise TaskpilotError("Resuming requires a task store.")
        snapshot = self.context.store.load_snapshot(task_id)
        self._revision = self.context.store.task_revision(task_id)
        task = Task.from_dict(snapshot["task"])
        if task.state.terminal:
            raise TaskpilotError(f"Task {task_id} already finished ({task.state.value}).")
        conversation = ConversationStore.from_dict(
            snapshot["conversation"], token_counter=self.context.token_counter
        )
        monitor_payload = snapshot.get("monitor")
        if isinstance(monitor_payload, dict) and monitor_payload:
            monitor = RepetitionMonitor.from_dict(monitor_payload)
        else:
            monitor = RepetitionMonitor(
                threshold=self.context.settings.repetition_threshold,
                window=self.context.settings.repetition_window,
            )
        self._attach(task, conversation, monitor)

        pending = conversation.pending_index
        pending_invocation = None
        if pending is not None:
            found = invocations(
                parse_message(
                    conversation.turns[pending].text,
                    tool_names=self.registry.names(),
                    param_names=self.registry.parameter_names(),
                )
            )
            pending_invocation = found[0] if found else None

        if task.state is TaskState.AWAITING_APPROVAL and pending_invocation is not None:
            self._resume_action = ("invocation", pending_invocation)
        elif task.state is TaskState.AWAITING_APPROVAL and pending is None:
            self._resume_action = ("escalate", None)
        else:
            if pending is not None:
                name = pending_invocation.name if pending_invocation else "tool"
                conversation.add_tool_result(name, "interrupted", prompts.interrupted_result())
            conversation.add_text(
                TurnRole.USER, TurnKind.RESUMPTION, prompts.resumption(f"at {task.updated_at}")
            )
        self._persist()
        LOGGER.info("task_loaded", extra={"task_id": task.task_id, "state": task.state.value})
        return task

    # -- public API ----------------------------------------------------------

    async def start(
        self, goal: str, *, mode: str = "code", parent_id: str | None = None
    ) -> TaskOutcome:
        self.create_task(goal, mode=mode, parent_id=parent_id)
        return await self.run()

    async def resume(self, task_id: str) -> TaskOutcome:
        self.load_task(task_id)
        return await self.run()

    def abort(self, reason: str = "aborted by user") -> None:
        if self.task is not None:
            self.task.aborted = True
        LOGGER.info("task_abort_requested", extra={"task_id": self.task_id if self.task else ""})
        self.cancel.cancel(reason)

    async def run(self) -> TaskOutcome:
        task = self._task()
        if task.state.terminal:
            return self._outcome()
        try:
            self._set_state(TaskState.RUNNING)
            self._initial_checkpoint()
            action = self._resume_action
            self._resume_action = None
            if action is not None:
                kind, invocation = action
                if kind == "escalate":
                    await self._escalate()
                elif invocation is not None:
                    outcome = await self._process_invocation(invocation, [], resumed=True)
                    if outcome is not None:
                        return outcome
            while True:
                self.cancel.raise_if_cancelled()
                await self._check_request_limit()
                await self._maybe_compact()
                parser = await self._request_model()
                outcome = await self._handle_response(parser)
                self._persist()
                if outcome is not None:
                    return outcome
        except TaskCancelled as exc:
            return self._finish(TaskState.ABORTED, error=str(exc))
        except (InvariantViolation, StateStoreError) as exc:
            LOGGER.error("task_failed", extra={"task_id": task.task_id, "error": str(exc)})
            return self._finish(TaskState.FAILED, error=str(exc))
        except Exception as exc:
            LOGGER.exception("task_crashed", extra={"task_id": task.task_id})
            return self._finish(TaskState.FAILED, error=f"{type(exc).__name__}: {exc}")

    # -- loop steps ----------------------------------------------------------

    def _set_state(self, state: TaskState) -> None:
        task = self._task()
        previous = task.transition(state)
        if previous is not state:
            self.events.emit(
                EventKind.STATE_CHANGED, task.task_id, previous=previous.value, state=state.value
            )

    def _on_dispatch_state(self, state: str) -> None:
        self._set_state(TaskState(state))
        if state == TaskState.AWAITING_APPROVAL.value:
            self._persist()

    def _system_prompt(self) -> str:
        task = self._task()
        return prompts.build_system_prompt(
            self.registry.tools_for_mode(task.mode),
            mode=task.mode,
            workspace=str(self.context.workspace.root),
        )

    def _initial_checkpoint(self) -> None:
        if self.checkpoints is None or self.checkpoints.list(include_unreachable=True):
            return
        try:
            ref = self.checkpoints.save(label="task start", force=True)
        except CheckpointError as exc:
            LOGGER.warning(
                "checkpoint_failed", extra={"task_id": self.task_id, "error": str(exc)}
            )
            self.events.emit(EventKind.CHECKPOINT_FAILED, self.task_id, error=str(exc))
            return
        self.events.emit(EventKind.CHECKPOINT_SAVED, self.task_id, checkpoint=ref.ref_id)

    async def _ask_operator(
        self, kind: RequestKind, summary: str, *, tool: str | None = None
    ) -> ApprovalDecision:
        self._set_state(TaskState.AWAITING_APPROVAL)
        self._persist()
        self.events.emit(
            EventKind.APPROVAL_REQUESTED, self.task_id, request_kind=kind.value, summary=summary
        )
        decision = await self.cancel.race(
            self.gate.channel.request(
                ApprovalRequest(kind=kind, task_id=self.task_id, summary=summary, tool=tool)
            )
        )
        self.events.emit(
            EventKind.APPROVAL_RESOLVED,
            self.task_id,
            request_kind=kind.value,
            status=decision.status.value,
        )
        self._set_state(TaskState.RUNNING)
        return decision

    async def _check_request_limit(self) -> None:
        limit = self.context.settings.max_requests
        task = self._task()
        if limit <= 0 or task.request_count < self._request_allowance:
            return
        decision = await self._ask_operator(
            RequestKind.REQUEST_LIMIT, prompts.request_limit_question(task.request_count)
        )
        if not decision.approved:
            self.abort("request limit reached")
            raise TaskCancelled("request limit reached")
        self._request_allowance = task.request_count + limit

    async def _maybe_compact(self) -> None:
        conversation = self._conversation()
        system_prompt = self._system_prompt()
        if not self.compactor.needs_compaction(conversation, system_prompt):
            return
        budget = self.compactor.token_budget - conversation.token_counter(system_prompt)
        result = await self.cancel.race(self.compactor.compact(conversation, budget))
        if result.changed:
            self.events.emit(
                EventKind.COMPACTION,
                self.task_id,
                start=result.start,
                replaced=result.replaced,
                summary_tokens=result.summary_cost,
            )

    async def _request_model(self) -> StreamingParser:
        conversation = self._conversation()
        task = self._task()
        system_prompt = self._system_prompt()

        async def _consume() -> StreamingParser:
            parser = StreamingParser(self.registry)
            async for chunk in self.context.backend.stream(system_prompt, conversation.render()):
                parser.feed(chunk)
                self.events.emit(EventKind.MODEL_CHUNK, task.task_id, chunk=chunk)
            parser.finish()
            return parser

        while True:
            self.events.emit(
                EventKind.MODEL_REQUEST,
                task.task_id,
                request=task.request_count + 1,
                turns=len(conversation),
            )
            try:
                parser = await self.cancel.race(_consume())
                break
            except BackendExecutionError as exc:
                LOGGER.warning(
                    "model_request_failed", extra={"task_id": task.task_id, "error": str(exc)}
                )
                self.events.emit(EventKind.BACKEND_EVENT, task.task_id, error=str(exc))
                decision = await self._ask_operator(
                    RequestKind.BACKEND_RETRY, prompts.backend_retry_question(str(exc))
                )
                if not decision.approved:
                    self.abort("model request failed")
                    raise TaskCancelled("model request failed") from exc

        task.request_count += 1
        conversation.record_usage(
            input_tokens=conversation.total_tokens() + conversation.token_counter(system_prompt),
            output_tokens=conversation.token_counter(parser.text),
        )
        self.events.emit(
            EventKind.MODEL_RESPONSE,
            task.task_id,
            request=task.request_count,
            characters=len(parser.text),
        )
        return parser

    async def _handle_response(self, parser: StreamingParser) -> TaskOutcome | None:
        conversation = self._conversation()
        found = invocations(parser.blocks)
        if not found:
            conversation.add_text(
                TurnRole.ASSISTANT, TurnKind.MODEL, parser.text.strip() or "(empty response)"
            )
            conversation.add_text(TurnRole.USER, TurnKind.FEEDBACK, prompts.no_tool_used())
            await self._record_mistake("no tool used")
            return None

        first = found[0]
        ignored = [invocation.name for invocation in found[1:]]
        conversation.add_text(
            TurnRole.ASSISTANT, TurnKind.MODEL, parser.text.strip(), awaits_result=True
        )
        self._persist()
        self.events.emit(
            EventKind.TOOL_PROPOSED,
            self.task_id,
            tool=first.name,
            params=dict(first.params),
            ignored=ignored,
        )
        return await self._process_invocation(first, ignored)

    def _ignored_note(self, ignored: list[str]) -> str:
        return prompts.ignored_invocations(ignored) if ignored else ""

    async def _process_invocation(
        self, invocation: ToolInvocation, ignored: list[str], *, resumed: bool = False
    ) -> TaskOutcome | None:
        conversation = self._conversation()
        task = self._task()
        note = self._ignored_note(ignored)
        try:
            validate(invocation, self.registry)
        except ParseError as exc:
            conversation.add_tool_result(
                invocation.name, "error", prompts.invalid_invocation(str(exc)), note
            )
            await self._record_mistake(exc.code)
            return None

        # A resumed invocation was already recorded before the interruption.
        verdict = None if resumed else self._monitor().check(invocation)
        if verdict is not None and verdict.loop:
            LOGGER.info(
                "repetition_detected",
                extra={"task_id": task.task_id, "tool": invocation.name},
            )
            conversation.add_tool_result(
                invocation.name,
                "skipped",
                prompts.repetition_detected(invocation.name, verdict.occurrences),
                note,
            )
            self.events.emit(
                EventKind.REPETITION,
                task.task_id,
                tool=invocation.name,
                occurrences=verdict.occurrences,
            )
            return None

        descriptor = self.registry.resolve(invocation.name)
        if descriptor.group == GROUP_CONTROL:
            return await self._handle_control(invocation, note)

        result = await self._dispatcher().dispatch(
            invocation,
            task_id=task.task_id,
            mode=task.mode,
            cancel=self.cancel,
            on_state=self._on_dispatch_state,
        )
        conversation.add_tool_result(invocation.name, result.status.value, result.render(), note)
        self.events.emit(
            EventKind.TOOL_RESULT,
            task.task_id,
            tool=invocation.name,
            status=result.status.value,
            checkpoint=result.checkpoint.ref_id if result.checkpoint else None,
        )
        if result.status is ResultStatus.CANCELLED:
            raise TaskCancelled(self.cancel.reason or "aborted")
        self._set_state(TaskState.RUNNING)
        if result.succeeded:
            self._reset_mistakes()
        else:
            await self._record_mistake(f"{invocation.name} {result.status.value}")
        return None

    async def _handle_control(self, invocation: ToolInvocation, note: str) -> TaskOutcome | None:
        if invocation.name == "attempt_completion":
            return await self._attempt_completion(invocation, note)
        if invocation.name == "ask_followup_question":
            await self._ask_followup(invocation, note)
            return None
        if invocation.name == "new_task":
            await self._spawn_subtask(invocation, note)
            return None
        raise InvariantViolation(f"Control tool without a handler: {invocation.name}")

    async def _attempt_completion(
        self, invocation: ToolInvocation, note: str
    ) -> TaskOutcome | None:
        conversation = self._conversation()
        result = invocation.params["result"]
        decision = await self._ask_operator(
            RequestKind.COMPLETION, result, tool=invocation.name
        )
        if decision.approved:
            conversation.add_tool_result(
                invocation.name, "success", "The user accepted the result.", note
            )
            return self._finish(TaskState.COMPLETED, result=result)
        conversation.append(
            conversation.make_turn(
                TurnRole.USER,
                TurnKind.GUIDANCE,
                [
                    ToolResultContent(
                        tool=invocation.name,
                        status="rejected",
                        content=prompts.completion_rejected(decision.feedback),
                    ),
                    *([TextContent(text=note)] if note else []),
                ],
            )
        )
        self._human_input()
        return None

    async def _ask_followup(self, invocation: ToolInvocation, note: str) -> None:
        conversation = self._conversation()
        question = invocation.params["question"]
        self._set_state(TaskState.AWAITING_APPROVAL)
        self._persist()
        answer = await self.cancel.race(self.gate.channel.ask(self.task_id, question))
        self._set_state(TaskState.RUNNING)
        conversation.append(
            conversation.make_turn(
                TurnRole.USER,
                TurnKind.GUIDANCE,
                [
                    ToolResultContent(
                        tool=invocation.name,
                        status="success",
                        content=prompts.followup_answer(question, answer),
                    ),
                    *([TextContent(text=note)] if note else []),
                ],
            )
        )
        self._human_input()

    async def _spawn_subtask(self, invocation: ToolInvocation, note: str) -> None:
        conversation = self._conversation()
        task = self._task()
        mode = (invocation.params.get("mode") or task.mode).strip()
        if mode not in self.registry.modes:
            available = ", ".join(sorted(self.registry.modes))
            conversation.add_tool_result(
                invocation.name,
                "failure",
                f"Unknown mode '{mode}'. Available modes: {available}.",
                note,
            )
            await self._record_mistake("unknown mode")
            return

        child = Orchestrator(self.context, parent_token=self.cancel)
        child_task = child.create_task(
            invocation.params["message"],
            mode=mode,
            parent_id=task.task_id,
            checkpoints_enabled=task.checkpoints_enabled,
        )
        self.events.emit(
            EventKind.SUBTASK_STARTED, task.task_id, child_id=child_task.task_id, mode=mode
        )
        self._set_state(TaskState.AWAITING_TOOL_RESULT)
        self._persist()
        tree = self.context.tree
        runner = asyncio.create_task(child.run())
        tree.attach_runner(child_task.task_id, runner)
        try:
            outcome = await self.cancel.race(tree.wait_for(child_task.task_id))
        except TaskCancelled:
            await asyncio.gather(runner, return_exceptions=True)
            conversation.add_tool_result(
                invocation.name, "cancelled", "The sub-task was aborted with its parent.", note
            )
            raise
        self._set_state(TaskState.RUNNING)
        self.events.emit(
            EventKind.SUBTASK_FINISHED,
            task.task_id,
            child_id=child_task.task_id,
            state=outcome.state.value,
        )
        status = "success" if outcome.completed else "failure"
        conversation.add_tool_result(
            invocation.name,
            status,
            prompts.subtask_result(
                mode, outcome.state.value, outcome.result or outcome.error or ""
            ),
            note,
        )
        if outcome.completed:
            self._reset_mistakes()
        else:
            await self._record_mistake(f"sub-task {outcome.state.value}")

    # -- counters ------------------------------------------------------------

    def _monitor(self) -> RepetitionMonitor:
        if self.monitor is None:
            raise InvariantViolation("Orchestrator has no repetition monitor.")
        return self.monitor

    def _dispatcher(self) -> ToolDispatcher:
        if self.dispatcher is None:
            raise InvariantViolation("Orchestrator has no dispatcher.")
        return self.dispatcher

    def _counter(self) -> MistakeCounter:
        if self.mistakes is None:
            raise InvariantViolation("Orchestrator has no mistake counter.")
        return self.mistakes

    def _reset_mistakes(self) -> None:
        counter = self._counter()
        counter.reset()
        self._task().mistakes = 0

    def _human_input(self) -> None:
        self._reset_mistakes()
        self._monitor().note_state_change()

    async def _record_mistake(self, reason: str) -> None:
        counter = self._counter()
        reached = counter.increment(reason)
        task = self._task()
        task.mistakes = counter.count
        self.events.emit(
            EventKind.MISTAKE,
            task.task_id,
            reason=reason,
            count=counter.count,
            limit=counter.limit,
        )
        if reached:
            await self._escalate()

    async def _escalate(self) -> None:
        counter = self._counter()
        task = self._task()
        self._set_state(TaskState.AWAITING_APPROVAL)
        self.events.emit(
            EventKind.ESCALATION, task.task_id, count=counter.count, reason=counter.last_reason
        )
        self._persist()
        LOGGER.info("mistake_limit_reached", extra={"task_id": task.task_id})
        answer = await self.cancel.race(
            self.gate.channel.ask(
                task.task_id,
                prompts.mistake_guidance_question(counter.limit, counter.last_reason),
            )
        )
        answer = answer.strip() or "Step back, re-read the task, and try a different approach."
        self._conversation().add_text(TurnRole.USER, TurnKind.GUIDANCE, prompts.guidance(answer))
        self._human_input()
        self._set_state(TaskState.RUNNING)

    # -- completion ----------------------------------------------------------

    def _outcome(self) -> TaskOutcome:
        task = self._task()
        return TaskOutcome(
            task_id=task.task_id, state=task.state, result=task.result, error=task.error
        )

    def _finish(
        self, state: TaskState, *, result: str | None = None, error: str | None = None
    ) -> TaskOutcome:
        task = self._task()
        if not task.state.terminal:
            task.result = result
            task.error = error
            self._set_state(state)
            if self.conversation is not None:
                self.conversation.seal()
            try:
                self._persist()
            except StateStoreError as exc:
                LOGGER.error(
                    "task_persist_failed", extra={"task_id": task.task_id, "error": str(exc)}
                )
            LOGGER.info("task_finished", extra={"task_id": task.task_id, "state": state.value})
        outcome = self._outcome()
        self.context.tree.deliver(outcome)
        return outcome

    def snapshot(self) -> dict[str, Any]:
        return {
            "task": self._task().to_dict(),
            "conversation": self._conversation().to_dict(),
            "monitor": self._monitor().to_dict(),
        }

    def _persist(self) -> None:
        if self.context.store is None or self.task is None:
            return
        self._revision = self.context.store.save_snapshot(
            self.task.task_id, self.snapshot(), expected_revision=self._revision
        )

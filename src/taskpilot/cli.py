from __future__ import annotations

import asyncio
import json
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from taskpilot.approval import (
    ApprovalChannel,
    ApprovalDecision,
    ApprovalGate,
    ApprovalPolicy,
    ApprovalRequest,
    CallbackApprovalChannel,
    PolicyApprovalChannel,
    RequestKind,
)
from taskpilot.backends import BackendExecutionError, CommandBackend, ResilientBackend, RetryPolicy
from taskpilot.config import CONFIG_FILENAME, TaskpilotConfig, load_config, save_config
from taskpilot.conversation import token_counter_for
from taskpilot.errors import TaskpilotError
from taskpilot.events import EventKind, TaskEvent
from taskpilot.orchestrator import EngineContext, LoopSettings, Orchestrator
from taskpilot.state import CheckpointManager, TaskStore, build_checkpoint_manager
from taskpilot.task import TaskOutcome
from taskpilot.tools.registry import ToolRegistry
from taskpilot.tools.workspace import Workspace


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: TaskpilotConfig
    state_dir: Path
    store: TaskStore
    exclude: list[str]


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(config: TaskpilotConfig, verbose: bool) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config.logging.level, logging.WARNING)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    try:
        config = load_config(config_path)
    except (ValueError, TypeError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    state_dir = config.state_dir(repo_root)
    exclude = list(config.checkpoints.exclude)
    try:
        relative_state = state_dir.resolve().relative_to(repo_root).as_posix()
    except ValueError:
        relative_state = None
    if relative_state and f"{relative_state}/" not in exclude:
        exclude.append(f"{relative_state}/")
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        state_dir=state_dir,
        store=TaskStore(state_dir),
        exclude=exclude,
    )


def _checkpoint_manager(runtime: Runtime, task_id: str) -> CheckpointManager:
    return build_checkpoint_manager(
        task_id,
        workspace=runtime.repo_root,
        state_dir=runtime.state_dir,
        storage=runtime.config.checkpoints.storage,
        exclude=runtime.exclude,
    )


def _build_backend(runtime: Runtime) -> ResilientBackend:
    backend_config = runtime.config.backend
    primary = CommandBackend(backend_config.primary_command, working_directory=runtime.repo_root)
    fallback = None
    if backend_config.fallback_command:
        fallback = CommandBackend(
            backend_config.fallback_command, working_directory=runtime.repo_root
        )
    policy = RetryPolicy(
        max_retries=max(0, int(backend_config.max_retries)),
        backoff_seconds=max(0.0, float(backend_config.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(backend_config.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary.name,
        primary_backend=primary,
        fallback_name=fallback.name if fallback else None,
        fallback_backend=fallback,
        retry_policy=policy,
        event_hook=runtime.store.record_backend_event,
    )


async def _prompt_request(request: ApprovalRequest) -> ApprovalDecision:
    if request.kind is RequestKind.TOOL:
        question = f"Allow {request.summary}?"
    elif request.kind is RequestKind.COMPLETION:
        click.echo(f"\nResult:\n{request.summary}\n")
        question = "Accept this result?"
    else:
        question = request.summary
    approved = await asyncio.to_thread(click.confirm, question, default=True)
    if approved:
        return ApprovalDecision.approve()
    feedback = await asyncio.to_thread(
        click.prompt, "Feedback (optional)", default="", show_default=False
    )
    return ApprovalDecision.reject(feedback=feedback)


async def _prompt_ask(question: str) -> str:
    return await asyncio.to_thread(click.prompt, question, default="", show_default=False)


def _build_channel(auto_approve: bool) -> ApprovalChannel:
    if auto_approve:
        return PolicyApprovalChannel(
            answer="Continue with your best judgement.",
            reject=(RequestKind.REQUEST_LIMIT, RequestKind.BACKEND_RETRY),
        )
    return CallbackApprovalChannel(_prompt_request, _prompt_ask)


def _echo_event(event: TaskEvent) -> None:
    if event.kind is EventKind.MODEL_CHUNK:
        click.echo(event.payload.get("chunk", ""), nl=False)
    elif event.kind is EventKind.MODEL_RESPONSE:
        click.echo("")
    elif event.kind is EventKind.TOOL_RESULT:
        click.echo(f"[{event.payload.get('tool')}] {event.payload.get('status')}")
    elif event.kind is EventKind.CHECKPOINT_SAVED:
        click.echo(f"checkpoint {event.payload.get('checkpoint')}")
    elif event.kind in (EventKind.ESCALATION, EventKind.REPETITION, EventKind.CHECKPOINT_FAILED):
        click.echo(json.dumps(event.to_dict(), ensure_ascii=False))
    elif event.kind is EventKind.SUBTASK_STARTED:
        click.echo(f"sub-task {event.payload.get('child_id')} started")


def _build_context(runtime: Runtime, *, auto_approve: bool) -> EngineContext:
    config = runtime.config
    registry = ToolRegistry.default(diff_enabled=config.tools.diff_enabled, modes=config.modes)
    policy = ApprovalPolicy(
        auto_approve_read=config.tools.auto_approve_read or auto_approve,
        auto_approve_edit=config.tools.auto_approve_edit or auto_approve,
        auto_approve_command=config.tools.auto_approve_command or auto_approve,
        always_allow=set(config.tools.always_allow),
    )
    context = EngineContext(
        backend=_build_backend(runtime),
        registry=registry,
        gate=ApprovalGate(policy, _build_channel(auto_approve)),
        workspace=Workspace(runtime.repo_root, exclude=runtime.exclude),
        settings=LoopSettings(
            mistake_limit=config.loop.mistake_limit,
            repetition_threshold=config.loop.repetition_threshold,
            repetition_window=config.loop.repetition_window,
            max_requests=config.loop.max_requests,
            context_window=config.loop.context_window,
            response_reserve=config.loop.response_reserve,
            keep_recent_turns=config.loop.keep_recent_turns,
        ),
        store=runtime.store,
        token_counter=token_counter_for(config.loop.token_encoding),
        command_timeout_seconds=config.tools.command_timeout_seconds,
    )
    if config.checkpoints.enabled:
        context.checkpoint_factory = lambda task_id: _checkpoint_manager(runtime, task_id)
    context.events.subscribe(_echo_event)
    return context


async def _drive(
    orchestrator: Orchestrator, task_id: str | None, goal: str, mode: str
) -> TaskOutcome:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.abort)
    except (NotImplementedError, RuntimeError):
        pass
    try:
        if task_id is not None:
            return await orchestrator.resume(task_id)
        return await orchestrator.start(goal, mode=mode)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _report(outcome: TaskOutcome) -> None:
    click.echo(f"Task {outcome.task_id}: {outcome.state.value}")
    if outcome.result:
        click.echo(outcome.result)
    if outcome.error:
        click.echo(f"Reason: {outcome.error}")


@click.group()
def cli() -> None:
    """taskpilot: autonomous task execution against a model backend."""


@cli.command("init")
@click.option("--storage", type=click.Choice(["git", "directory"]), default=None)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def init_command(storage: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = load_config(config_path)
    if storage:
        config.checkpoints.storage = storage  # type: ignore[assignment]
    save_config(config_path, config)
    runtime = _load_runtime(repo_root, config_path)

    click.echo(f"Initialized taskpilot in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"State: {runtime.state_dir}")
    click.echo(f"Checkpoints: {config.checkpoints.storage}")


@cli.command("run")
@click.argument("goal")
@click.option("--mode", default=None, help="Tool mode; defaults to [tools] mode.")
@click.option("--yes", "auto_approve", is_flag=True, default=False, help="Approve everything.")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def run_command(
    goal: str, mode: str | None, auto_approve: bool, verbose: bool, config_value: str
) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    _configure_logging(runtime.config, verbose)
    orchestrator = Orchestrator(_build_context(runtime, auto_approve=auto_approve))
    try:
        outcome = asyncio.run(
            _drive(orchestrator, None, goal, mode or runtime.config.tools.mode)
        )
    except (TaskpilotError, BackendExecutionError) as exc:
        raise click.ClickException(str(exc)) from exc
    _report(outcome)


@cli.command("resume")
@click.argument("task_id")
@click.option("--yes", "auto_approve", is_flag=True, default=False, help="Approve everything.")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def resume_command(task_id: str, auto_approve: bool, verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    _configure_logging(runtime.config, verbose)
    orchestrator = Orchestrator(_build_context(runtime, auto_approve=auto_approve))
    try:
        outcome = asyncio.run(_drive(orchestrator, task_id, "", runtime.config.tools.mode))
    except (TaskpilotError, BackendExecutionError) as exc:
        raise click.ClickException(str(exc)) from exc
    _report(outcome)


def _task_summary(record: dict[str, Any]) -> str:
    goal = str(record.get("goal", "")).splitlines()[0] if record.get("goal") else ""
    return (
        f"{record.get('task_id')} {str(record.get('state')):<20} "
        f"{str(record.get('mode')):<10} {goal[:60]}"
    )


@cli.command("status")
@click.argument("task_id", required=False)
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def status_command(task_id: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        if task_id is None:
            records = runtime.store.list_tasks()
            if not records:
                click.echo("No tasks found.")
                return
            for record in records:
                click.echo(_task_summary(record))
            recent = runtime.store.backend_events()[-5:]
            if recent:
                click.echo("\nRecent backend events:")
                for event in recent:
                    click.echo(json.dumps(event, ensure_ascii=False))
            return
        snapshot = runtime.store.load_snapshot(task_id)
    except TaskpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    conversation = snapshot.get("conversation") or {}
    payload = {
        "task": snapshot.get("task"),
        "turns": len(conversation.get("turns", [])),
        "usage": conversation.get("usage", {}),
        "compactions": len(conversation.get("compactions", [])),
    }
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("checkpoints")
@click.argument("task_id")
@click.option("--all", "include_all", is_flag=True, default=False, help="Include unreachable.")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def checkpoints_command(task_id: str, include_all: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        manager = _checkpoint_manager(runtime, task_id)
    except TaskpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    refs = manager.list(include_unreachable=include_all)
    if not refs:
        click.echo("No checkpoints found.")
        return
    for ref in refs:
        marker = "" if manager.is_reachable(ref) else " (unreachable)"
        click.echo(f"{ref.ref_id} {ref.created_at} {ref.label or ''}{marker}")


@cli.command("diff")
@click.argument("task_id")
@click.argument("ref")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def diff_command(task_id: str, ref: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        changed = _checkpoint_manager(runtime, task_id).diff(ref)
    except TaskpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    if not changed:
        click.echo("No changes since checkpoint.")
        return
    for path in changed:
        click.echo(path)


@cli.command("restore")
@click.argument("task_id")
@click.argument("ref")
@click.option("--config", "config_value", default=CONFIG_FILENAME, show_default=True)
def restore_command(task_id: str, ref: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    try:
        restored = _checkpoint_manager(runtime, task_id).restore(ref)
    except TaskpilotError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Restored {restored.ref_id} ({restored.label or 'snapshot'})")

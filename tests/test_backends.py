import asyncio
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

import pytest

from taskpilot.backends import (
    BackendExecutionError,
    CommandBackend,
    ModelBackend,
    ResilientBackend,
    RetryPolicy,
)
from taskpilot.backends.command import render_transcript


class AlwaysFailBackend(ModelBackend):
    def __init__(self, *, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def stream(
        self, system_prompt: str, messages: Sequence[dict[str, str]]
    ) -> AsyncIterator[str]:
        _ = system_prompt, messages
        self.calls += 1
        yield "partial "
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)


class SuccessBackend(ModelBackend):
    async def stream(
        self, system_prompt: str, messages: Sequence[dict[str, str]]
    ) -> AsyncIterator[str]:
        _ = system_prompt, messages
        yield "o"
        yield "k"


class SlowBackend(ModelBackend):
    async def stream(
        self, system_prompt: str, messages: Sequence[dict[str, str]]
    ) -> AsyncIterator[str]:
        _ = system_prompt, messages
        await asyncio.sleep(5)
        yield "late"


def _collect(backend: ModelBackend) -> str:
    return asyncio.run(backend.complete("system", [{"role": "user", "content": "hi"}]))


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend()
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
        event_hook=events.append,
    )

    output = _collect(backend)

    assert output == "ok"
    assert primary.calls == 2
    event_names = [event["event"] for event in events]
    assert "backend_retry" in event_names
    assert "backend_attempt_failed" in event_names
    assert "backend_fallback_success" in event_names


def test_resilient_backend_skips_retries_for_non_retriable_errors() -> None:
    primary = AlwaysFailBackend(retriable=False)
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=SuccessBackend(),
        retry_policy=RetryPolicy(max_retries=3, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    assert _collect(backend) == "ok"
    assert primary.calls == 1


def test_resilient_backend_reports_exhaustion_as_non_retriable() -> None:
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=AlwaysFailBackend(),
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=5.0),
    )

    with pytest.raises(BackendExecutionError, match="All backend attempts failed") as exc_info:
        _collect(backend)

    assert exc_info.value.retriable is False


def test_resilient_backend_times_out_slow_backend() -> None:
    events: list[dict[str, Any]] = []
    backend = ResilientBackend(
        primary_name="primary",
        primary_backend=SlowBackend(),
        retry_policy=RetryPolicy(max_retries=0, backoff_seconds=0.0, timeout_seconds=0.05),
        event_hook=events.append,
    )

    with pytest.raises(BackendExecutionError):
        _collect(backend)

    assert "timed out" in events[0]["error"]


def test_command_backend_substitutes_system_prompt_file() -> None:
    backend = CommandBackend(
        ["claude", "-p", "--system-prompt-file", "{system_prompt_file}"],
        working_directory=Path("."),
    )

    command = backend.build_command("/tmp/prompt.md")

    assert backend.name == "claude"
    assert command == ["claude", "-p", "--system-prompt-file", "/tmp/prompt.md"]


def test_command_backend_rejects_empty_command() -> None:
    with pytest.raises(ValueError):
        CommandBackend([])


def test_render_transcript_labels_roles() -> None:
    transcript = render_transcript(
        [{"role": "user", "content": "do it"}, {"role": "assistant", "content": "done"}]
    )

    assert transcript == "## user\n\ndo it\n\n## assistant\n\ndone"


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStdin:
    def __init__(self) -> None:
        self.data = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class FakeStderr:
    def __init__(self, data: bytes = b"") -> None:
        self._data = data

    async def read(self) -> bytes:
        return self._data


class FakeProcess:
    def __init__(self, lines: list[bytes], exit_code: int = 0, stderr: bytes = b"") -> None:
        self.stdout = FakeStdout(lines)
        self.stdin = FakeStdin()
        self.stderr = FakeStderr(stderr)
        self.returncode: int | None = None
        self._exit_code = exit_code

    async def wait(self) -> int:
        self.returncode = self._exit_code
        return self._exit_code

    def kill(self) -> None:
        self.returncode = -9


def test_command_backend_extracts_stream_json_and_plain_lines(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    process = FakeProcess(
        [
            b'{"type":"assistant","message":{"content":[{"type":"text","text":"Hello "}]}}\n',
            b"plain line\n",
            b'{"type":"content_block_delta","delta":{"text":"world"}}\n',
            b'{"type":"result","subtype":"success"}\n',
        ]
    )
    seen: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        seen["args"] = args
        seen["env"] = kwargs["env"]
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = CommandBackend(["model-cli", "--prompt", "{system_prompt_file}"])

    output = _collect(backend)

    assert output == "Hello plain line\nworld"
    assert process.stdin.data.decode("utf-8") == "## user\n\nhi"
    assert process.stdin.closed
    assert seen["args"][2] == seen["env"]["TASKPILOT_SYSTEM_PROMPT_FILE"]


def test_command_backend_raises_on_nonzero_exit(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        return FakeProcess([b"oops\n"], exit_code=2, stderr=b"rate limited")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    backend = CommandBackend(["model-cli"])

    with pytest.raises(BackendExecutionError, match="rate limited") as exc_info:
        _collect(backend)

    assert exc_info.value.exit_code == 2
    assert exc_info.value.retriable is True


def test_command_backend_missing_binary_is_not_retriable(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        _ = args, kwargs
        raise FileNotFoundError("model-cli")

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    with pytest.raises(BackendExecutionError, match="not found") as exc_info:
        _collect(CommandBackend(["model-cli"]))

    assert exc_info.value.retriable is False


class PipeBoundProcess(FakeProcess):
    """stdin drains only once stdout is polled; stdout yields only once stderr is read."""

    def __init__(self) -> None:
        super().__init__([b"answer\n"], stderr=b"progress " * 1000)
        self.stdout_polled = asyncio.Event()
        self.stderr_polled = asyncio.Event()
        stdout, stderr = self.stdout, self.stderr
        process = self

        class _Stdout:
            def __aiter__(self) -> "_Stdout":
                return self

            async def __anext__(self) -> bytes:
                process.stdout_polled.set()
                await process.stderr_polled.wait()
                return await stdout.__anext__()

        class _Stdin(FakeStdin):
            async def drain(self) -> None:
                await process.stdout_polled.wait()

        class _Stderr:
            async def read(self) -> bytes:
                process.stderr_polled.set()
                return await stderr.read()

        self.stdout = _Stdout()
        self.stdin = _Stdin()
        self.stderr = _Stderr()


def test_command_backend_reads_output_while_feeding_stdin_and_stderr(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    process = PipeBoundProcess()

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> PipeBoundProcess:
        _ = args, kwargs
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)

    async def _collect_with_deadline() -> str:
        chunks: list[str] = []

        async def _consume() -> None:
            backend = CommandBackend(["model-cli"])
            async for chunk in backend.stream("system", [{"role": "user", "content": "hi"}]):
                chunks.append(chunk)

        await asyncio.wait_for(_consume(), timeout=5)
        return "".join(chunks)

    assert asyncio.run(_collect_with_deadline()) == "answer\n"
    assert process.stdin.closed
    assert process.stdin.data == b"## user\n\nhi"

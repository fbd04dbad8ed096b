from __future__ import annotations

import asyncio
import subprocess
from collections.abc import Mapping

from taskpilot.cancellation import CancellationToken
from taskpilot.errors import ToolExecutionError
from taskpilot.tools.registry import ExecutorOutput, ToolExecutor
from taskpilot.tools.workspace import Workspace

MAX_OUTPUT_CHARS = 20_000


def format_command_output(command: str, exit_code: int, output: str) -> str:
    if len(output) > MAX_OUTPUT_CHARS:
        omitted = len(output) - MAX_OUTPUT_CHARS
        output = f"[... {omitted} characters omitted]\n{output[-MAX_OUTPUT_CHARS:]}"
    output = output.strip() or "(no output)"
    return f"$ {command}\nExit code: {exit_code}\n{output}"


class CommandExecutor(ToolExecutor):
    """Runs ``execute_command`` through an asyncio subprocess, killed on abort."""

    def __init__(self, workspace: Workspace, *, timeout_seconds: float = 600.0) -> None:
        self.workspace = workspace
        self.timeout_seconds = timeout_seconds

    async def execute(
        self, params: Mapping[str, str], cancel: CancellationToken
    ) -> ExecutorOutput:
        cancel.raise_if_cancelled()
        command = params["command"]
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                cwd=str(self.workspace.root),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (NotImplementedError, OSError) as exc:
            raise ToolExecutionError(
                f"Could not start an async subprocess: {exc}", recoverable=True
            ) from exc

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise ToolExecutionError(
                f"Command timed out after {self.timeout_seconds:.0f}s: {command}"
            ) from exc
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        exit_code = process.returncode if process.returncode is not None else -1
        output = stdout.decode("utf-8", errors="replace") if stdout else ""
        return ExecutorOutput(
            success=exit_code == 0,
            content=format_command_output(command, exit_code, output),
            side_effect=True,
        )


class BlockingCommandExecutor(ToolExecutor):
    """Degraded ``execute_command`` mode: ``subprocess.run`` in a worker thread."""

    def __init__(self, workspace: Workspace, *, timeout_seconds: float = 600.0) -> None:
        self.workspace = workspace
        self.timeout_seconds = timeout_seconds

    def _run(self, command: str) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            command,
            shell=True,
            cwd=self.workspace.root,
            text=True,
            capture_output=True,
            timeout=self.timeout_seconds,
        )

    async def execute(
        self, params: Mapping[str, str], cancel: CancellationToken
    ) -> ExecutorOutput:
        cancel.raise_if_cancelled()
        command = params["command"]
        try:
            proc = await asyncio.to_thread(self._run, command)
        except subprocess.TimeoutExpired as exc:
            raise ToolExecutionError(
                f"Command timed out after {self.timeout_seconds:.0f}s: {command}"
            ) from exc
        except OSError as exc:
            raise ToolExecutionError(f"Command could not be run: {exc}") from exc
        output = "\n".join(part for part in (proc.stdout, proc.stderr) if part)
        return ExecutorOutput(
            success=proc.returncode == 0,
            content=format_command_output(command, proc.returncode, output),
            side_effect=True,
        )

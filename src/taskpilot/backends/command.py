from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import Any

from taskpilot.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    Message,
    ModelBackend,
)

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT_PLACEHOLDER = "{system_prompt_file}"


def render_transcript(messages: Sequence[Message]) -> str:
    sections = []
    for message in messages:
        sections.append(f"## {message['role']}\n\n{message['content']}")
    return "\n\n".join(sections)


class CommandBackend(ModelBackend):
    """Runs a model CLI as a subprocess.

    The transcript is written to the process's stdin and the system prompt to a
    temporary file, exposed through ``TASKPILOT_SYSTEM_PROMPT_FILE`` and the
    ``{system_prompt_file}`` argument placeholder. Output may be plain text or
    stream-json events.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        name: str | None = None,
        working_directory: Path | None = None,
    ) -> None:
        if not command:
            raise ValueError("Backend command must not be empty.")
        self.command = list(command)
        self.name = name or Path(self.command[0]).name
        self.working_directory = working_directory

    def build_command(self, system_prompt_file: str) -> list[str]:
        return [
            part.replace(SYSTEM_PROMPT_PLACEHOLDER, system_prompt_file) for part in self.command
        ]

    @staticmethod
    def _extract_content(event: dict[str, Any]) -> str:
        message = event.get("message")
        if isinstance(message, dict):
            return CommandBackend._extract_content(message)
        content = event.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        parts.append(text)
            return "".join(parts)
        delta = event.get("delta")
        if isinstance(delta, str):
            return delta
        if isinstance(delta, dict) and isinstance(delta.get("text"), str):
            return delta["text"]
        return ""

    @staticmethod
    def _appears_partial_json(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    async def stream(
        self, system_prompt: str, messages: Sequence[Message]
    ) -> AsyncIterator[str]:
        transcript = render_transcript(messages)
        with tempfile.NamedTemporaryFile(mode="w", suffix=".md", encoding="utf-8") as temp_file:
            temp_file.write(system_prompt)
            temp_file.flush()

            env = os.environ.copy()
            env["TASKPILOT_SYSTEM_PROMPT_FILE"] = temp_file.name

            try:
                process = await asyncio.create_subprocess_exec(
                    *self.build_command(temp_file.name),
                    cwd=str(self.working_directory) if self.working_directory else None,
                    env=env,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as exc:
                raise BackendProcessError(
                    f"Backend binary not found: {self.command[0]}",
                    backend=self.name,
                    retriable=False,
                ) from exc

            if process.stdout is None or process.stdin is None:
                raise BackendProcessError(
                    "Backend process did not expose stdio.", backend=self.name, retriable=False
                )

            async def _feed_stdin() -> None:
                try:
                    process.stdin.write(transcript.encode("utf-8"))
                    await process.stdin.drain()
                except (BrokenPipeError, ConnectionResetError):
                    # The process stopped reading; its exit code reports why.
                    LOGGER.debug("backend_stdin_closed_early", extra={"backend": self.name})
                finally:
                    process.stdin.close()

            async def _drain_stderr() -> bytes:
                if process.stderr is None:
                    return b""
                return await process.stderr.read()

            writer = asyncio.create_task(_feed_stdin())
            stderr_reader = asyncio.create_task(_drain_stderr())
            try:
                parse_buffer = ""
                async for raw_line in process.stdout:
                    line = raw_line.decode("utf-8", errors="replace").rstrip("\n")
                    if not line.strip():
                        yield "\n"
                        continue
                    candidate = f"{parse_buffer}{line}" if parse_buffer else line
                    if not candidate.lstrip().startswith(("{", "[")):
                        yield f"{line}\n"
                        continue
                    try:
                        event = json.loads(candidate)
                        parse_buffer = ""
                    except json.JSONDecodeError:
                        if self._appears_partial_json(candidate):
                            parse_buffer = candidate
                            continue
                        parse_buffer = ""
                        yield f"{line}\n"
                        continue

                    if isinstance(event, dict):
                        content = self._extract_content(event)
                        if content:
                            yield content

                if parse_buffer:
                    yield parse_buffer

                return_code = await process.wait()
                await writer
                stderr_output = (await stderr_reader).decode("utf-8", errors="replace").strip()
            except asyncio.CancelledError:
                if process.returncode is None:
                    process.kill()
                    await process.wait()
                raise
            finally:
                for helper in (writer, stderr_reader):
                    if not helper.done():
                        helper.cancel()

            if return_code != 0:
                raise BackendExecutionError(
                    f"{self.name} backend failed with exit code {return_code}: {stderr_output}",
                    backend=self.name,
                    exit_code=return_code,
                    retriable=True,
                )

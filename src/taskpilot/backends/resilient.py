from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from taskpilot.backends.base import (
    BackendExecutionError,
    BackendTimeoutError,
    Message,
    ModelBackend,
)

LOGGER = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


class ResilientBackend(ModelBackend):
    """Wraps primary/fallback backends with timeout, retry, and failover.

    A reply is buffered in full before it is yielded, so a failed attempt never
    leaks partial output into the caller's parser.
    """

    name = "resilient"

    def __init__(
        self,
        primary_name: str,
        primary_backend: ModelBackend,
        fallback_name: str | None = None,
        fallback_backend: ModelBackend | None = None,
        retry_policy: RetryPolicy | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary_backend = primary_backend
        self.fallback_name = fallback_name or primary_name
        self.fallback_backend = fallback_backend or primary_backend
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        LOGGER.debug(event["event"], extra={k: v for k, v in event.items() if k != "event"})
        if self.event_hook:
            self.event_hook(event)

    async def _collect_chunks(
        self, backend: ModelBackend, system_prompt: str, messages: Sequence[Message]
    ) -> list[str]:
        async def _consume() -> list[str]:
            chunks: list[str] = []
            async for chunk in backend.stream(system_prompt, messages):
                chunks.append(chunk)
            return chunks

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def _execute_attempts(
        self, system_prompt: str, messages: Sequence[Message]
    ) -> list[str]:
        attempts: list[tuple[str, ModelBackend]] = [(self.primary_name, self.primary_backend)]
        if self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name, self.fallback_backend))

        errors: list[str] = []
        for backend_name, backend in attempts:
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    chunks = await self._collect_chunks(backend, system_prompt, messages)
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": exc.retriable,
                        }
                    )
                    if not exc.retriable:
                        break
                    continue
                except (OSError, ValueError) as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        {
                            "event": "backend_attempt_failed",
                            "backend": backend_name,
                            "attempt": attempt,
                            "error": str(exc),
                            "retriable": True,
                        }
                    )
                    continue
                if backend_name != self.primary_name:
                    self._emit(
                        {
                            "event": "backend_fallback_success",
                            "backend": backend_name,
                            "attempt": attempt,
                        }
                    )
                return chunks

        summary = "; ".join(errors[-6:])
        raise BackendExecutionError(
            f"All backend attempts failed. {summary}",
            backend=self.name,
            retriable=False,
        )

    async def stream(
        self, system_prompt: str, messages: Sequence[Message]
    ) -> AsyncIterator[str]:
        chunks = await self._execute_attempts(system_prompt, messages)
        for chunk in chunks:
            yield chunk

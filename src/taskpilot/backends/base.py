from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Sequence

Message = dict[str, str]


class BackendExecutionError(RuntimeError):
    """Raised when a model request fails."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class BackendTimeoutError(BackendExecutionError):
    """Raised when a model request exceeds the configured timeout."""


class BackendProcessError(BackendExecutionError):
    """Raised when the backend process cannot be started or read."""


class ModelBackend(ABC):
    name = "model"

    @abstractmethod
    def stream(self, system_prompt: str, messages: Sequence[Message]) -> AsyncIterator[str]:
        """Stream the model's reply to ``messages`` as text chunks."""

    async def complete(self, system_prompt: str, messages: Sequence[Message]) -> str:
        chunks: list[str] = []
        async for chunk in self.stream(system_prompt, messages):
            chunks.append(chunk)
        return "".join(chunks)

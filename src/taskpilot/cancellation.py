from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from taskpilot.errors import TaskCancelled

T = TypeVar("T")
LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """Abort signal shared by a task's loop, executors and child tasks."""

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self._children: list[CancellationToken] = []
        self.reason = ""
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "aborted") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise TaskCancelled(self.reason or "aborted")

    async def race(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        The losing operation is cancelled and awaited so nothing keeps running
        in the background after an abort.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work in done:
            waiter.cancel()
            return work.result()
        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception:
            LOGGER.debug("cancelled_operation_failed", exc_info=True)
        raise TaskCancelled(self.reason or "aborted")

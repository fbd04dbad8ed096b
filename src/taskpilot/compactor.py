"""Context-window management.

When the projected size of the next request would not fit the model's context
window, the oldest contiguous run of unprotected turns is replaced by a single
summary turn. Protected turns are never touched:

* the most recent ``keep_recent`` turns,
* the latest instruction that came from a person,
* a turn still waiting for its tool result.

The compacted span stops at the first protected turn, so compacting an already
compacted history removes nothing further.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from taskpilot.backends.base import BackendExecutionError, ModelBackend
from taskpilot.conversation import (
    ConversationStore,
    TextContent,
    Turn,
    TurnKind,
    TurnRole,
)
from taskpilot.prompts import SUMMARY_SYSTEM_PROMPT, summary_request, truncation_notice

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class CompactionResult:
    turns: tuple[Turn, ...]
    summary_cost: int = 0
    replaced: int = 0
    start: int = 0

    @property
    def changed(self) -> bool:
        return self.replaced > 0


def protected_indices(turns: Sequence[Turn], keep_recent: int) -> set[int]:
    protected = set(range(max(len(turns) - keep_recent, 0), len(turns)))
    for index in range(len(turns) - 1, -1, -1):
        if turns[index].from_human:
            protected.add(index)
            break
    for index, turn in enumerate(turns):
        if turn.awaits_result:
            protected.add(index)
    return protected


def compactable_span(turns: Sequence[Turn], keep_recent: int) -> tuple[int, int] | None:
    protected = protected_indices(turns, keep_recent)
    start = 0
    while start < len(turns) and start in protected:
        start += 1
    end = start
    while end < len(turns) and end not in protected:
        end += 1
    if end - start < 2:
        return None
    return start, end


class ContextCompactor:
    def __init__(
        self,
        backend: ModelBackend | None = None,
        *,
        context_window: int = 128_000,
        response_reserve: int = 8_192,
        keep_recent: int = 4,
    ) -> None:
        self.backend = backend
        self.context_window = context_window
        self.response_reserve = response_reserve
        self.keep_recent = keep_recent

    @property
    def token_budget(self) -> int:
        return max(self.context_window - self.response_reserve, 0)

    def projected_tokens(self, store: ConversationStore, system_prompt: str = "") -> int:
        return store.total_tokens() + store.token_counter(system_prompt) + self.response_reserve

    def needs_compaction(self, store: ConversationStore, system_prompt: str = "") -> bool:
        return self.projected_tokens(store, system_prompt) > self.context_window

    async def _summarize(self, span: Sequence[Turn]) -> str:
        if self.backend is None:
            return truncation_notice(len(span))
        transcript = "\n\n".join(f"[{turn.role.value}] {turn.text}" for turn in span)
        try:
            summary = await self.backend.complete(
                SUMMARY_SYSTEM_PROMPT,
                [{"role": "user", "content": summary_request(transcript)}],
            )
        except BackendExecutionError as exc:
            LOGGER.warning("summary_failed", extra={"error": str(exc), "turns": len(span)})
            return truncation_notice(len(span))
        summary = summary.strip()
        if not summary:
            return truncation_notice(len(span))
        return f"[Summary of {len(span)} earlier turns]\n{summary}"

    async def compact(
        self, store: ConversationStore, token_budget: int | None = None
    ) -> CompactionResult:
        """Compact ``store`` in place when it exceeds ``token_budget``.

        ``token_budget`` defaults to the context window minus the response
        reserve.
        """
        budget = self.token_budget if token_budget is None else token_budget
        turns = store.turns
        if store.total_tokens() <= budget:
            return CompactionResult(turns=turns)
        span = compactable_span(turns, self.keep_recent)
        if span is None:
            return CompactionResult(turns=turns)
        start, end = span
        replaced_turns = turns[start:end]
        text = await self._summarize(replaced_turns)
        summary = store.make_turn(TurnRole.USER, TurnKind.SUMMARY, [TextContent(text=text)])
        store.replace_prefix(start, end, summary)
        LOGGER.info(
            "history_compacted",
            extra={"start": start, "replaced": end - start, "summary_tokens": summary.tokens},
        )
        return CompactionResult(
            turns=store.turns,
            summary_cost=summary.tokens,
            replaced=end - start,
            start=start,
        )

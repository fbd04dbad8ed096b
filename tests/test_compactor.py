import asyncio
from collections.abc import AsyncIterator, Sequence

from taskpilot.backends import BackendExecutionError, ModelBackend
from taskpilot.compactor import ContextCompactor, compactable_span, protected_indices
from taskpilot.conversation import ConversationStore, TurnKind, TurnRole


class SummaryBackend(ModelBackend):
    def __init__(self, reply: str = "Read app.py; tests fail on import.") -> None:
        self.reply = reply
        self.prompts: list[str] = []

    async def stream(
        self, system_prompt: str, messages: Sequence[dict[str, str]]
    ) -> AsyncIterator[str]:
        _ = system_prompt
        self.prompts.append(messages[-1]["content"])
        yield self.reply


class BrokenBackend(ModelBackend):
    async def stream(
        self, system_prompt: str, messages: Sequence[dict[str, str]]
    ) -> AsyncIterator[str]:
        _ = system_prompt, messages
        raise BackendExecutionError("offline")
        yield ""  # pragma: no cover


def _history() -> ConversationStore:
    store = ConversationStore(token_counter=len)
    store.add_text(TurnRole.USER, TurnKind.REQUEST, "Fix the failing tests.")
    for index in range(3):
        store.add_text(TurnRole.ASSISTANT, TurnKind.MODEL, f"step {index} " + "x" * 200)
        store.add_tool_result("read_file", "success", "y" * 200)
    return store


def test_protected_turns_cover_recent_human_and_pending() -> None:
    store = _history()
    store.add_text(TurnRole.ASSISTANT, TurnKind.MODEL, "calling", awaits_result=True)

    protected = protected_indices(store.turns, keep_recent=2)

    assert protected == {0, 6, 7}
    assert compactable_span(store.turns, keep_recent=2) == (1, 6)


def test_history_within_budget_is_left_alone() -> None:
    store = _history()
    compactor = ContextCompactor(SummaryBackend(), keep_recent=2)

    result = asyncio.run(compactor.compact(store, token_budget=store.total_tokens()))

    assert not result.changed
    assert len(store) == 7


def test_oldest_unprotected_span_becomes_one_summary() -> None:
    store = _history()
    original = store.turns
    backend = SummaryBackend()
    compactor = ContextCompactor(backend, keep_recent=2)

    result = asyncio.run(compactor.compact(store, token_budget=100))

    assert result.changed
    assert (result.start, result.replaced) == (1, 4)
    assert store.turns[0] == original[0]
    assert store.turns[1].kind is TurnKind.SUMMARY
    assert "tests fail on import" in store.turns[1].text
    assert store.turns[2:] == original[5:]
    assert "step 0" in backend.prompts[0]
    assert store.compactions[0].replaced == 4


def test_compacting_twice_removes_nothing_more() -> None:
    store = _history()
    compactor = ContextCompactor(SummaryBackend(), keep_recent=2)
    asyncio.run(compactor.compact(store, token_budget=100))
    after_first = store.turns

    result = asyncio.run(compactor.compact(store, token_budget=10))

    assert not result.changed
    assert store.turns == after_first


def test_summary_failure_falls_back_to_truncation_notice() -> None:
    store = _history()
    compactor = ContextCompactor(BrokenBackend(), keep_recent=2)

    result = asyncio.run(compactor.compact(store, token_budget=100))

    assert result.changed
    assert "earlier turns were removed" in store.turns[1].text


def test_needs_compaction_accounts_for_prompt_and_reserve() -> None:
    store = _history()
    total = store.total_tokens()
    compactor = ContextCompactor(context_window=total + 110, response_reserve=100)

    assert not compactor.needs_compaction(store, "x" * 10)
    assert compactor.needs_compaction(store, "x" * 11)
    assert compactor.token_budget == total + 10

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

import tiktoken

from taskpilot.errors import InvariantViolation

LOGGER = logging.getLogger(__name__)

DEFAULT_ENCODING = "cl100k_base"
CHARS_PER_TOKEN = 4
MESSAGE_OVERHEAD_TOKENS = 4

TokenCounter = Callable[[str], int]

_ENCODINGS: dict[str, Any] = {}


def _load_encoding(name: str) -> Any:
    if name not in _ENCODINGS:
        try:
            _ENCODINGS[name] = tiktoken.get_encoding(name)
        except Exception as exc:
            LOGGER.warning(
                "token_encoding_unavailable",
                extra={"encoding": name, "error": str(exc)},
            )
            _ENCODINGS[name] = None
    return _ENCODINGS[name]


def approximate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def count_tokens(text: str, encoding: str = DEFAULT_ENCODING) -> int:
    if not text:
        return 0
    if encoding == "chars":
        return approximate_tokens(text)
    loaded = _load_encoding(encoding)
    if loaded is None:
        return approximate_tokens(text)
    return len(loaded.encode(text, disallowed_special=()))


def token_counter_for(encoding: str) -> TokenCounter:
    return lambda text: count_tokens(text, encoding)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TurnRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class TurnKind(str, Enum):
    REQUEST = "request"
    MODEL = "model"
    TOOL_RESULT = "tool_result"
    FEEDBACK = "feedback"
    GUIDANCE = "guidance"
    SUMMARY = "summary"
    RESUMPTION = "resumption"


# Turns carrying instructions that came from a person rather than the loop.
HUMAN_KINDS = {TurnKind.REQUEST, TurnKind.GUIDANCE}


@dataclass(slots=True, frozen=True)
class TextContent:
    text: str

    def render(self) -> str:
        return self.text

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(slots=True, frozen=True)
class ToolResultContent:
    tool: str
    status: str
    content: str

    def render(self) -> str:
        return f"[{self.tool}] Result ({self.status}):\n{self.content}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "tool_result",
            "tool": self.tool,
            "status": self.status,
            "content": self.content,
        }


ContentBlock = TextContent | ToolResultContent


def _block_from_dict(payload: dict[str, Any]) -> ContentBlock:
    block_type = payload.get("type")
    if block_type == "text":
        return TextContent(text=str(payload.get("text", "")))
    if block_type == "tool_result":
        return ToolResultContent(
            tool=str(payload.get("tool", "")),
            status=str(payload.get("status", "")),
            content=str(payload.get("content", "")),
        )
    raise InvariantViolation(f"Unknown content block type in history: {block_type!r}")


@dataclass(slots=True, frozen=True)
class Turn:
    role: TurnRole
    kind: TurnKind
    blocks: tuple[ContentBlock, ...]
    tokens: int = 0
    created_at: str = field(default_factory=_utcnow_iso)
    awaits_result: bool = False

    @property
    def text(self) -> str:
        return "\n\n".join(block.render() for block in self.blocks)

    @property
    def from_human(self) -> bool:
        return self.kind in HUMAN_KINDS

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "kind": self.kind.value,
            "blocks": [block.to_dict() for block in self.blocks],
            "tokens": self.tokens,
            "created_at": self.created_at,
            "awaits_result": self.awaits_result,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Turn:
        try:
            return cls(
                role=TurnRole(payload["role"]),
                kind=TurnKind(payload["kind"]),
                blocks=tuple(_block_from_dict(item) for item in payload.get("blocks", [])),
                tokens=int(payload.get("tokens", 0)),
                created_at=str(payload.get("created_at") or _utcnow_iso()),
                awaits_result=bool(payload.get("awaits_result", False)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvariantViolation(f"Corrupt turn in saved history: {exc}") from exc


@dataclass(slots=True, frozen=True)
class CompactionMarker:
    """Cost-reset marker recorded whenever a prefix is replaced by a summary."""

    start: int
    replaced: int
    tokens_before: int
    tokens_after: int
    at: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start": self.start,
            "replaced": self.replaced,
            "tokens_before": self.tokens_before,
            "tokens_after": self.tokens_after,
            "at": self.at,
        }


@dataclass(slots=True)
class Usage:
    requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "requests": self.requests,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }


class ConversationStore:
    """Append-only turn history with token accounting."""

    def __init__(
        self,
        turns: Iterable[Turn] = (),
        *,
        token_counter: TokenCounter | None = None,
    ) -> None:
        self._turns: list[Turn] = list(turns)
        self.token_counter = token_counter or count_tokens
        self.usage = Usage()
        self.compactions: list[CompactionMarker] = []
        self._sealed = False

    def __len__(self) -> int:
        return len(self._turns)

    @property
    def turns(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        self._sealed = True

    def _guard(self) -> None:
        if self._sealed:
            raise InvariantViolation("Conversation is sealed; the task already finished.")

    def make_turn(
        self,
        role: TurnRole,
        kind: TurnKind,
        blocks: Iterable[ContentBlock],
        *,
        awaits_result: bool = False,
    ) -> Turn:
        block_tuple = tuple(blocks)
        text = "\n\n".join(block.render() for block in block_tuple)
        return Turn(
            role=role,
            kind=kind,
            blocks=block_tuple,
            tokens=self.token_counter(text) + MESSAGE_OVERHEAD_TOKENS,
            awaits_result=awaits_result,
        )

    def append(self, turn: Turn) -> Turn:
        self._guard()
        self._turns.append(turn)
        return turn

    def add_text(self, role: TurnRole, kind: TurnKind, *texts: str, **kwargs: Any) -> Turn:
        blocks = [TextContent(text=text) for text in texts if text]
        return self.append(self.make_turn(role, kind, blocks, **kwargs))

    def add_tool_result(self, tool: str, status: str, content: str, *extra: str) -> Turn:
        blocks: list[ContentBlock] = [ToolResultContent(tool=tool, status=status, content=content)]
        blocks.extend(TextContent(text=text) for text in extra if text)
        return self.append(self.make_turn(TurnRole.USER, TurnKind.TOOL_RESULT, blocks))

    @property
    def pending_index(self) -> int | None:
        """Index of the assistant turn whose tool result has not been appended."""
        if self._turns and self._turns[-1].awaits_result:
            return len(self._turns) - 1
        return None

    def last_human_index(self) -> int | None:
        for index in range(len(self._turns) - 1, -1, -1):
            if self._turns[index].from_human:
                return index
        return None

    def total_tokens(self) -> int:
        return sum(turn.tokens for turn in self._turns)

    def record_usage(self, *, input_tokens: int, output_tokens: int) -> None:
        self.usage.requests += 1
        self.usage.input_tokens += input_tokens
        self.usage.output_tokens += output_tokens

    def replace_prefix(self, start: int, end: int, summary: Turn) -> CompactionMarker:
        """Replace ``turns[start:end]`` with ``summary`` in one step."""
        self._guard()
        if not 0 <= start < end <= len(self._turns):
            raise InvariantViolation(f"Invalid compaction span [{start}, {end}).")
        pending = self.pending_index
        if pending is not None and start <= pending < end:
            raise InvariantViolation("Cannot compact a turn that still awaits a tool result.")
        tokens_before = self.total_tokens()
        self._turns = [*self._turns[:start], summary, *self._turns[end:]]
        marker = CompactionMarker(
            start=start,
            replaced=end - start,
            tokens_before=tokens_before,
            tokens_after=self.total_tokens(),
        )
        self.compactions.append(marker)
        return marker

    def render(self) -> list[dict[str, str]]:
        messages: list[dict[str, str]] = []
        for turn in self._turns:
            text = turn.text
            if messages and messages[-1]["role"] == turn.role.value:
                messages[-1]["content"] = f"{messages[-1]['content']}\n\n{text}"
                continue
            messages.append({"role": turn.role.value, "content": text})
        return messages

    def to_dict(self) -> dict[str, Any]:
        return {
            "turns": [turn.to_dict() for turn in self._turns],
            "usage": self.usage.to_dict(),
            "compactions": [marker.to_dict() for marker in self.compactions],
        }

    @classmethod
    def from_dict(
        cls, payload: dict[str, Any], *, token_counter: TokenCounter | None = None
    ) -> ConversationStore:
        raw_turns = payload.get("turns")
        if not isinstance(raw_turns, list):
            raise InvariantViolation("Saved history has no turn list.")
        store = cls(
            (Turn.from_dict(item) for item in raw_turns),
            token_counter=token_counter,
        )
        usage = payload.get("usage")
        if isinstance(usage, dict):
            store.usage = Usage(
                requests=int(usage.get("requests", 0)),
                input_tokens=int(usage.get("input_tokens", 0)),
                output_tokens=int(usage.get("output_tokens", 0)),
            )
        for item in payload.get("compactions", []) or []:
            if isinstance(item, dict):
                store.compactions.append(
                    CompactionMarker(
                        start=int(item.get("start", 0)),
                        replaced=int(item.get("replaced", 0)),
                        tokens_before=int(item.get("tokens_before", 0)),
                        tokens_after=int(item.get("tokens_after", 0)),
                        at=str(item.get("at") or _utcnow_iso()),
                    )
                )
        return store

from __future__ import annotations

import hashlib
import json
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Any

from taskpilot.parser import ToolInvocation

TEXT_EDIT_TOOLS = {"write_to_file", "replace_in_file"}
NEAR_DUPLICATE_RATIO = 0.95


@dataclass(slots=True, frozen=True)
class Signature:
    tool: str
    digest: str
    path: str = ""
    body: str = ""


@dataclass(slots=True, frozen=True)
class RepetitionVerdict:
    loop: bool
    occurrences: int
    signature: Signature


def normalize_params(params: Mapping[str, str]) -> dict[str, str]:
    return {key.strip(): value.strip() for key, value in sorted(params.items())}


def signature_for(invocation: ToolInvocation) -> Signature:
    normalized = normalize_params(invocation.params)
    digest = hashlib.sha256(
        json.dumps(normalized, sort_keys=True, ensure_ascii=False).encode("utf-8")
    ).hexdigest()
    body = ""
    if invocation.name in TEXT_EDIT_TOOLS:
        body = normalized.get("content") or normalized.get("diff") or ""
    return Signature(
        tool=invocation.name,
        digest=digest,
        path=normalized.get("path", ""),
        body=body,
    )


def _matches(left: Signature, right: Signature) -> bool:
    if left.tool != right.tool:
        return False
    if left.digest == right.digest:
        return True
    if left.tool not in TEXT_EDIT_TOOLS or left.path != right.path:
        return False
    if not left.body or not right.body:
        return False
    return SequenceMatcher(None, left.body, right.body).ratio() >= NEAR_DUPLICATE_RATIO


class RepetitionMonitor:
    """Flags a loop when the same invocation repeats ``threshold`` times in a row."""

    def __init__(self, *, threshold: int = 3, window: int = 10) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.window: deque[Signature] = deque(maxlen=max(window, threshold))

    def check(self, invocation: ToolInvocation) -> RepetitionVerdict:
        signature = signature_for(invocation)
        self.window.append(signature)
        occurrences = 0
        for previous in reversed(self.window):
            if not _matches(previous, signature):
                break
            occurrences += 1
        if occurrences >= self.threshold:
            self.window.clear()
            return RepetitionVerdict(loop=True, occurrences=occurrences, signature=signature)
        return RepetitionVerdict(loop=False, occurrences=occurrences, signature=signature)

    def note_state_change(self) -> None:
        self.window.clear()

    def to_dict(self) -> dict[str, Any]:
        return {
            "threshold": self.threshold,
            "window_size": self.window.maxlen,
            "window": [
                {"tool": item.tool, "digest": item.digest, "path": item.path, "body": item.body}
                for item in self.window
            ],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RepetitionMonitor:
        monitor = cls(
            threshold=int(payload.get("threshold", 3)),
            window=int(payload.get("window_size", 10)),
        )
        for item in payload.get("window", []) or []:
            if isinstance(item, Mapping):
                monitor.window.append(
                    Signature(
                        tool=str(item.get("tool", "")),
                        digest=str(item.get("digest", "")),
                        path=str(item.get("path", "")),
                        body=str(item.get("body", "")),
                    )
                )
        return monitor


class MistakeCounter:
    """Consecutive-mistake count with an escalation limit."""

    def __init__(self, limit: int = 3, count: int = 0) -> None:
        if limit < 1:
            raise ValueError("limit must be at least 1")
        self.limit = limit
        self.count = count
        self.last_reason = ""

    @property
    def reached(self) -> bool:
        return self.count >= self.limit

    def increment(self, reason: str) -> bool:
        if not self.reached:
            self.count += 1
        self.last_reason = reason
        return self.reached

    def reset(self) -> None:
        self.count = 0
        self.last_reason = ""

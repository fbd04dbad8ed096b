from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum

from taskpilot.tools.registry import GROUP_COMMAND, GROUP_EDIT, ToolDescriptor

LOGGER = logging.getLogger(__name__)


class ApprovalStatus(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    AUTO_APPROVED = "auto_approved"


class RequestKind(str, Enum):
    TOOL = "tool"
    COMPLETION = "completion"
    REQUEST_LIMIT = "request_limit"
    BACKEND_RETRY = "backend_retry"


@dataclass(slots=True, frozen=True)
class ApprovalDecision:
    status: ApprovalStatus
    reason: str = ""
    feedback: str = ""

    @property
    def approved(self) -> bool:
        return self.status is not ApprovalStatus.REJECTED

    @classmethod
    def approve(cls, feedback: str = "") -> ApprovalDecision:
        return cls(ApprovalStatus.APPROVED, feedback=feedback)

    @classmethod
    def auto(cls, reason: str = "policy") -> ApprovalDecision:
        return cls(ApprovalStatus.AUTO_APPROVED, reason=reason)

    @classmethod
    def reject(cls, reason: str = "", feedback: str = "") -> ApprovalDecision:
        return cls(ApprovalStatus.REJECTED, reason=reason or "rejected by user", feedback=feedback)


@dataclass(slots=True, frozen=True)
class ApprovalRequest:
    kind: RequestKind
    task_id: str
    summary: str
    tool: str | None = None
    params: dict[str, str] = field(default_factory=dict)


class ApprovalChannel(ABC):
    @abstractmethod
    async def request(self, request: ApprovalRequest) -> ApprovalDecision:
        """Resolve an approval request. May wait indefinitely for a person."""

    @abstractmethod
    async def ask(self, task_id: str, question: str) -> str:
        """Ask the operator a free-form question and return the answer."""


@dataclass(slots=True)
class ApprovalPolicy:
    auto_approve_read: bool = True
    auto_approve_edit: bool = False
    auto_approve_command: bool = False
    always_allow: set[str] = field(default_factory=set)

    def auto_approves(self, tool: ToolDescriptor) -> bool:
        if tool.name in self.always_allow:
            return True
        if tool.group == GROUP_COMMAND:
            return self.auto_approve_command
        if tool.group == GROUP_EDIT or tool.mutating:
            return self.auto_approve_edit
        return self.auto_approve_read


class ApprovalGate:
    """Policy check first, interactive channel for everything the policy leaves open."""

    def __init__(self, policy: ApprovalPolicy, channel: ApprovalChannel) -> None:
        self.policy = policy
        self.channel = channel

    def needs_interaction(self, tool: ToolDescriptor) -> bool:
        return not self.policy.auto_approves(tool)

    async def check(
        self, tool: ToolDescriptor, params: dict[str, str], *, task_id: str, summary: str
    ) -> ApprovalDecision:
        if not self.needs_interaction(tool):
            return ApprovalDecision.auto()
        decision = await self.channel.request(
            ApprovalRequest(
                kind=RequestKind.TOOL,
                task_id=task_id,
                summary=summary,
                tool=tool.name,
                params=dict(params),
            )
        )
        LOGGER.info(
            "approval_resolved",
            extra={"task_id": task_id, "tool": tool.name, "status": decision.status.value},
        )
        return decision


class PolicyApprovalChannel(ApprovalChannel):
    """Non-interactive channel: approves everything, answers with a fixed reply."""

    def __init__(self, *, answer: str = "", reject: Iterable[RequestKind] = ()) -> None:
        self.answer = answer
        self.reject_kinds = set(reject)

    async def request(self, request: ApprovalRequest) -> ApprovalDecision:
        if request.kind in self.reject_kinds:
            return ApprovalDecision.reject("rejected by policy")
        return ApprovalDecision.auto()

    async def ask(self, task_id: str, question: str) -> str:
        _ = task_id, question
        return self.answer


RequestCallback = Callable[[ApprovalRequest], ApprovalDecision | Awaitable[ApprovalDecision]]
AskCallback = Callable[[str], str | Awaitable[str]]


class CallbackApprovalChannel(ApprovalChannel):
    """Adapts plain (sync or async) callables, e.g. terminal prompts."""

    def __init__(self, on_request: RequestCallback, on_ask: AskCallback) -> None:
        self.on_request = on_request
        self.on_ask = on_ask

    async def request(self, request: ApprovalRequest) -> ApprovalDecision:
        result = self.on_request(request)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def ask(self, task_id: str, question: str) -> str:
        _ = task_id
        answer = self.on_ask(question)
        if inspect.isawaitable(answer):
            answer = await answer
        return str(answer)

from __future__ import annotations


class TaskpilotError(RuntimeError):
    """Base class for engine errors."""


class ParseError(TaskpilotError):
    """Raised when a tool invocation cannot be accepted as written."""

    code = "parse_error"

    def __init__(self, message: str, *, tool: str | None = None) -> None:
        super().__init__(message)
        self.tool = tool


class UnknownTool(ParseError):
    code = "unknown_tool"


class MissingParameter(ParseError):
    code = "missing_parameter"

    def __init__(self, message: str, *, tool: str | None = None, parameter: str = "") -> None:
        super().__init__(message, tool=tool)
        self.parameter = parameter


class MalformedInvocation(ParseError):
    code = "malformed_invocation"


class ToolPermissionError(TaskpilotError):
    """Raised when the active mode does not permit a tool."""


class ToolExecutionError(TaskpilotError):
    """Raised by executors. Recoverable failures may use a degraded fallback."""

    def __init__(self, message: str, *, recoverable: bool = False) -> None:
        super().__init__(message)
        self.recoverable = recoverable


class CheckpointError(TaskpilotError):
    """Raised when a snapshot or restore could not complete."""


class TaskCancelled(TaskpilotError):
    """Raised when the abort signal interrupts an awaited operation."""


class InvariantViolation(TaskpilotError):
    """Raised on internal corruption; ends the task in FAILED."""


class StateStoreError(TaskpilotError):
    """Raised when persisted state operations fail."""

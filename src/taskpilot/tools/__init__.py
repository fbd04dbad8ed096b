from taskpilot.tools.registry import (
    BUILTIN_TOOLS,
    DEFAULT_MODES,
    ExecutorOutput,
    ToolDescriptor,
    ToolExecutor,
    ToolRegistry,
)

__all__ = [
    "BUILTIN_TOOLS",
    "DEFAULT_MODES",
    "ExecutorOutput",
    "ToolDescriptor",
    "ToolExecutor",
    "ToolRegistry",
]

from taskpilot.backends.base import (
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    ModelBackend,
)
from taskpilot.backends.command import CommandBackend
from taskpilot.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CommandBackend",
    "ModelBackend",
    "ResilientBackend",
    "RetryPolicy",
]

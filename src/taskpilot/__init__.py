"""Autonomous task-execution engine driving a model through tool invocations."""

__version__ = "0.1.0"

"""Core components shared by the workflow engine."""

from core.errors import (
    FlowGraphError,
    ConfigurationError,
    TaskExecutionError,
    ErrorCode,
)

__all__ = [
    "FlowGraphError",
    "ConfigurationError",
    "TaskExecutionError",
    "ErrorCode",
]

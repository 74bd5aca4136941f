"""Task kinds and their executors."""

from tasks.registry import TaskKind, TaskKindRegistry, register_builtin_kinds
from tasks.fetch import FetchExecutor

__all__ = ["TaskKind", "TaskKindRegistry", "register_builtin_kinds", "FetchExecutor"]

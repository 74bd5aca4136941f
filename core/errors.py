"""Engine-wide exception hierarchy."""

from enum import Enum


class ErrorCode(str, Enum):
    """Task-level error codes recorded on failed ExecutionResults."""
    EXECUTOR_ERROR = "ExecutorError"
    INVALID_ARRAY_INPUT = "InvalidArrayInput"
    MISSING_PROPERTY = "MissingProperty"
    MISSING_EXECUTOR = "MissingExecutor"


class FlowGraphError(Exception):
    """Base exception for all workflow engine errors."""
    pass

class ConfigurationError(FlowGraphError):
    """The graph cannot run as configured. Fatal to the whole run."""
    pass

class NoEntryTaskError(ConfigurationError):
    """Every task has at least one inbound connection."""
    def __init__(self):
        super().__init__("No entry task: every task has an inbound connection")

class AmbiguousEntryTaskError(ConfigurationError):
    """More than one task has no inbound connection."""
    def __init__(self, candidates: list[str]):
        self.candidates = candidates
        super().__init__(f"Ambiguous entry task: {', '.join(candidates)}")

class InvalidGraphError(ConfigurationError):
    """Whole-graph legality pass found problems."""
    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__(f"Invalid graph: {'; '.join(problems)}")

class IllegalConnectionError(ConfigurationError):
    """A proposed connection was refused by the validator."""
    def __init__(self, connection, reason: str = "rejected by validator"):
        self.connection = connection
        super().__init__(f"Illegal connection {connection}: {reason}")

class UnknownTaskKindError(ConfigurationError):
    """A task references a kind that is not registered."""
    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unknown task kind: {kind}")

class GraphDocumentError(ConfigurationError):
    """A persisted graph document could not be parsed."""
    pass

class RunInProgressError(FlowGraphError):
    """A run was started while another is still executing."""
    pass

class RunCancelledError(FlowGraphError):
    """The run was abandoned through its cancellation token."""
    pass

class TaskExecutionError(FlowGraphError):
    """Error raised by a task-kind implementation."""
    def __init__(self, task_id: str, message: str, original_error: Exception | None = None):
        self.task_id = task_id
        self.original_error = original_error
        super().__init__(f"Task '{task_id}' failed: {message}")

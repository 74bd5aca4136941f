"""Workflow graphs: model, validation, scheduling and results."""

from workflows.models import Task, Connection, Graph, ExecutionResult, TaskFailure, TaskStatus, WorkflowRun
from workflows.validator import is_legal, validate_graph, require_valid, find_entry_task
from workflows.results import ResultSink
from workflows.engine import CancellationToken, WorkflowScheduler
from workflows.executor import WorkflowRunner
from workflows.editor import EditorSession
from workflows.serialization import load_graph, save_graph

__all__ = [
    "Task", "Connection", "Graph", "ExecutionResult", "TaskFailure", "TaskStatus", "WorkflowRun",
    "is_legal", "validate_graph", "require_valid", "find_entry_task",
    "ResultSink", "CancellationToken", "WorkflowScheduler", "WorkflowRunner",
    "EditorSession", "load_graph", "save_graph",
]

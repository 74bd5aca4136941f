"""
Trace data models.

A TraceSpan is one unit of observable work. Spans form trees:
  workflow_run
  ├── validation
  ├── task_execution (fetch-users)
  ├── iteration (for-each-user)
  │   ├── task_execution (fetch-profile, element 0)
  │   ├── task_execution (fetch-profile, element 1)
  │   └── ...
  └── task_execution (notify)

trace_id groups all spans belonging to one run.
parent_id links children to parents.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SpanType(str, Enum):
    WORKFLOW_RUN = "workflow_run"
    VALIDATION = "validation"
    TASK_EXECUTION = "task_execution"
    ITERATION = "iteration"


class SpanStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


@dataclass
class TraceSpan:
    """One observable unit of work."""
    # Identity
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    parent_id: str | None = None
    trace_id: str | None = None

    # What
    span_type: SpanType = SpanType.TASK_EXECUTION
    name: str = ""
    task_id: str | None = None
    task_kind: str | None = None
    iteration: int | None = None

    # When
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    ended_at: str | None = None
    duration_ms: float = 0.0

    # Status
    status: SpanStatus = SpanStatus.PENDING
    error: str | None = None

    # Payload
    input_data: dict = field(default_factory=dict)
    output_data: dict = field(default_factory=dict)

"""Workflow graph data models."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from core.errors import ErrorCode, InvalidGraphError


FETCH_KIND = "FetchTask"
ITERATE_KIND = "IterateTask"

# IterateTask ports. FetchTask uses the unnamed port (None) on both sides.
INPUT_PORT = "input"
OUTPUT_PORT = "output"
RETURN_PORT = "return"
DEFAULT_PORT = None

ANY_PORT = object()  # Sentinel for "do not filter by port"


class TaskStatus(str, Enum):
    """Execution status of a task within one run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class Task:
    """Single node in the workflow graph."""
    id: str
    kind: str
    config: dict[str, Any] = field(default_factory=dict, hash=False)

    def with_config(self, config: dict[str, Any]) -> "Task":
        """Whole-config replacement. Returns a new Task."""
        return replace(self, config=dict(config))


@dataclass(frozen=True)
class Connection:
    """Directed port-to-port edge between two tasks."""
    source: str
    target: str
    source_port: str | None = DEFAULT_PORT
    target_port: str | None = DEFAULT_PORT

    def __str__(self) -> str:
        src = f"{self.source}:{self.source_port}" if self.source_port else self.source
        dst = f"{self.target}:{self.target_port}" if self.target_port else self.target
        return f"{src} -> {dst}"


@dataclass(frozen=True)
class TaskFailure:
    """Error outcome handed to dependents as their input value."""
    task_id: str
    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.task_id}: {self.message}"


@dataclass
class ExecutionResult:
    """Recorded outcome of one task execution."""
    task_id: str
    kind: str
    status: TaskStatus
    value: Any = None
    error: str | None = None
    error_code: ErrorCode | None = None

    # Set for executions inside an iteration body
    iteration: int | None = None
    parent_id: str | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def as_input(self) -> Any:
        """Value a dependent receives from this result."""
        if self.ok:
            return self.value
        return TaskFailure(self.task_id, self.error_code or ErrorCode.EXECUTOR_ERROR, self.error or "")

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "kind": self.kind,
            "status": self.status.value,
            "value": self.value,
            "error": self.error,
            "error_code": self.error_code.value if self.error_code else None,
            "iteration": self.iteration,
            "parent_id": self.parent_id,
            "duration_ms": self.duration_ms,
        }


@dataclass
class WorkflowRun:
    """Outcome of one run of a graph."""
    id: str
    entry_task: str | None = None
    status: str = "running"  # running, completed, failed
    results: list[ExecutionResult] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None
    error: str | None = None


class Graph:
    """
    Read-only view of tasks and connections for one run.

    Edges are indexed by source, by (source, port) and by (target, port) at
    construction time, so edge queries cost O(degree) instead of a scan.
    Editing methods return new Graph instances.
    """

    def __init__(self, tasks: Iterable[Task] = (), connections: Iterable[Connection] = ()):
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            if task.id in self._tasks:
                raise InvalidGraphError([f"Duplicate task id '{task.id}'"])
            self._tasks[task.id] = task

        self._connections: tuple[Connection, ...] = tuple(connections)
        self._outgoing: dict[str, list[Connection]] = {}
        self._incoming: dict[str, list[Connection]] = {}
        self._outgoing_by_port: dict[tuple[str, str | None], list[Connection]] = {}
        self._incoming_by_port: dict[tuple[str, str | None], list[Connection]] = {}

        for conn in self._connections:
            self._outgoing.setdefault(conn.source, []).append(conn)
            self._incoming.setdefault(conn.target, []).append(conn)
            self._outgoing_by_port.setdefault((conn.source, conn.source_port), []).append(conn)
            self._incoming_by_port.setdefault((conn.target, conn.target_port), []).append(conn)

    # ── lookup ─────────────────────────────────────────────────────
    @property
    def tasks_by_id(self) -> Mapping[str, Task]:
        return MappingProxyType(self._tasks)

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    @property
    def connections(self) -> tuple[Connection, ...]:
        return self._connections

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def outgoing_connections(self, task_id: str, port: Any = ANY_PORT) -> list[Connection]:
        """Connections leaving a task, optionally only from one port."""
        if port is ANY_PORT:
            return list(self._outgoing.get(task_id, ()))
        return list(self._outgoing_by_port.get((task_id, port), ()))

    def incoming_connections(self, task_id: str, port: Any = ANY_PORT) -> list[Connection]:
        """Connections entering a task, optionally only into one port."""
        if port is ANY_PORT:
            return list(self._incoming.get(task_id, ()))
        return list(self._incoming_by_port.get((task_id, port), ()))

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Graph):
            return NotImplemented
        return (
            self._tasks == other._tasks
            and set(self._connections) == set(other._connections)
        )

    def __repr__(self) -> str:
        return f"Graph(tasks={len(self._tasks)}, connections={len(self._connections)})"

    # ── edge classification ────────────────────────────────────────
    def is_iterate(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        return task is not None and task.kind == ITERATE_KIND

    def is_loop_closing(self, conn: Connection) -> bool:
        """Edge from an iteration body back into an IterateTask's return port."""
        return conn.target_port == RETURN_PORT and self.is_iterate(conn.target)

    def is_fan_out(self, conn: Connection) -> bool:
        return conn.source_port == OUTPUT_PORT and self.is_iterate(conn.source)

    def is_fan_in(self, conn: Connection) -> bool:
        return conn.source_port == RETURN_PORT and self.is_iterate(conn.source)

    def is_return(self, conn: Connection) -> bool:
        return self.is_loop_closing(conn) or self.is_fan_in(conn)

    def is_ordinary(self, conn: Connection) -> bool:
        """Anything that does not touch a return port."""
        return conn.source_port != RETURN_PORT and conn.target_port != RETURN_PORT

    def ordinary_successors(self, task_id: str) -> list[str]:
        return [c.target for c in self._outgoing.get(task_id, ()) if self.is_ordinary(c)]

    def dependency_inputs(self, task_id: str) -> list[Connection]:
        """Inbound connections whose sources must resolve before the task runs."""
        return [c for c in self._incoming.get(task_id, ()) if not self.is_loop_closing(c)]

    def entry_candidates(self) -> list[str]:
        """Tasks with no inbound connection (loop-closing edges ignored)."""
        return [tid for tid in self._tasks if not self.dependency_inputs(tid)]

    def reachable_from(
        self,
        start_ids: Iterable[str],
        follow: Callable[[Connection], bool],
    ) -> set[str]:
        """Forward depth-first search over the edges accepted by `follow`."""
        visited: set[str] = set()
        stack = list(start_ids)
        while stack:
            node_id = stack.pop()
            if node_id in visited:
                continue
            visited.add(node_id)
            for conn in self._outgoing.get(node_id, ()):
                if follow(conn) and conn.target not in visited:
                    stack.append(conn.target)
        return visited

    def iteration_body(self, iterate_id: str) -> set[str]:
        """
        Tasks executed once per element of an IterateTask.

        Starts at the output successors and follows everything except
        loop-closing edges and other iterate tasks' output edges, so a
        nested iteration's body belongs to the nested task, while its
        return successors stay in this body.
        """
        starts = [c.target for c in self.outgoing_connections(iterate_id, OUTPUT_PORT)]
        return self.reachable_from(
            starts,
            follow=lambda c: not self.is_loop_closing(c) and not self.is_fan_out(c),
        )

    # ── editing (returns new graphs) ───────────────────────────────
    def with_task(self, task: Task) -> "Graph":
        tasks = dict(self._tasks)
        tasks[task.id] = task
        return Graph(tasks.values(), self._connections)

    def without_task(self, task_id: str) -> "Graph":
        return Graph(
            (t for t in self._tasks.values() if t.id != task_id),
            (c for c in self._connections if task_id not in (c.source, c.target)),
        )

    def with_connection(self, conn: Connection) -> "Graph":
        return Graph(self._tasks.values(), self._connections + (conn,))

    def without_connection(self, conn: Connection) -> "Graph":
        return Graph(self._tasks.values(), (c for c in self._connections if c != conn))

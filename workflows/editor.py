"""
Headless graph editing session.

Every edit produces a new Graph snapshot. Snapshots equal to the current one
are not recorded, so no-op edits leave nothing to undo. The clipboard belongs
to the session; two sessions never see each other's copies.
"""
import logging
from typing import Any

from core.errors import ConfigurationError, IllegalConnectionError
from workflows.models import Connection, Graph, Task
from workflows.validator import closes_iteration, is_legal

logger = logging.getLogger(__name__)

MAX_HISTORY = 100


class EditorSession:
    """Undoable edits over a graph."""

    def __init__(self, graph: Graph | None = None, max_history: int = MAX_HISTORY):
        self._history: list[Graph] = [graph if graph is not None else Graph()]
        self._redo: list[Graph] = []
        self._clipboard: Task | None = None
        self._max_history = max_history

    @property
    def graph(self) -> Graph:
        return self._history[-1]

    def _commit(self, graph: Graph) -> Graph:
        if graph == self.graph:
            return graph
        self._history.append(graph)
        if len(self._history) > self._max_history:
            del self._history[0]
        self._redo.clear()
        return graph

    # ── tasks ──────────────────────────────────────────────────────
    def add_task(self, task: Task) -> Task:
        if task.id in self.graph:
            raise ConfigurationError(f"Task '{task.id}' already exists")
        self._commit(self.graph.with_task(task))
        return task

    def remove_task(self, task_id: str) -> None:
        """Remove a task together with every connection touching it."""
        if task_id not in self.graph:
            raise ConfigurationError(f"Task '{task_id}' not found")
        self._commit(self.graph.without_task(task_id))

    def replace_config(self, task_id: str, config: dict[str, Any]) -> Task:
        task = self.graph.get_task(task_id)
        if task is None:
            raise ConfigurationError(f"Task '{task_id}' not found")
        updated = task.with_config(config)
        self._commit(self.graph.with_task(updated))
        return updated

    # ── connections ────────────────────────────────────────────────
    def connect(self, conn: Connection) -> Connection:
        """Admit a connection if the validator accepts it."""
        for task_id in (conn.source, conn.target):
            if task_id not in self.graph:
                raise IllegalConnectionError(conn, f"task '{task_id}' not found")
        if not is_legal(conn, self.graph):
            raise IllegalConnectionError(conn)
        self._commit(self.graph.with_connection(conn))
        return conn

    def disconnect(self, conn: Connection) -> None:
        self._commit(self.graph.without_connection(conn))

    def stale_connections(self) -> list[Connection]:
        """Loop-closing edges that later edits have left without a loop to close."""
        graph = self.graph
        return [
            conn for conn in graph.connections
            if graph.is_loop_closing(conn)
            and not closes_iteration(conn, graph.without_connection(conn))
        ]

    # ── clipboard ──────────────────────────────────────────────────
    def copy(self, task_id: str) -> Task:
        task = self.graph.get_task(task_id)
        if task is None:
            raise ConfigurationError(f"Task '{task_id}' not found")
        self._clipboard = task
        logger.debug(f"Task {task_id} copied")
        return task

    def paste(self) -> Task | None:
        """Add a copy of the clipboard task under a fresh id. Connections are not copied."""
        if self._clipboard is None:
            logger.warning("No task in clipboard to paste")
            return None

        n = 1
        while f"{self._clipboard.id}-copy-{n}" in self.graph:
            n += 1
        task = Task(
            id=f"{self._clipboard.id}-copy-{n}",
            kind=self._clipboard.kind,
            config=dict(self._clipboard.config),
        )
        return self.add_task(task)

    # ── history ────────────────────────────────────────────────────
    @property
    def can_undo(self) -> bool:
        return len(self._history) > 1

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def undo(self) -> bool:
        if not self.can_undo:
            return False
        self._redo.append(self._history.pop())
        return True

    def redo(self) -> bool:
        if not self.can_redo:
            return False
        self._history.append(self._redo.pop())
        return True

"""
Task Kind Registry — Central hub for the kinds of work a graph can hold.

Kinds are registered with:
- name: the `kind` string stored on each Task
- input_ports / output_ports: the attachment points the kind exposes
- factory: builds an async executor for one task from its config
- scheduler_owned: True for kinds the scheduler routes itself (IterateTask)
"""
import logging
from dataclasses import dataclass
from functools import partial
from typing import Any, Awaitable, Callable

import httpx

from core.errors import UnknownTaskKindError
from workflows.models import (
    Graph, Task,
    FETCH_KIND, ITERATE_KIND,
    DEFAULT_PORT, INPUT_PORT, OUTPUT_PORT, RETURN_PORT,
)

logger = logging.getLogger(__name__)

Executor = Callable[[Any], Awaitable[Any]]
ExecutorFactory = Callable[[Task], Executor]


@dataclass
class TaskKind:
    """Port layout and executor factory for one task kind."""
    name: str
    description: str
    input_ports: tuple[str | None, ...]
    output_ports: tuple[str | None, ...]
    factory: ExecutorFactory | None = None
    scheduler_owned: bool = False


class TaskKindRegistry:
    """
    Singleton registry of task kinds.

    Usage:
        registry = TaskKindRegistry.instance()
        registry.register(TaskKind(name="Echo", ...))
        executor_of = registry.build_executors(graph)
    """
    _instance: "TaskKindRegistry | None" = None

    def __init__(self, with_builtins: bool = True):
        self._kinds: dict[str, TaskKind] = {}
        if with_builtins:
            register_builtin_kinds(self)

    @classmethod
    def instance(cls) -> "TaskKindRegistry":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset singleton for testing."""
        cls._instance = None

    def register(self, kind: TaskKind, replace: bool = False) -> None:
        """Register a kind. Raises if the name already exists."""
        if kind.name in self._kinds and not replace:
            raise ValueError(f"Task kind '{kind.name}' already registered")
        self._kinds[kind.name] = kind
        logger.info(f"Registered task kind: {kind.name} (inputs={kind.input_ports}, outputs={kind.output_ports})")

    def get(self, name: str) -> TaskKind | None:
        return self._kinds.get(name)

    def require(self, name: str) -> TaskKind:
        kind = self._kinds.get(name)
        if kind is None:
            raise UnknownTaskKindError(name)
        return kind

    def list_kinds(self) -> list[TaskKind]:
        return list(self._kinds.values())

    def __contains__(self, name: object) -> bool:
        return name in self._kinds

    def build_executors(self, graph: Graph) -> dict[str, Executor]:
        """
        Build the task_id -> executor table for one run.

        Executors close over the task's config as it is now; later edits to
        the graph do not reach a table that is already built.
        """
        table: dict[str, Executor] = {}
        for task in graph.tasks:
            kind = self.require(task.kind)
            if kind.scheduler_owned or kind.factory is None:
                continue
            table[task.id] = kind.factory(task)
        return table


def register_builtin_kinds(
    registry: TaskKindRegistry,
    transport: httpx.AsyncBaseTransport | None = None,
) -> None:
    """Register FetchTask and IterateTask."""
    from tasks.fetch import make_fetch_executor

    registry.register(TaskKind(
        name=FETCH_KIND,
        description="Issue an HTTP request and return the parsed JSON response.",
        input_ports=(DEFAULT_PORT,),
        output_ports=(DEFAULT_PORT,),
        factory=partial(make_fetch_executor, transport=transport),
    ), replace=True)

    registry.register(TaskKind(
        name=ITERATE_KIND,
        description="Run the output subgraph once per array element, then fire return once.",
        input_ports=(INPUT_PORT, RETURN_PORT),
        output_ports=(OUTPUT_PORT, RETURN_PORT),
        scheduler_owned=True,
    ), replace=True)

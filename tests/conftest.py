"""Shared fixtures: isolated trace database, fresh singletons, Echo and Merge task kinds."""

import pytest

from tasks.registry import TaskKind, TaskKindRegistry
from tracing.tracer import Tracer
from workflows.models import Connection, Task, FETCH_KIND, ITERATE_KIND

ECHO_KIND = "Echo"
MERGE_KIND = "Merge"


def _echo_factory(task: Task):
    async def echo(input_value):
        if task.config.get("fail"):
            raise RuntimeError(task.config["fail"])
        return task.config.get("value", input_value)
    return echo


async def _merge(inputs):
    return list(inputs)


@pytest.fixture(autouse=True)
def isolated_state(tmp_path, monkeypatch):
    """Point the trace store at a temp file and reset singletons around each test."""
    monkeypatch.setattr("tracing.store.TRACE_DB_PATH", str(tmp_path / "traces.db"))
    Tracer.reset()
    TaskKindRegistry.reset()
    yield
    Tracer.reset()
    TaskKindRegistry.reset()


@pytest.fixture
def registry():
    """Global registry with the built-ins plus Echo and two-input Merge kinds."""
    registry = TaskKindRegistry.instance()
    registry.register(TaskKind(
        name=ECHO_KIND,
        description="Return config['value'], or the input when unset",
        input_ports=(None,),
        output_ports=(None,),
        factory=_echo_factory,
    ))
    registry.register(TaskKind(
        name=MERGE_KIND,
        description="Join two inputs into one list",
        input_ports=("left", "right"),
        output_ports=(None,),
        factory=lambda task: _merge,
    ))
    return registry


def merge(task_id: str, **config) -> Task:
    return Task(task_id, MERGE_KIND, config)


def fetch(task_id: str, **config) -> Task:
    return Task(task_id, FETCH_KIND, config)


def iterate(task_id: str, **config) -> Task:
    return Task(task_id, ITERATE_KIND, config)


def echo(task_id: str, **config) -> Task:
    return Task(task_id, ECHO_KIND, config)


def edge(source: str, target: str, source_port: str | None = None, target_port: str | None = None) -> Connection:
    return Connection(source, target, source_port, target_port)

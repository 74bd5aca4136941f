"""Tests for WorkflowRunner: validation, running state and cancellation."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from core.errors import (
    AmbiguousEntryTaskError, InvalidGraphError, RunCancelledError, RunInProgressError,
)
from workflows.executor import WorkflowRunner
from workflows.models import Graph, TaskStatus, OUTPUT_PORT, RETURN_PORT
from tests.conftest import echo, edge, fetch, iterate


@pytest.fixture
def runner(registry):
    return WorkflowRunner()


@pytest.fixture
def states(runner):
    """Every running-state transition the runner reports."""
    seen = []
    runner.on_state_change(seen.append)
    return seen


class TestRun:
    """Tests for a normal run."""

    @pytest.mark.asyncio
    async def test_run_with_registry_executors(self, runner):
        graph = Graph(
            [echo("start", value=[1, 2]), iterate("each"), echo("double"), echo("total", value="sum")],
            [
                edge("start", "each", target_port="input"),
                edge("each", "double", source_port=OUTPUT_PORT),
                edge("double", "each", target_port=RETURN_PORT),
                edge("each", "total", source_port=RETURN_PORT),
            ],
        )
        run = await runner.run(graph)

        assert run.status == "completed"
        assert run.entry_task == "start"
        assert run.completed_at is not None
        assert [r.task_id for r in run.results] == ["start", "double", "double", "each", "total"]
        assert runner.status_of("total") == TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_task_marks_run_failed(self, runner):
        graph = Graph([echo("a"), echo("b", fail="nope")], [edge("a", "b")])
        run = await runner.run(graph)
        assert run.status == "failed"
        assert "b" in run.error

    @pytest.mark.asyncio
    async def test_explicit_executors_override_registry(self, runner):
        graph = Graph([fetch("a")])
        a = AsyncMock(return_value={"stub": True})
        run = await runner.run(graph, executor_of={"a": a})
        a.assert_awaited_once_with([])
        assert run.results[0].value == {"stub": True}


class TestConfigurationErrors:
    """Tests for graphs refused before execution."""

    @pytest.mark.asyncio
    async def test_invalid_graph_runs_nothing(self, runner):
        a = AsyncMock()
        graph = Graph([fetch("a")], [edge("a", "a")])
        with pytest.raises(InvalidGraphError):
            await runner.run(graph, executor_of={"a": a})
        a.assert_not_awaited()
        assert len(runner.sink) == 0

    @pytest.mark.asyncio
    async def test_ambiguous_entry(self, runner):
        with pytest.raises(AmbiguousEntryTaskError):
            await runner.run(Graph([echo("a"), echo("b")]))

    @pytest.mark.asyncio
    async def test_stale_return_edge_refused(self, runner):
        graph = Graph(
            [iterate("each", array=[1]), echo("x")],
            [edge("x", "each", target_port=RETURN_PORT)],
        )
        with pytest.raises(InvalidGraphError) as exc_info:
            await runner.run(graph)
        assert any("does not close a loop" in p for p in exc_info.value.problems)


class TestRunningState:
    """Tests for is_running transitions."""

    @pytest.mark.asyncio
    async def test_transitions_on_success(self, runner, states):
        assert not runner.is_running
        await runner.run(Graph([echo("a")]))
        assert states == [True, False]
        assert not runner.is_running

    @pytest.mark.asyncio
    async def test_transitions_on_fatal_error(self, runner, states):
        with pytest.raises(AmbiguousEntryTaskError):
            await runner.run(Graph([echo("a"), echo("b")]))
        assert states == [True, False]
        assert not runner.is_running

    @pytest.mark.asyncio
    async def test_running_during_execution(self, runner):
        observed = []

        async def probe(_):
            observed.append(runner.is_running)

        await runner.run(Graph([fetch("a")]), executor_of={"a": probe})
        assert observed == [True]

    @pytest.mark.asyncio
    async def test_second_run_rejected_while_running(self, runner):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(_):
            started.set()
            await release.wait()

        graph = Graph([fetch("a")])
        job = asyncio.create_task(runner.run(graph, executor_of={"a": slow}))
        await started.wait()

        with pytest.raises(RunInProgressError):
            await runner.run(graph, executor_of={"a": AsyncMock()})

        release.set()
        run = await job
        assert run.status == "completed"


class TestCancellation:
    """Tests for WorkflowRunner.cancel."""

    @pytest.mark.asyncio
    async def test_cancel_stops_pending_executors(self, runner, states):
        started = asyncio.Event()

        async def slow(_):
            started.set()
            await asyncio.sleep(10)

        after = AsyncMock(return_value="c")
        graph = Graph([fetch("a"), fetch("b"), fetch("c")], [edge("a", "b"), edge("b", "c")])
        job = asyncio.create_task(runner.run(graph, executor_of={
            "a": AsyncMock(return_value="a"),
            "b": slow,
            "c": after,
        }))
        await started.wait()

        assert runner.cancel("user stop")
        with pytest.raises(RunCancelledError):
            await job
        after.assert_not_awaited()
        assert states == [True, False]

    def test_cancel_without_run(self, runner):
        assert runner.cancel() is False

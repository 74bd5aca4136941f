"""Workflow runner: validates a graph, runs it, and reports running state."""

import logging
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Mapping

from core.errors import ConfigurationError, RunCancelledError, RunInProgressError
from tracing.models import SpanStatus, SpanType
from tracing.tracer import Tracer
from workflows.engine import CancellationToken, Executor, WorkflowScheduler
from workflows.models import Graph, TaskStatus, WorkflowRun
from workflows.results import ResultSink
from workflows.validator import require_valid

if TYPE_CHECKING:
    from tasks.registry import TaskKindRegistry

logger = logging.getLogger(__name__)

StateListener = Callable[[bool], None]


class WorkflowRunner:
    """
    High-level entry point for running graphs, one run at a time.

    Usage:
        runner = WorkflowRunner()
        run = await runner.run(graph)
        for result in runner.sink:
            ...
    """

    def __init__(
        self,
        registry: "TaskKindRegistry | None" = None,
        sink: ResultSink | None = None,
    ):
        self._registry = registry
        self.sink = sink if sink is not None else ResultSink()
        self._running = False
        self._token: CancellationToken | None = None
        self._scheduler: WorkflowScheduler | None = None
        self._listeners: list[StateListener] = []

    @property
    def registry(self) -> "TaskKindRegistry":
        if self._registry is None:
            from tasks.registry import TaskKindRegistry
            self._registry = TaskKindRegistry.instance()
        return self._registry

    # ── running state ──────────────────────────────────────────────
    @property
    def is_running(self) -> bool:
        return self._running

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        """Call `listener(is_running)` on every transition. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_running(self, running: bool) -> None:
        if running == self._running:
            return
        self._running = running
        for listener in list(self._listeners):
            try:
                listener(running)
            except Exception as e:
                logger.error(f"State listener failed: {e}")

    def status_of(self, task_id: str) -> TaskStatus:
        if self._scheduler is None:
            return TaskStatus.PENDING
        return self._scheduler.status_of(task_id)

    # ── run ────────────────────────────────────────────────────────
    async def run(
        self,
        graph: Graph,
        executor_of: Mapping[str, Executor] | None = None,
    ) -> WorkflowRun:
        """
        Validate and execute a graph.

        Configuration errors (invalid graph, no or ambiguous entry task) are
        raised before any task runs. Task failures are recorded in the sink
        and mark the run failed; they never raise.
        """
        if self._running:
            raise RunInProgressError("A run is already in progress")

        self._set_running(True)
        token = self._token = CancellationToken()
        run = WorkflowRun(id=str(uuid.uuid4())[:8])

        tracer = Tracer.instance()
        span = tracer.start_span(
            SpanType.WORKFLOW_RUN,
            name=f"run:{run.id}",
            input_data={"tasks": len(graph), "connections": len(graph.connections)},
        )

        try:
            self.sink.clear()

            with tracer.span(SpanType.VALIDATION, "validate") as validation:
                run.entry_task = require_valid(graph, self.registry)
                validation.output_data = {"entry_task": run.entry_task}

            if executor_of is None:
                executor_of = self.registry.build_executors(graph)

            self._scheduler = WorkflowScheduler(graph, executor_of, self.sink, token)
            await self._scheduler.run(run.entry_task)

        except ConfigurationError as e:
            logger.error(f"Run {run.id} refused: {e}")
            tracer.end_span(span, status=SpanStatus.ERROR, error=str(e))
            raise
        except RunCancelledError as e:
            logger.info(f"Run {run.id} cancelled: {e}")
            tracer.end_span(span, status=SpanStatus.ERROR, error=str(e))
            raise
        except BaseException as e:
            tracer.end_span(span, status=SpanStatus.ERROR, error=str(e) or type(e).__name__)
            raise
        finally:
            self._token = None
            self._set_running(False)

        run.results = list(self.sink.results)
        run.completed_at = datetime.now()

        failed = self.sink.errors()
        if failed:
            run.status = "failed"
            run.error = f"Tasks failed: {[r.task_id for r in failed]}"
            tracer.end_span(span, status=SpanStatus.ERROR, error=run.error)
        else:
            run.status = "completed"
            tracer.end_span(span, output_data={"run_id": run.id, "results": len(run.results)})

        return run

    def cancel(self, reason: str = "Run cancelled") -> bool:
        """Cancel the active run. Returns False when nothing is running."""
        if self._token is None:
            return False
        logger.info(f"Cancelling run: {reason}")
        self._token.cancel(reason)
        return True

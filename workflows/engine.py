"""
Workflow engine: dependency-ordered, memoized execution of a graph.

Every task runs at most once per scope. The run itself is one scope; each
element of an IterateTask opens a fresh child scope whose memo map covers only
that iteration's body, so the body runs once per element while everything
outside it is shared with the enclosing scope.
"""

import asyncio
import logging
from collections import deque
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Mapping

from core.errors import ErrorCode, RunCancelledError
from tracing.models import SpanStatus, SpanType
from tracing.tracer import Tracer
from workflows.models import (
    Connection, ExecutionResult, Graph, Task, TaskStatus,
    ITERATE_KIND, OUTPUT_PORT,
)
from workflows.results import ResultSink
from workflows.validator import find_entry_task

logger = logging.getLogger(__name__)

Executor = Callable[[Any], Awaitable[Any]]


class CancellationToken:
    """Cooperative cancellation flag threaded through one run."""

    def __init__(self):
        self._reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "Run cancelled") -> None:
        if self._reason is not None:
            return
        self._reason = reason
        for callback in list(self._callbacks):
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> None:
        if self.cancelled:
            callback()
        else:
            self._callbacks.append(callback)

    def raise_if_cancelled(self) -> None:
        if self._reason is not None:
            raise RunCancelledError(self._reason)


class WorkflowScheduler:
    """
    Executes one run of a graph.

    Usage:
        scheduler = WorkflowScheduler(graph, executor_of, sink)
        await scheduler.run()

    `executor_of` maps task ids to async callables taking the task's input.
    IterateTasks need no entry: the scheduler routes their ports itself.
    """

    def __init__(
        self,
        graph: Graph,
        executor_of: Mapping[str, Executor],
        sink: ResultSink | None = None,
        token: CancellationToken | None = None,
    ):
        self.graph = graph
        self.executor_of = executor_of
        self.sink = sink if sink is not None else ResultSink()
        self.token = token or CancellationToken()

        self._bodies: dict[str, set[str]] = {
            task_id: graph.iteration_body(task_id)
            for task_id in graph.tasks_by_id
            if graph.is_iterate(task_id)
        }
        in_bodies: set[str] = set().union(*self._bodies.values())
        self._outer_domain = set(graph.tasks_by_id) - in_bodies

        self._pending: set[asyncio.Future] = set()
        self._outer: _Scope | None = None
        self.token.on_cancel(self._cancel_pending)

    async def run(self, entry: str | None = None) -> ResultSink:
        """Execute every task reachable from the entry task."""
        self.sink.clear()
        entry = entry or find_entry_task(self.graph)
        self.token.raise_if_cancelled()

        logger.info(f"Run started at entry task '{entry}' ({len(self.graph)} tasks)")

        # Standalone runs get their own root span so every task shares one trace
        tracer = Tracer.instance()
        root = None
        if not tracer.has_active_span():
            root = tracer.start_span(
                SpanType.WORKFLOW_RUN,
                name=f"run:{entry}",
                input_data={"tasks": len(self.graph), "connections": len(self.graph.connections)},
            )

        self._outer = _Scope(self, domain=self._outer_domain)
        try:
            await self._outer.drive([entry])
        except asyncio.CancelledError:
            if root is not None:
                tracer.end_span(root, status=SpanStatus.ERROR, error="cancelled")
            if self.token.cancelled:
                raise RunCancelledError(self.token.reason or "Run cancelled")
            raise
        except Exception as e:
            if root is not None:
                tracer.end_span(root, status=SpanStatus.ERROR, error=str(e) or type(e).__name__)
            raise
        finally:
            await self._drain()

        summary = self.sink.summary()
        logger.info(f"Run finished: {summary['completed']} completed, {summary['failed']} failed")
        if root is not None:
            if summary["failed"]:
                tracer.end_span(root, status=SpanStatus.ERROR, error=f"{summary['failed']} task(s) failed")
            else:
                tracer.end_span(root, output_data=summary)
        return self.sink

    def status_of(self, task_id: str) -> TaskStatus:
        """Status of a task in the run's outer scope."""
        if self._outer is None:
            return TaskStatus.PENDING
        return self._outer.status.get(task_id, TaskStatus.PENDING)

    def body_of(self, iterate_id: str) -> set[str]:
        return self._bodies.get(iterate_id, set())

    # ── pending work ───────────────────────────────────────────────
    def _track(self, future: asyncio.Future) -> None:
        self._pending.add(future)
        future.add_done_callback(self._pending.discard)

    def _cancel_pending(self) -> None:
        for future in list(self._pending):
            if not future.done():
                future.cancel()

    async def _drain(self) -> None:
        pending = [f for f in self._pending if not f.done()]
        for future in pending:
            future.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


class _Scope:
    """One memo map: the run itself, or one element of an iteration."""

    def __init__(
        self,
        scheduler: WorkflowScheduler,
        domain: set[str],
        parent: "_Scope | None" = None,
        iterate_id: str | None = None,
        item: Any = None,
        index: int | None = None,
    ):
        self.scheduler = scheduler
        self.graph = scheduler.graph
        self.domain = domain
        self.parent = parent
        self.iterate_id = iterate_id
        self.item = item
        self.index = index

        self.status: dict[str, TaskStatus] = {}
        self.failures: list[ExecutionResult] = []
        self._memo: dict[str, asyncio.Future] = {}

    def resolve(self, task_id: str) -> asyncio.Future:
        """Memoized execution of one task. Tasks outside the domain go to the parent."""
        if self.parent is not None and task_id not in self.domain:
            return self.parent.resolve(task_id)

        future = self._memo.get(task_id)
        if future is None:
            self.status[task_id] = TaskStatus.PENDING
            future = asyncio.ensure_future(self._execute(task_id))
            self._memo[task_id] = future
            self.scheduler._track(future)
        return future

    async def drive(self, roots: Iterable[str]) -> None:
        """Resolve the roots and everything reachable from them, breadth-first."""
        order: list[str] = []
        seen: set[str] = set()
        queue = deque(r for r in roots if r in self.domain)

        while queue:
            task_id = queue.popleft()
            if task_id in seen:
                continue
            seen.add(task_id)
            order.append(task_id)
            for conn in self.graph.outgoing_connections(task_id):
                if self.graph.is_loop_closing(conn) or self.graph.is_fan_out(conn):
                    continue
                if conn.target in self.domain and conn.target not in seen:
                    queue.append(conn.target)

        await asyncio.gather(*(self.resolve(task_id) for task_id in order))

    # ── execution ──────────────────────────────────────────────────
    async def _execute(self, task_id: str) -> ExecutionResult:
        task = self.graph.get_task(task_id)

        # Declaration order
        inputs = []
        for conn in self.graph.dependency_inputs(task_id):
            inputs.append(await self._input_from(conn))

        self.scheduler.token.raise_if_cancelled()

        if task.kind == ITERATE_KIND:
            return await self._iterate(task, inputs)

        value = inputs[0] if len(inputs) == 1 else inputs
        return await self._invoke(task, value)

    async def _input_from(self, conn: Connection) -> Any:
        if self.graph.is_fan_out(conn):
            return self._item_for(conn.source)

        result = await self.resolve(conn.source)
        if self.graph.is_fan_in(conn):
            # Iteration summary, present even when the iteration failed
            return result.value
        return result.as_input()

    def _item_for(self, iterate_id: str) -> Any:
        scope: _Scope | None = self
        while scope is not None:
            if scope.iterate_id == iterate_id:
                return scope.item
            scope = scope.parent
        return None

    async def _invoke(self, task: Task, value: Any) -> ExecutionResult:
        tracer = Tracer.instance()
        executor = self.scheduler.executor_of.get(task.id)

        self.status[task.id] = TaskStatus.RUNNING
        started = datetime.now()
        span = tracer.start_span(
            SpanType.TASK_EXECUTION,
            name=f"task:{task.id}",
            task_id=task.id,
            task_kind=task.kind,
            iteration=self.index,
            input_data={"input_preview": _preview(value)},
        )

        if executor is None:
            result = self._make_result(
                task, TaskStatus.FAILED, started,
                error=f"No executor for task '{task.id}'",
                error_code=ErrorCode.MISSING_EXECUTOR,
            )
        else:
            try:
                output = await executor(value)
            except asyncio.CancelledError:
                tracer.end_span(span, status=SpanStatus.ERROR, error="cancelled")
                raise
            except Exception as e:
                result = self._make_result(
                    task, TaskStatus.FAILED, started,
                    error=str(e) or type(e).__name__,
                    error_code=ErrorCode.EXECUTOR_ERROR,
                )
            else:
                result = self._make_result(task, TaskStatus.COMPLETED, started, value=output)

        if result.ok:
            tracer.end_span(span, output_data={"preview": _preview(result.value)})
        else:
            tracer.end_span(span, status=SpanStatus.ERROR, error=result.error)
        self._record(result)
        return result

    async def _iterate(self, task: Task, inputs: list[Any]) -> ExecutionResult:
        """Fan the output body out once per element, then hand return the summary."""
        tracer = Tracer.instance()
        self.status[task.id] = TaskStatus.RUNNING
        started = datetime.now()

        # Unconnected input port falls back to the configured array
        array = inputs[0] if inputs else task.config.get("array")
        prop = task.config.get("property") or ""
        details: list[dict[str, Any]] = []
        errors: list[str] = []

        span = tracer.start_span(
            SpanType.ITERATION,
            name=f"iterate:{task.id}",
            task_id=task.id,
            task_kind=task.kind,
            iteration=self.index,
            input_data={"property": prop},
        )

        if not isinstance(array, (list, tuple)):
            message = f"[IterateTask {task.id}]: Input is not a valid array"
            logger.warning(message)
            errors.append(message)
            result = self._make_result(
                task, TaskStatus.FAILED, started,
                value=_summary(details, errors),
                error=message,
                error_code=ErrorCode.INVALID_ARRAY_INPUT,
            )
        else:
            targets = [c.target for c in self.graph.outgoing_connections(task.id, OUTPUT_PORT)]
            body = self.scheduler.body_of(task.id)

            try:
                for index, element in enumerate(array):
                    self.scheduler.token.raise_if_cancelled()

                    item = _project(element, prop)
                    if not item:
                        message = f"[IterateTask {task.id}]: Missing property '{prop}' in array item at index {index}"
                        errors.append(message)
                        skipped = replace(
                            self._make_result(
                                task, TaskStatus.FAILED, datetime.now(),
                                error=message,
                                error_code=ErrorCode.MISSING_PROPERTY,
                            ),
                            iteration=index,
                            parent_id=task.id,
                        )
                        self._record(skipped)
                        self.status[task.id] = TaskStatus.RUNNING
                        continue

                    scope = _Scope(
                        self.scheduler, body, parent=self,
                        iterate_id=task.id, item=item, index=index,
                    )
                    await scope.drive(targets)

                    for target in targets:
                        outcome = await scope.resolve(target)
                        if outcome.ok:
                            details.append({"element": item, "result": outcome.value})
                    for failure in scope.failures:
                        errors.append(
                            f"[IterateTask {task.id} -> {failure.task_id}]: "
                            f"Execution error at index {index}: {failure.error}"
                        )
            except (asyncio.CancelledError, RunCancelledError):
                tracer.end_span(span, status=SpanStatus.ERROR, error="cancelled")
                raise

            result = self._make_result(
                task, TaskStatus.COMPLETED, started, value=_summary(details, errors),
            )

        if result.ok:
            tracer.end_span(span, output_data={"count": len(details), "errors": len(errors)})
        else:
            tracer.end_span(span, status=SpanStatus.ERROR, error=result.error)
        self._record(result)
        return result

    # ── bookkeeping ────────────────────────────────────────────────
    def _make_result(
        self,
        task: Task,
        status: TaskStatus,
        started: datetime,
        value: Any = None,
        error: str | None = None,
        error_code: ErrorCode | None = None,
    ) -> ExecutionResult:
        completed = datetime.now()
        return ExecutionResult(
            task_id=task.id,
            kind=task.kind,
            status=status,
            value=value,
            error=error,
            error_code=error_code,
            iteration=self.index,
            parent_id=self.iterate_id,
            started_at=started,
            completed_at=completed,
            duration_ms=(completed - started).total_seconds() * 1000,
        )

    def _record(self, result: ExecutionResult) -> None:
        self.status[result.task_id] = result.status
        if result.ok:
            logger.debug(f"Task {result.task_id} completed in {result.duration_ms:.1f}ms")
        else:
            self.failures.append(result)
            logger.warning(f"Task {result.task_id} failed: {result.error}")
        self.scheduler.sink.append(result)


def _project(element: Any, prop: str) -> Any:
    if not prop:
        return element
    if isinstance(element, Mapping):
        return element.get(prop)
    return None


def _summary(details: list[dict[str, Any]], errors: list[str]) -> dict[str, Any]:
    return {"count": len(details), "details": details, "errors": errors}


def _preview(value: Any) -> str:
    return str(value)[:200]

"""
Tracer — Singleton that manages span lifecycle.

Usage patterns:

1. Context manager (auto-closes on success or error):
       tracer = Tracer.instance()
       with tracer.span(SpanType.VALIDATION, "validate", input_data={...}) as span:
           problems = validate_graph(graph)
           span.output_data = {"problems": problems}

2. Manual start/end (when the outcome is decided mid-flight):
       span = tracer.start_span(SpanType.TASK_EXECUTION, "task:fetch", task_id="fetch")
       value = await executor(input_value)
       tracer.end_span(span, output_data={"preview": str(value)[:500]})

Nesting is tracked in a context variable holding an immutable stack, so each
asyncio task sees the spans that were open when it was created and concurrent
branches of a run do not clobber each other.
"""
import os
import uuid
import logging
import threading
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime

from tracing.models import TraceSpan, SpanType, SpanStatus
from tracing.store import TraceStore

logger = logging.getLogger(__name__)

TRACING_ENABLED = os.environ.get("FLOWGRAPH_TRACING", "1") not in ("0", "false", "no")

_trace_id: ContextVar[str | None] = ContextVar("flowgraph_trace_id", default=None)
_stack: ContextVar[tuple[str, ...]] = ContextVar("flowgraph_span_stack", default=())


class Tracer:
    _instance: "Tracer | None" = None
    _lock = threading.Lock()

    def __init__(self, store: TraceStore | None = None, enabled: bool | None = None):
        self.enabled = TRACING_ENABLED if enabled is None else enabled
        self._store = store if store is not None else (TraceStore() if self.enabled else None)

    @classmethod
    def instance(cls) -> "Tracer":
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset singleton for testing."""
        cls._instance = None

    # ── span lifecycle ─────────────────────────────────────────────
    def start_span(
        self,
        span_type: SpanType,
        name: str,
        *,
        input_data: dict | None = None,
        task_id: str | None = None,
        task_kind: str | None = None,
        iteration: int | None = None,
    ) -> TraceSpan:
        """Create a span and push it onto the nesting stack."""
        stack = _stack.get()
        trace_id = _trace_id.get()
        # The first span of a run sets the trace_id for everything under it
        if trace_id is None:
            trace_id = uuid.uuid4().hex[:16]
            _trace_id.set(trace_id)

        span = TraceSpan(
            trace_id=trace_id,
            parent_id=stack[-1] if stack else None,
            span_type=span_type,
            name=name,
            task_id=task_id,
            task_kind=task_kind,
            iteration=iteration,
            input_data=input_data or {},
        )
        _stack.set(stack + (span.id,))
        return span

    def end_span(
        self,
        span: TraceSpan,
        *,
        status: SpanStatus = SpanStatus.SUCCESS,
        error: str | None = None,
        output_data: dict | None = None,
    ) -> None:
        """Close a span, compute duration, persist."""
        span.ended_at = datetime.now().isoformat()
        span.status = status

        try:
            start = datetime.fromisoformat(span.started_at)
            end = datetime.fromisoformat(span.ended_at)
            span.duration_ms = (end - start).total_seconds() * 1000
        except (ValueError, TypeError):
            pass

        if output_data is not None:
            span.output_data = output_data
        if error is not None:
            span.error = error

        stack = _stack.get()
        if stack and stack[-1] == span.id:
            stack = stack[:-1]
            _stack.set(stack)

        # Next top-level operation gets a fresh trace_id
        if not stack:
            _trace_id.set(None)

        if self.enabled and self._store is not None:
            try:
                self._store.save(span)
            except Exception as e:
                logger.warning(f"Failed to persist span {span.name}: {e}")

    @contextmanager
    def span(
        self,
        span_type: SpanType,
        name: str,
        *,
        input_data: dict | None = None,
        task_id: str | None = None,
        task_kind: str | None = None,
    ):
        """
        Context manager. Yields the span so you can mutate output_data inside.
        On normal exit → SUCCESS. On exception → ERROR (re-raises).
        """
        s = self.start_span(
            span_type, name,
            input_data=input_data, task_id=task_id, task_kind=task_kind,
        )
        try:
            yield s
            self.end_span(s, status=SpanStatus.SUCCESS, output_data=s.output_data)
        except Exception as exc:
            self.end_span(s, status=SpanStatus.ERROR, error=str(exc))
            raise

    # ── convenience ────────────────────────────────────────────────
    @property
    def store(self) -> TraceStore | None:
        return self._store

    def has_active_span(self) -> bool:
        """True when the current context already sits under an open span."""
        return bool(_stack.get())

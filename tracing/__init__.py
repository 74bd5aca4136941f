"""Span tracing for workflow runs."""

from tracing.models import TraceSpan, SpanType, SpanStatus
from tracing.tracer import Tracer
from tracing.store import TraceStore

__all__ = ["TraceSpan", "SpanType", "SpanStatus", "Tracer", "TraceStore"]

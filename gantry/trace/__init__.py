"""
Gantry Trace - request-scoped spans.

Usage::

    from gantry.trace import start_span

    with start_span("db.list", table="users") as span:
        rows = await engine.fetch_all(sql, params)
        span.set("rows", len(rows))
"""

__all__ = [
    "Span",
    "SpanRecorder",
    "TraceJournal",
    "current_span",
    "current_trace_id",
    "get_recorder",
    "new_trace_id",
    "start_span",
]

from .spans import (
    Span,
    SpanRecorder,
    current_span,
    current_trace_id,
    get_recorder,
    new_trace_id,
    start_span,
)
from .journal import TraceJournal

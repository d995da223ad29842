"""
Span tracing.

Spans form a tree per request: the controller opens the root span, cache and
database operations open children. The active span travels through
``contextvars`` so nested awaits inherit it without explicit plumbing.
"""

from __future__ import annotations

import contextvars
import logging
import secrets
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterator, List, Optional

logger = logging.getLogger("gantry.trace")

_current_span: contextvars.ContextVar[Optional["Span"]] = contextvars.ContextVar(
    "gantry_current_span", default=None
)


@dataclass
class Span:
    name: str
    trace_id: str
    span_id: str
    parent_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    start: float = field(default_factory=time.time)
    duration_ms: Optional[float] = None
    error: Optional[str] = None

    def set(self, key: str, value: Any) -> "Span":
        self.attributes[key] = value
        return self

    def record_error(self, exc: BaseException) -> None:
        self.error = f"{exc.__class__.__name__}: {exc}"
        self.attributes["error"] = self.error

    @property
    def finished(self) -> bool:
        return self.duration_ms is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "parent_id": self.parent_id,
            "attributes": dict(self.attributes),
            "start": self.start,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


class SpanRecorder:
    """
    Keeps the most recent finished spans in memory.

    An optional journal receives every finished span as well (see
    ``TraceJournal``).
    """

    __slots__ = ("_spans", "_journal")

    def __init__(self, maxlen: int = 1024, journal: Any = None):
        self._spans: Deque[Span] = deque(maxlen=maxlen)
        self._journal = journal

    def record(self, span: Span) -> None:
        self._spans.append(span)
        if self._journal is not None:
            self._journal.append(span)

    def spans(self, name: Optional[str] = None, trace_id: Optional[str] = None) -> List[Span]:
        out = list(self._spans)
        if name is not None:
            out = [s for s in out if s.name == name]
        if trace_id is not None:
            out = [s for s in out if s.trace_id == trace_id]
        return out

    def set_journal(self, journal: Any) -> None:
        self._journal = journal

    def clear(self) -> None:
        self._spans.clear()

    def __len__(self) -> int:
        return len(self._spans)


_recorder = SpanRecorder()


def get_recorder() -> SpanRecorder:
    return _recorder


def current_span() -> Optional[Span]:
    return _current_span.get()


def current_trace_id() -> Optional[str]:
    span = _current_span.get()
    return span.trace_id if span is not None else None


def new_trace_id() -> str:
    return secrets.token_hex(16)


@contextmanager
def start_span(
    name: str,
    *,
    parent: Optional[Span] = None,
    trace_id: Optional[str] = None,
    **attributes: Any,
) -> Iterator[Span]:
    """
    Open a span as a child of ``parent`` (or the active span).

    Exceptions are recorded on the span and re-raised unchanged.
    """
    parent = parent if parent is not None else _current_span.get()
    if parent is not None:
        tid = parent.trace_id
        pid = parent.span_id
    else:
        tid = trace_id or new_trace_id()
        pid = None

    span = Span(
        name=name,
        trace_id=tid,
        span_id=secrets.token_hex(8),
        parent_id=pid,
        attributes=dict(attributes),
    )
    token = _current_span.set(span)
    started = time.perf_counter()
    try:
        yield span
    except BaseException as exc:
        span.record_error(exc)
        raise
    finally:
        span.duration_ms = round((time.perf_counter() - started) * 1000, 3)
        _current_span.reset(token)
        _recorder.record(span)
        logger.debug(
            f"span {span.name} trace={span.trace_id} {span.duration_ms}ms"
            + (f" error={span.error}" if span.error else "")
        )

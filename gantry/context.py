"""
Per-operation context handed to service and model hooks.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Optional

from .trace import Span, current_span


class Phase(str, Enum):
    """Lifecycle points at which hooks run."""

    CREATE_BEFORE = "create_before"
    CREATE_AFTER = "create_after"
    DELETE_BEFORE = "delete_before"
    DELETE_AFTER = "delete_after"
    UPDATE_BEFORE = "update_before"
    UPDATE_AFTER = "update_after"
    UPDATE_PARTIAL_BEFORE = "update_partial_before"
    UPDATE_PARTIAL_AFTER = "update_partial_after"
    LIST_BEFORE = "list_before"
    LIST_AFTER = "list_after"
    GET_BEFORE = "get_before"
    GET_AFTER = "get_after"
    BATCH_CREATE_BEFORE = "batch_create_before"
    BATCH_CREATE_AFTER = "batch_create_after"
    BATCH_DELETE_BEFORE = "batch_delete_before"
    BATCH_DELETE_AFTER = "batch_delete_after"
    BATCH_UPDATE_BEFORE = "batch_update_before"
    BATCH_UPDATE_AFTER = "batch_update_after"
    BATCH_UPDATE_PARTIAL_BEFORE = "batch_update_partial_before"
    BATCH_UPDATE_PARTIAL_AFTER = "batch_update_partial_after"

    @property
    def is_before(self) -> bool:
        return self.value.endswith("_before")


@dataclass
class Context:
    """
    Carries request-scoped data through the pipeline.

    ``request_payload`` holds the decoded custom request object for models
    that declare a ``request`` method; a service after hook may set
    ``response_payload`` to replace the rendered ``data``.
    """

    request: Any = None
    request_id: str = ""
    username: str = ""
    route: str = ""
    params: Dict[str, str] = field(default_factory=dict)
    query: Any = None
    phase: Optional[Phase] = None
    request_payload: Any = None
    response_payload: Any = None
    span: Optional[Span] = None
    state: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def background(cls, **kwargs: Any) -> "Context":
        """Context for work that does not originate from a request."""
        kwargs.setdefault("span", current_span())
        return cls(**kwargs)

    def with_phase(self, phase: Phase) -> "Context":
        self.phase = phase
        return self

    def child(self, **changes: Any) -> "Context":
        return replace(self, **changes)

    @property
    def trace_id(self) -> Optional[str]:
        span = self.span or current_span()
        return span.trace_id if span is not None else None

"""
Gantry Service - per-model hooks around every controller phase.

A service sees the request before and after the database operation. Every
hook is a no-op by default, so a subclass overrides only what it needs:

    class UserService(Service[User]):
        async def create_before(self, ctx, user):
            user.created_by = ctx.username

        def filter_raw(self, ctx):
            return "\\"tenant\\" = 'acme'"

    register_service(User, UserService())

Before hooks may reject the operation (raising surfaces as BadRequest unless
a fault is raised). After hooks may fail the response; the mutation stays.
"""

from __future__ import annotations

import logging
from functools import cached_property
from typing import Any, Callable, Dict, Generic, List, Optional, Type, TypeVar

import orjson

from gantry.context import Context, Phase
from gantry.faults import AfterHookFault, BadRequestFault, InvalidJSONFault, before_hook_fault
from gantry.models import Model
from gantry.models.fields import FieldValidationError

logger = logging.getLogger("gantry.service")

__all__ = ["Service"]

M = TypeVar("M", bound=Model)


class Service(Generic[M]):
    """
    No-op service for model ``M``.

    Single-item phases receive the item; batch phases and ``list_after``
    receive the item list; ``list_before`` receives the query model.
    """

    model: Optional[Type[M]] = None

    def __init__(self, model: Optional[Type[M]] = None):
        if model is not None:
            self.model = model

    def __repr__(self) -> str:
        name = self.model.__name__ if self.model is not None else "?"
        return f"<{self.__class__.__name__}[{name}]>"

    # ── Single-item phases ───────────────────────────────────────────

    async def create_before(self, ctx: Context, item: M) -> None:
        pass

    async def create_after(self, ctx: Context, item: M) -> None:
        pass

    async def delete_before(self, ctx: Context, item: M) -> None:
        pass

    async def delete_after(self, ctx: Context, item: M) -> None:
        pass

    async def update_before(self, ctx: Context, item: M) -> None:
        pass

    async def update_after(self, ctx: Context, item: M) -> None:
        pass

    async def update_partial_before(self, ctx: Context, item: M) -> None:
        pass

    async def update_partial_after(self, ctx: Context, item: M) -> None:
        pass

    async def list_before(self, ctx: Context, query: M) -> None:
        pass

    async def list_after(self, ctx: Context, items: List[M]) -> None:
        pass

    async def get_before(self, ctx: Context, id: str) -> None:
        pass

    async def get_after(self, ctx: Context, item: M) -> None:
        pass

    # ── Batch phases ─────────────────────────────────────────────────

    async def batch_create_before(self, ctx: Context, items: List[M]) -> None:
        pass

    async def batch_create_after(self, ctx: Context, items: List[M]) -> None:
        pass

    async def batch_delete_before(self, ctx: Context, items: List[M]) -> None:
        pass

    async def batch_delete_after(self, ctx: Context, items: List[M]) -> None:
        pass

    async def batch_update_before(self, ctx: Context, items: List[M]) -> None:
        pass

    async def batch_update_after(self, ctx: Context, items: List[M]) -> None:
        pass

    async def batch_update_partial_before(self, ctx: Context, items: List[M]) -> None:
        pass

    async def batch_update_partial_after(self, ctx: Context, items: List[M]) -> None:
        pass

    # ── Filters ──────────────────────────────────────────────────────

    def filter(self, ctx: Context, item: M) -> M:
        """Adjust one incoming model, e.g. to inject a tenant scope."""
        return item

    def filter_raw(self, ctx: Context) -> str:
        """Raw SQL condition ANDed into list and count queries."""
        return ""

    # ── Import / export ──────────────────────────────────────────────

    async def import_(self, ctx: Context, payload: bytes) -> List[M]:
        """
        Decode an upload into models. Accepts a JSON array of objects or
        ``{"items": [...]}``.
        """
        try:
            data = orjson.loads(payload) if payload else []
        except orjson.JSONDecodeError as exc:
            raise InvalidJSONFault(str(exc))
        if isinstance(data, dict):
            data = data.get("items", [])
        if not isinstance(data, list):
            raise BadRequestFault("import expects a JSON array of objects", code="INVALID_IMPORT")
        try:
            return [self.model.from_dict(row) for row in data]
        except (FieldValidationError, TypeError) as exc:
            raise BadRequestFault(str(exc), code="INVALID_IMPORT")

    async def export(self, ctx: Context, items: List[M]) -> bytes:
        """Encode ``items`` for download. Default: JSON array."""
        return orjson.dumps([item.to_dict() for item in items])

    # ── Dispatch ─────────────────────────────────────────────────────

    @cached_property
    def _phases(self) -> Dict[Phase, Callable]:
        return {phase: getattr(self, phase.value) for phase in Phase}

    async def run(self, phase: Phase, ctx: Context, *args: Any) -> None:
        """
        Invoke the hook for ``phase``.

        Raises:
            Fault: before hooks surface as BadRequest (or the fault they
                raised); after hooks as ``AfterHookFault``.
        """
        ctx.with_phase(phase)
        hook = self._phases[phase]
        try:
            await hook(ctx, *args)
        except Exception as exc:
            if phase.is_before:
                fault = before_hook_fault(exc)
                if fault is exc:
                    raise
                raise fault from exc
            logger.error(f"{self!r}.{phase.value} failed: {exc}")
            if isinstance(exc, AfterHookFault):
                raise
            raise AfterHookFault(phase.value, str(exc)) from exc

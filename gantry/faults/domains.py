"""
Gantry Faults - Error taxonomy.

Every failure that reaches the HTTP boundary is one of six kinds:

- BadRequestFault  (400) decoding, validation, before-hook rejection
- NotFoundFault    (404) unknown id
- ConflictFault    (409) unique constraint violation
- TransientFault   (503) backend unreachable, locked, retry-eligible
- CancelledFault   (499) cancellation or timeout
- InternalFault    (500) everything else, including after-hook failures
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional

from .core import Code, Fault, FaultDomain, Severity


# ============================================================================
# BadRequest
# ============================================================================

class BadRequestFault(Fault):
    """Request could not be decoded or was rejected by validation."""

    status = 400
    biz_code = Code.BAD_REQUEST

    def __init__(
        self,
        message: str,
        *,
        code: str = "BAD_REQUEST",
        domain: FaultDomain = FaultDomain.REQUEST,
        metadata: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            domain=domain,
            severity=Severity.WARN,
            retryable=False,
            public=True,
            metadata=metadata,
        )


class InvalidParamFault(BadRequestFault):
    """A query or path parameter has an unusable value."""

    biz_code = Code.INVALID_PARAM

    def __init__(self, name: str, reason: str, **kwargs):
        super().__init__(
            f"invalid parameter '{name}': {reason}",
            code="INVALID_PARAM",
            metadata={"param": name, "reason": reason, **kwargs.get("metadata", {})},
        )


class InvalidJSONFault(BadRequestFault):
    """Request body is not valid JSON."""

    def __init__(self, reason: str, **kwargs):
        super().__init__(
            f"invalid JSON body: {reason}",
            code="INVALID_JSON",
            metadata={"reason": reason},
        )


# ============================================================================
# NotFound / Conflict
# ============================================================================

class NotFoundFault(Fault):
    """Record with the given id does not exist (or is soft-deleted)."""

    status = 404
    biz_code = Code.NOT_FOUND

    def __init__(self, resource: str, id: Any = None, **kwargs):
        detail = f" with id '{id}'" if id is not None else ""
        super().__init__(
            code="RECORD_NOT_FOUND",
            message=f"{resource}{detail} not found",
            domain=kwargs.get("domain", FaultDomain.DATABASE),
            severity=Severity.INFO,
            retryable=False,
            public=True,
            metadata={"resource": resource, "id": id},
        )


class ConflictFault(Fault):
    """Unique constraint violation on create/update."""

    status = 409
    biz_code = Code.ALREADY_EXIST

    def __init__(self, message: str, *, domain: FaultDomain = FaultDomain.DATABASE, **kwargs):
        super().__init__(
            code="RECORD_CONFLICT",
            message=message,
            domain=domain,
            severity=Severity.WARN,
            retryable=False,
            public=True,
            metadata=kwargs.get("metadata"),
        )


# ============================================================================
# Transient / Cancelled / Internal
# ============================================================================

class TransientFault(Fault):
    """Backend unreachable, busy or locked. Safe to retry."""

    status = 503
    biz_code = Code.UNAVAILABLE

    def __init__(self, message: str, *, domain: FaultDomain = FaultDomain.DATABASE, **kwargs):
        super().__init__(
            code="BACKEND_UNAVAILABLE",
            message=message,
            domain=domain,
            severity=Severity.ERROR,
            retryable=True,
            public=False,
            metadata=kwargs.get("metadata"),
        )


class CancelledFault(Fault):
    """
    Operation cancelled or timed out before completing.

    ``after_commit`` is set when at least one batch was already durable when
    the cancellation happened, so the caller sees a partial success.
    """

    status = 499
    biz_code = Code.CONTEXT_TIMEOUT

    def __init__(
        self,
        operation: str = "operation",
        *,
        after_commit: bool = False,
        committed: int = 0,
        **kwargs,
    ):
        self.after_commit = after_commit
        self.committed = committed
        if after_commit:
            message = f"{operation} cancelled after commit ({committed} rows committed)"
        else:
            message = f"{operation} cancelled"
        super().__init__(
            code="CANCELLED_AFTER_COMMIT" if after_commit else "CANCELLED",
            message=message,
            domain=kwargs.get("domain", FaultDomain.DATABASE),
            severity=Severity.WARN,
            retryable=not after_commit,
            public=True,
            metadata={"operation": operation, "after_commit": after_commit, "committed": committed},
        )


class InternalFault(Fault):
    """Unclassified failure."""

    status = 500
    biz_code = Code.INTERNAL

    def __init__(self, message: str, *, code: str = "INTERNAL", domain: FaultDomain = FaultDomain.SYSTEM, **kwargs):
        super().__init__(
            code=code,
            message=message,
            domain=domain,
            severity=Severity.ERROR,
            retryable=False,
            public=False,
            metadata=kwargs.get("metadata"),
        )


class AfterHookFault(InternalFault):
    """An after hook failed; the mutation it followed stays durable."""

    def __init__(self, phase: str, reason: str, **kwargs):
        super().__init__(
            f"{phase} hook failed: {reason}",
            code="AFTER_HOOK_FAILED",
            domain=FaultDomain.SERVICE,
            metadata={"phase": phase, "reason": reason},
        )
        self.public = True


# ============================================================================
# Mapping
# ============================================================================

def fault_from_exception(exc: BaseException) -> Fault:
    """
    Map an arbitrary exception onto the taxonomy.

    Faults pass through unchanged. Database driver errors are mapped by
    ``gantry.db.faults.map_database_error`` before they reach here.
    """
    if isinstance(exc, Fault):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, asyncio.CancelledError)):
        return CancelledFault()
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return TransientFault(str(exc) or exc.__class__.__name__)
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return BadRequestFault(str(exc) or exc.__class__.__name__)
    return InternalFault(f"{exc.__class__.__name__}: {exc}")


def before_hook_fault(exc: BaseException) -> Fault:
    """Before hooks surface as BadRequest unless they raised a fault."""
    if isinstance(exc, Fault):
        return exc
    return BadRequestFault(str(exc) or exc.__class__.__name__, code="HOOK_REJECTED", domain=FaultDomain.SERVICE)

"""
Gantry DB - driver error mapping.

Driver exceptions never leave the database layer raw. ``map_database_error``
turns them into the fault taxonomy at the boundary:

- UNIQUE / PRIMARY KEY violation   -> ConflictFault (409)
- other integrity violations       -> BadRequestFault (400)
- locked / busy / unreachable      -> TransientFault (503)
- timeout                          -> CancelledFault (499)
- anything else                    -> InternalFault (500)
"""

from __future__ import annotations

import asyncio
import sqlite3
from typing import Any, Optional

from gantry.faults import (
    BadRequestFault,
    CancelledFault,
    ConflictFault,
    Fault,
    FaultDomain,
    InternalFault,
    TransientFault,
)

__all__ = [
    "DatabaseConnectionFault",
    "QueryFault",
    "map_database_error",
]


class DatabaseConnectionFault(TransientFault):
    """Database could not be reached or the connection dropped."""

    def __init__(self, url: str, reason: str, **kwargs):
        super().__init__(
            f"Database connection failed: {reason}",
            metadata={"url": _redact(url), "reason": reason},
        )
        self.code = "DB_CONNECTION_FAILED"


class QueryFault(InternalFault):
    """SQL statement failed for a reason outside the taxonomy."""

    def __init__(self, table: str, operation: str, reason: str, sql: Optional[str] = None):
        metadata: dict[str, Any] = {"table": table, "operation": operation, "reason": reason}
        if sql:
            metadata["_sql"] = sql[:200]
        super().__init__(
            f"{operation} on '{table}' failed: {reason}",
            code="QUERY_FAILED",
            domain=FaultDomain.DATABASE,
            metadata=metadata,
        )


def _redact(url: str) -> str:
    if "@" in url and "://" in url:
        scheme, rest = url.split("://", 1)
        return f"{scheme}://***@{rest.split('@', 1)[1]}"
    return url


def map_database_error(
    exc: BaseException,
    *,
    table: str = "<raw>",
    operation: str = "execute",
    sql: Optional[str] = None,
) -> Fault:
    """Translate a driver exception into a fault."""
    if isinstance(exc, Fault):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return CancelledFault(f"{operation} on '{table}'")

    message = str(exc)
    lowered = message.lower()

    if isinstance(exc, sqlite3.IntegrityError):
        if "unique" in lowered or "primary key" in lowered:
            return ConflictFault(
                f"{table}: {message}",
                metadata={"table": table, "operation": operation},
            )
        return BadRequestFault(
            f"{table}: {message}",
            code="CONSTRAINT_VIOLATION",
            domain=FaultDomain.DATABASE,
            metadata={"table": table, "operation": operation},
        )
    if isinstance(exc, sqlite3.OperationalError):
        if "locked" in lowered or "busy" in lowered or "unable to open" in lowered:
            return TransientFault(
                f"{table}: {message}",
                metadata={"table": table, "operation": operation},
            )
    if isinstance(exc, (ConnectionError, OSError)):
        return TransientFault(f"{table}: {message or exc.__class__.__name__}")
    return QueryFault(table, operation, message or exc.__class__.__name__, sql)

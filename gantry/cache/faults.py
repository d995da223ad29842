"""
Gantry Cache - Fault domain integration.

``CacheEntryNotFound`` is the miss signal returned by every backend. It is
never fatal: callers treat it as a cache miss. Decode failures raise
``CacheSerializationFault`` instead so corruption is not mistaken for a miss.
"""

from __future__ import annotations

from typing import Any, Optional

from gantry.faults.core import Fault, FaultDomain, Severity


FaultDomain.CACHE = FaultDomain("cache", "Cache subsystem faults")


class CacheFault(Fault):
    """Base class for all cache faults."""

    def __init__(
        self,
        code: str,
        message: str,
        *,
        severity: Severity = Severity.WARN,
        retryable: bool = True,
        metadata: Optional[dict[str, Any]] = None,
    ):
        super().__init__(
            code=code,
            message=message,
            domain=FaultDomain.CACHE,
            severity=severity,
            retryable=retryable,
            public=False,
            metadata=metadata,
        )


class CacheEntryNotFound(CacheFault):
    """Key absent or expired."""

    def __init__(self, key: str = "", **kwargs):
        super().__init__(
            code="CACHE_ENTRY_NOT_FOUND",
            message="cache entry not found",
            severity=Severity.INFO,
            retryable=False,
            metadata={"key": key},
        )


class CacheSerializationFault(CacheFault):
    """Failed to serialize/deserialize a cache value."""

    def __init__(self, key: str, operation: str, reason: str, **kwargs):
        super().__init__(
            code="CACHE_SERIALIZATION_FAILED",
            message=f"Cache {operation} failed for key '{key}': {reason}",
            severity=Severity.WARN,
            retryable=False,
            metadata={"key": key, "operation": operation, "reason": reason},
        )


class CacheValueTooLargeFault(CacheFault):
    """Encoded value exceeds the store's per-entry limit."""

    def __init__(self, key: str, size: int, limit: int, **kwargs):
        super().__init__(
            code="CACHE_VALUE_TOO_LARGE",
            message=f"Cache value for key '{key}' is {size} bytes, limit is {limit}",
            severity=Severity.WARN,
            retryable=False,
            metadata={"key": key, "size": size, "limit": limit},
        )


class CacheBackendFault(CacheFault):
    """Generic cache backend error (connection lost, command failed)."""

    def __init__(self, backend: str, operation: str, reason: str, **kwargs):
        super().__init__(
            code="CACHE_BACKEND_ERROR",
            message=f"Cache backend '{backend}' error during {operation}: {reason}",
            severity=Severity.ERROR,
            retryable=True,
            metadata={"backend": backend, "operation": operation, "reason": reason},
        )


class CacheConfigFault(CacheFault):
    """Cache configuration error."""

    def __init__(self, reason: str, **kwargs):
        super().__init__(
            code="CACHE_CONFIG_INVALID",
            message=f"Invalid cache configuration: {reason}",
            severity=Severity.FATAL,
            retryable=False,
            metadata={"reason": reason},
        )

"""
Gantry Cache - Core types and contracts.

Defines:
- TTLClass: how a backend treats the ttl argument of ``set``
- CacheEntry / CacheStats: bookkeeping shared by in-memory backends
- CacheBackend: the storage contract every backend implements
- Cache[T]: the typed facade handed to callers
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar, get_args, get_origin

from .faults import CacheEntryNotFound

T = TypeVar("T")


# ============================================================================
# TTL classes
# ============================================================================

class TTLClass(str, Enum):
    """TTL policy category of a backend."""
    NONE = "none"       # ttl ignored, eviction on capacity only
    GLOBAL = "global"   # ttl ignored, constructor ttl applies to every entry
    ENTRY = "entry"     # ttl honoured per entry, <= 0 means backend default


# ============================================================================
# Cache Entry
# ============================================================================

@dataclass(slots=True)
class CacheEntry:
    """Single cache entry with access metadata."""
    key: str
    value: Any
    created_at: float = field(default_factory=time.monotonic)
    expires_at: Optional[float] = None
    last_accessed: float = field(default_factory=time.monotonic)
    access_count: int = 0
    size_bytes: int = 0

    @property
    def is_expired(self) -> bool:
        if self.expires_at is None:
            return False
        return time.monotonic() >= self.expires_at

    @property
    def ttl_remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    def touch(self) -> None:
        self.last_accessed = time.monotonic()
        self.access_count += 1

    def __repr__(self) -> str:
        ttl = f", ttl={self.ttl_remaining:.1f}s" if self.ttl_remaining else ""
        return f"<CacheEntry key={self.key!r} hits={self.access_count}{ttl}>"


# ============================================================================
# Cache Stats
# ============================================================================

@dataclass
class CacheStats:
    """Aggregate cache statistics for observability."""
    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0
    errors: int = 0
    size: int = 0
    max_size: int = 0
    memory_bytes: int = 0
    backend: str = "unknown"

    @property
    def hit_rate(self) -> float:
        """Cache hit rate as a percentage."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits / total) * 100.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "evictions": self.evictions,
            "errors": self.errors,
            "hit_rate": round(self.hit_rate, 2),
            "size": self.size,
            "max_size": self.max_size,
            "memory_bytes": self.memory_bytes,
            "backend": self.backend,
        }


# ============================================================================
# Cache Backend Protocol
# ============================================================================

class CacheBackend(ABC):
    """
    Abstract cache backend - defines the storage contract.

    Misses (absent or expired keys) raise ``CacheEntryNotFound`` from
    ``get`` and ``peek``. ``peek`` must leave recency and frequency state
    untouched. ``delete`` is idempotent.
    """

    ttl_class: TTLClass = TTLClass.NONE
    # True when values are encoded to bytes and come back as plain data
    stores_bytes: bool = False

    async def initialize(self) -> None:
        """Acquire backend resources (connections, sweepers)."""

    async def shutdown(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def get(self, key: str) -> Any:
        ...

    @abstractmethod
    async def peek(self, key: str) -> Any:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float = 0) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def len(self) -> int:
        """Entry count, or -1 when the backend cannot report it."""
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...

    @abstractmethod
    async def stats(self) -> CacheStats:
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name for diagnostics."""
        ...


# ============================================================================
# Value revival
# ============================================================================

def revive(tp: Any, data: Any) -> Any:
    """
    Rebuild a typed value from decoded plain data.

    Classes exposing ``from_dict`` (models) are rebuilt from dicts, and
    ``list[X]`` from lists of dicts. Anything else is returned as decoded.
    """
    if tp is None or data is None:
        return data
    origin = get_origin(tp)
    if origin in (list, tuple, set) and isinstance(data, list):
        args = get_args(tp)
        inner = args[0] if args else None
        items = [revive(inner, item) for item in data]
        return items if origin is list else origin(items)
    if isinstance(tp, type) and hasattr(tp, "from_dict") and isinstance(data, dict):
        return tp.from_dict(data)
    return data


# ============================================================================
# Cache[T] facade
# ============================================================================

class Cache(Generic[T]):
    """
    Typed cache handle over a backend.

    Usage::

        users: Cache[User] = Cache(LRUBackend(capacity=1024), User)
        await users.set("u1", user)
        user = await users.get("u1")        # raises CacheEntryNotFound on miss
    """

    __slots__ = ("_backend", "_value_type", "_context")

    def __init__(self, backend: CacheBackend, value_type: Any = None, context: Any = None):
        self._backend = backend
        self._value_type = value_type
        self._context = context

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    @property
    def value_type(self) -> Any:
        return self._value_type

    @property
    def context(self) -> Any:
        return self._context

    @property
    def name(self) -> str:
        return self._backend.name

    @property
    def ttl_class(self) -> TTLClass:
        return self._backend.ttl_class

    def with_context(self, ctx: Any) -> "Cache[T]":
        """Equivalent handle whose operations are associated with ``ctx``."""
        return Cache(self._backend, self._value_type, ctx)

    async def initialize(self) -> None:
        await self._backend.initialize()

    async def shutdown(self) -> None:
        await self._backend.shutdown()

    async def set(self, key: str, value: T, ttl: float = 0) -> None:
        await self._backend.set(key, value, ttl)

    async def get(self, key: str) -> T:
        value = await self._backend.get(key)
        return self._revive(value)

    async def peek(self, key: str) -> T:
        value = await self._backend.peek(key)
        return self._revive(value)

    async def delete(self, key: str) -> None:
        await self._backend.delete(key)

    async def exists(self, key: str) -> bool:
        return await self._backend.exists(key)

    async def len(self) -> int:
        return await self._backend.len()

    async def clear(self) -> None:
        await self._backend.clear()

    async def stats(self) -> CacheStats:
        return await self._backend.stats()

    async def get_or_none(self, key: str) -> Optional[T]:
        """``get`` that maps a miss to ``None``."""
        try:
            return await self.get(key)
        except CacheEntryNotFound:
            return None

    def _revive(self, value: Any) -> Any:
        if self._backend.stores_bytes:
            return revive(self._value_type, value)
        return value

    def __repr__(self) -> str:
        tp = getattr(self._value_type, "__name__", self._value_type)
        return f"<Cache[{tp}] backend={self._backend.name}>"

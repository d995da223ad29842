"""
Gantry Cache - In-memory backends.

- **LRUBackend**: OrderedDict, O(1) access/eviction, capacity only
- **LFUBackend**: frequency counter, least-frequently-used eviction
- **ExpiringLRUBackend**: LRU with one TTL for every entry
- **TTLBackend**: per-entry TTL, expiry heap + background sweeper

Guarded by an asyncio.Lock per backend. ``peek`` never touches recency or
frequency state.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from collections import OrderedDict
from heapq import heappop, heappush
from typing import Any, Dict, List, Optional, Tuple

from ..core import CacheBackend, CacheEntry, CacheStats, TTLClass
from ..faults import CacheEntryNotFound

logger = logging.getLogger("gantry.cache.memory")


class _MemoryBackend(CacheBackend):
    """Shared store, lock, stats and eviction plumbing."""

    __slots__ = (
        "_capacity",
        "_store",
        "_lock",
        "_stats",
        "_capacity_warning_threshold",
        "_capacity_warned",
    )

    policy = "memory"

    def __init__(self, capacity: int = 10000, capacity_warning_threshold: float = 0.85):
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        self._capacity = capacity
        self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = asyncio.Lock()
        self._stats = CacheStats(max_size=capacity, backend=self.policy)
        self._capacity_warning_threshold = capacity_warning_threshold
        self._capacity_warned = False

    @property
    def name(self) -> str:
        return f"memory:{self.policy}"

    @property
    def capacity(self) -> int:
        return self._capacity

    # ── Contract ─────────────────────────────────────────────────────

    async def get(self, key: str) -> Any:
        async with self._lock:
            entry = self._live_entry(key)
            entry.touch()
            self._on_access(key)
            self._stats.hits += 1
            return entry.value

    async def peek(self, key: str) -> Any:
        async with self._lock:
            return self._live_entry(key).value

    async def set(self, key: str, value: Any, ttl: float = 0) -> None:
        async with self._lock:
            if key in self._store:
                self._evict_key(key)

            while self._capacity and len(self._store) >= self._capacity:
                self._evict_one()

            entry = CacheEntry(
                key=key,
                value=value,
                expires_at=self._expiry_for(ttl),
                size_bytes=sys.getsizeof(value),
            )
            self._store[key] = entry
            self._on_insert(entry)

            self._stats.sets += 1
            self._stats.size = len(self._store)
            self._stats.memory_bytes += entry.size_bytes
            self._check_capacity_warning()

    async def delete(self, key: str) -> None:
        async with self._lock:
            if key in self._store:
                self._evict_key(key)
                self._stats.deletes += 1

    async def exists(self, key: str) -> bool:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return False
            if entry.is_expired:
                self._evict_key(key)
                return False
            return True

    async def len(self) -> int:
        async with self._lock:
            self._purge_expired()
            return len(self._store)

    async def clear(self) -> None:
        async with self._lock:
            self._store.clear()
            self._on_clear()
            self._stats.size = 0
            self._stats.memory_bytes = 0

    async def stats(self) -> CacheStats:
        self._stats.size = len(self._store)
        return self._stats

    async def shutdown(self) -> None:
        await self.clear()

    # ── Policy hooks (caller holds lock) ─────────────────────────────

    def _expiry_for(self, ttl: float) -> Optional[float]:
        return None

    def _on_access(self, key: str) -> None:
        pass

    def _on_insert(self, entry: CacheEntry) -> None:
        pass

    def _on_remove(self, key: str) -> None:
        pass

    def _on_clear(self) -> None:
        pass

    def _victim(self) -> str:
        return next(iter(self._store))

    # ── Private helpers ──────────────────────────────────────────────

    def _live_entry(self, key: str) -> CacheEntry:
        entry = self._store.get(key)
        if entry is None:
            self._stats.misses += 1
            raise CacheEntryNotFound(key)
        if entry.is_expired:
            self._evict_key(key)
            self._stats.misses += 1
            raise CacheEntryNotFound(key)
        return entry

    def _purge_expired(self) -> int:
        expired = [k for k, e in self._store.items() if e.is_expired]
        for key in expired:
            self._evict_key(key)
        return len(expired)

    def _evict_key(self, key: str) -> None:
        entry = self._store.pop(key, None)
        if entry is None:
            return
        self._on_remove(key)
        self._stats.memory_bytes = max(0, self._stats.memory_bytes - entry.size_bytes)
        self._stats.size = len(self._store)

    def _evict_one(self) -> None:
        if not self._store:
            return
        self._evict_key(self._victim())
        self._stats.evictions += 1

    def _check_capacity_warning(self) -> None:
        if not self._capacity:
            return
        ratio = len(self._store) / self._capacity
        if ratio >= self._capacity_warning_threshold and not self._capacity_warned:
            logger.warning(
                f"Cache capacity at {ratio:.0%} ({len(self._store)}/{self._capacity}), "
                f"policy: {self.policy}"
            )
            self._capacity_warned = True
        elif ratio < self._capacity_warning_threshold * 0.9:
            self._capacity_warned = False


# ============================================================================
# No expiration
# ============================================================================

class LRUBackend(_MemoryBackend):
    """Capacity-bounded least-recently-used cache. TTL ignored."""

    __slots__ = ()

    policy = "lru"
    ttl_class = TTLClass.NONE

    def _on_access(self, key: str) -> None:
        self._store.move_to_end(key)


class LFUBackend(_MemoryBackend):
    """
    Capacity-bounded least-frequently-used cache. TTL ignored.

    Ties are broken by insertion order (oldest first).
    """

    __slots__ = ("_freq_counter",)

    policy = "lfu"
    ttl_class = TTLClass.NONE

    def __init__(self, capacity: int = 10000, **kwargs):
        super().__init__(capacity, **kwargs)
        self._freq_counter: Dict[str, int] = {}

    def _on_access(self, key: str) -> None:
        self._freq_counter[key] = self._freq_counter.get(key, 0) + 1

    def _on_insert(self, entry: CacheEntry) -> None:
        self._freq_counter[entry.key] = 1

    def _on_remove(self, key: str) -> None:
        self._freq_counter.pop(key, None)

    def _on_clear(self) -> None:
        self._freq_counter.clear()

    def _victim(self) -> str:
        return min(self._store, key=lambda k: self._freq_counter.get(k, 0))

    def frequency(self, key: str) -> int:
        return self._freq_counter.get(key, 0)


# ============================================================================
# Global expiration
# ============================================================================

class ExpiringLRUBackend(LRUBackend):
    """
    LRU cache where every entry lives for the constructor ``ttl``.

    The ``ttl`` argument of ``set`` is ignored.
    """

    __slots__ = ("_ttl",)

    policy = "expiring_lru"
    ttl_class = TTLClass.GLOBAL

    def __init__(self, capacity: int = 10000, ttl: float = 600.0, **kwargs):
        if ttl <= 0:
            raise ValueError("ExpiringLRUBackend requires a positive ttl")
        super().__init__(capacity, **kwargs)
        self._ttl = ttl

    @property
    def ttl(self) -> float:
        return self._ttl

    def _expiry_for(self, ttl: float) -> Optional[float]:
        return time.monotonic() + self._ttl

    def _victim(self) -> str:
        for key, entry in self._store.items():
            if entry.is_expired:
                return key
        return next(iter(self._store))


# ============================================================================
# Per-entry expiration
# ============================================================================

class TTLBackend(_MemoryBackend):
    """
    Per-entry TTL cache.

    ``ttl <= 0`` falls back to ``default_ttl``; a default of 0 means the
    entry never expires. Expired entries are dropped lazily on access and by
    a background sweeper driven by an expiry heap. ``capacity`` of 0 means
    unbounded; otherwise the entry closest to expiry is evicted first.
    """

    __slots__ = ("_default_ttl", "_sweep_interval", "_ttl_heap", "_sweeper_task")

    policy = "ttl"
    ttl_class = TTLClass.ENTRY

    def __init__(
        self,
        capacity: int = 0,
        default_ttl: float = 0.0,
        sweep_interval: float = 60.0,
        **kwargs,
    ):
        super().__init__(capacity, **kwargs)
        self._default_ttl = default_ttl
        self._sweep_interval = sweep_interval
        self._ttl_heap: List[Tuple[float, str]] = []
        self._sweeper_task: Optional[asyncio.Task] = None

    async def initialize(self) -> None:
        self._ensure_sweeper()

    async def shutdown(self) -> None:
        if self._sweeper_task and not self._sweeper_task.done():
            self._sweeper_task.cancel()
            try:
                await self._sweeper_task
            except asyncio.CancelledError:
                pass
        self._sweeper_task = None
        await super().shutdown()

    async def set(self, key: str, value: Any, ttl: float = 0) -> None:
        self._ensure_sweeper()
        await super().set(key, value, ttl)

    def _expiry_for(self, ttl: float) -> Optional[float]:
        effective = ttl if ttl and ttl > 0 else self._default_ttl
        if effective and effective > 0:
            return time.monotonic() + effective
        return None

    def _on_insert(self, entry: CacheEntry) -> None:
        if entry.expires_at is not None:
            heappush(self._ttl_heap, (entry.expires_at, entry.key))

    def _on_clear(self) -> None:
        self._ttl_heap.clear()

    def _victim(self) -> str:
        soonest = None
        soonest_at = float("inf")
        for key, entry in self._store.items():
            if entry.expires_at is not None and entry.expires_at < soonest_at:
                soonest_at = entry.expires_at
                soonest = key
        return soonest or next(iter(self._store))

    def _ensure_sweeper(self) -> None:
        if self._sweep_interval <= 0:
            return
        if self._sweeper_task is not None and not self._sweeper_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._sweeper_task = loop.create_task(self._ttl_sweeper())

    async def _ttl_sweeper(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            swept = await self.sweep_expired()
            if swept:
                logger.debug(f"TTL sweeper removed {swept} expired entries")

    async def sweep_expired(self) -> int:
        """Remove expired entries using the expiry heap."""
        async with self._lock:
            now = time.monotonic()
            swept = 0
            while self._ttl_heap:
                expires_at, key = self._ttl_heap[0]
                if expires_at > now:
                    break
                heappop(self._ttl_heap)
                entry = self._store.get(key)
                # Heap may hold stale items for keys that were overwritten
                if entry is not None and entry.is_expired:
                    self._evict_key(key)
                    self._stats.evictions += 1
                    swept += 1
            return swept

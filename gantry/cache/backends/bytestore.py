"""
Gantry Cache - Memory-capped byte store.

Values are serialized on ``set`` and decoded on ``get``; the store tracks the
encoded size and evicts the oldest entries (FIFO) until the total fits in
``max_bytes``. With ``ttl`` set, every entry expires that many seconds after
it was written (global expiration); the ttl argument of ``set`` is ignored.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from typing import Any, Optional, Tuple

from ..core import CacheBackend, CacheStats, TTLClass
from ..faults import CacheEntryNotFound, CacheSerializationFault, CacheValueTooLargeFault
from ..serializers import JsonCacheSerializer

logger = logging.getLogger("gantry.cache.bytestore")


class ByteStoreBackend(CacheBackend):
    """Byte-addressed, memory-capped store with optional global TTL."""

    __slots__ = ("_max_bytes", "_max_value_bytes", "_ttl", "_serializer", "_store", "_used", "_lock", "_stats")

    stores_bytes = True

    def __init__(
        self,
        max_bytes: int = 128 * 1024 * 1024,
        ttl: Optional[float] = None,
        serializer: Optional[Any] = None,
        max_value_bytes: Optional[int] = None,
    ):
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self._max_bytes = max_bytes
        self._max_value_bytes = min(max_value_bytes or max_bytes, max_bytes)
        self._ttl = ttl if ttl and ttl > 0 else None
        self._serializer = serializer or JsonCacheSerializer()
        # key -> (payload, expires_at)
        self._store: "OrderedDict[str, Tuple[bytes, Optional[float]]]" = OrderedDict()
        self._used = 0
        self._lock = asyncio.Lock()
        self._stats = CacheStats(backend="bytestore", memory_bytes=0)

    @property
    def name(self) -> str:
        return "bytestore"

    @property
    def ttl_class(self) -> TTLClass:
        return TTLClass.GLOBAL if self._ttl else TTLClass.NONE

    @property
    def used_bytes(self) -> int:
        return self._used

    async def get(self, key: str) -> Any:
        async with self._lock:
            payload = self._live_payload(key)
            self._stats.hits += 1
        return self._decode(key, payload)

    async def peek(self, key: str) -> Any:
        async with self._lock:
            payload = self._live_payload(key)
        return self._decode(key, payload)

    async def set(self, key: str, value: Any, ttl: float = 0) -> None:
        try:
            payload = self._serializer.serialize(value)
        except (TypeError, ValueError) as e:
            self._stats.errors += 1
            await self.delete(key)
            raise CacheSerializationFault(key, "serialize", str(e)) from e

        async with self._lock:
            self._remove(key)
            if len(payload) > self._max_value_bytes:
                self._stats.errors += 1
                raise CacheValueTooLargeFault(key, len(payload), self._max_value_bytes)

            while self._store and self._used + len(payload) > self._max_bytes:
                oldest = next(iter(self._store))
                self._remove(oldest)
                self._stats.evictions += 1

            expires_at = time.monotonic() + self._ttl if self._ttl else None
            self._store[key] = (payload, expires_at)
            self._used += len(payload)
            self._stats.sets += 1

    async def delete(self, key: str) -> None:
        async with self._lock:
            if self._remove(key):
                self._stats.deletes += 1

    async def exists(self, key: str) -> bool:
        async with self._lock:
            try:
                self._live_payload(key, count_miss=False)
            except CacheEntryNotFound:
                return False
            return True

    async def len(self) -> int:
        async with self._lock:
            now = time.monotonic()
            expired = [k for k, (_, exp) in self._store.items() if exp is not None and exp <= now]
            for key in expired:
                self._remove(key)
            return len(self._store)

    async def clear(self) -> None:
        async with self._lock:
            self._store.clear()
            self._used = 0

    async def stats(self) -> CacheStats:
        self._stats.size = len(self._store)
        self._stats.memory_bytes = self._used
        self._stats.max_size = self._max_bytes
        return self._stats

    # ── Private helpers ──────────────────────────────────────────────

    def _live_payload(self, key: str, count_miss: bool = True) -> bytes:
        item = self._store.get(key)
        if item is not None and item[1] is not None and item[1] <= time.monotonic():
            self._remove(key)
            item = None
        if item is None:
            if count_miss:
                self._stats.misses += 1
            raise CacheEntryNotFound(key)
        return item[0]

    def _remove(self, key: str) -> bool:
        item = self._store.pop(key, None)
        if item is None:
            return False
        self._used -= len(item[0])
        return True

    def _decode(self, key: str, payload: bytes) -> Any:
        try:
            return self._serializer.deserialize(payload)
        except ValueError as e:
            self._stats.errors += 1
            raise CacheSerializationFault(key, "deserialize", str(e)) from e

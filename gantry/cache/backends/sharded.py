"""
Gantry Cache - Sharded concurrent map.

Keys are spread over N shards by CRC32; each shard has its own lock, so
operations on different shards never contend. No capacity bound and no
expiration.
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from typing import Any, Dict, List

from ..core import CacheBackend, CacheStats, TTLClass
from ..faults import CacheEntryNotFound

logger = logging.getLogger("gantry.cache.sharded")


class _Shard:
    __slots__ = ("items", "lock")

    def __init__(self):
        self.items: Dict[str, Any] = {}
        self.lock = asyncio.Lock()


class ShardedMapBackend(CacheBackend):
    """Concurrent map split across ``shards`` independently locked dicts."""

    __slots__ = ("_shards", "_stats")

    ttl_class = TTLClass.NONE

    def __init__(self, shards: int = 16):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards: List[_Shard] = [_Shard() for _ in range(shards)]
        self._stats = CacheStats(backend="sharded")

    @property
    def name(self) -> str:
        return f"sharded:{len(self._shards)}"

    @property
    def shard_count(self) -> int:
        return len(self._shards)

    def shard_index(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._shards)

    def _shard(self, key: str) -> _Shard:
        return self._shards[self.shard_index(key)]

    async def get(self, key: str) -> Any:
        shard = self._shard(key)
        async with shard.lock:
            if key not in shard.items:
                self._stats.misses += 1
                raise CacheEntryNotFound(key)
            self._stats.hits += 1
            return shard.items[key]

    async def peek(self, key: str) -> Any:
        shard = self._shard(key)
        async with shard.lock:
            if key not in shard.items:
                raise CacheEntryNotFound(key)
            return shard.items[key]

    async def set(self, key: str, value: Any, ttl: float = 0) -> None:
        shard = self._shard(key)
        async with shard.lock:
            shard.items[key] = value
            self._stats.sets += 1

    async def delete(self, key: str) -> None:
        shard = self._shard(key)
        async with shard.lock:
            if key in shard.items:
                del shard.items[key]
                self._stats.deletes += 1

    async def exists(self, key: str) -> bool:
        shard = self._shard(key)
        async with shard.lock:
            return key in shard.items

    async def len(self) -> int:
        total = 0
        for shard in self._shards:
            async with shard.lock:
                total += len(shard.items)
        return total

    async def clear(self) -> None:
        for shard in self._shards:
            async with shard.lock:
                shard.items.clear()

    async def stats(self) -> CacheStats:
        self._stats.size = await self.len()
        return self._stats

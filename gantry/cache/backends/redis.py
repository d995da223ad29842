"""
Gantry Cache - Redis backend.

Per-entry TTL via SETEX, values encoded with the configured serializer.
``len`` reports -1 (the keyspace is shared with other prefixes); ``peek``
is ``GET`` since Redis keeps no recency state visible to clients.
"""

from __future__ import annotations

import logging
import re
import time
from typing import Any, Optional

from ..core import CacheBackend, CacheStats, TTLClass
from ..faults import CacheBackendFault, CacheEntryNotFound, CacheSerializationFault, CacheValueTooLargeFault
from ..serializers import JsonCacheSerializer

logger = logging.getLogger("gantry.cache.redis")

_GLOB_SPECIAL = re.compile(r"([\\*?\[\]])")


def glob_escape(text: str) -> str:
    """Escape Redis MATCH metacharacters so ``text`` matches literally."""
    return _GLOB_SPECIAL.sub(r"\\\1", text)


class RedisBackend(CacheBackend):
    """
    Redis-backed cache using redis-py asyncio.

    Connection failures surface as ``CacheBackendFault``; a missing key is
    ``CacheEntryNotFound`` like every other backend.
    """

    __slots__ = (
        "_url",
        "_max_connections",
        "_socket_timeout",
        "_connect_timeout",
        "_key_prefix",
        "_default_ttl",
        "_max_value_bytes",
        "_serializer",
        "_redis",
        "_stats",
        "_start_time",
    )

    ttl_class = TTLClass.ENTRY
    stores_bytes = True

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        key_prefix: str = "gantry:",
        default_ttl: float = 0.0,
        max_connections: int = 10,
        socket_timeout: float = 5.0,
        connect_timeout: float = 5.0,
        max_value_bytes: int = 512 * 1024 * 1024,
        serializer: Optional[Any] = None,
        client: Any = None,
    ):
        self._url = url
        self._key_prefix = key_prefix
        self._default_ttl = default_ttl
        self._max_connections = max_connections
        self._socket_timeout = socket_timeout
        self._connect_timeout = connect_timeout
        self._max_value_bytes = max_value_bytes
        self._serializer = serializer or JsonCacheSerializer()
        self._redis = client
        self._stats = CacheStats(backend="redis")
        self._start_time = time.monotonic()

    @property
    def name(self) -> str:
        return "redis"

    async def initialize(self) -> None:
        """Connect to Redis and create the connection pool."""
        if self._redis is not None:
            return

        import redis.asyncio as aioredis

        self._redis = aioredis.from_url(
            self._url,
            max_connections=self._max_connections,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._connect_timeout,
            decode_responses=False,
        )
        try:
            await self._redis.ping()
        except Exception as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise CacheBackendFault("redis", "connect", str(e)) from e
        self._start_time = time.monotonic()
        logger.info(f"Redis cache connected: {self._url}")

    async def shutdown(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    def _full_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def _client(self):
        if self._redis is None:
            await self.initialize()
        return self._redis

    async def get(self, key: str) -> Any:
        raw = await self._fetch(key)
        self._stats.hits += 1
        return self._decode(key, raw)

    async def peek(self, key: str) -> Any:
        return self._decode(key, await self._fetch(key))

    async def set(self, key: str, value: Any, ttl: float = 0) -> None:
        client = await self._client()
        try:
            payload = self._serializer.serialize(value)
        except (TypeError, ValueError) as e:
            self._stats.errors += 1
            await self.delete(key)
            raise CacheSerializationFault(key, "serialize", str(e)) from e

        if len(payload) > self._max_value_bytes:
            self._stats.errors += 1
            await self.delete(key)
            raise CacheValueTooLargeFault(key, len(payload), self._max_value_bytes)

        effective = ttl if ttl and ttl > 0 else self._default_ttl
        try:
            if effective and effective > 0:
                # PSETEX keeps sub-second precision
                await client.psetex(self._full_key(key), max(1, int(effective * 1000)), payload)
            else:
                await client.set(self._full_key(key), payload)
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Redis SET error for key '{key}': {e}")
            raise CacheBackendFault("redis", "set", str(e)) from e
        self._stats.sets += 1

    async def delete(self, key: str) -> None:
        client = await self._client()
        try:
            if await client.delete(self._full_key(key)):
                self._stats.deletes += 1
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Redis DELETE error for key '{key}': {e}")
            raise CacheBackendFault("redis", "delete", str(e)) from e

    async def exists(self, key: str) -> bool:
        client = await self._client()
        try:
            return bool(await client.exists(self._full_key(key)))
        except Exception as e:
            self._stats.errors += 1
            raise CacheBackendFault("redis", "exists", str(e)) from e

    async def len(self) -> int:
        return -1

    async def clear(self) -> None:
        """Delete every key under this backend's prefix."""
        client = await self._client()
        # type-keyed prefixes carry brackets, e.g. "gantry:builtins.list[app.User]:"
        pattern = f"{glob_escape(self._key_prefix)}*"
        try:
            cursor = 0
            while True:
                cursor, keys = await client.scan(cursor=cursor, match=pattern, count=1000)
                if keys:
                    await client.delete(*keys)
                if cursor == 0:
                    break
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Redis CLEAR error: {e}")
            raise CacheBackendFault("redis", "clear", str(e)) from e

    async def stats(self) -> CacheStats:
        return self._stats

    async def health_check(self) -> bool:
        if self._redis is None:
            return False
        try:
            await self._redis.ping()
            return True
        except Exception:
            return False

    # ── Private helpers ──────────────────────────────────────────────

    async def _fetch(self, key: str) -> bytes:
        client = await self._client()
        try:
            raw = await client.get(self._full_key(key))
        except Exception as e:
            self._stats.errors += 1
            logger.warning(f"Redis GET error for key '{key}': {e}")
            raise CacheBackendFault("redis", "get", str(e)) from e
        if raw is None:
            self._stats.misses += 1
            raise CacheEntryNotFound(key)
        return raw

    def _decode(self, key: str, raw: bytes) -> Any:
        try:
            return self._serializer.deserialize(raw)
        except ValueError as e:
            self._stats.errors += 1
            raise CacheSerializationFault(key, "deserialize", str(e)) from e

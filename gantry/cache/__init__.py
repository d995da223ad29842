"""
Gantry Cache - typed key/value caching.

Three TTL classes of backend share one contract:

- no expiration: LRUBackend, LFUBackend, ShardedMapBackend, ByteStoreBackend()
- global expiration: ExpiringLRUBackend, ByteStoreBackend(ttl=...)
- per-entry expiration: TTLBackend, RedisBackend

Usage::

    from gantry.cache import cache_for, CacheEntryNotFound

    users = cache_for(User)
    await users.set("u1", user)
    try:
        user = await users.get("u1")
    except CacheEntryNotFound:
        ...
"""

from .core import Cache, CacheBackend, CacheEntry, CacheStats, TTLClass, revive
from .faults import (
    CacheBackendFault,
    CacheConfigFault,
    CacheEntryNotFound,
    CacheFault,
    CacheSerializationFault,
    CacheValueTooLargeFault,
)
from .backends import (
    ByteStoreBackend,
    ExpiringLRUBackend,
    LFUBackend,
    LRUBackend,
    RedisBackend,
    ShardedMapBackend,
    TTLBackend,
)
from .serializers import JsonCacheSerializer, MsgpackCacheSerializer, get_serializer
from .tracing import TracingCache, truncate_key
from .registry import build_backend, cache_for, registered_caches, reset_caches, shutdown_caches, type_key

__all__ = [
    # Core
    "Cache",
    "CacheBackend",
    "CacheEntry",
    "CacheStats",
    "TTLClass",
    "revive",
    # Faults
    "CacheFault",
    "CacheEntryNotFound",
    "CacheSerializationFault",
    "CacheValueTooLargeFault",
    "CacheBackendFault",
    "CacheConfigFault",
    # Backends
    "LRUBackend",
    "LFUBackend",
    "ExpiringLRUBackend",
    "TTLBackend",
    "ShardedMapBackend",
    "ByteStoreBackend",
    "RedisBackend",
    # Serializers
    "JsonCacheSerializer",
    "MsgpackCacheSerializer",
    "get_serializer",
    # Tracing
    "TracingCache",
    "truncate_key",
    # Registry
    "cache_for",
    "build_backend",
    "type_key",
    "registered_caches",
    "reset_caches",
    "shutdown_caches",
]

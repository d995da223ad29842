"""
Gantry Cache - One cache instance per value type.

``cache_for(User)`` always returns the same ``Cache[User]``. Instances are
keyed by the fully qualified type name (``module.qualname``, generic aliases
render their arguments) so same-named types in different modules never
share a store. Construction is double-checked under a lock; the first
constructor wins and reads after publication take no lock.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional, get_args, get_origin

from gantry.config import CacheConfig, get_config

from .backends import (
    ByteStoreBackend,
    ExpiringLRUBackend,
    LFUBackend,
    LRUBackend,
    RedisBackend,
    ShardedMapBackend,
    TTLBackend,
)
from .core import Cache, CacheBackend
from .faults import CacheConfigFault
from .serializers import get_serializer
from .tracing import TracingCache

logger = logging.getLogger("gantry.cache.registry")

BackendFactory = Callable[[], CacheBackend]

_caches: Dict[str, Cache] = {}
_lock = threading.Lock()


def type_key(tp: Any) -> str:
    """Stable identifier for a type, e.g. ``app.models.User``."""
    origin = get_origin(tp)
    if origin is not None:
        args = ", ".join(type_key(arg) for arg in get_args(tp))
        return f"{type_key(origin)}[{args}]"
    module = getattr(tp, "__module__", None) or "builtins"
    qualname = getattr(tp, "__qualname__", None) or getattr(tp, "__name__", None) or repr(tp)
    return f"{module}.{qualname}"


def build_backend(config: Optional[CacheConfig] = None, namespace: str = "") -> CacheBackend:
    """Instantiate the backend selected by ``config.backend``."""
    config = config or get_config().cache
    kind = config.backend.lower()

    if kind == "lru":
        return LRUBackend(capacity=config.capacity)
    if kind == "lfu":
        return LFUBackend(capacity=config.capacity)
    if kind == "expiring_lru":
        return ExpiringLRUBackend(capacity=config.capacity, ttl=config.ttl)
    if kind == "ttl":
        return TTLBackend(
            capacity=config.capacity,
            default_ttl=config.default_ttl,
            sweep_interval=config.sweep_interval,
        )
    if kind == "sharded":
        return ShardedMapBackend(shards=config.shards)
    if kind == "bytestore":
        return ByteStoreBackend(
            max_bytes=config.max_bytes,
            ttl=config.ttl or None,
            serializer=get_serializer(config.serializer),
            max_value_bytes=config.max_value_bytes,
        )
    if kind == "redis":
        return RedisBackend(
            url=config.redis_url,
            key_prefix=f"{config.namespace}:{namespace}:" if namespace else f"{config.namespace}:",
            default_ttl=config.default_ttl,
            max_value_bytes=config.max_value_bytes,
            serializer=get_serializer(config.serializer),
        )
    raise CacheConfigFault(f"unknown cache backend '{config.backend}'")


def cache_for(tp: Any, factory: Optional[BackendFactory] = None) -> Cache:
    """
    Return the process-wide cache for values of type ``tp``.

    Args:
        tp: Value type (class or generic alias such as ``list[User]``)
        factory: Backend constructor used only if no instance exists yet
    """
    key = type_key(tp)
    cache = _caches.get(key)
    if cache is not None:
        return cache

    with _lock:
        cache = _caches.get(key)
        if cache is not None:
            return cache

        backend = factory() if factory is not None else build_backend(namespace=key)
        cache = Cache(backend, tp)
        if get_config().cache.trace:
            cache = TracingCache(cache)
        _caches[key] = cache
        logger.debug(f"Created cache for {key} on {backend.name}")
        return cache


def registered_caches() -> Dict[str, Cache]:
    return dict(_caches)


async def shutdown_caches() -> None:
    """Release every backend and forget all instances."""
    with _lock:
        caches = list(_caches.values())
        _caches.clear()
    for cache in caches:
        await cache.shutdown()


def reset_caches() -> None:
    """Forget all instances without shutting them down (tests)."""
    with _lock:
        _caches.clear()

"""Gantry Cache backends."""

from .memory import ExpiringLRUBackend, LFUBackend, LRUBackend, TTLBackend
from .sharded import ShardedMapBackend
from .bytestore import ByteStoreBackend
from .redis import RedisBackend

__all__ = [
    "LRUBackend",
    "LFUBackend",
    "ExpiringLRUBackend",
    "TTLBackend",
    "ShardedMapBackend",
    "ByteStoreBackend",
    "RedisBackend",
]

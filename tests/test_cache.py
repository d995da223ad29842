"""
Test suite for the Gantry cache subsystem.

Covers:
- In-memory backends: LRU, LFU, ExpiringLRU, TTL, ShardedMap
- ByteStore: byte cap, FIFO eviction, value revival
- Redis backend against an in-process client double
- TracingCache spans
- Registry: one cache per type, backend selection from config
- Serializers
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from gantry.cache import (
    ByteStoreBackend,
    Cache,
    CacheConfigFault,
    CacheEntryNotFound,
    CacheSerializationFault,
    CacheValueTooLargeFault,
    ExpiringLRUBackend,
    JsonCacheSerializer,
    LFUBackend,
    LRUBackend,
    MsgpackCacheSerializer,
    RedisBackend,
    ShardedMapBackend,
    TracingCache,
    TTLBackend,
    TTLClass,
    build_backend,
    cache_for,
    get_serializer,
    registered_caches,
    shutdown_caches,
    truncate_key,
    type_key,
)
from gantry.cache.backends.redis import glob_escape
from gantry.config import CacheConfig, GantryConfig, set_config
from gantry.context import Context
from gantry.trace import get_recorder, start_span

from conftest import FakeRedis
from sample_models import User


# ============================================================================
# Fakes
# ============================================================================


class BrokenRedis(FakeRedis):
    async def get(self, key):
        raise ConnectionError("connection refused")


# ============================================================================
# LRU
# ============================================================================


class TestLRUBackend:
    @pytest.mark.asyncio
    async def test_set_get(self):
        backend = LRUBackend(capacity=10)
        await backend.set("a", 1)
        assert await backend.get("a") == 1
        assert await backend.exists("a")
        assert await backend.len() == 1

    @pytest.mark.asyncio
    async def test_miss_raises(self):
        backend = LRUBackend(capacity=10)
        with pytest.raises(CacheEntryNotFound):
            await backend.get("missing")
        with pytest.raises(CacheEntryNotFound):
            await backend.peek("missing")
        stats = await backend.stats()
        assert stats.misses == 2

    @pytest.mark.asyncio
    async def test_evicts_least_recently_used(self):
        backend = LRUBackend(capacity=2)
        await backend.set("a", 1)
        await backend.set("b", 2)
        await backend.get("a")
        await backend.set("c", 3)
        assert await backend.exists("a")
        assert not await backend.exists("b")
        assert await backend.exists("c")
        assert (await backend.stats()).evictions == 1

    @pytest.mark.asyncio
    async def test_peek_keeps_recency(self):
        backend = LRUBackend(capacity=2)
        await backend.set("a", 1)
        await backend.set("b", 2)
        assert await backend.peek("a") == 1
        await backend.set("c", 3)
        assert not await backend.exists("a")
        assert await backend.exists("b")

    @pytest.mark.asyncio
    async def test_peek_keeps_recency_at_capacity_one(self):
        backend = LRUBackend(capacity=1)
        await backend.set("a", 1)
        assert await backend.peek("a") == 1
        await backend.set("b", 2)
        assert not await backend.exists("a")
        assert await backend.peek("b") == 2
        assert await backend.len() == 1
        assert (await backend.stats()).evictions == 1

    @pytest.mark.asyncio
    async def test_ttl_argument_ignored(self):
        backend = LRUBackend(capacity=2)
        await backend.set("a", 1, ttl=0.01)
        await asyncio.sleep(0.03)
        assert await backend.get("a") == 1
        assert backend.ttl_class is TTLClass.NONE

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self):
        backend = LRUBackend()
        await backend.set("a", 1)
        await backend.delete("a")
        await backend.delete("a")
        assert not await backend.exists("a")

    @pytest.mark.asyncio
    async def test_clear(self):
        backend = LRUBackend()
        for i in range(5):
            await backend.set(f"k{i}", i)
        await backend.clear()
        assert await backend.len() == 0

    def test_negative_capacity_rejected(self):
        with pytest.raises(ValueError):
            LRUBackend(capacity=-1)


# ============================================================================
# LFU
# ============================================================================


class TestLFUBackend:
    @pytest.mark.asyncio
    async def test_evicts_least_frequently_used(self):
        backend = LFUBackend(capacity=2)
        await backend.set("a", 1)
        await backend.set("b", 2)
        await backend.get("a")
        await backend.get("a")
        await backend.set("c", 3)
        assert await backend.exists("a")
        assert not await backend.exists("b")

    @pytest.mark.asyncio
    async def test_ties_break_by_insertion_order(self):
        backend = LFUBackend(capacity=2)
        await backend.set("a", 1)
        await backend.set("b", 2)
        await backend.set("c", 3)
        assert not await backend.exists("a")
        assert await backend.exists("b")

    @pytest.mark.asyncio
    async def test_reset_frequency_on_set(self):
        backend = LFUBackend(capacity=4)
        await backend.set("a", 1)
        await backend.get("a")
        await backend.get("a")
        assert backend.frequency("a") == 3
        await backend.set("a", 10)
        assert backend.frequency("a") == 1

    @pytest.mark.asyncio
    async def test_peek_does_not_count(self):
        backend = LFUBackend(capacity=4)
        await backend.set("a", 1)
        await backend.peek("a")
        assert backend.frequency("a") == 1


# ============================================================================
# Expiring LRU / TTL
# ============================================================================


class TestExpiringLRUBackend:
    def test_requires_positive_ttl(self):
        with pytest.raises(ValueError):
            ExpiringLRUBackend(capacity=10, ttl=0)

    @pytest.mark.asyncio
    async def test_entries_expire_after_global_ttl(self):
        backend = ExpiringLRUBackend(capacity=10, ttl=0.05)
        await backend.set("a", 1, ttl=100)
        assert await backend.get("a") == 1
        await asyncio.sleep(0.1)
        with pytest.raises(CacheEntryNotFound):
            await backend.get("a")
        assert backend.ttl_class is TTLClass.GLOBAL

    @pytest.mark.asyncio
    async def test_len_excludes_expired(self):
        backend = ExpiringLRUBackend(capacity=10, ttl=0.05)
        await backend.set("a", 1)
        await asyncio.sleep(0.1)
        assert await backend.len() == 0


class TestTTLBackend:
    @pytest.mark.asyncio
    async def test_per_entry_ttl(self):
        backend = TTLBackend(sweep_interval=0)
        await backend.set("short", 1, ttl=0.05)
        await backend.set("forever", 2)
        await asyncio.sleep(0.1)
        with pytest.raises(CacheEntryNotFound):
            await backend.get("short")
        assert await backend.get("forever") == 2
        assert backend.ttl_class is TTLClass.ENTRY

    @pytest.mark.asyncio
    async def test_default_ttl_applies_when_unset(self):
        backend = TTLBackend(default_ttl=0.05, sweep_interval=0)
        await backend.set("a", 1)
        await asyncio.sleep(0.1)
        assert not await backend.exists("a")

    @pytest.mark.asyncio
    async def test_sweep_expired(self):
        backend = TTLBackend(sweep_interval=0)
        await backend.set("a", 1, ttl=0.02)
        await backend.set("b", 2, ttl=0.02)
        await backend.set("c", 3, ttl=60)
        await asyncio.sleep(0.05)
        assert await backend.sweep_expired() == 2
        assert await backend.len() == 1

    @pytest.mark.asyncio
    async def test_overwrite_leaves_stale_heap_entry_harmless(self):
        backend = TTLBackend(sweep_interval=0)
        await backend.set("a", 1, ttl=0.02)
        await backend.set("a", 2, ttl=60)
        await asyncio.sleep(0.05)
        assert await backend.sweep_expired() == 0
        assert await backend.get("a") == 2

    @pytest.mark.asyncio
    async def test_capacity_evicts_soonest_expiry(self):
        backend = TTLBackend(capacity=2, sweep_interval=0)
        await backend.set("late", 1, ttl=60)
        await backend.set("soon", 2, ttl=5)
        await backend.set("new", 3, ttl=30)
        assert not await backend.exists("soon")
        assert await backend.exists("late")

    @pytest.mark.asyncio
    async def test_shutdown_stops_sweeper(self):
        backend = TTLBackend(sweep_interval=10)
        await backend.initialize()
        await backend.set("a", 1)
        await backend.shutdown()
        assert await backend.len() == 0


# ============================================================================
# Sharded map
# ============================================================================


class TestShardedMapBackend:
    @pytest.mark.asyncio
    async def test_set_get_len(self):
        backend = ShardedMapBackend(shards=4)
        for i in range(20):
            await backend.set(f"k{i}", i)
        assert await backend.len() == 20
        assert await backend.get("k7") == 7
        await backend.clear()
        assert await backend.len() == 0

    def test_shard_index_is_stable(self):
        backend = ShardedMapBackend(shards=8)
        assert backend.shard_index("user:1") == backend.shard_index("user:1")
        assert 0 <= backend.shard_index("user:1") < 8
        assert backend.name == "sharded:8"

    def test_rejects_zero_shards(self):
        with pytest.raises(ValueError):
            ShardedMapBackend(shards=0)

    @pytest.mark.asyncio
    async def test_miss_raises(self):
        backend = ShardedMapBackend()
        with pytest.raises(CacheEntryNotFound):
            await backend.get("nope")


# ============================================================================
# Byte store
# ============================================================================


class TestByteStoreBackend:
    @pytest.mark.asyncio
    async def test_fifo_eviction_by_bytes(self):
        # "xxxxxxxxxx" encodes to 12 bytes of JSON
        backend = ByteStoreBackend(max_bytes=30)
        await backend.set("a", "x" * 10)
        await backend.set("b", "x" * 10)
        await backend.get("a")
        await backend.set("c", "x" * 10)
        assert not await backend.exists("a")
        assert await backend.exists("b")
        assert await backend.len() == 2
        assert backend.used_bytes == 24

    @pytest.mark.asyncio
    async def test_value_too_large(self):
        backend = ByteStoreBackend(max_bytes=100, max_value_bytes=20)
        with pytest.raises(CacheValueTooLargeFault):
            await backend.set("big", "y" * 30)
        assert not await backend.exists("big")

    @pytest.mark.asyncio
    async def test_unserializable_value(self):
        backend = ByteStoreBackend()
        await backend.set("k", "old")
        with pytest.raises(CacheSerializationFault):
            await backend.set("k", object())
        assert not await backend.exists("k")

    @pytest.mark.asyncio
    async def test_global_ttl(self):
        backend = ByteStoreBackend(ttl=0.05)
        assert backend.ttl_class is TTLClass.GLOBAL
        await backend.set("a", {"v": 1})
        await asyncio.sleep(0.1)
        with pytest.raises(CacheEntryNotFound):
            await backend.get("a")

    @pytest.mark.asyncio
    async def test_facade_revives_models(self):
        cache = Cache(ByteStoreBackend(), User)
        await cache.set("u1", User(id="u1", name="alice", email="a@x.io", age=30))
        got = await cache.get("u1")
        assert isinstance(got, User)
        assert got.name == "alice"
        assert got.age == 30

    @pytest.mark.asyncio
    async def test_facade_revives_model_lists(self):
        cache = Cache(ByteStoreBackend(), list[User])
        await cache.set("page", [User(id="u1", name="a"), User(id="u2", name="b")])
        got = await cache.get("page")
        assert [u.name for u in got] == ["a", "b"]
        assert all(isinstance(u, User) for u in got)

    @pytest.mark.asyncio
    async def test_msgpack_serializer(self):
        backend = ByteStoreBackend(serializer=MsgpackCacheSerializer())
        await backend.set("a", {"n": 1, "tags": ["x"]})
        assert await backend.get("a") == {"n": 1, "tags": ["x"]}


# ============================================================================
# Redis
# ============================================================================


class TestRedisBackend:
    @pytest.mark.asyncio
    async def test_set_get_with_prefix(self):
        client = FakeRedis()
        backend = RedisBackend(key_prefix="t:", client=client)
        await backend.set("a", {"v": 1})
        assert b"t:a" in client.data
        assert await backend.get("a") == {"v": 1}

    @pytest.mark.asyncio
    async def test_per_entry_ttl_uses_psetex(self):
        client = FakeRedis()
        backend = RedisBackend(key_prefix="t:", client=client, default_ttl=0)
        await backend.set("a", 1, ttl=1.5)
        await backend.set("b", 2)
        assert client.ttls[b"t:a"] == 1500
        assert b"t:b" not in client.ttls

    @pytest.mark.asyncio
    async def test_default_ttl(self):
        client = FakeRedis()
        backend = RedisBackend(key_prefix="t:", client=client, default_ttl=2)
        await backend.set("a", 1)
        assert client.ttls[b"t:a"] == 2000

    @pytest.mark.asyncio
    async def test_miss_and_len(self):
        backend = RedisBackend(client=FakeRedis())
        with pytest.raises(CacheEntryNotFound):
            await backend.get("missing")
        assert await backend.len() == -1

    @pytest.mark.asyncio
    async def test_clear_only_touches_prefix(self):
        client = FakeRedis()
        client.data[b"other:x"] = b"1"
        backend = RedisBackend(key_prefix="t:", client=client)
        await backend.set("a", 1)
        await backend.set("b", 2)
        await backend.clear()
        assert list(client.data) == [b"other:x"]

    @pytest.mark.asyncio
    async def test_clear_with_bracketed_type_prefix(self, fake_redis):
        backend = build_backend(CacheConfig(backend="redis"), namespace=type_key(list[User]))
        other = build_backend(CacheConfig(backend="redis"), namespace=type_key(User))
        await backend.set("k", [1])
        await other.set("k", 1)
        assert b"gantry:builtins.list[sample_models.User]:k" in fake_redis.data

        await backend.clear()
        assert not await backend.exists("k")
        assert await other.exists("k")

    @pytest.mark.asyncio
    async def test_clear_escapes_every_glob_metacharacter(self):
        client = FakeRedis()
        client.data[b"t1*?\\:x"] = b"1"
        client.data[b"ta:x"] = b"1"
        backend = RedisBackend(key_prefix="t[1]*?\\:", client=client)
        await backend.set("a", 1)
        await backend.clear()
        assert sorted(client.data) == [b"t1*?\\:x", b"ta:x"]

    def test_glob_escape(self):
        assert glob_escape("list[a.B]:") == "list\\[a.B\\]:"
        assert glob_escape("a*b?c\\") == "a\\*b\\?c\\\\"
        assert glob_escape("plain:") == "plain:"

    @pytest.mark.asyncio
    async def test_value_too_large(self):
        backend = RedisBackend(client=FakeRedis(), max_value_bytes=4)
        with pytest.raises(CacheValueTooLargeFault):
            await backend.set("a", "too long")

    @pytest.mark.asyncio
    async def test_backend_errors_surface_as_faults(self):
        from gantry.cache import CacheBackendFault

        backend = RedisBackend(client=BrokenRedis())
        with pytest.raises(CacheBackendFault):
            await backend.get("a")

    @pytest.mark.asyncio
    async def test_facade_revives_models(self):
        cache = Cache(RedisBackend(client=FakeRedis()), User)
        await cache.set("u1", User(id="u1", name="bob"))
        got = await cache.get("u1")
        assert isinstance(got, User) and got.name == "bob"

    @pytest.mark.asyncio
    async def test_shutdown_closes_client(self):
        client = FakeRedis()
        backend = RedisBackend(client=client)
        await backend.shutdown()
        assert client.closed


# ============================================================================
# Tracing
# ============================================================================


class TestTracingCache:
    @pytest.mark.asyncio
    async def test_get_records_hit_and_miss(self):
        cache = TracingCache(Cache(LRUBackend(), User))
        with pytest.raises(CacheEntryNotFound):
            await cache.get("u1")
        await cache.set("u1", User(id="u1", name="a"))
        await cache.get("u1")

        gets = get_recorder().spans(name="cache.get")
        assert [s.attributes["cache.hit"] for s in gets] == [False, True]
        assert gets[0].error is None
        attrs = gets[1].attributes
        assert attrs["cache.operation"] == "get"
        assert attrs["cache.type"] == "User"
        assert attrs["cache.key"] == "u1"
        assert attrs["cache.class"] == "memory:lru/none"
        assert "cache.duration_ms" in attrs

    @pytest.mark.asyncio
    async def test_spans_nest_under_context_span(self):
        cache = TracingCache(Cache(LRUBackend(), int))
        with start_span("request") as parent:
            ctx = Context(span=parent)
            await cache.with_context(ctx).set("k", 1)
        (span,) = get_recorder().spans(name="cache.set")
        assert span.parent_id == parent.span_id
        assert span.trace_id == parent.trace_id

    @pytest.mark.asyncio
    async def test_exists_and_len_spans(self):
        cache = TracingCache(Cache(LRUBackend(), int))
        await cache.set("k", 1)
        assert await cache.exists("k")
        assert await cache.len() == 1
        assert get_recorder().spans(name="cache.exists")[0].attributes["cache.hit"] is True
        assert get_recorder().spans(name="cache.len")[0].attributes["cache.len"] == 1

    def test_truncate_key(self):
        assert truncate_key("abc", 5) == "abc"
        assert truncate_key("abcdefgh", 5) == "abcde..."


# ============================================================================
# Registry
# ============================================================================


class TestRegistry:
    def test_one_cache_per_type(self):
        assert cache_for(User) is cache_for(User)
        assert cache_for(User) is not cache_for(list[User])
        assert type_key(User) in registered_caches()

    def test_type_key_renders_generic_arguments(self):
        assert type_key(User) == "sample_models.User"
        assert type_key(list[User]) == "builtins.list[sample_models.User]"

    def test_tracing_follows_config(self):
        assert isinstance(cache_for(User), TracingCache)
        set_config(GantryConfig(cache=CacheConfig(trace=False)))
        cache = cache_for(list[User])
        assert not isinstance(cache, TracingCache)

    def test_factory_used_on_first_construction(self):
        cache = cache_for(int, factory=lambda: LFUBackend(capacity=3))
        assert cache.backend.name == "memory:lfu"
        again = cache_for(int, factory=lambda: LRUBackend())
        assert again.backend.name == "memory:lfu"

    @pytest.mark.parametrize(
        "kind,name",
        [
            ("lru", "memory:lru"),
            ("lfu", "memory:lfu"),
            ("expiring_lru", "memory:expiring_lru"),
            ("ttl", "memory:ttl"),
            ("sharded", "sharded:16"),
            ("bytestore", "bytestore"),
            ("redis", "redis"),
        ],
    )
    def test_build_backend(self, kind, name):
        assert build_backend(CacheConfig(backend=kind)).name == name

    def test_unknown_backend(self):
        with pytest.raises(CacheConfigFault):
            build_backend(CacheConfig(backend="memcached"))

    @pytest.mark.asyncio
    async def test_shutdown_forgets_instances(self):
        cache_for(User)
        await shutdown_caches()
        assert registered_caches() == {}

    @pytest.mark.asyncio
    async def test_get_or_none(self):
        cache = cache_for(User)
        assert await cache.get_or_none("absent") is None


# ============================================================================
# Serializers
# ============================================================================


class TestSerializers:
    def test_json_is_deterministic(self):
        s = JsonCacheSerializer()
        assert s.serialize({"b": 1, "a": 2}) == s.serialize({"a": 2, "b": 1})

    def test_json_encodes_models(self):
        s = JsonCacheSerializer()
        decoded = s.deserialize(s.serialize(User(id="u1", name="a")))
        assert decoded["id"] == "u1"

    def test_msgpack_round_trip(self):
        s = MsgpackCacheSerializer()
        assert s.deserialize(s.serialize({"a": [1, 2]})) == {"a": [1, 2]}

    def test_get_serializer(self):
        assert get_serializer("json").name == "json"
        assert get_serializer("msgpack").name == "msgpack"
        with pytest.raises(ValueError):
            get_serializer("pickle")

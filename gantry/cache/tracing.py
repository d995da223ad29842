"""
Gantry Cache - Tracing decorator.

Wraps a ``Cache[T]`` so every operation opens a ``cache.<op>`` span carrying
operation, key (truncated), value type, ttl, backend class, duration, hit flag
for reads and error. Semantics are unchanged: misses are re-raised as
``CacheEntryNotFound`` and are not recorded as errors.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Iterator, Optional

from gantry.trace import Span, current_span, start_span

from .core import Cache, T
from .faults import CacheEntryNotFound

logger = logging.getLogger("gantry.cache.tracing")

MAX_KEY_LENGTH = 256


def truncate_key(key: str, limit: int = MAX_KEY_LENGTH) -> str:
    if len(key) <= limit:
        return key
    return key[:limit] + "..."


def _parent_span(ctx: Any) -> Optional[Span]:
    if isinstance(ctx, Span):
        return ctx
    span = getattr(ctx, "span", None)
    return span if span is not None else current_span()


class TracingCache(Cache[T]):
    """Span-per-operation decorator over another ``Cache[T]``."""

    __slots__ = ("_inner",)

    def __init__(self, inner: Cache[T], context: Any = None):
        super().__init__(inner.backend, inner.value_type, context)
        self._inner = inner

    @property
    def inner(self) -> Cache[T]:
        return self._inner

    def with_context(self, ctx: Any) -> "TracingCache[T]":
        return TracingCache(self._inner.with_context(ctx), ctx)

    @contextmanager
    def _span(self, op: str, key: Optional[str] = None, **attrs: Any) -> Iterator[Span]:
        type_name = getattr(self.value_type, "__name__", str(self.value_type))
        attributes = {
            "cache.operation": op,
            "cache.type": type_name,
            "cache.class": f"{self.backend.name}/{self.backend.ttl_class.value}",
            **attrs,
        }
        if key is not None:
            attributes["cache.key"] = truncate_key(key)
        with start_span(f"cache.{op}", parent=_parent_span(self._context), **attributes) as span:
            started = time.perf_counter()
            try:
                yield span
            finally:
                span.set("cache.duration_ms", round((time.perf_counter() - started) * 1000, 3))
                logger.debug(
                    f"cache {op} type={type_name} key={attributes.get('cache.key', '')} "
                    f"hit={span.attributes.get('cache.hit')}"
                )

    async def _read(self, op: str, key: str, fn: Callable[[str], Awaitable[T]]) -> T:
        with self._span(op, key) as span:
            try:
                value = await fn(key)
            except CacheEntryNotFound:
                span.set("cache.hit", False)
            else:
                span.set("cache.hit", True)
                return value
        raise CacheEntryNotFound(key)

    async def get(self, key: str) -> T:
        return await self._read("get", key, self._inner.get)

    async def peek(self, key: str) -> T:
        return await self._read("peek", key, self._inner.peek)

    async def set(self, key: str, value: T, ttl: float = 0) -> None:
        with self._span("set", key, **{"cache.ttl": ttl}):
            await self._inner.set(key, value, ttl)

    async def delete(self, key: str) -> None:
        with self._span("delete", key):
            await self._inner.delete(key)

    async def exists(self, key: str) -> bool:
        with self._span("exists", key) as span:
            found = await self._inner.exists(key)
            span.set("cache.hit", found)
            return found

    async def len(self) -> int:
        with self._span("len") as span:
            n = await self._inner.len()
            span.set("cache.len", n)
            return n

    async def clear(self) -> None:
        with self._span("clear"):
            await self._inner.clear()

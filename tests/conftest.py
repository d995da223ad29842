"""
Shared test fixtures and helpers for the Gantry test suite.
"""

import re
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from gantry.asgi import Gantry
from gantry.cache import reset_caches
from gantry.config import set_config
from gantry.db import configure_engine, reset_engines
from gantry.models import ModelRegistry, register
from gantry.request import Request
from gantry.service import reset_services
from gantry.trace import get_recorder

from sample_models import Category, Ticket, User


# ============================================================================
# Request Helpers
# ============================================================================


def make_scope(
    method: str = "GET",
    path: str = "/",
    query_string: str = "",
    headers: Optional[List[tuple]] = None,
    scheme: str = "http",
    client: Optional[tuple] = None,
) -> dict:
    """Build a minimal ASGI HTTP scope."""
    raw_headers = []
    if headers:
        for name, value in headers:
            raw_headers.append(
                (name.encode("latin-1") if isinstance(name, str) else name,
                 value.encode("latin-1") if isinstance(value, str) else value)
            )
    return {
        "type": "http",
        "asgi": {"version": "3.0"},
        "http_version": "1.1",
        "method": method,
        "path": path,
        "raw_path": path.encode("utf-8"),
        "query_string": query_string.encode("utf-8") if isinstance(query_string, str) else query_string,
        "headers": raw_headers,
        "scheme": scheme,
        "server": ("127.0.0.1", 8000),
        "client": client or ("127.0.0.1", 12345),
        "root_path": "",
    }


def make_receive(body: bytes = b"", *, chunks: Optional[List[bytes]] = None):
    """Create an ASGI receive callable from body bytes or chunked list."""
    if chunks:
        messages = []
        for i, chunk in enumerate(chunks):
            messages.append({
                "type": "http.request",
                "body": chunk,
                "more_body": i < len(chunks) - 1,
            })
    else:
        messages = [{"type": "http.request", "body": body, "more_body": False}]

    idx = 0

    async def receive():
        nonlocal idx
        if idx < len(messages):
            msg = messages[idx]
            idx += 1
            return msg
        return {"type": "http.disconnect"}

    return receive


def make_request(
    method: str = "GET",
    path: str = "/",
    query_string: str = "",
    headers: Optional[List[tuple]] = None,
    body: bytes = b"",
    **kwargs,
) -> Request:
    """Build a full Request object for testing."""
    scope = make_scope(method=method, path=path, query_string=query_string, headers=headers)
    return Request(scope, make_receive(body), **kwargs)


class Collector:
    """ASGI send callable that keeps every message."""

    def __init__(self):
        self.messages: List[dict] = []

    async def __call__(self, message: dict) -> None:
        self.messages.append(message)

    @property
    def status(self) -> int:
        return self.messages[0]["status"]

    @property
    def headers(self) -> dict:
        return {k.decode(): v.decode() for k, v in self.messages[0]["headers"]}

    @property
    def body(self) -> bytes:
        return b"".join(m.get("body", b"") for m in self.messages[1:])


# ============================================================================
# Redis double
# ============================================================================


def redis_glob(pattern: str) -> "re.Pattern[str]":
    """
    Compile a Redis MATCH pattern: ``*``, ``?``, ``[...]`` classes with
    ``^`` negation and ranges, and ``\\`` escapes.
    """
    out: List[str] = []
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "\\" and i + 1 < n:
            out.append(re.escape(pattern[i + 1]))
            i += 2
            continue
        if c == "*":
            out.append(".*")
        elif c == "?":
            out.append(".")
        elif c == "[":
            j = i + 1
            negate = j < n and pattern[j] == "^"
            if negate:
                j += 1
            members: List[str] = []
            while j < n and pattern[j] != "]":
                if pattern[j] == "\\" and j + 1 < n:
                    members.append(re.escape(pattern[j + 1]))
                    j += 2
                elif j + 2 < n and pattern[j + 1] == "-" and pattern[j + 2] != "]":
                    members.append(f"{re.escape(pattern[j])}-{re.escape(pattern[j + 2])}")
                    j += 3
                else:
                    members.append(re.escape(pattern[j]))
                    j += 1
            if members:
                out.append(f"[{'^' if negate else ''}{''.join(members)}]")
            else:
                out.append("(?!)")
            i = j + 1
            continue
        else:
            out.append(re.escape(c))
        i += 1
    return re.compile("".join(out) + r"\Z", re.DOTALL)


class FakeRedis:
    """Dict-backed stand-in for the redis.asyncio client surface the backend uses."""

    def __init__(self):
        self.data: Dict[bytes, bytes] = {}
        self.ttls: Dict[bytes, int] = {}
        self.closed = False

    @staticmethod
    def _k(key: Any) -> bytes:
        return key.encode() if isinstance(key, str) else key

    async def ping(self) -> bool:
        return True

    async def get(self, key):
        return self.data.get(self._k(key))

    async def set(self, key, value):
        self.data[self._k(key)] = value
        self.ttls.pop(self._k(key), None)
        return True

    async def psetex(self, key, ms, value):
        self.data[self._k(key)] = value
        self.ttls[self._k(key)] = ms
        return True

    async def delete(self, *keys) -> int:
        removed = 0
        for key in keys:
            if self.data.pop(self._k(key), None) is not None:
                removed += 1
        return removed

    async def exists(self, key) -> int:
        return int(self._k(key) in self.data)

    async def scan(self, cursor=0, match=None, count=None):
        matcher = redis_glob(match) if match is not None else None
        keys = [k for k in self.data if matcher is None or matcher.match(k.decode())]
        return 0, keys

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_redis(monkeypatch):
    """Route every ``redis.asyncio.from_url`` connection to one FakeRedis."""
    client = FakeRedis()
    monkeypatch.setattr("redis.asyncio.from_url", lambda *args, **kwargs: client)
    return client


# ============================================================================
# Global state
# ============================================================================


def _reset() -> None:
    set_config(None)
    ModelRegistry.reset()
    reset_caches()
    reset_services()
    reset_engines()
    get_recorder().clear()
    get_recorder().set_journal(None)


@pytest.fixture(autouse=True)
def clean_state():
    """Every test starts from default config and empty registries."""
    _reset()
    yield
    _reset()


# ============================================================================
# Database fixtures
# ============================================================================


@pytest_asyncio.fixture
async def engine():
    """Connected in-memory default engine."""
    eng = configure_engine("sqlite:///:memory:")
    await eng.connect()
    try:
        yield eng
    finally:
        await eng.disconnect()


@pytest_asyncio.fixture
async def tables(engine):
    """Sample models registered and bootstrapped on the default engine."""
    register(User)
    register(Category)
    register(Ticket)
    await ModelRegistry.bootstrap()
    return engine


@pytest.fixture
def app(tables):
    application = Gantry(bootstrap=False)
    application.register(User, "/user")
    application.register(Category, "/category")
    application.register(Ticket, "/ticket", verbs=["most"])
    return application


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

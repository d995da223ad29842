"""
Gantry Database Engine - async connection manager over a backend adapter.

Provides:
- Engine: connect with retries, statement execution, introspection
- Transactions with savepoint nesting (see ``gantry.db.transactions``)
- Alias registry for multi-database routing (``Database.with_db("logs")``)

All statements share one adapter connection. A transaction holds the
engine's transaction lock from BEGIN to COMMIT/ROLLBACK; statements issued
inside it (tracked through a context variable) run under that lock,
statements from other tasks wait for it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Sequence

from gantry.faults import Fault

from .backends.base import AdapterCapabilities, ColumnInfo, DatabaseAdapter, ExecResult
from .faults import DatabaseConnectionFault, map_database_error
from .transactions import Transaction, current_transaction

logger = logging.getLogger("gantry.db.engine")

__all__ = [
    "Engine",
    "configure_engine",
    "get_engine",
    "set_engine",
    "all_engines",
    "close_engines",
    "reset_engines",
]


def _create_adapter(url: str) -> DatabaseAdapter:
    if url.startswith("sqlite"):
        from .backends.sqlite import SQLiteAdapter

        return SQLiteAdapter()
    raise DatabaseConnectionFault(url=url, reason=f"Unsupported database URL scheme: {url}")


class Engine:
    """
    Async database engine.

    Usage:
        engine = Engine("sqlite:///app.db")
        await engine.connect()
        rows = await engine.fetch_all("SELECT * FROM users WHERE age > ?", [18])

        async with engine.transaction():
            await engine.execute("UPDATE users SET age = age + 1")
    """

    __slots__ = (
        "_url",
        "_adapter",
        "_connected",
        "_connect_lock",
        "_txn_lock",
        "_options",
        "_connect_retries",
        "_connect_retry_delay",
        "_last_activity",
        "alias",
    )

    def __init__(self, url: str = "sqlite:///:memory:", *, alias: str = "default", **options: Any):
        self._url = url
        self._adapter = _create_adapter(url)
        self._connected = False
        self._connect_lock = asyncio.Lock()
        self._txn_lock = asyncio.Lock()
        self._connect_retries = int(options.pop("connect_retries", 3))
        self._connect_retry_delay = float(options.pop("connect_retry_delay", 0.2))
        self._options = options
        self._last_activity = 0.0
        self.alias = alias

    def __repr__(self) -> str:
        return f"<Engine {self.alias} {self._adapter.dialect} connected={self._connected}>"

    # ── Connection management ────────────────────────────────────────

    async def connect(self) -> None:
        """Open the connection, retrying transient failures."""
        if self._connected:
            return
        async with self._connect_lock:
            if self._connected:
                return
            last_exc: Optional[Exception] = None
            for attempt in range(1, self._connect_retries + 1):
                try:
                    await self._adapter.connect(self._url, **self._options)
                except Exception as exc:
                    last_exc = exc
                    if attempt < self._connect_retries:
                        logger.warning(
                            f"Connection attempt {attempt} failed: {exc}, "
                            f"retrying in {self._connect_retry_delay}s..."
                        )
                        await asyncio.sleep(self._connect_retry_delay)
                    continue
                self._connected = True
                self._last_activity = time.monotonic()
                logger.info(f"Database '{self.alias}' connected ({self.dialect}), attempt {attempt}")
                return
            raise DatabaseConnectionFault(
                url=self._url,
                reason=f"Failed after {self._connect_retries} attempts: {last_exc}",
            )

    async def disconnect(self) -> None:
        if not self._connected:
            return
        async with self._connect_lock:
            self._connected = False
            await self._adapter.disconnect()
            logger.info(f"Database '{self.alias}' disconnected")

    async def ensure_connected(self) -> None:
        if not self._connected or not self._adapter.is_connected:
            self._connected = False
            await self.connect()

    async def ping(self) -> bool:
        """Round-trip ``SELECT 1``; False instead of raising."""
        try:
            return await self.fetch_val("SELECT 1") == 1
        except Exception as exc:
            logger.warning(f"Database '{self.alias}' ping failed: {exc}")
            return False

    # ── Transactions ─────────────────────────────────────────────────

    def transaction(self) -> Transaction:
        """
        Unit of work. Nested use inside the same task opens a savepoint.

        Usage:
            async with engine.transaction() as txn:
                await engine.execute("INSERT ...")
                txn.on_commit(lambda: logger.info("done"))
        """
        return Transaction(self)

    def owns_transaction(self) -> bool:
        """Whether the calling task is inside an open transaction on this engine."""
        txn = current_transaction()
        return txn is not None and txn.engine is self and txn.active

    # ── Query execution ──────────────────────────────────────────────

    async def _run(self, op: str, sql: str, call):
        await self.ensure_connected()
        self._last_activity = time.monotonic()
        try:
            if self.owns_transaction():
                return await call()
            async with self._txn_lock:
                return await call()
        except Fault:
            raise
        except Exception as exc:
            raise map_database_error(exc, operation=op, sql=sql) from exc

    async def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> ExecResult:
        return await self._run("execute", sql, lambda: self._adapter.execute(sql, params or []))

    async def execute_many(self, sql: str, params_list: Sequence[Sequence[Any]]) -> ExecResult:
        return await self._run("execute_many", sql, lambda: self._adapter.execute_many(sql, params_list))

    async def fetch_all(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        return await self._run("fetch_all", sql, lambda: self._adapter.fetch_all(sql, params or []))

    async def fetch_one(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
        return await self._run("fetch_one", sql, lambda: self._adapter.fetch_one(sql, params or []))

    async def fetch_val(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        return await self._run("fetch_val", sql, lambda: self._adapter.fetch_val(sql, params or []))

    # ── Introspection ────────────────────────────────────────────────

    async def table_exists(self, table_name: str) -> bool:
        return await self._run("table_exists", table_name, lambda: self._adapter.table_exists(table_name))

    async def get_tables(self) -> List[str]:
        return await self._run("get_tables", "", self._adapter.get_tables)

    async def get_columns(self, table_name: str) -> List[ColumnInfo]:
        return await self._run("get_columns", table_name, lambda: self._adapter.get_columns(table_name))

    # ── Properties ───────────────────────────────────────────────────

    @property
    def url(self) -> str:
        return self._url

    @property
    def adapter(self) -> DatabaseAdapter:
        return self._adapter

    @property
    def dialect(self) -> str:
        return self._adapter.dialect

    @property
    def capabilities(self) -> AdapterCapabilities:
        return self._adapter.capabilities

    @property
    def is_connected(self) -> bool:
        return self._connected and self._adapter.is_connected

    @property
    def txn_lock(self) -> asyncio.Lock:
        return self._txn_lock


# ── Alias registry ──────────────────────────────────────────────────────────

_engines: Dict[str, Engine] = {}


def configure_engine(url: str, *, alias: str = "default", **options: Any) -> Engine:
    """Create an engine and register it under ``alias``."""
    engine = Engine(url, alias=alias, **options)
    _engines[alias.lower()] = engine
    return engine


def set_engine(engine: Engine, *, alias: Optional[str] = None) -> Engine:
    alias = alias or engine.alias
    engine.alias = alias
    _engines[alias.lower()] = engine
    return engine


def get_engine(alias: Optional[str] = None) -> Engine:
    """
    Engine registered under ``alias`` (case-insensitive).

    Unknown aliases fall back to the default engine; the default is
    created from configuration on first use.
    """
    key = (alias or "default").lower()
    engine = _engines.get(key)
    if engine is not None:
        return engine
    if key != "default":
        from gantry.config import get_config

        url = get_config().database.aliases.get(key) or get_config().database.aliases.get(alias or "")
        if url:
            return configure_engine(url, alias=key)
        logger.debug(f"No database '{alias}', using default")
        return get_engine("default")
    from gantry.config import get_config

    cfg = get_config().database
    return configure_engine(cfg.url, alias="default", connect_retries=cfg.connect_retries)


def all_engines() -> Dict[str, Engine]:
    return dict(_engines)


async def close_engines() -> None:
    for engine in list(_engines.values()):
        await engine.disconnect()


def reset_engines() -> None:
    """Forget registered engines without closing them (tests)."""
    _engines.clear()

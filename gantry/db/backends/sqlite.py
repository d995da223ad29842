"""
Gantry DB Backend - SQLite adapter via aiosqlite.

The connection runs in autocommit mode (``isolation_level=None``); every
transaction is an explicit ``BEGIN`` / ``COMMIT`` issued by the engine.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Sequence

import aiosqlite

from .base import AdapterCapabilities, ColumnInfo, DatabaseAdapter, ExecResult

logger = logging.getLogger("gantry.db.backends.sqlite")

__all__ = ["SQLiteAdapter"]

_SP_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def _check_savepoint(name: str) -> str:
    if not _SP_NAME_RE.match(name):
        raise ValueError(f"Invalid savepoint name: {name!r}")
    return name


class SQLiteAdapter(DatabaseAdapter):
    """
    SQLite adapter using aiosqlite.

    Features:
    - WAL journal mode for file databases
    - Foreign key enforcement
    - Savepoint-based nested transactions
    - ``INDEXED BY`` hints; row-lock clauses are not supported
    """

    capabilities = AdapterCapabilities(
        supports_upsert=True,
        supports_savepoints=True,
        supports_row_locks=False,
        supports_index_hints=True,
        supports_row_values=True,
        param_style="qmark",
        name="sqlite",
    )

    def __init__(self):
        self._connection: Optional[aiosqlite.Connection] = None
        self._path = ""

    async def connect(self, url: str, **options: Any) -> None:
        if self._connection is not None:
            return
        self._path = self.parse_url(url)
        timeout = float(options.get("timeout", 5.0))
        self._connection = await aiosqlite.connect(self._path, timeout=timeout, isolation_level=None)
        self._connection.row_factory = aiosqlite.Row
        if self._path != ":memory:":
            await self._connection.execute("PRAGMA journal_mode=WAL")
        await self._connection.execute("PRAGMA foreign_keys=ON")
        logger.info(f"SQLite connected: {self._path}")

    async def disconnect(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        logger.info(f"SQLite disconnected: {self._path}")

    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise ConnectionError("SQLite adapter is not connected")
        return self._connection

    async def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> ExecResult:
        async with self._conn().execute(sql, list(params or [])) as cursor:
            return ExecResult(rowcount=cursor.rowcount, lastrowid=cursor.lastrowid)

    async def execute_many(self, sql: str, params_list: Sequence[Sequence[Any]]) -> ExecResult:
        async with self._conn().executemany(sql, [list(p) for p in params_list]) as cursor:
            return ExecResult(rowcount=cursor.rowcount, lastrowid=cursor.lastrowid)

    async def fetch_all(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        async with self._conn().execute(sql, list(params or [])) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def fetch_one(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
        async with self._conn().execute(sql, list(params or [])) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def fetch_val(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        async with self._conn().execute(sql, list(params or [])) as cursor:
            row = await cursor.fetchone()
        return row[0] if row is not None else None

    # ── Transactions ─────────────────────────────────────────────────

    async def begin(self) -> None:
        await self._conn().execute("BEGIN")

    async def commit(self) -> None:
        await self._conn().execute("COMMIT")

    async def rollback(self) -> None:
        await self._conn().execute("ROLLBACK")

    async def savepoint(self, name: str) -> None:
        await self._conn().execute(f'SAVEPOINT "{_check_savepoint(name)}"')

    async def release_savepoint(self, name: str) -> None:
        await self._conn().execute(f'RELEASE SAVEPOINT "{_check_savepoint(name)}"')

    async def rollback_to_savepoint(self, name: str) -> None:
        await self._conn().execute(f'ROLLBACK TO SAVEPOINT "{_check_savepoint(name)}"')

    # ── Introspection ────────────────────────────────────────────────

    async def table_exists(self, table_name: str) -> bool:
        row = await self.fetch_one(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
            [table_name],
        )
        return row is not None

    async def get_tables(self) -> List[str]:
        rows = await self.fetch_all(
            "SELECT name FROM sqlite_master WHERE type='table' "
            "AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [r["name"] for r in rows]

    async def get_columns(self, table_name: str) -> List[ColumnInfo]:
        rows = await self.fetch_all(f'PRAGMA table_info("{table_name}")')
        return [
            ColumnInfo(
                name=row["name"],
                data_type=row["type"],
                nullable=not row["notnull"],
                default=row["dflt_value"],
                primary_key=bool(row["pk"]),
            )
            for row in rows
        ]

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    @staticmethod
    def parse_url(url: str) -> str:
        """Extract the file path from a sqlite URL."""
        for prefix in ("sqlite:///", "sqlite://"):
            if url.startswith(prefix):
                return url[len(prefix):] or ":memory:"
        return url.replace("sqlite:", "").lstrip("/") or ":memory:"

"""
Gantry DB Backend - adapter interface.

The ``Engine`` delegates every statement to an adapter chosen from the
connection URL. Adapters use ``?`` placeholders and return rows as dicts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

__all__ = ["DatabaseAdapter", "AdapterCapabilities", "ColumnInfo", "ExecResult"]


@dataclass
class AdapterCapabilities:
    """Describes what a specific backend supports."""

    supports_upsert: bool = True
    supports_savepoints: bool = True
    supports_row_locks: bool = False
    supports_index_hints: bool = False
    supports_row_values: bool = True
    param_style: str = "qmark"
    name: str = "base"


@dataclass
class ColumnInfo:
    """Introspection result for a single column."""

    name: str
    data_type: str
    nullable: bool = True
    default: Optional[str] = None
    primary_key: bool = False


@dataclass
class ExecResult:
    """Outcome of a mutating statement."""

    rowcount: int = 0
    lastrowid: Optional[int] = None


class DatabaseAdapter(ABC):
    """Abstract database adapter."""

    capabilities: AdapterCapabilities = AdapterCapabilities()

    @abstractmethod
    async def connect(self, url: str, **options: Any) -> None:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...

    @abstractmethod
    async def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> ExecResult:
        ...

    @abstractmethod
    async def execute_many(self, sql: str, params_list: Sequence[Sequence[Any]]) -> ExecResult:
        ...

    @abstractmethod
    async def fetch_all(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        ...

    async def fetch_one(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
        rows = await self.fetch_all(sql, params)
        return rows[0] if rows else None

    async def fetch_val(self, sql: str, params: Optional[Sequence[Any]] = None) -> Any:
        row = await self.fetch_one(sql, params)
        if row is None:
            return None
        return next(iter(row.values()))

    # ── Transaction management ───────────────────────────────────────

    @abstractmethod
    async def begin(self) -> None:
        ...

    @abstractmethod
    async def commit(self) -> None:
        ...

    @abstractmethod
    async def rollback(self) -> None:
        ...

    @abstractmethod
    async def savepoint(self, name: str) -> None:
        ...

    @abstractmethod
    async def release_savepoint(self, name: str) -> None:
        ...

    @abstractmethod
    async def rollback_to_savepoint(self, name: str) -> None:
        ...

    # ── Introspection ────────────────────────────────────────────────

    @abstractmethod
    async def table_exists(self, table_name: str) -> bool:
        ...

    @abstractmethod
    async def get_tables(self) -> List[str]:
        ...

    @abstractmethod
    async def get_columns(self, table_name: str) -> List[ColumnInfo]:
        ...

    @property
    def is_connected(self) -> bool:
        return False

    @property
    def dialect(self) -> str:
        return self.capabilities.name

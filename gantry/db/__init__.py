"""
Gantry DB - async persistence for registered models.

    from gantry.db import Database, atomic, configure_engine

    configure_engine("sqlite:///app.db")
    async with atomic() as txn:
        await Database(User).with_transaction(txn).create(User(name="u1"))
"""

from .backends import AdapterCapabilities, ColumnInfo, DatabaseAdapter, ExecResult, SQLiteAdapter
from .database import Database, Stage, Total
from .engine import (
    Engine,
    all_engines,
    close_engines,
    configure_engine,
    get_engine,
    reset_engines,
    set_engine,
)
from .faults import DatabaseConnectionFault, QueryFault, map_database_error
from .schema import sync_table
from .transactions import Transaction, atomic, bind, current_transaction

__all__ = [
    # Engine
    "Engine",
    "configure_engine",
    "get_engine",
    "set_engine",
    "all_engines",
    "close_engines",
    "reset_engines",
    # Operations
    "Database",
    "Total",
    "Stage",
    # Transactions
    "Transaction",
    "atomic",
    "bind",
    "current_transaction",
    # Schema
    "sync_table",
    # Backends
    "DatabaseAdapter",
    "AdapterCapabilities",
    "ColumnInfo",
    "ExecResult",
    "SQLiteAdapter",
    # Faults
    "DatabaseConnectionFault",
    "QueryFault",
    "map_database_error",
]

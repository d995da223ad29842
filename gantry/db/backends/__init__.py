"""
Gantry DB backend adapters.
"""

from .base import AdapterCapabilities, ColumnInfo, DatabaseAdapter, ExecResult
from .sqlite import SQLiteAdapter

__all__ = [
    "DatabaseAdapter",
    "AdapterCapabilities",
    "ColumnInfo",
    "ExecResult",
    "SQLiteAdapter",
]

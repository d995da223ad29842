"""
Gantry DB - table creation and auto-migration.

``sync_table`` is the whole migration story: ``CREATE TABLE IF NOT EXISTS``,
then ``ALTER TABLE ... ADD COLUMN`` for declared fields the table lacks, then
``CREATE INDEX IF NOT EXISTS`` for indexed fields. Columns are never dropped
or retyped.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional, Type

if TYPE_CHECKING:
    from gantry.models import Model

    from .engine import Engine

logger = logging.getLogger("gantry.db.schema")

__all__ = [
    "create_table_sql",
    "index_sql",
    "add_column_sql",
    "sync_table",
]


def create_table_sql(model: Type[Model], table: Optional[str] = None) -> str:
    table = table or model._meta.table
    cols = [f.sql_column_def() for f in model._meta.fields.values()]
    body = ",\n  ".join(cols)
    return f'CREATE TABLE IF NOT EXISTS "{table}" (\n  {body}\n)'


def index_sql(model: Type[Model], table: Optional[str] = None) -> List[str]:
    """``CREATE INDEX`` statements for ``db_index`` fields plus ``deleted_at``."""
    table = table or model._meta.table
    stmts: List[str] = []
    for field in model._meta.fields.values():
        indexed = field.db_index or field.attr_name == "deleted_at"
        if indexed and not field.primary_key and not field.unique:
            idx_name = f"idx_{table}_{field.column_name}"
            stmts.append(
                f'CREATE INDEX IF NOT EXISTS "{idx_name}" '
                f'ON "{table}" ("{field.column_name}")'
            )
    return stmts


def add_column_sql(table: str, column_def: str) -> str:
    return f'ALTER TABLE "{table}" ADD COLUMN {column_def}'


async def sync_table(engine: Engine, model: Type[Model], table: Optional[str] = None) -> List[str]:
    """
    Create ``model``'s table if missing and add any missing columns.

    SQLite cannot add a UNIQUE or PRIMARY KEY column to an existing table;
    such fields are added without the constraint and a warning is logged.

    Returns:
        The statements that were executed.
    """
    table = table or model._meta.table
    statements: List[str] = []

    if not await engine.table_exists(table):
        sql = create_table_sql(model, table)
        await engine.execute(sql)
        statements.append(sql)
        logger.info(f"Created table '{table}' for {model.__name__}")
    else:
        existing = {c.name for c in await engine.get_columns(table)}
        for field in model._meta.fields.values():
            if field.column_name in existing:
                continue
            column_def = field.sql_column_def()
            if field.unique or field.primary_key:
                logger.warning(
                    f"{table}.{field.column_name}: added without UNIQUE, "
                    f"SQLite cannot add constrained columns"
                )
                column_def = column_def.replace(" PRIMARY KEY", "").replace(" UNIQUE", "")
            sql = add_column_sql(table, column_def)
            await engine.execute(sql)
            statements.append(sql)
            logger.info(f"Added column '{field.column_name}' to '{table}'")

    for sql in index_sql(model, table):
        await engine.execute(sql)
        statements.append(sql)

    return statements

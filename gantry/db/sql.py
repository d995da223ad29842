"""
Gantry SQL Builder - safe, parameterized SQL generation.

Every user value is bound as a ``?`` parameter; identifiers are quoted and,
where they come from a request (``_sortby``, ``_select``, ``_index``),
checked against the model's columns first.

Usage:
    from gantry.db.sql import SelectBuilder

    sql, params = (
        SelectBuilder("users")
        .select("id", "name")
        .where('"deleted_at" IS NULL')
        .where_group(['"name" = ?', '"email" = ?'], ["u1", "x@y"], disjunctive=True)
        .order_by('"created_at" DESC')
        .limit(10)
        .build()
    )
    # SELECT "id", "name" FROM "users" WHERE ("deleted_at" IS NULL)
    #   AND (("name" = ?) OR ("email" = ?)) ORDER BY "created_at" DESC LIMIT 10
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from gantry.faults import InvalidParamFault

__all__ = [
    "quote",
    "like_pattern",
    "parse_order",
    "SelectBuilder",
    "UpsertBuilder",
    "UpdateBuilder",
    "DeleteBuilder",
]

_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def quote(identifier: str) -> str:
    """Quote an identifier; rejects anything that is not a plain name."""
    if not _IDENT_RE.match(identifier):
        raise InvalidParamFault("identifier", f"invalid SQL identifier {identifier!r}")
    return f'"{identifier}"'


def like_pattern(value: Any) -> str:
    """Containment pattern for ``LIKE ? ESCAPE '\\'``."""
    text = str(value).replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{text}%"


def parse_order(clause: str, columns: Iterable[str]) -> List[Tuple[str, bool]]:
    """
    Parse ``"col [asc|desc], col2 [asc|desc]"`` into ``(column, descending)``.

    Raises:
        InvalidParamFault: unknown column or direction
    """
    known = set(columns)
    result: List[Tuple[str, bool]] = []
    for part in clause.split(","):
        tokens = part.split()
        if not tokens:
            continue
        column = tokens[0].strip('"`')
        if column not in known:
            raise InvalidParamFault("_sortby", f"unknown column '{column}'")
        descending = False
        if len(tokens) > 1:
            direction = tokens[1].lower()
            if direction not in ("asc", "desc") or len(tokens) > 2:
                raise InvalidParamFault("_sortby", f"invalid order clause '{part.strip()}'")
            descending = direction == "desc"
        result.append((column, descending))
    return result


class SelectBuilder:
    """
    SELECT query builder with safe parameter binding.
    """

    def __init__(self, table: str):
        self._table = table
        self._columns: List[str] = []
        self._index: Optional[str] = None
        self._wheres: List[str] = []
        self._params: List[Any] = []
        self._order_by: List[str] = []
        self._limit_val: Optional[int] = None
        self._offset_val: Optional[int] = None
        self._lock: Optional[str] = None

    def select(self, *columns: str) -> SelectBuilder:
        self._columns = list(columns)
        return self

    def indexed_by(self, index: Optional[str]) -> SelectBuilder:
        """SQLite ``INDEXED BY`` hint."""
        self._index = index
        return self

    def where(self, clause: str, *args: Any) -> SelectBuilder:
        self._wheres.append(clause)
        self._params.extend(args)
        return self

    def where_in(self, column: str, values: Sequence[Any]) -> SelectBuilder:
        if not values:
            self._wheres.append("1 = 0")
            return self
        placeholders = ", ".join("?" for _ in values)
        self._wheres.append(f"{quote(column)} IN ({placeholders})")
        self._params.extend(values)
        return self

    def where_group(self, clauses: Sequence[str], params: Sequence[Any], *, disjunctive: bool = False) -> SelectBuilder:
        """Add ``clauses`` as one condition, joined by OR when ``disjunctive``."""
        if not clauses:
            return self
        joiner = " OR " if disjunctive else " AND "
        self._wheres.append(joiner.join(f"({c})" for c in clauses))
        self._params.extend(params)
        return self

    def order_by(self, *terms: str) -> SelectBuilder:
        """Append already-quoted ORDER BY terms, e.g. ``'"name" DESC'``."""
        self._order_by.extend(terms)
        return self

    def limit(self, n: Optional[int]) -> SelectBuilder:
        self._limit_val = n
        return self

    def offset(self, n: Optional[int]) -> SelectBuilder:
        self._offset_val = n
        return self

    def for_update(self, mode: Optional[str]) -> SelectBuilder:
        self._lock = mode
        return self

    def _from(self) -> str:
        ref = quote(self._table)
        if self._index:
            ref += f" INDEXED BY {quote(self._index)}"
        return f"FROM {ref}"

    def _where(self) -> str:
        if not self._wheres:
            return ""
        return "WHERE " + " AND ".join(f"({w})" for w in self._wheres)

    def build(self) -> Tuple[str, List[Any]]:
        cols = ", ".join(quote(c) for c in self._columns) if self._columns else "*"
        parts = [f"SELECT {cols}", self._from()]
        where = self._where()
        if where:
            parts.append(where)
        if self._order_by:
            parts.append("ORDER BY " + ", ".join(self._order_by))
        if self._limit_val is not None and self._limit_val >= 0:
            parts.append(f"LIMIT {int(self._limit_val)}")
            if self._offset_val:
                parts.append(f"OFFSET {int(self._offset_val)}")
        if self._lock:
            parts.append(f"FOR {self._lock}")
        return " ".join(parts), list(self._params)

    def build_count(self) -> Tuple[str, List[Any]]:
        """COUNT(*) over the same filter, without order, limit or offset."""
        parts = ["SELECT COUNT(*)", self._from()]
        where = self._where()
        if where:
            parts.append(where)
        return " ".join(parts), list(self._params)


class UpsertBuilder:
    """
    ``INSERT ... ON CONFLICT(key) DO UPDATE SET ...`` for ``executemany``.

    Columns listed in ``preserve`` keep their stored value when the row
    already exists (``created_at`` keeps the first insert time).
    """

    def __init__(self, table: str, *, conflict: str = "id", preserve: Sequence[str] = ("created_at",)):
        self._table = table
        self._conflict = conflict
        self._preserve = set(preserve) | {conflict}
        self._columns: List[str] = []
        self._rows: List[List[Any]] = []

    def rows(self, rows: Sequence[Dict[str, Any]]) -> UpsertBuilder:
        if not rows:
            raise ValueError("No rows to upsert")
        self._columns = list(rows[0].keys())
        self._rows = [[row.get(c) for c in self._columns] for row in rows]
        return self

    def build_many(self) -> Tuple[str, List[List[Any]]]:
        col_names = ", ".join(quote(c) for c in self._columns)
        values = "(" + ", ".join("?" for _ in self._columns) + ")"
        updates = [c for c in self._columns if c not in self._preserve]
        sql = f"INSERT INTO {quote(self._table)} ({col_names}) VALUES {values}"
        if updates:
            set_clause = ", ".join(f"{quote(c)} = excluded.{quote(c)}" for c in updates)
            sql += f" ON CONFLICT({quote(self._conflict)}) DO UPDATE SET {set_clause}"
        else:
            sql += f" ON CONFLICT({quote(self._conflict)}) DO NOTHING"
        return sql, [list(row) for row in self._rows]


class UpdateBuilder:
    """UPDATE query builder."""

    def __init__(self, table: str):
        self._table = table
        self._sets: Dict[str, Any] = {}
        self._wheres: List[str] = []
        self._params: List[Any] = []

    def set(self, **kwargs: Any) -> UpdateBuilder:
        self._sets.update(kwargs)
        return self

    def set_dict(self, data: Dict[str, Any]) -> UpdateBuilder:
        self._sets.update(data)
        return self

    def where(self, clause: str, *args: Any) -> UpdateBuilder:
        self._wheres.append(clause)
        self._params.extend(args)
        return self

    def where_in(self, column: str, values: Sequence[Any]) -> UpdateBuilder:
        placeholders = ", ".join("?" for _ in values) or "NULL"
        return self.where(f"{quote(column)} IN ({placeholders})", *values)

    def build(self) -> Tuple[str, List[Any]]:
        if not self._sets:
            raise ValueError("UPDATE without columns")
        set_parts = [f"{quote(k)} = ?" for k in self._sets]
        params = list(self._sets.values())
        sql = f"UPDATE {quote(self._table)} SET {', '.join(set_parts)}"
        if self._wheres:
            sql += " WHERE " + " AND ".join(f"({w})" for w in self._wheres)
            params.extend(self._params)
        return sql, params


class DeleteBuilder:
    """DELETE query builder."""

    def __init__(self, table: str):
        self._table = table
        self._wheres: List[str] = []
        self._params: List[Any] = []

    def where(self, clause: str, *args: Any) -> DeleteBuilder:
        self._wheres.append(clause)
        self._params.extend(args)
        return self

    def where_in(self, column: str, values: Sequence[Any]) -> DeleteBuilder:
        placeholders = ", ".join("?" for _ in values) or "NULL"
        return self.where(f"{quote(column)} IN ({placeholders})", *values)

    def build(self) -> Tuple[str, List[Any]]:
        sql = f"DELETE FROM {quote(self._table)}"
        if self._wheres:
            sql += " WHERE " + " AND ".join(f"({w})" for w in self._wheres)
        return sql, list(self._params)

"""
Gantry Model Options - parsed from the inner ``Meta`` class.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from .fields import Field
    from .relations import Relation

__all__ = ["Options", "snake_case", "pluralize", "default_table_name"]


_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def snake_case(name: str) -> str:
    """``UserGroup`` -> ``user_group``, ``HTTPRoute`` -> ``http_route``."""
    return _CAMEL_RE.sub("_", name).lower()


def pluralize(word: str) -> str:
    if word.endswith("y") and len(word) > 1 and word[-2] not in "aeiou":
        return word[:-1] + "ies"
    if word.endswith(("s", "x", "z", "ch", "sh")):
        return word + "es"
    return word + "s"


def default_table_name(model_name: str) -> str:
    """Pluralized snake_case of the model name."""
    return pluralize(snake_case(model_name))


class Options:
    """
    Parsed model options.

    Attributes:
        table: Database table name (pluralized snake_case by default)
        expands: Relation names that ``_expand=all`` expands, in order
        excludes: Column -> values that never appear in list results
        db: Target database alias
        abstract: Model declares shared fields only, no table
    """

    __slots__ = (
        "model_name",
        "table",
        "expands",
        "excludes",
        "db",
        "abstract",
        "fields",
        "relations",
    )

    def __init__(self, model_name: str, meta: Any = None):
        self.model_name = model_name
        self.table: str = getattr(meta, "table", None) or default_table_name(model_name)
        self.expands: List[str] = list(getattr(meta, "expands", None) or [])
        excludes = getattr(meta, "excludes", None) or {}
        self.excludes: Dict[str, List[Any]] = {k: list(_as_sequence(v)) for k, v in excludes.items()}
        self.db: str = getattr(meta, "db", None) or "default"
        self.abstract: bool = bool(getattr(meta, "abstract", False))
        self.fields: Dict[str, Field] = {}
        self.relations: Dict[str, Relation] = {}

    @property
    def columns(self) -> List[str]:
        return [f.column_name for f in self.fields.values()]

    @property
    def filter_fields(self) -> Dict[str, "Field"]:
        return {name: f for name, f in self.fields.items() if f.filter}

    def field_for_column(self, column: str) -> Optional["Field"]:
        for f in self.fields.values():
            if f.column_name == column:
                return f
        return None

    def __repr__(self) -> str:
        return f"<Options {self.model_name} table={self.table!r}>"


def _as_sequence(value: Any) -> Sequence[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]

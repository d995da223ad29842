"""
Gantry Model Fields.

Fields declare columns on a model and carry the "unset vs zero" rule used by
filters and partial updates:

- A field declared ``null=True`` defaults to ``None`` (unset). Any other
  value, including ``0``, ``""`` and ``False``, is meaningful.
- A non-nullable field holding its zero value (``""``, ``0``, ``0.0``,
  ``False``) is treated as unset and ignored.

    class User(Model):
        name = CharField(max_length=64, unique=True)
        email = CharField(max_length=128)
        age = IntegerField(null=True)      # 0 is a meaningful filter
        active = BooleanField(null=True)   # False is a meaningful filter
"""

from __future__ import annotations

import copy
import datetime
import json
from typing import TYPE_CHECKING, Any, Callable, List, Optional, Sequence, Tuple, Type

if TYPE_CHECKING:
    from .base import Model

__all__ = [
    "UNSET",
    "DATETIME_LAYOUT",
    "FieldValidationError",
    "Field",
    "CharField",
    "TextField",
    "IntegerField",
    "PositiveIntegerField",
    "FloatField",
    "BooleanField",
    "DateTimeField",
    "JSONField",
    "utcnow",
]

DATETIME_LAYOUT = "%Y-%m-%d %H:%M:%S"


def utcnow() -> datetime.datetime:
    """Second-precision naive UTC timestamp, the storage format of every datetime column."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None, microsecond=0)


# ── Field Errors ─────────────────────────────────────────────────────────────


class FieldValidationError(ValueError):
    """Raised when field validation fails."""

    def __init__(self, field_name: str, message: str, value: Any = None):
        self.field_name = field_name
        self.value = value
        super().__init__(f"Field '{field_name}': {message}")


# ── Sentinel ─────────────────────────────────────────────────────────────────

class _Unset:
    """Sentinel for distinguishing 'no default declared' from None."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "<UNSET>"

    def __bool__(self):
        return False

UNSET = _Unset()


# ── Base ─────────────────────────────────────────────────────────────────────


class Field:
    """
    Base class for model fields.

    Args:
        null: Column is nullable; ``None`` means unset, zero values count
        default: Value (or callable) used when the caller does not supply one
        unique: Add a UNIQUE constraint
        primary_key: Column is the primary key
        db_index: Create an index on the column
        db_column: Column name override
        choices: Allowed values, as ``(value, label)`` pairs
        validators: Callables raising on invalid values
        filter: Field may be used as a query-string filter
    """

    _creation_counter = 0
    _python_type: Type = object
    zero: Any = None

    def __init__(
        self,
        *,
        null: bool = False,
        default: Any = UNSET,
        unique: bool = False,
        primary_key: bool = False,
        db_index: bool = False,
        db_column: Optional[str] = None,
        choices: Optional[Sequence[Tuple[Any, str]]] = None,
        validators: Optional[List[Callable]] = None,
        filter: bool = True,
        help_text: str = "",
    ):
        self.null = null
        self.default = default
        self.unique = unique
        self.primary_key = primary_key
        self.db_index = db_index
        self.db_column = db_column
        self.choices = choices
        self.validators = validators or []
        self.filter = filter
        self.help_text = help_text

        # Set by __set_name__ / metaclass
        self.name: str = ""
        self.attr_name: str = ""
        self.model: Optional[Type[Model]] = None

        self._order = Field._creation_counter
        Field._creation_counter += 1

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = self.db_column or name
        self.attr_name = name

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}: {self.attr_name}>"

    @property
    def column_name(self) -> str:
        return self.db_column or self.attr_name

    def has_default(self) -> bool:
        return self.default is not UNSET

    def get_default(self) -> Any:
        """Declared default, else ``None`` for nullable fields, else the zero value."""
        if self.default is UNSET:
            return None if self.null else copy.copy(self.zero)
        if callable(self.default):
            return self.default()
        return copy.deepcopy(self.default)

    def is_set(self, value: Any) -> bool:
        """Whether ``value`` is meaningful for filters and partial updates."""
        if value is None:
            return False
        if self.null:
            return True
        return value != self.zero

    def validate(self, value: Any) -> Any:
        """Validate and coerce ``value``. Returns the cleaned value."""
        if value is None:
            if not self.null and self.zero is not None:
                raise FieldValidationError(self.attr_name, "Cannot be null")
            return None

        value = self.coerce(value)

        if self.choices:
            valid_values = [c[0] for c in self.choices]
            if value not in valid_values:
                raise FieldValidationError(
                    self.attr_name,
                    f"Invalid choice '{value}'. Must be one of: {valid_values}",
                    value,
                )

        for validator in self.validators:
            validator(value)

        return value

    def coerce(self, value: Any) -> Any:
        """Convert an incoming (JSON or query string) value to the Python type."""
        return value

    def to_python(self, value: Any) -> Any:
        """Convert a database value to a Python object."""
        return value

    def to_db(self, value: Any) -> Any:
        """Convert a Python value to a database parameter."""
        return value

    def to_json(self, value: Any) -> Any:
        """Convert a Python value to a JSON-ready value."""
        return value

    def sql_type(self) -> str:
        raise NotImplementedError(f"{self.__class__.__name__} must implement sql_type()")

    def sql_column_def(self) -> str:
        """Full SQLite column definition."""
        parts = [f'"{self.column_name}"', self.sql_type()]

        if self.primary_key:
            parts.append("PRIMARY KEY")
        if self.unique and not self.primary_key:
            parts.append("UNIQUE")
        if not self.null and not self.primary_key and self.zero is not None:
            parts.append("NOT NULL")
            parts.append(f"DEFAULT {self._sql_literal(self.zero)}")

        return " ".join(parts)

    @staticmethod
    def _sql_literal(value: Any) -> str:
        if isinstance(value, bool):
            return "1" if value else "0"
        if isinstance(value, (int, float)):
            return str(value)
        return "'" + str(value).replace("'", "''") + "'"

    def clone(self) -> "Field":
        return copy.deepcopy(self)


# ═══════════════════════════════════════════════════════════════════════════════
# Text
# ═══════════════════════════════════════════════════════════════════════════════


class CharField(Field):
    """Short text field."""

    _python_type = str
    zero = ""

    def __init__(self, *, max_length: int = 255, **kwargs):
        self.max_length = max_length
        super().__init__(**kwargs)

    def coerce(self, value: Any) -> Any:
        if not isinstance(value, str):
            if isinstance(value, (dict, list)):
                raise FieldValidationError(self.attr_name, f"Expected string, got {type(value).__name__}")
            value = str(value)
        if len(value) > self.max_length:
            raise FieldValidationError(
                self.attr_name,
                f"Max length is {self.max_length}, got {len(value)} characters",
            )
        return value

    def sql_type(self) -> str:
        return f"VARCHAR({self.max_length})"


class TextField(Field):
    """Long text field, no length restriction."""

    _python_type = str
    zero = ""

    def coerce(self, value: Any) -> Any:
        if not isinstance(value, str):
            if isinstance(value, (dict, list)):
                raise FieldValidationError(self.attr_name, f"Expected string, got {type(value).__name__}")
            value = str(value)
        return value

    def sql_type(self) -> str:
        return "TEXT"


# ═══════════════════════════════════════════════════════════════════════════════
# Numbers
# ═══════════════════════════════════════════════════════════════════════════════


class IntegerField(Field):
    """64-bit integer field."""

    _python_type = int
    zero = 0

    def coerce(self, value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                pass
        raise FieldValidationError(self.attr_name, f"Expected integer, got {value!r}", value)

    def sql_type(self) -> str:
        return "INTEGER"


class PositiveIntegerField(IntegerField):
    """Unsigned integer field."""

    def coerce(self, value: Any) -> Any:
        value = super().coerce(value)
        if value < 0:
            raise FieldValidationError(self.attr_name, f"Value must be >= 0, got {value}", value)
        return value


class FloatField(Field):
    """Floating point field."""

    _python_type = float
    zero = 0.0

    def coerce(self, value: Any) -> Any:
        if isinstance(value, bool):
            raise FieldValidationError(self.attr_name, "Expected number, got bool", value)
        if isinstance(value, (int, float)):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                pass
        raise FieldValidationError(self.attr_name, f"Expected number, got {value!r}", value)

    def sql_type(self) -> str:
        return "REAL"


# ═══════════════════════════════════════════════════════════════════════════════
# Boolean
# ═══════════════════════════════════════════════════════════════════════════════


class BooleanField(Field):
    """Boolean field, stored as INTEGER 0/1."""

    _python_type = bool
    zero = False

    def coerce(self, value: Any) -> Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return bool(value)
        if isinstance(value, str):
            if value.lower() in ("true", "1", "yes", "on"):
                return True
            if value.lower() in ("false", "0", "no", "off"):
                return False
        raise FieldValidationError(self.attr_name, f"Expected boolean, got {value!r}", value)

    def to_python(self, value: Any) -> Any:
        if value is None:
            return None
        return bool(value)

    def to_db(self, value: Any) -> Any:
        if value is None:
            return None
        return 1 if value else 0

    def sql_type(self) -> str:
        return "INTEGER"


# ═══════════════════════════════════════════════════════════════════════════════
# Date & time
# ═══════════════════════════════════════════════════════════════════════════════


def parse_datetime(value: str, layout: str = DATETIME_LAYOUT) -> datetime.datetime:
    """Parse the wire layout, falling back to ISO-8601."""
    try:
        return datetime.datetime.strptime(value, layout)
    except ValueError:
        parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(datetime.timezone.utc).replace(tzinfo=None)
        return parsed


class DateTimeField(Field):
    """
    Naive UTC datetime, stored as ``YYYY-MM-DD HH:MM:SS`` text.

    The text layout sorts lexicographically, so time windows compare as
    strings in SQL.
    """

    _python_type = datetime.datetime
    zero = None

    def coerce(self, value: Any) -> Any:
        if isinstance(value, datetime.datetime):
            if value.tzinfo is not None:
                value = value.astimezone(datetime.timezone.utc).replace(tzinfo=None)
            return value.replace(microsecond=0)
        if isinstance(value, str):
            if not value:
                return None
            try:
                return parse_datetime(value).replace(microsecond=0)
            except ValueError:
                raise FieldValidationError(self.attr_name, f"Invalid datetime format: '{value}'", value)
        raise FieldValidationError(self.attr_name, f"Expected datetime, got {type(value).__name__}", value)

    def to_python(self, value: Any) -> Any:
        if value is None or isinstance(value, datetime.datetime):
            return value
        return parse_datetime(str(value))

    def to_db(self, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, datetime.datetime):
            return value.strftime(DATETIME_LAYOUT)
        return str(value)

    def to_json(self, value: Any) -> Any:
        return self.to_db(value)

    def sql_type(self) -> str:
        return "DATETIME"


# ═══════════════════════════════════════════════════════════════════════════════
# JSON
# ═══════════════════════════════════════════════════════════════════════════════


class JSONField(Field):
    """JSON document stored as TEXT. Not usable as a query filter."""

    _python_type = dict
    zero = None

    def __init__(self, **kwargs):
        kwargs.setdefault("filter", False)
        super().__init__(**kwargs)

    def is_set(self, value: Any) -> bool:
        if value is None:
            return False
        return self.null or value not in ({}, [])

    def coerce(self, value: Any) -> Any:
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise FieldValidationError(self.attr_name, f"Value is not JSON serializable: {e}", value)
        return value

    def to_python(self, value: Any) -> Any:
        if isinstance(value, (str, bytes)):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                return value
        return value

    def to_db(self, value: Any) -> Any:
        if value is None:
            return None
        return json.dumps(value, sort_keys=True)

    def sql_type(self) -> str:
        return "TEXT"

"""
Gantry Query - reserved query-parameter decoding.

``decode_query`` turns a request's query string into a ``QueryDescriptor``.
Reserved parameters start with ``_`` (plus ``page`` and ``size``); every
other parameter is a filter on one of the model's filterable fields:

    GET /user?name=u3&page=1&size=10
    GET /user?name=u1,u2                 # IN
    GET /user?name=u&_fuzzy=true         # LIKE %u%
    GET /user?_column_name=created_at&_start_time=2024-01-01 00:00:00&_end_time=...
    GET /category?_expand=children&_depth=3
"""

from __future__ import annotations

import base64
import binascii
import datetime
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Type

import orjson

from gantry.config import QueryConfig, get_config
from gantry.faults import InvalidParamFault
from gantry.models.fields import FieldValidationError

if TYPE_CHECKING:
    from gantry.models import Model

logger = logging.getLogger("gantry.query")

__all__ = [
    "QueryDescriptor",
    "decode_query",
    "encode_cursor",
    "decode_cursor",
    "parse_bool",
    "RESERVED_PARAMS",
]

QUERY_PAGE = "page"
QUERY_SIZE = "size"
QUERY_EXPAND = "_expand"
QUERY_DEPTH = "_depth"
QUERY_FUZZY = "_fuzzy"
QUERY_SORTBY = "_sortby"
QUERY_NOCACHE = "_nocache"
QUERY_COLUMN_NAME = "_column_name"
QUERY_START_TIME = "_start_time"
QUERY_END_TIME = "_end_time"
QUERY_OR = "_or"
QUERY_INDEX = "_index"
QUERY_SELECT = "_select"
QUERY_NOTOTAL = "_nototal"
QUERY_CURSOR_VALUE = "_cursor_value"
QUERY_CURSOR_FIELDS = "_cursor_fields"
QUERY_CURSOR_NEXT = "_cursor_next"
QUERY_SHOW_DELETED = "_show_deleted"

VALUE_ALL = "all"

RESERVED_PARAMS = frozenset({
    QUERY_PAGE,
    QUERY_SIZE,
    QUERY_EXPAND,
    QUERY_DEPTH,
    QUERY_FUZZY,
    QUERY_SORTBY,
    QUERY_NOCACHE,
    QUERY_COLUMN_NAME,
    QUERY_START_TIME,
    QUERY_END_TIME,
    QUERY_OR,
    QUERY_INDEX,
    QUERY_SELECT,
    QUERY_NOTOTAL,
    QUERY_CURSOR_VALUE,
    QUERY_CURSOR_FIELDS,
    QUERY_CURSOR_NEXT,
    QUERY_SHOW_DELETED,
})

_TRUE = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE = frozenset({"0", "false", "f", "no", "n", "off", ""})


def parse_bool(value: Optional[str], default: bool = False) -> bool:
    """Lenient boolean: unrecognised values fall back to ``default``."""
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    return default


def split_csv(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


# ============================================================================
# Descriptor
# ============================================================================

@dataclass
class QueryDescriptor:
    """
    Structured form of a request's reserved and filter parameters.

    ``filters`` maps field names to a single value; ``multi_filters`` maps
    field names to the value list of a CSV (or repeated) parameter, which
    becomes ``IN``.
    """

    page: int = 1
    size: int = 0
    expand: List[str] = field(default_factory=list)
    depth: int = 1
    fuzzy: bool = False
    sortby: str = ""
    nocache: bool = True
    column_name: str = ""
    start_time: Optional[datetime.datetime] = None
    end_time: Optional[datetime.datetime] = None
    or_: bool = False
    index: str = ""
    select: List[str] = field(default_factory=list)
    nototal: bool = False
    cursor_value: str = ""
    cursor_fields: List[str] = field(default_factory=list)
    cursor_next: bool = True
    show_deleted: bool = False
    filters: Dict[str, Any] = field(default_factory=dict)
    multi_filters: Dict[str, List[Any]] = field(default_factory=dict)

    @property
    def has_cursor(self) -> bool:
        return bool(self.cursor_value)

    @property
    def has_time_range(self) -> bool:
        return bool(self.column_name) and (self.start_time is not None or self.end_time is not None)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.size if self.size > 0 else 0

    def query_model(self, model: Type[Model]) -> Model:
        """Model instance carrying the single-value filters."""
        instance = model.blank()
        for name, value in self.filters.items():
            setattr(instance, name, value)
        return instance


# ============================================================================
# Decoding
# ============================================================================

def _parse_time(name: str, value: Optional[str], layout: str) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        return datetime.datetime.strptime(value.strip(), layout)
    except ValueError:
        logger.debug(f"ignoring {name}={value!r}: layout is {layout}")
        return None


def _parse_int(name: str, value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except ValueError:
        raise InvalidParamFault(name, f"expected integer, got {value!r}")


def _get_all(params: Mapping[str, Any], key: str) -> List[str]:
    getter = getattr(params, "get_all", None)
    if getter is not None:
        return getter(key)
    value = params.get(key)
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    return [str(value)]


def _first(params: Mapping[str, Any], key: str) -> Optional[str]:
    values = _get_all(params, key)
    return values[0] if values else None


def resolve_expands(model: Type[Model], requested: Sequence[str], depth: int) -> List[str]:
    """
    Expansion paths for ``requested`` relation names.

    Matching is case-insensitive and follows the model's declared order.
    Has-many relations repeat ``depth`` times (``children.children``) so
    self-referencing trees terminate at the requested depth.
    """
    declared = model._meta.expands or list(model._meta.relations)
    if requested and requested[0].lower() == VALUE_ALL:
        requested = declared
    wanted = {r.lower() for r in requested}
    paths: List[str] = []
    for name in declared:
        if name.lower() not in wanted:
            continue
        relation = model._meta.relations[name]
        if relation.many:
            paths.append(".".join([name] * depth))
        else:
            paths.append(name)
    return paths


def decode_query(
    params: Mapping[str, Any],
    model: Type[Model],
    config: Optional[QueryConfig] = None,
) -> QueryDescriptor:
    """
    Decode query parameters for ``model``.

    Raises:
        InvalidParamFault: a filter or paging value cannot be coerced
    """
    config = config or get_config().query
    q = QueryDescriptor()

    page = _parse_int(QUERY_PAGE, _first(params, QUERY_PAGE))
    size = _parse_int(QUERY_SIZE, _first(params, QUERY_SIZE))
    q.page = page if page and page > 0 else 1
    if size is None or size <= 0:
        q.size = config.default_size
    else:
        q.size = min(size, config.max_size)

    depth = _parse_int(QUERY_DEPTH, _first(params, QUERY_DEPTH)) or 1
    q.depth = depth if 1 <= depth <= config.max_depth else 1
    q.expand = resolve_expands(model, split_csv(_first(params, QUERY_EXPAND)), q.depth)

    q.fuzzy = parse_bool(_first(params, QUERY_FUZZY))
    q.or_ = parse_bool(_first(params, QUERY_OR))
    q.nocache = parse_bool(_first(params, QUERY_NOCACHE), default=not config.cache_by_default)
    q.nototal = parse_bool(_first(params, QUERY_NOTOTAL))
    q.show_deleted = parse_bool(_first(params, QUERY_SHOW_DELETED))
    q.sortby = (_first(params, QUERY_SORTBY) or "").strip()
    q.index = (_first(params, QUERY_INDEX) or "").strip()
    q.select = split_csv(_first(params, QUERY_SELECT))

    q.column_name = (_first(params, QUERY_COLUMN_NAME) or "").strip()
    if q.column_name:
        start = _parse_time(QUERY_START_TIME, _first(params, QUERY_START_TIME), config.datetime_layout)
        end = _parse_time(QUERY_END_TIME, _first(params, QUERY_END_TIME), config.datetime_layout)
        if start is not None and end is not None and start > end:
            start, end = end, start
        q.start_time, q.end_time = start, end

    q.cursor_value = (_first(params, QUERY_CURSOR_VALUE) or "").strip()
    q.cursor_fields = split_csv(_first(params, QUERY_CURSOR_FIELDS))
    q.cursor_next = parse_bool(_first(params, QUERY_CURSOR_NEXT), default=True)
    if q.cursor_value:
        q.page = 1

    _decode_filters(params, model, q)
    return q


def _decode_filters(params: Mapping[str, Any], model: Type[Model], q: QueryDescriptor) -> None:
    filterable = model._meta.filter_fields
    by_column = {f.column_name: name for name, f in filterable.items()}

    for key in params:
        if key in RESERVED_PARAMS:
            continue
        name = key if key in filterable else by_column.get(key)
        if name is None:
            logger.debug(f"{model.__name__}: ignoring unknown query parameter {key!r}")
            continue
        fld = filterable[name]

        raw: List[str] = []
        for value in _get_all(params, key):
            raw.extend(value.split(",") if "," in value else [value])

        values = []
        for item in raw:
            try:
                value = fld.validate(item)
            except FieldValidationError as exc:
                raise InvalidParamFault(key, str(exc))
            if value is None or not fld.is_set(value):
                continue
            values.append(value)

        if not values:
            continue
        if len(values) == 1:
            q.filters[name] = values[0]
        else:
            q.multi_filters[name] = values


# ============================================================================
# Cursor tokens
# ============================================================================

def encode_cursor(values: Sequence[Any]) -> str:
    """Opaque token for one comparison tuple."""
    raw = orjson.dumps(list(values), default=str)
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(token: str) -> Optional[List[Any]]:
    """
    Comparison tuple carried by ``token``.

    Returns ``None`` when the token is not an encoded tuple; callers then
    treat it as a bare value of the first cursor field.
    """
    padded = token + "=" * (-len(token) % 4)
    try:
        decoded = orjson.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (binascii.Error, ValueError, UnicodeEncodeError):
        return None
    if not isinstance(decoded, list):
        return None
    return decoded

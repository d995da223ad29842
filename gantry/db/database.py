"""
Gantry DB - generic operation surface over a model.

``Database(M)`` is an immutable chain: every ``with_*`` modifier returns a
clone, so a configured chain can be shared and extended freely.

    users = await (
        Database(User)
        .with_query({"name": ["u1", "u2"]})
        .with_order("created_at desc")
        .with_scope(page=1, size=20)
        .list()
    )
    total = await Database(User).with_query({"name": ["u1", "u2"]}).count()
    user = await Database(User).with_cache().get(uid)
    await Database(User).with_purge().delete(user)

Mutations move through ``Pending -> Validated -> Before -> Persisted ->
After -> Done``. A failure before ``Persisted`` leaves no trace; a persist
failure rolls back the current batch; a failing after hook surfaces as
``AfterHookFault`` while the rows stay written. Each batch runs in its own
transaction unless the chain carries one (``with_transaction``) or the
caller is already inside ``atomic()``.

Cached reads use three caches per model:

- ``cache_for(M)``          ``{ns}:{table}:get:{id}``
- ``cache_for(list[M])``    ``{ns}:{table}:list:{sql}|{params}``
- ``cache_for(Total[M])``   ``{ns}:{table}:count:{sql}|{params}``

Every persisted batch drops the get keys of its ids and clears the list and
count caches of the model.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    Generic,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
    Union,
)

import orjson

from gantry.cache import CacheFault, cache_for, registered_caches, type_key
from gantry.config import get_config
from gantry.context import Context
from gantry.faults import (
    AfterHookFault,
    BadRequestFault,
    CancelledFault,
    Fault,
    FaultDomain,
    InvalidParamFault,
    NotFoundFault,
    before_hook_fault,
    fault_from_exception,
)
from gantry.models import Model, new_id
from gantry.models.fields import CharField, FieldValidationError, TextField, utcnow
from gantry.query import decode_cursor, encode_cursor, resolve_expands
from gantry.trace import start_span

from .engine import Engine, get_engine
from .sql import DeleteBuilder, SelectBuilder, UpdateBuilder, UpsertBuilder, like_pattern, parse_order, quote
from .transactions import Transaction, bind, current_transaction

logger = logging.getLogger("gantry.db.database")

__all__ = ["Database", "Total", "Stage"]

M = TypeVar("M", bound=Model)

# (sql, params, executemany, id whose row must exist)
Statement = Tuple[str, Any, bool, Optional[str]]

_ID_FETCH_CHUNK = 500


class Total(Generic[M]):
    """Type marker keying the count cache of a model: ``cache_for(Total[User])``."""


class Stage(str, Enum):
    """Progress of a mutating call."""

    PENDING = "pending"
    VALIDATED = "validated"
    BEFORE = "before"
    PERSISTED = "persisted"
    AFTER = "after"
    DONE = "done"


class _OpState:
    __slots__ = ("stage", "committed")

    def __init__(self):
        self.stage = Stage.PENDING
        self.committed = 0


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class Database(Generic[M]):
    """
    Operation chain for model ``M``.

    Operations: ``create``, ``update``, ``update_partial``, ``delete``,
    ``list``, ``get``, ``count``, ``first``, ``last``, ``take``,
    ``update_by_id``, ``cleanup``, ``health``.
    """

    __slots__ = (
        "_model",
        "_ctx",
        "_db",
        "_table",
        "_limit",
        "_batch_size",
        "_page",
        "_size",
        "_filters",
        "_multi",
        "_fuzzy",
        "_raw",
        "_time_range",
        "_select",
        "_order",
        "_natural",
        "_index",
        "_or",
        "_exclude",
        "_expand",
        "_cursor",
        "_txn",
        "_lock",
        "_purge",
        "_hooks",
        "_cache",
        "_try_run",
        "_deleted",
        "_timeout",
    )

    def __init__(self, model: Type[M], ctx: Optional[Context] = None):
        if not (isinstance(model, type) and issubclass(model, Model)):
            raise TypeError(f"Database expects a Model subclass, got {model!r}")
        self._model = model
        self._ctx = ctx
        self._db: Union[str, Engine, None] = None
        self._table = model._meta.table
        self._limit: Optional[int] = None
        self._batch_size: Optional[int] = None
        self._page = 0
        self._size = 0
        self._filters: Dict[str, Any] = {}
        self._multi: Dict[str, List[Any]] = {}
        self._fuzzy = False
        self._raw: List[Tuple[str, Tuple[Any, ...]]] = []
        self._time_range: Optional[Tuple[str, Any, Any]] = None
        self._select: List[str] = []
        self._order = ""
        self._natural = False
        self._index = ""
        self._or = False
        self._exclude: Dict[str, List[Any]] = {}
        self._expand: List[str] = []
        self._cursor: Optional[Tuple[str, List[str], bool]] = None
        self._txn: Optional[Transaction] = None
        self._lock: Optional[str] = None
        self._purge = False
        self._hooks = True
        self._cache = False
        self._try_run = False
        self._deleted = False
        self._timeout: Optional[float] = None

    def __repr__(self) -> str:
        return f"<Database[{self._model.__name__}] table={self._table!r}>"

    def _clone(self, **changes: Any) -> "Database[M]":
        c = Database.__new__(Database)
        for name in self.__slots__:
            setattr(c, name, getattr(self, name))
        c._filters = dict(self._filters)
        c._multi = {k: list(v) for k, v in self._multi.items()}
        c._raw = list(self._raw)
        c._select = list(self._select)
        c._exclude = {k: list(v) for k, v in self._exclude.items()}
        c._expand = list(self._expand)
        for name, value in changes.items():
            setattr(c, name, value)
        return c

    # ── Resolution ───────────────────────────────────────────────────

    @property
    def model(self) -> Type[M]:
        return self._model

    @property
    def table(self) -> str:
        return self._table

    @property
    def ctx(self) -> Context:
        if self._ctx is None:
            self._ctx = Context.background()
        return self._ctx

    @property
    def engine(self) -> Engine:
        if isinstance(self._db, Engine):
            return self._db
        return get_engine(self._db or self._model._meta.db)

    def _column(self, name: str, param: str = "column") -> str:
        """Column for an attribute or column name of ``M``."""
        fields = self._model._meta.fields
        if name in fields:
            return fields[name].column_name
        field = self._model._meta.field_for_column(name)
        if field is None:
            raise InvalidParamFault(param, f"{self._model.__name__} has no field '{name}'")
        return field.column_name

    def _attr(self, name: str, param: str = "field") -> str:
        fields = self._model._meta.fields
        if name in fields:
            return name
        field = self._model._meta.field_for_column(name)
        if field is None:
            raise InvalidParamFault(param, f"{self._model.__name__} has no field '{name}'")
        return field.attr_name

    # ============================================================================
    # Modifiers
    # ============================================================================

    def with_limit(self, n: int) -> "Database[M]":
        """Row cap for reads and batch cap for writes; ``-1`` is unbounded."""
        return self._clone(_limit=int(n))

    def with_batch_size(self, n: int) -> "Database[M]":
        if n <= 0:
            raise ValueError("batch size must be positive")
        return self._clone(_batch_size=int(n))

    def with_scope(self, page: int, size: int) -> "Database[M]":
        """Page window; ``page`` starts at 1."""
        return self._clone(_page=max(int(page), 1), _size=max(int(size), 0))

    def with_query(self, query: Union[Model, Mapping[str, Any], None], fuzzy: bool = False) -> "Database[M]":
        """
        Equality filter from a model's meaningful filter fields, or from a
        mapping of field -> value. Sequence values become ``IN``; with
        ``fuzzy`` string fields match by containment.
        """
        c = self._clone(_fuzzy=self._fuzzy or fuzzy)
        if query is None:
            return c
        filterable = self._model._meta.filter_fields
        if isinstance(query, Model):
            if not isinstance(query, self._model):
                raise TypeError(f"with_query expects {self._model.__name__}, got {type(query).__name__}")
            values = {k: v for k, v in query.meaningful().items() if k in filterable}
        else:
            values = {}
            for key, value in query.items():
                attr = self._attr(key, key)
                field = self._model._meta.fields[attr]
                try:
                    if isinstance(value, (list, tuple, set, frozenset)):
                        values[attr] = [field.validate(v) for v in value]
                    else:
                        values[attr] = field.validate(value)
                except FieldValidationError as exc:
                    raise InvalidParamFault(key, str(exc))
        for attr, value in values.items():
            if isinstance(value, list):
                c._multi[attr] = value
                c._filters.pop(attr, None)
            else:
                c._filters[attr] = value
                c._multi.pop(attr, None)
        return c

    def with_query_raw(self, sql: str, *args: Any) -> "Database[M]":
        """Raw condition, ANDed with everything else. Never feed it request text."""
        if not sql or not sql.strip():
            return self._clone()
        c = self._clone()
        c._raw.append((sql, args))
        return c

    def with_time_range(self, column: str, begin: Any = None, end: Any = None) -> "Database[M]":
        """Inclusive window on a datetime column; swapped when ``begin > end``."""
        attr = self._attr(column, "_column_name")
        field = self._model._meta.fields[attr]
        try:
            begin = field.validate(begin) if begin not in (None, "") else None
            end = field.validate(end) if end not in (None, "") else None
        except FieldValidationError as exc:
            raise InvalidParamFault("_column_name", str(exc))
        if begin is not None and end is not None and begin > end:
            begin, end = end, begin
        return self._clone(_time_range=(attr, begin, end))

    def with_select(self, *columns: str) -> "Database[M]":
        """Column projection; ``id`` is always selected."""
        names: List[str] = []
        for col in columns:
            names.extend(p.strip() for p in col.split(",") if p.strip())
        return self._clone(_select=names)

    def with_order(self, clause: str) -> "Database[M]":
        """``"col [asc|desc], ..."``; ``id`` is appended as the final tiebreaker."""
        if clause:
            self._order_terms(clause)
        return self._clone(_order=clause or "")

    def with_index(self, name: str) -> "Database[M]":
        return self._clone(_index=name or "")

    def with_and(self) -> "Database[M]":
        return self._clone(_or=False)

    def with_or(self) -> "Database[M]":
        return self._clone(_or=True)

    def with_exclude(self, excludes: Mapping[str, Any]) -> "Database[M]":
        """Column -> values that must not appear in list results."""
        c = self._clone()
        for key, values in excludes.items():
            col = self._column(key)
            if not isinstance(values, (list, tuple, set)):
                values = [values]
            c._exclude.setdefault(col, []).extend(values)
        return c

    def with_expand(self, names: Sequence[str], depth: int = 1) -> "Database[M]":
        """
        Preload relations. Plain names resolve against the model's expands
        (``all`` selects every one); dotted paths are taken as given.
        """
        if isinstance(names, str):
            names = [n.strip() for n in names.split(",") if n.strip()]
        plain = [n for n in names if "." not in n]
        paths = [n for n in names if "." in n]
        if plain:
            paths.extend(resolve_expands(self._model, plain, max(int(depth), 1)))
        return self._clone(_expand=paths)

    def with_cursor(self, value: str, fields: Optional[Sequence[str]] = None, next: bool = True) -> "Database[M]":
        """Keyset pagination after (``next``) or before ``value``."""
        fields = list(fields or [])
        for f in fields:
            self._column(f, "_cursor_fields")
        return self._clone(_cursor=(value or "", fields, bool(next)))

    def with_transaction(self, txn: Optional[Transaction]) -> "Database[M]":
        return self._clone(_txn=txn)

    def with_lock(self, mode: str = "UPDATE") -> "Database[M]":
        return self._clone(_lock=mode.upper())

    def with_purge(self) -> "Database[M]":
        return self._clone(_purge=True)

    def without_hook(self) -> "Database[M]":
        """Skip model hooks. Service hooks are the caller's business."""
        return self._clone(_hooks=False)

    def with_cache(self, enabled: bool = True) -> "Database[M]":
        return self._clone(_cache=bool(enabled))

    def with_db(self, db: Union[str, Engine, None]) -> "Database[M]":
        """Route to another engine, by instance or alias."""
        return self._clone(_db=db)

    def with_table(self, name: str) -> "Database[M]":
        quote(name)
        return self._clone(_table=name)

    def with_try_run(self) -> "Database[M]":
        """Compile and run hooks, but never execute mutating SQL."""
        return self._clone(_try_run=True)

    def with_deleted(self) -> "Database[M]":
        """Include soft-deleted rows."""
        return self._clone(_deleted=True)

    def with_timeout(self, seconds: Optional[float]) -> "Database[M]":
        return self._clone(_timeout=seconds if seconds and seconds > 0 else None)

    def with_context(self, ctx: Optional[Context]) -> "Database[M]":
        return self._clone(_ctx=ctx)

    # ============================================================================
    # Query compilation
    # ============================================================================

    def _where(self, *, excludes: bool = True, cursor: bool = False) -> SelectBuilder:
        meta = self._model._meta
        b = SelectBuilder(self._table)

        if not self._deleted:
            b.where('"deleted_at" IS NULL')

        clauses: List[str] = []
        params: List[Any] = []
        for attr, value in self._filters.items():
            field = meta.fields[attr]
            col = quote(field.column_name)
            if self._fuzzy and isinstance(field, (CharField, TextField)):
                clauses.append(f"{col} LIKE ? ESCAPE '\\'")
                params.append(like_pattern(value))
            else:
                clauses.append(f"{col} = ?")
                params.append(field.to_db(value))
        for attr, values in self._multi.items():
            field = meta.fields[attr]
            col = quote(field.column_name)
            if not values:
                clauses.append("1 = 0")
            elif self._fuzzy and isinstance(field, (CharField, TextField)):
                clauses.append(" OR ".join(f"{col} LIKE ? ESCAPE '\\'" for _ in values))
                params.extend(like_pattern(v) for v in values)
            else:
                clauses.append(f"{col} IN ({', '.join('?' for _ in values)})")
                params.extend(field.to_db(v) for v in values)
        b.where_group(clauses, params, disjunctive=self._or)

        for sql, args in self._raw:
            b.where(sql, *args)

        if self._time_range is not None:
            attr, begin, end = self._time_range
            field = meta.fields[attr]
            col = quote(field.column_name)
            if begin is not None:
                b.where(f"{col} >= ?", field.to_db(begin))
            if end is not None:
                b.where(f"{col} <= ?", field.to_db(end))

        if excludes:
            merged: Dict[str, List[Any]] = {}
            for key, values in meta.excludes.items():
                merged.setdefault(self._column(key), []).extend(values)
            for col, values in self._exclude.items():
                merged.setdefault(col, []).extend(values)
            for col, values in merged.items():
                if values:
                    placeholders = ", ".join("?" for _ in values)
                    b.where(f"{quote(col)} IS NULL OR {quote(col)} NOT IN ({placeholders})", *values)

        if cursor and self._cursor is not None and self._cursor[0]:
            self._cursor_condition(b)

        return b

    def _cursor_columns(self) -> List[str]:
        _, fields, _ = self._cursor
        cols = [self._column(f, "_cursor_fields") for f in fields] or ["id"]
        if "id" not in cols:
            cols.append("id")
        return cols

    def _cursor_condition(self, b: SelectBuilder) -> None:
        token, fields, forward = self._cursor
        cols = self._cursor_columns()
        op = ">" if forward else "<"
        values = decode_cursor(token)
        if values is not None and len(values) == len(cols):
            lhs = "(" + ", ".join(quote(c) for c in cols) + ")"
            rhs = "(" + ", ".join("?" for _ in cols) + ")"
            b.where(f"{lhs} {op} {rhs}", *values)
            return
        field = self._model._meta.field_for_column(cols[0])
        try:
            value = field.to_db(field.validate(token))
        except FieldValidationError as exc:
            raise InvalidParamFault("_cursor_value", str(exc))
        b.where(f"{quote(cols[0])} {op} ?", value)

    def _order_terms(self, clause: Optional[str] = None, *, reverse: bool = False) -> List[str]:
        if self._cursor is not None:
            forward = self._cursor[2] != reverse
            direction = "ASC" if forward else "DESC"
            return [f"{quote(c)} {direction}" for c in self._cursor_columns()]

        clause = self._order if clause is None else clause
        names = set(self._model._meta.fields) | set(self._model._meta.columns)
        terms: List[str] = []
        seen = set()
        for name, descending in parse_order(clause, names) if clause else []:
            col = self._column(name, "_sortby")
            if col in seen:
                continue
            seen.add(col)
            descending = descending != reverse
            terms.append(f"{quote(col)} {'DESC' if descending else 'ASC'}")
        if "id" not in seen:
            terms.append(f'"id" {"DESC" if reverse else "ASC"}')
        return terms

    def _columns(self) -> List[str]:
        if not self._select:
            return []
        cols: List[str] = []
        for name in self._select:
            col = self._column(name, "_select")
            if col not in cols:
                cols.append(col)
        required = ["id"]
        if self._cursor is not None:
            required.extend(self._cursor_columns())
        for path in self._expand:
            rel = self._model._meta.relations.get(path.split(".", 1)[0])
            if rel is not None and not rel.many:
                required.append(self._column(rel.foreign_key))
        for col in required:
            if col not in cols:
                cols.append(col)
        return cols

    def _window(self) -> Tuple[Optional[int], int]:
        """(limit, offset) for list queries; ``-1`` limit is unbounded."""
        if self._size > 0:
            offset = 0 if self._cursor is not None else (max(self._page, 1) - 1) * self._size
            return self._size, offset
        if self._limit is not None:
            return self._limit, 0
        return get_config().database.default_limit, 0

    async def _index_hint(self, b: SelectBuilder) -> None:
        if not self._index:
            return
        engine = self.engine
        if not engine.capabilities.supports_index_hints:
            logger.debug(f"{engine.dialect} ignores index hint '{self._index}'")
            return
        exists = await engine.fetch_val(
            "SELECT name FROM sqlite_master WHERE type='index' AND name=? AND tbl_name=?",
            [self._index, self._table],
        )
        if exists is None:
            logger.debug(f"ignoring unknown index '{self._index}' on '{self._table}'")
            return
        b.indexed_by(self._index)

    def _lock_clause(self, b: SelectBuilder) -> None:
        if not self._lock:
            return
        engine = self.engine
        if self._txn is None and not engine.owns_transaction():
            logger.warning(f"with_lock() on '{self._table}' outside a transaction, ignored")
            return
        if not engine.capabilities.supports_row_locks:
            logger.debug(f"{engine.dialect} has no row locks, FOR {self._lock} skipped")
            return
        b.for_update(self._lock)

    def _compile_list(self) -> SelectBuilder:
        b = self._where(excludes=True, cursor=True)
        b.select(*self._columns())
        if not self._natural:
            b.order_by(*self._order_terms())
        limit, offset = self._window()
        b.limit(limit).offset(offset)
        return b

    # ============================================================================
    # Cache helpers
    # ============================================================================

    def _key(self, action: str, suffix: str) -> str:
        return f"{get_config().cache.namespace}:{self._table}:{action}:{suffix}"

    def _query_key(self, action: str, sql: str, params: Sequence[Any]) -> str:
        encoded = orjson.dumps(list(params), default=str).decode("utf-8")
        return self._key(action, f"{sql}|{encoded}")

    async def _cache_get(self, tp: Any, key: str) -> Any:
        try:
            return await cache_for(tp).with_context(self.ctx).get_or_none(key)
        except CacheFault as exc:
            logger.warning(f"cache read {key!r} failed, falling back to database: {exc}")
            return None

    async def _cache_set(self, tp: Any, key: str, value: Any) -> None:
        try:
            await cache_for(tp).with_context(self.ctx).set(key, value)
        except CacheFault as exc:
            logger.warning(f"cache write {key!r} failed: {exc}")

    async def _invalidate(self, ids: Sequence[str]) -> None:
        """Drop get keys of ``ids`` and every list and count entry of ``M``."""
        caches = registered_caches()
        try:
            getter = caches.get(type_key(self._model))
            if getter is not None:
                for id_ in ids:
                    await getter.delete(self._key("get", id_))
            for tp in (list[self._model], Total[self._model]):
                cache = caches.get(type_key(tp))
                if cache is not None:
                    await cache.clear()
        except CacheFault as exc:
            logger.warning(f"cache invalidation for '{self._table}' failed: {exc}")

    # ============================================================================
    # Hooks
    # ============================================================================

    async def _before(self, items: Sequence[M], hook: str) -> None:
        if not self._hooks:
            return
        ctx = self.ctx
        for item in items:
            try:
                await getattr(item, hook)(ctx)
            except Exception as exc:
                fault = before_hook_fault(exc)
                if fault is exc:
                    raise
                raise fault from exc

    async def _after(self, items: Sequence[M], hook: str) -> None:
        if not self._hooks:
            return
        ctx = self.ctx
        for item in items:
            try:
                await getattr(item, hook)(ctx)
            except Exception as exc:
                logger.error(f"{self._model.__name__}.{hook} failed for id={item.id!r}: {exc}")
                raise AfterHookFault(hook, str(exc)) from exc

    # ============================================================================
    # Execution
    # ============================================================================

    async def _run(self, op: str, fn: Callable, *args: Any) -> Any:
        state = _OpState()
        started = time.perf_counter()
        with start_span(
            f"db.{op}",
            table=self._table,
            model=self._model.__name__,
            cache=self._cache,
            try_run=self._try_run,
        ) as span:
            try:
                with bind(self._txn):
                    if self._timeout:
                        result = await asyncio.wait_for(fn(state, *args), self._timeout)
                    else:
                        result = await fn(state, *args)
            except asyncio.TimeoutError as exc:
                fault = CancelledFault(
                    f"{op} on '{self._table}'",
                    after_commit=state.committed > 0,
                    committed=state.committed,
                )
                self._log(op, started, state, fault)
                raise fault from exc
            except Fault as exc:
                self._log(op, started, state, exc)
                raise
            except Exception as exc:
                fault = fault_from_exception(exc)
                self._log(op, started, state, fault)
                raise fault from exc
            span.set("db.stage", state.stage.value)
            self._log(op, started, state)
            return result

    def _log(self, op: str, started: float, state: _OpState, error: Optional[Fault] = None) -> None:
        elapsed = time.perf_counter() - started
        message = (
            f"db.{op} table={self._table} duration={elapsed * 1000:.2f}ms "
            f"cache={self._cache} try_run={self._try_run} stage={state.stage.value}"
        )
        if error is not None:
            if isinstance(error, NotFoundFault):
                logger.debug(f"{message} not found")
            else:
                logger.error(f"{message} error={error}")
            return
        if elapsed > get_config().database.slow_query_threshold:
            logger.warning(f"slow query: {message}")
        else:
            logger.debug(message)

    def _durable(self) -> bool:
        return self._txn is None and not self.engine.owns_transaction()

    @asynccontextmanager
    async def _unit_of_work(self) -> AsyncIterator[None]:
        if self._txn is not None:
            async with self._txn.engine.transaction():
                yield
            return
        async with self.engine.transaction():
            yield

    async def _execute(self, op: str, batches: Iterable[Sequence[M]], compile: Callable, state: _OpState) -> None:
        """Persist each batch in one unit of work, then invalidate its ids."""
        durable = self._durable()
        for batch in batches:
            statements: List[Statement] = compile(batch)
            if self._try_run:
                for sql, params, many, _ in statements:
                    rows = len(params) if many else 1
                    logger.info(f"[try-run] {op} on '{self._table}' ({rows} row(s)): {sql}")
                continue
            async with self._unit_of_work():
                engine = self.engine
                for sql, params, many, must_exist in statements:
                    if many:
                        await engine.execute_many(sql, params)
                        continue
                    result = await engine.execute(sql, params)
                    if must_exist is not None and result.rowcount == 0:
                        raise NotFoundFault(self._model.__name__, must_exist)
            ids = [item.id for item in batch]
            if durable:
                state.committed += len(batch)
            await self._invalidate(ids)
            txn = current_transaction() or self._txn
            if txn is not None and txn.active:
                txn.on_commit(lambda ids=ids: self._invalidate(ids))

    def _write_batch_size(self, default: int) -> int:
        if self._batch_size:
            return self._batch_size
        if self._limit is not None and self._limit > 0:
            return self._limit
        return default

    def _check(self, items: Sequence[Any]) -> List[M]:
        for item in items:
            if not isinstance(item, self._model):
                raise TypeError(f"expected {self._model.__name__}, got {type(item).__name__}")
        return list(items)

    def _stamp(self, items: Sequence[M]) -> None:
        now = utcnow()
        user = self.ctx.username
        for item in items:
            if item.created_at is None:
                item.created_at = now
            item.updated_at = now
            if user:
                if not item.created_by:
                    item.created_by = user
                item.updated_by = user

    async def _fetch_by_ids(self, ids: Sequence[str]) -> Dict[str, M]:
        found: Dict[str, M] = {}
        for chunk in _chunks(list(dict.fromkeys(ids)), _ID_FETCH_CHUNK):
            b = SelectBuilder(self._table).where_in("id", chunk)
            if not self._deleted:
                b.where('"deleted_at" IS NULL')
            sql, params = b.build()
            for row in await self.engine.fetch_all(sql, params):
                item = self._model.from_row(row)
                found[item.id] = item
        return found

    # ============================================================================
    # Operations: writes
    # ============================================================================

    async def create(self, *items: M) -> List[M]:
        """Insert (upsert by id) ``items``; empty ids get time-ordered ids."""
        return await self._run("create", self._save, self._check(items), "create")

    async def update(self, *items: M) -> List[M]:
        """Write every column of ``items`` (upsert by id)."""
        return await self._run("update", self._save, self._check(items), "update")

    async def _save(self, state: _OpState, items: List[M], kind: str) -> List[M]:
        if not items:
            return items
        for item in items:
            item.apply_defaults()
            item.validate()
            if not item.id:
                item.id = new_id()
        state.stage = Stage.VALIDATED

        await self._before(items, f"{kind}_before")
        state.stage = Stage.BEFORE

        self._stamp(items)
        batch_size = self._write_batch_size(get_config().database.batch_size)
        await self._execute(kind, _chunks(items, batch_size), self._compile_upsert, state)
        state.stage = Stage.PERSISTED

        await self._after(items, f"{kind}_after")
        state.stage = Stage.DONE
        return items

    def _compile_upsert(self, batch: Sequence[M]) -> List[Statement]:
        rows = [item.to_row() for item in batch]
        sql, params = UpsertBuilder(self._table, preserve=("created_at", "created_by")).rows(rows).build_many()
        return [(sql, params, True, None)]

    async def update_partial(self, *items: M) -> List[M]:
        """
        Write only the meaningful columns of ``items``; the rows must exist.

        Returns the stored records after the update.
        """
        return await self._run("update_partial", self._save_partial, self._check(items))

    async def _save_partial(self, state: _OpState, items: List[M]) -> List[M]:
        if not items:
            return items
        for item in items:
            if not item.id:
                raise BadRequestFault(
                    f"{self._model.__name__}: partial update requires an id",
                    code="ID_REQUIRED",
                    domain=FaultDomain.DATABASE,
                )
            item.validate(only=set(item.meaningful()))
        state.stage = Stage.VALIDATED

        await self._before(items, "update_before")
        state.stage = Stage.BEFORE

        now = utcnow()
        user = self.ctx.username
        for item in items:
            item.updated_at = now
            if user:
                item.updated_by = user
        batch_size = self._write_batch_size(get_config().database.batch_size)
        await self._execute("update_partial", _chunks(items, batch_size), self._compile_partial, state)
        state.stage = Stage.PERSISTED

        if not self._try_run:
            stored = await self._fetch_by_ids([i.id for i in items])
            items = [stored.get(i.id, i) for i in items]
        await self._after(items, "update_after")
        state.stage = Stage.DONE
        return items

    def _compile_partial(self, batch: Sequence[M]) -> List[Statement]:
        statements: List[Statement] = []
        fields = self._model._meta.fields
        for item in batch:
            values = {
                fields[attr].column_name: fields[attr].to_db(value)
                for attr, value in item.meaningful().items()
                if attr not in ("id", "created_at", "created_by")
            }
            sql, params = (
                UpdateBuilder(self._table)
                .set_dict(values)
                .where('"id" = ?', item.id)
                .where('"deleted_at" IS NULL')
                .build()
            )
            statements.append((sql, params, False, item.id))
        return statements

    async def delete(self, *items: M) -> List[M]:
        """
        Soft-delete ``items`` (``with_purge()`` removes the rows).

        Items carrying only an id are loaded first so ``delete_before``
        sees the full record.
        """
        return await self._run("delete", self._delete, self._check(items))

    async def _delete(self, state: _OpState, items: List[M]) -> List[M]:
        if not items:
            return items
        for item in items:
            if not item.id:
                raise BadRequestFault(
                    f"{self._model.__name__}: delete requires an id",
                    code="ID_REQUIRED",
                    domain=FaultDomain.DATABASE,
                )
        sparse = [item for item in items if set(item.meaningful()) <= {"id"}]
        if sparse:
            stored = await self._fetch_by_ids([item.id for item in sparse])
            for item in sparse:
                loaded = stored.get(item.id)
                if loaded is None:
                    raise NotFoundFault(self._model.__name__, item.id)
                for attr in self._model._meta.fields:
                    setattr(item, attr, getattr(loaded, attr))
        state.stage = Stage.VALIDATED

        await self._before(items, "delete_before")
        state.stage = Stage.BEFORE

        now = utcnow()
        if not self._purge:
            for item in items:
                item.deleted_at = now
                item.updated_at = now
        batch_size = self._batch_size or get_config().database.delete_batch_size
        compile = self._compile_purge if self._purge else self._compile_soft_delete
        await self._execute("delete", _chunks(items, batch_size), compile, state)
        state.stage = Stage.PERSISTED

        await self._after(items, "delete_after")
        state.stage = Stage.DONE
        return items

    def _compile_purge(self, batch: Sequence[M]) -> List[Statement]:
        sql, params = DeleteBuilder(self._table).where_in("id", [i.id for i in batch]).build()
        return [(sql, params, False, None)]

    def _compile_soft_delete(self, batch: Sequence[M]) -> List[Statement]:
        stamp = self._model._meta.fields["deleted_at"].to_db(batch[0].deleted_at)
        sql, params = (
            UpdateBuilder(self._table)
            .set(deleted_at=stamp, updated_at=stamp)
            .where_in("id", [i.id for i in batch])
            .where('"deleted_at" IS NULL')
            .build()
        )
        return [(sql, params, False, None)]

    async def update_by_id(self, id: str, column: str, value: Any) -> None:
        """Single-column update. Never runs hooks."""
        await self._run("update_by_id", self._update_by_id, id, column, value)

    async def _update_by_id(self, state: _OpState, id: str, column: str, value: Any) -> None:
        if not id:
            raise InvalidParamFault("id", "required")
        attr = self._attr(column, "column")
        if attr in ("id", "created_at"):
            raise InvalidParamFault("column", f"'{attr}' cannot be updated")
        field = self._model._meta.fields[attr]
        try:
            value = field.validate(value)
        except FieldValidationError as exc:
            raise InvalidParamFault(column, str(exc))
        state.stage = Stage.VALIDATED

        values = {field.column_name: field.to_db(value)}
        if attr != "updated_at":
            values["updated_at"] = self._model._meta.fields["updated_at"].to_db(utcnow())
        sql, params = UpdateBuilder(self._table).set_dict(values).where('"id" = ?', id).build()
        if self._try_run:
            logger.info(f"[try-run] update_by_id on '{self._table}': {sql}")
            return
        async with self._unit_of_work():
            result = await self.engine.execute(sql, params)
        if result.rowcount == 0:
            raise NotFoundFault(self._model.__name__, id)
        if self._durable():
            state.committed = 1
        state.stage = Stage.PERSISTED
        await self._invalidate([id])
        state.stage = Stage.DONE

    async def cleanup(self) -> int:
        """Remove every soft-deleted row. Returns the number removed."""
        return await self._run("cleanup", self._cleanup)

    async def _cleanup(self, state: _OpState) -> int:
        select_sql, select_params = SelectBuilder(self._table).select("id").where('"deleted_at" IS NOT NULL').build()
        ids = [row["id"] for row in await self.engine.fetch_all(select_sql, select_params)]
        sql, params = DeleteBuilder(self._table).where('"deleted_at" IS NOT NULL').build()
        if self._try_run:
            logger.info(f"[try-run] cleanup on '{self._table}' ({len(ids)} row(s)): {sql}")
            return len(ids)
        async with self._unit_of_work():
            result = await self.engine.execute(sql, params)
        state.stage = Stage.PERSISTED
        if self._durable():
            state.committed = result.rowcount
        await self._invalidate(ids)
        logger.info(f"Removed {result.rowcount} soft-deleted row(s) from '{self._table}'")
        state.stage = Stage.DONE
        return result.rowcount

    # ============================================================================
    # Operations: reads
    # ============================================================================

    async def list(self) -> List[M]:
        """Rows matching the chain. Default limit applies when none is set."""
        return await self._run("list", self._list)

    async def _list(self, state: _OpState) -> List[M]:
        example = self._model.blank()
        for attr, value in self._filters.items():
            setattr(example, attr, value)
        await self._before([example], "list_before")
        state.stage = Stage.BEFORE

        b = self._compile_list()
        await self._index_hint(b)
        self._lock_clause(b)
        sql, params = b.build()

        items: Optional[List[M]] = None
        key = ""
        if self._cache:
            key = self._query_key("list", sql, params)
            cached = await self._cache_get(list[self._model], key)
            if cached is not None:
                items = [item.copy() for item in cached]
        if items is None:
            rows = await self.engine.fetch_all(sql, params)
            items = [self._model.from_row(row) for row in rows]
            if self._expand:
                await self._preload(self._model, items, self._expand)
            if self._cursor is not None and not self._cursor[2]:
                items.reverse()
            if self._cache:
                await self._cache_set(list[self._model], key, [item.copy() for item in items])

        await self._after(items, "list_after")
        state.stage = Stage.DONE
        return items

    async def count(self) -> int:
        """Rows matching the chain's filters, ignoring paging and order."""
        return await self._run("count", self._count)

    async def _count(self, state: _OpState) -> int:
        sql, params = self._where(excludes=True).build_count()
        key = ""
        if self._cache:
            key = self._query_key("count", sql, params)
            cached = await self._cache_get(Total[self._model], key)
            if cached is not None:
                return int(cached)
        total = int(await self.engine.fetch_val(sql, params) or 0)
        if self._cache:
            await self._cache_set(Total[self._model], key, total)
        state.stage = Stage.DONE
        return total

    async def get(self, id: str) -> M:
        """
        Record by id.

        Raises:
            NotFoundFault: no live row has this id
        """
        return await self._run("get", self._get, id)

    async def _get(self, state: _OpState, id: str) -> M:
        if not id:
            raise InvalidParamFault("id", "required")
        example = self._model.blank()
        example.id = id
        await self._before([example], "get_before")
        state.stage = Stage.BEFORE

        use_cache = self._cache and not self._expand and not self._select
        key = self._key("get", id)
        item: Optional[M] = None
        if use_cache:
            cached = await self._cache_get(self._model, key)
            if cached is not None:
                item = cached.copy()
        if item is None:
            b = self._where(excludes=False).select(*self._columns()).where('"id" = ?', id).limit(1)
            self._lock_clause(b)
            sql, params = b.build()
            row = await self.engine.fetch_one(sql, params)
            if row is None:
                raise NotFoundFault(self._model.__name__, id)
            item = self._model.from_row(row)
            if self._expand:
                await self._preload(self._model, [item], self._expand)
            if use_cache:
                await self._cache_set(self._model, key, item.copy())

        await self._after([item], "get_after")
        state.stage = Stage.DONE
        return item

    async def first(self) -> M:
        """First row by the chain's order (``id`` by default)."""
        return await self._one(self._clone(_size=0, _page=0, _limit=1), "first")

    async def last(self) -> M:
        """Last row by the chain's order."""
        chain = self._clone(_size=0, _page=0, _limit=1)
        if chain._cursor is None:
            reversed_terms = chain._order_terms(reverse=True)
            chain._order = ", ".join(t.replace('"', "") for t in reversed_terms)
        else:
            chain._cursor = (chain._cursor[0], chain._cursor[1], not chain._cursor[2])
        return await self._one(chain, "last")

    async def take(self) -> M:
        """Any one matching row, no ordering."""
        return await self._one(self._clone(_size=0, _page=0, _limit=1, _natural=True), "take")

    async def _one(self, chain: "Database[M]", op: str) -> M:
        items = await chain.list()
        if not items:
            raise NotFoundFault(self._model.__name__)
        return items[0]

    async def health(self) -> bool:
        """Whether the target database answers."""
        return await self.engine.ping()

    def next_cursor(self, items: Sequence[M]) -> str:
        """Token continuing after the last of ``items`` (empty when none)."""
        if not items:
            return ""
        if self._cursor is None:
            cols = ["id"]
        else:
            cols = self._cursor_columns()
        last = items[-1] if self._cursor is None or self._cursor[2] else items[0]
        fields = self._model._meta
        values = []
        for col in cols:
            field = fields.field_for_column(col)
            values.append(field.to_db(getattr(last, field.attr_name)))
        return encode_cursor(values)

    # ============================================================================
    # Expansion
    # ============================================================================

    def _related(self, target: Type[Model]) -> "Database[Any]":
        chain = Database(target, self._ctx)
        chain._db = self._db if target._meta.db == self._model._meta.db else None
        chain._txn = self._txn
        chain._deleted = self._deleted
        chain._hooks = False
        chain._limit = -1
        return chain

    async def _preload(self, model: Type[Model], items: Sequence[Model], paths: Sequence[str]) -> None:
        tree: Dict[str, List[str]] = {}
        for path in paths:
            head, _, rest = path.partition(".")
            subs = tree.setdefault(head, [])
            if rest:
                subs.append(rest)

        for name, subs in tree.items():
            rel = model._meta.relations.get(name)
            if rel is None:
                logger.debug(f"{model.__name__} has no relation '{name}', not expanded")
                continue
            chain = self._related(rel.target)
            if subs:
                chain = chain._clone(_expand=subs)

            if rel.many:
                ids = list(dict.fromkeys(item.id for item in items if item.id))
                children = await chain.with_query({rel.foreign_key: ids}).list() if ids else []
                groups: Dict[Any, List[Model]] = {}
                for child in children:
                    groups.setdefault(getattr(child, rel.foreign_key), []).append(child)
                for item in items:
                    setattr(item, name, groups.get(item.id, []))
            else:
                keys = list(dict.fromkeys(getattr(item, rel.foreign_key) for item in items))
                keys = [k for k in keys if k]
                parents = await chain.with_query({"id": keys}).list() if keys else []
                by_id = {parent.id: parent for parent in parents}
                for item in items:
                    setattr(item, name, by_id.get(getattr(item, rel.foreign_key)))

"""
Gantry Controller - generic CRUD handlers for one model.

Every handler follows the same path:

    decode (path id, query, body)
      -> Service.<phase>_before
      -> Database op (model hooks, cache)
      -> Service.<phase>_after
      -> envelope

Handlers are bound to routes by ``register``:

    register(app.router, User, "/user")                      # all verbs
    register(app.router, Role, "/role", verbs=["list", "get"])
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Any, Dict, Generic, Iterable, List, Optional, Sequence, Tuple, Type, TypeVar, Union

from gantry.context import Context, Phase
from gantry.db import Database, Engine, atomic
from gantry.faults import BadRequestFault, Fault, InvalidParamFault
from gantry.models import Model, ModelRegistry
from gantry.models.fields import FieldValidationError
from gantry.query import QUERY_SIZE, QueryDescriptor, decode_query, parse_bool
from gantry.request import Request
from gantry.response import Response
from gantry.service import Service, service_for

from .response import success

logger = logging.getLogger("gantry.controller")

__all__ = ["Controller", "register", "expand_verbs", "VERBS", "VERB_MOST", "VERB_ALL"]

M = TypeVar("M", bound=Model)

VERB_CREATE = "create"
VERB_DELETE = "delete"
VERB_UPDATE = "update"
VERB_UPDATE_PARTIAL = "update_partial"
VERB_LIST = "list"
VERB_GET = "get"
VERB_BATCH_CREATE = "batch_create"
VERB_BATCH_DELETE = "batch_delete"
VERB_BATCH_UPDATE = "batch_update"
VERB_BATCH_UPDATE_PARTIAL = "batch_update_partial"
VERB_IMPORT = "import"
VERB_EXPORT = "export"

# create, delete, update, update_partial, list, get
VERB_MOST = "most"
# every verb, including batch, import and export
VERB_ALL = "all"

VERBS = (
    VERB_CREATE,
    VERB_DELETE,
    VERB_UPDATE,
    VERB_UPDATE_PARTIAL,
    VERB_LIST,
    VERB_GET,
    VERB_BATCH_CREATE,
    VERB_BATCH_DELETE,
    VERB_BATCH_UPDATE,
    VERB_BATCH_UPDATE_PARTIAL,
    VERB_IMPORT,
    VERB_EXPORT,
)

_MOST = VERBS[:6]


def _render(value: Any) -> Any:
    if isinstance(value, Model):
        return value.to_dict()
    if isinstance(value, (list, tuple)):
        return [_render(v) for v in value]
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return value


def _instantiate(tp: type) -> Any:
    try:
        return tp()
    except TypeError:
        logger.debug(f"{tp.__name__} needs constructor arguments, response payload left unset")
        return None


def _summary(total: int, succeeded: int) -> Dict[str, int]:
    return {"total": total, "succeeded": succeeded, "failed": total - succeeded}


class Controller(Generic[M]):
    """
    Handlers for model ``M``.

    ``db`` and ``table`` route every operation to another engine or table
    than the model declares.
    """

    def __init__(
        self,
        model: Type[M],
        *,
        db: Union[str, Engine, None] = None,
        table: Optional[str] = None,
        service: Optional[Service] = None,
    ):
        self.model = model
        self.db = db
        self.table = table
        self._service = service
        self._request_type, self._response_type = ModelRegistry.request_types(model)

    def __repr__(self) -> str:
        return f"<Controller[{self.model.__name__}]>"

    @property
    def service(self) -> Service:
        return self._service if self._service is not None else service_for(self.model)

    @property
    def name(self) -> str:
        return self.model.__name__

    # ============================================================================
    # Helpers
    # ============================================================================

    def _database(self, ctx: Context) -> Database[M]:
        db = Database(self.model, ctx)
        if self.db is not None:
            db = db.with_db(self.db)
        if self.table:
            db = db.with_table(self.table)
        return db

    def _ok(self, ctx: Context, data: Any = None, *, status: int = 200) -> Response:
        if ctx.response_payload is not None:
            data = ctx.response_payload
        return success(_render(data), status=status, request_id=ctx.request_id)

    def _decode_item(self, data: Any) -> M:
        try:
            return self.model.from_dict(data)
        except FieldValidationError as exc:
            raise InvalidParamFault(exc.field_name, str(exc))
        except TypeError as exc:
            raise InvalidParamFault("body", str(exc))

    def _decode_items(self, data: Any) -> List[M]:
        if not isinstance(data, list):
            raise InvalidParamFault("items", "expected a list of objects")
        return [self._decode_item(row) for row in data]

    async def _body(self, request: Request) -> Any:
        data = await request.json()
        if data is None:
            raise BadRequestFault("empty request body", code="EMPTY_BODY")
        return data

    async def _batch_body(self, request: Request) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        data = await self._body(request)
        if isinstance(data, list):
            data = {"items": data}
        if not isinstance(data, dict):
            raise InvalidParamFault("body", "expected {items: [...]} or {ids: [...]}")
        options = data.get("options") or {}
        if not isinstance(options, dict):
            raise InvalidParamFault("options", "expected an object")
        return data, options

    @property
    def has_custom_request(self) -> bool:
        return self._request_type is not self.model

    async def _custom_request(self, request: Request, ctx: Context) -> bool:
        """
        Decode a model-declared request type into ``ctx.request_payload``.

        Returns False when the model uses itself as the payload type.
        """
        if not self.has_custom_request:
            return False
        data = await request.json()
        tp = self._request_type
        try:
            if isinstance(tp, type) and issubclass(tp, Model):
                payload = tp.from_dict(data or {})
            elif dataclasses.is_dataclass(tp):
                payload = tp(**(data or {}))
            else:
                payload = data
        except (FieldValidationError, TypeError) as exc:
            raise InvalidParamFault("body", str(exc))
        ctx.request_payload = payload
        if self._response_type is not self.model:
            ctx.response_payload = _instantiate(self._response_type)
        return True

    def _query_chain(self, ctx: Context, q: QueryDescriptor, example: M) -> Database[M]:
        """Chain carrying every filter of ``q`` (no paging, order or projection)."""
        svc = self.service
        example = svc.filter(ctx, example)
        db = self._database(ctx).with_query(example, fuzzy=q.fuzzy)
        if q.multi_filters:
            db = db.with_query(q.multi_filters, fuzzy=q.fuzzy)
        raw = svc.filter_raw(ctx)
        if raw:
            db = db.with_query_raw(raw)
        if q.or_:
            db = db.with_or()
        if q.index:
            db = db.with_index(q.index)
        if q.has_time_range:
            db = db.with_time_range(q.column_name, q.start_time, q.end_time)
        if q.show_deleted:
            db = db.with_deleted()
        return db.with_cache(not q.nocache)

    def _ids(self, request: Request, data: Any = None) -> List[str]:
        ids: List[str] = []
        path_id = request.path_params.get("id")
        if path_id:
            ids.append(path_id)
        ids.extend(request.query.get_all("id"))
        if isinstance(data, dict):
            data = data.get("ids")
        if isinstance(data, list):
            ids.extend(str(v) for v in data if v not in (None, ""))
        return [i for i in dict.fromkeys(ids) if i]

    async def _apply(self, items: List[M], op: str, *, atomic_batch: bool, db: Database[M]) -> Tuple[List[M], List[Dict[str, Any]]]:
        """
        Run ``op`` on ``items``.

        Atomic batches run in one transaction and fail as a whole. Otherwise
        each item is written on its own; failures are collected.
        """
        if atomic_batch:
            async with atomic(db.engine) as txn:
                done = await getattr(db.with_transaction(txn), op)(*items)
            return list(done), []

        done: List[M] = []
        failures: List[Dict[str, Any]] = []
        first: Optional[Fault] = None
        for index, item in enumerate(items):
            try:
                done.extend(await getattr(db, op)(item))
            except Fault as exc:
                logger.warning(f"{self.name}.{op} item {index} (id={item.id!r}) failed: {exc}")
                failures.append({"index": index, "id": item.id, "code": int(exc.biz_code), "msg": exc.public_message})
                first = first or exc
        if first is not None and not done:
            raise first
        return done, failures

    # ============================================================================
    # Single-item handlers
    # ============================================================================

    async def create(self, request: Request, ctx: Context) -> Response:
        """POST /R"""
        svc = self.service
        if await self._custom_request(request, ctx):
            item = self.model.blank()
            await svc.run(Phase.CREATE_BEFORE, ctx, item)
            await svc.run(Phase.CREATE_AFTER, ctx, item)
            return self._ok(ctx, status=201)

        item = self._decode_item(await self._body(request))
        await svc.run(Phase.CREATE_BEFORE, ctx, item)
        created = await self._database(ctx).create(item)
        item = created[0]
        await svc.run(Phase.CREATE_AFTER, ctx, item)
        logger.info(f"{self.name} created id={item.id}")
        return self._ok(ctx, item, status=201)

    async def delete(self, request: Request, ctx: Context) -> Response:
        """DELETE /R/{id}, DELETE /R?id=..., DELETE /R with a body of ids"""
        data = None
        if "id" not in request.path_params:
            data = await request.json()
        ids = self._ids(request, data)
        if not ids:
            raise BadRequestFault(f"{self.name}: delete requires an id", code="ID_REQUIRED")

        items = []
        for id_ in ids:
            item = self.model.blank()
            item.id = id_
            items.append(item)

        svc = self.service
        for item in items:
            await svc.run(Phase.DELETE_BEFORE, ctx, item)
        await self._database(ctx).delete(*items)
        for item in items:
            await svc.run(Phase.DELETE_AFTER, ctx, item)
        logger.info(f"{self.name} deleted {ids}")
        return self._ok(ctx, None)

    async def update(self, request: Request, ctx: Context) -> Response:
        """PUT /R/{id}, PUT /R (id in body)"""
        svc = self.service
        if await self._custom_request(request, ctx):
            item = self.model.blank()
            await svc.run(Phase.UPDATE_BEFORE, ctx, item)
            await svc.run(Phase.UPDATE_AFTER, ctx, item)
            return self._ok(ctx)

        item = self._decode_item(await self._body(request))
        path_id = request.path_params.get("id")
        if path_id:
            item.id = path_id
        if not item.id:
            raise BadRequestFault(f"{self.name}: update requires an id", code="ID_REQUIRED")

        db = self._database(ctx)
        stored = await db.without_hook().get(item.id)
        item.created_at = stored.created_at
        item.created_by = stored.created_by

        await svc.run(Phase.UPDATE_BEFORE, ctx, item)
        updated = await db.update(item)
        item = updated[0]
        await svc.run(Phase.UPDATE_AFTER, ctx, item)
        return self._ok(ctx, item)

    async def update_partial(self, request: Request, ctx: Context) -> Response:
        """PATCH /R/{id}, PATCH /R (id in body)"""
        svc = self.service
        if await self._custom_request(request, ctx):
            item = self.model.blank()
            await svc.run(Phase.UPDATE_PARTIAL_BEFORE, ctx, item)
            await svc.run(Phase.UPDATE_PARTIAL_AFTER, ctx, item)
            return self._ok(ctx)

        item = self._decode_item(await self._body(request))
        path_id = request.path_params.get("id")
        if path_id:
            item.id = path_id
        if not item.id:
            raise BadRequestFault(f"{self.name}: partial update requires an id", code="ID_REQUIRED")

        await svc.run(Phase.UPDATE_PARTIAL_BEFORE, ctx, item)
        updated = await self._database(ctx).update_partial(item)
        item = updated[0]
        await svc.run(Phase.UPDATE_PARTIAL_AFTER, ctx, item)
        return self._ok(ctx, item)

    async def list(self, request: Request, ctx: Context) -> Response:
        """GET /R"""
        q = decode_query(request.query, self.model)
        ctx.query = q
        svc = self.service

        example = q.query_model(self.model)
        await svc.run(Phase.LIST_BEFORE, ctx, example)

        base = self._query_chain(ctx, q, example)
        db = base.with_scope(q.page, q.size)
        if q.select:
            db = db.with_select(*q.select)
        if q.sortby:
            db = db.with_order(q.sortby)
        if q.expand:
            db = db.with_expand(q.expand, q.depth)
        cursor_mode = q.has_cursor or bool(q.cursor_fields)
        if cursor_mode:
            db = db.with_cursor(q.cursor_value, q.cursor_fields, q.cursor_next)

        items = await db.list()
        await svc.run(Phase.LIST_AFTER, ctx, items)

        data: Dict[str, Any] = {"items": items}
        if not q.nototal and not q.has_cursor:
            data["total"] = await base.count()
        if cursor_mode:
            data["cursor"] = db.next_cursor(items)
        logger.debug(f"{self.name} list: {len(items)} item(s), total={data.get('total')}")
        return self._ok(ctx, data)

    async def get(self, request: Request, ctx: Context) -> Response:
        """GET /R/{id}"""
        id_ = request.path_params.get("id", "")
        q = decode_query(request.query, self.model)
        ctx.query = q
        svc = self.service

        await svc.run(Phase.GET_BEFORE, ctx, id_)
        db = self._database(ctx).with_cache(not q.nocache)
        if q.expand:
            db = db.with_expand(q.expand, q.depth)
        if q.select:
            db = db.with_select(*q.select)
        if q.show_deleted:
            db = db.with_deleted()
        item = await db.get(id_)
        await svc.run(Phase.GET_AFTER, ctx, item)
        return self._ok(ctx, item)

    # ============================================================================
    # Batch handlers
    # ============================================================================

    async def _batch_write(self, request: Request, ctx: Context, op: str, before: Phase, after: Phase, status: int) -> Response:
        svc = self.service
        if await self._custom_request(request, ctx):
            await svc.run(before, ctx, [])
            await svc.run(after, ctx, [])
            return self._ok(ctx, status=status)

        data, options = await self._batch_body(request)
        items = self._decode_items(data.get("items", []))
        if op == "update_partial" or op == "update":
            missing = [i for i, item in enumerate(items) if not item.id]
            if missing:
                raise BadRequestFault(f"{self.name}: items {missing} have no id", code="ID_REQUIRED")
        atomic_batch = parse_bool(str(options.get("atomic", False)))

        await svc.run(before, ctx, items)
        done, failures = await self._apply(items, op, atomic_batch=atomic_batch, db=self._database(ctx))
        await svc.run(after, ctx, done)

        result: Dict[str, Any] = {"items": done, "summary": _summary(len(items), len(done))}
        if failures:
            result["failures"] = failures
        logger.info(f"{self.name} batch {op}: {result['summary']} atomic={atomic_batch}")
        return self._ok(ctx, result, status=status)

    async def batch_create(self, request: Request, ctx: Context) -> Response:
        """POST /R/batch"""
        return await self._batch_write(request, ctx, "create", Phase.BATCH_CREATE_BEFORE, Phase.BATCH_CREATE_AFTER, 201)

    async def batch_update(self, request: Request, ctx: Context) -> Response:
        """PUT /R/batch"""
        return await self._batch_write(request, ctx, "update", Phase.BATCH_UPDATE_BEFORE, Phase.BATCH_UPDATE_AFTER, 200)

    async def batch_update_partial(self, request: Request, ctx: Context) -> Response:
        """PATCH /R/batch"""
        return await self._batch_write(
            request, ctx, "update_partial", Phase.BATCH_UPDATE_PARTIAL_BEFORE, Phase.BATCH_UPDATE_PARTIAL_AFTER, 200
        )

    async def batch_delete(self, request: Request, ctx: Context) -> Response:
        """DELETE /R/batch"""
        data, options = await self._batch_body(request)
        ids = self._ids(request, data)
        if not ids:
            raise BadRequestFault(f"{self.name}: batch delete requires ids", code="ID_REQUIRED")
        items = []
        for id_ in ids:
            item = self.model.blank()
            item.id = id_
            items.append(item)

        db = self._database(ctx)
        if parse_bool(str(options.get("purge", False))):
            db = db.with_purge()
        atomic_batch = parse_bool(str(options.get("atomic", False)))

        svc = self.service
        await svc.run(Phase.BATCH_DELETE_BEFORE, ctx, items)
        done, failures = await self._apply(items, "delete", atomic_batch=atomic_batch, db=db)
        await svc.run(Phase.BATCH_DELETE_AFTER, ctx, done)

        result: Dict[str, Any] = {"ids": [item.id for item in done], "summary": _summary(len(items), len(done))}
        if failures:
            result["failures"] = failures
        return self._ok(ctx, result)

    # ============================================================================
    # Import / export
    # ============================================================================

    async def import_(self, request: Request, ctx: Context) -> Response:
        """POST /R/import"""
        svc = self.service
        items = await svc.import_(ctx, await request.body())
        if items:
            await self._database(ctx).update(*items)
        logger.info(f"{self.name} imported {len(items)} row(s)")
        return self._ok(ctx, {"summary": _summary(len(items), len(items))})

    async def export(self, request: Request, ctx: Context) -> Response:
        """GET /R/export"""
        q = decode_query(request.query, self.model)
        ctx.query = q
        svc = self.service

        example = q.query_model(self.model)
        await svc.run(Phase.LIST_BEFORE, ctx, example)
        db = self._query_chain(ctx, q, example).with_cache(False)
        db = db.with_scope(q.page, q.size) if QUERY_SIZE in request.query else db.with_limit(-1)
        if q.select:
            db = db.with_select(*q.select)
        if q.sortby:
            db = db.with_order(q.sortby)
        if q.expand:
            db = db.with_expand(q.expand, q.depth)
        items = await db.list()
        await svc.run(Phase.LIST_AFTER, ctx, items)

        payload = await svc.export(ctx, items)
        logger.info(f"{self.name} exported {len(items)} row(s)")
        filename = f"{self.table or self.model._meta.table}.json"
        return Response(
            payload,
            headers={"content-disposition": f'attachment; filename="{filename}"'},
            media_type="application/json",
        )

    # ============================================================================
    # Routes
    # ============================================================================

    def routes(self, path: str, verbs: Iterable[str]) -> List[Tuple[str, str, Any, str]]:
        """``(method, path, handler, verb)`` for each requested verb."""
        base = "/" + path.strip("/")
        item = f"{base}/{{id}}"
        table = {
            VERB_CREATE: [("POST", base, self.create)],
            VERB_DELETE: [("DELETE", base, self.delete), ("DELETE", item, self.delete)],
            VERB_UPDATE: [("PUT", base, self.update), ("PUT", item, self.update)],
            VERB_UPDATE_PARTIAL: [("PATCH", base, self.update_partial), ("PATCH", item, self.update_partial)],
            VERB_LIST: [("GET", base, self.list)],
            VERB_GET: [("GET", item, self.get)],
            VERB_BATCH_CREATE: [("POST", f"{base}/batch", self.batch_create)],
            VERB_BATCH_DELETE: [("DELETE", f"{base}/batch", self.batch_delete)],
            VERB_BATCH_UPDATE: [("PUT", f"{base}/batch", self.batch_update)],
            VERB_BATCH_UPDATE_PARTIAL: [("PATCH", f"{base}/batch", self.batch_update_partial)],
            VERB_IMPORT: [("POST", f"{base}/import", self.import_)],
            VERB_EXPORT: [("GET", f"{base}/export", self.export)],
        }
        out = []
        for verb in verbs:
            for method, route_path, handler in table[verb]:
                out.append((method, route_path, handler, verb))
        return out


def expand_verbs(verbs: Optional[Sequence[str]]) -> List[str]:
    """Resolve ``most``/``all`` shorthands; unknown verbs raise ValueError."""
    if not verbs:
        return list(VERBS)
    resolved: List[str] = []
    for verb in verbs:
        verb = verb.lower()
        if verb == VERB_ALL:
            names: Sequence[str] = VERBS
        elif verb == VERB_MOST:
            names = _MOST
        elif verb in VERBS:
            names = (verb,)
        else:
            raise ValueError(f"unknown verb {verb!r}; expected one of {VERBS + (VERB_MOST, VERB_ALL)}")
        for name in names:
            if name not in resolved:
                resolved.append(name)
    return resolved


def register(
    router: Any,
    model: Type[M],
    path: Optional[str] = None,
    verbs: Optional[Sequence[str]] = None,
    **options: Any,
) -> Controller[M]:
    """
    Bind the HTTP surface of ``model`` under ``path`` (default: ``/<table>``).

    ``router`` is a ``Router`` or anything exposing one as ``.router``.
    """
    router = getattr(router, "router", router)
    controller = Controller(model, **options)
    path = path or f"/{model._meta.table}"
    for method, route_path, handler, verb in controller.routes(path, expand_verbs(verbs)):
        router.add(method, route_path, handler, name=f"{model.__name__}.{verb}")
    logger.info(f"Registered {model.__name__} routes under {path}")
    return controller

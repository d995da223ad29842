"""
Gantry Model Registry - global table of served models.

Every concrete ``Model`` subclass is *declared* when its class body runs
(so relations can resolve targets by name). Only models passed to
``register`` get tables, seeds and routes.

Registrations happen at init time; afterwards the registry is read-only.
"""

from __future__ import annotations

import hashlib
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
    Type,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

from .faults import ModelRegistrationFault

if TYPE_CHECKING:
    from gantry.db.engine import Engine
    from .base import Model

logger = logging.getLogger("gantry.models.registry")

__all__ = ["ModelRegistry", "Registration", "register"]


@dataclass
class Registration:
    """A registered model with its seed rows and target database alias."""

    model: Type[Model]
    seeds: List[Model] = field(default_factory=list)
    db: str = "default"


class ModelRegistry:
    """Global registry for Model subclasses."""

    _declared: Dict[str, Type[Model]] = {}
    _registrations: Dict[Type[Model], Registration] = {}

    @classmethod
    def declare(cls, model_cls: Type[Model]) -> None:
        """Record a concrete model class by name (called by the metaclass)."""
        cls._declared[model_cls.__name__] = model_cls

    @classmethod
    def get(cls, name: str) -> Optional[Type[Model]]:
        """Declared model class by name."""
        return cls._declared.get(name)

    @classmethod
    def register(cls, model_cls: Type[Model], *seeds: Model, db: Optional[str] = None) -> Registration:
        """
        Register a model to be served, with optional seed rows.

        Raises:
            ModelRegistrationFault: abstract models, models with only the
                base record, and names ending in Request/Response
        """
        name = model_cls.__name__
        if model_cls._meta.abstract:
            raise ModelRegistrationFault(model_cls, "abstract models cannot be registered")
        if name.endswith("Request") or name.endswith("Response"):
            raise ModelRegistrationFault(model_cls, "names ending in Request/Response are payload types")
        if not model_cls.declared_fields():
            raise ModelRegistrationFault(model_cls, "model declares no fields beyond the base record")
        for seed in seeds:
            if not isinstance(seed, model_cls):
                raise ModelRegistrationFault(model_cls, f"seed {seed!r} is not a {name}")

        target = db or model_cls._meta.db
        existing = cls._registrations.get(model_cls)
        if existing is not None:
            existing.seeds.extend(seeds)
            existing.db = target
            return existing

        reg = Registration(model=model_cls, seeds=list(seeds), db=target)
        cls._registrations[model_cls] = reg
        cls._declared[name] = model_cls
        logger.debug(f"Registered model {name} (table={model_cls._meta.table}, db={target}, seeds={len(seeds)})")
        return reg

    @classmethod
    def registration(cls, model_cls: Type[Model]) -> Optional[Registration]:
        return cls._registrations.get(model_cls)

    @classmethod
    def registrations(cls) -> List[Registration]:
        return list(cls._registrations.values())

    @classmethod
    def is_registered(cls, model_cls: Type[Model]) -> bool:
        return model_cls in cls._registrations

    # ── Reflection ───────────────────────────────────────────────────

    @classmethod
    def request_types(cls, model_cls: Type[Model]) -> Tuple[type, type]:
        """
        Payload types declared by ``Model.request(self, ctx, req, rsp=None)``.

        Returns ``(request_type, response_type)``; the model itself stands
        in for either when absent or unannotated.
        """
        method = getattr(model_cls, "request", None)
        if method is None or not callable(method):
            return model_cls, model_cls

        params = list(inspect.signature(method).parameters.values())
        try:
            hints = get_type_hints(method)
        except (NameError, TypeError):
            hints = {p.name: p.annotation for p in params if isinstance(p.annotation, type)}

        def _resolve(index: int) -> type:
            if len(params) <= index:
                return model_cls
            tp = hints.get(params[index].name)
            if get_origin(tp) is Union:
                args = [a for a in get_args(tp) if a is not type(None)]
                tp = args[0] if args else None
            return tp if isinstance(tp, type) else model_cls

        # params[0] is self
        return _resolve(2), _resolve(3)

    # ── Bootstrap ────────────────────────────────────────────────────

    @classmethod
    async def bootstrap(
        cls,
        engine_resolver: Optional[Callable[[str], Engine]] = None,
        *,
        seed_without_id: Optional[str] = None,
    ) -> List[str]:
        """
        Create or migrate every registered table, then save seeds.

        Seeds with an id are upserted (only ``updated_at`` changes on
        re-runs). Seeds without one get a content-hash id so bootstrap
        stays idempotent, unless ``seed_without_id="always"``.

        Returns:
            Table names touched, in registration order.
        """
        from gantry.config import get_config
        from gantry.db.database import Database
        from gantry.db.engine import get_engine
        from gantry.db.schema import sync_table

        resolver = engine_resolver or get_engine
        mode = seed_without_id or get_config().database.seed_without_id

        tables: List[str] = []
        for reg in cls._registrations.values():
            engine = resolver(reg.db)
            await sync_table(engine, reg.model)
            tables.append(reg.model._meta.table)

        for reg in cls._registrations.values():
            if not reg.seeds:
                continue
            engine = resolver(reg.db)
            rows = [seed.copy() for seed in reg.seeds]
            if mode != "always":
                for row in rows:
                    if not row.id:
                        row.id = seed_id(row)
            await Database(reg.model).with_db(engine).without_hook().create(*rows)
            logger.info(f"Seeded {len(rows)} row(s) into {reg.model._meta.table}")

        return tables

    @classmethod
    def reset(cls) -> None:
        """Forget registrations (tests). Declarations are kept."""
        cls._registrations.clear()


def seed_id(row: Model) -> str:
    """Deterministic id from a seed's meaningful columns."""
    payload = {
        k: row._meta.fields[k].to_json(v)
        for k, v in row.meaningful().items()
        if k not in ("id", "created_at", "updated_at")
    }
    digest = hashlib.sha256(
        (row._meta.table + json.dumps(payload, sort_keys=True, default=str)).encode("utf-8")
    ).hexdigest()
    return f"seed-{digest[:32]}"


def register(model_cls: Type[Model], *seeds: Model, db: Optional[str] = None) -> Registration:
    """Shorthand for ``ModelRegistry.register``."""
    return ModelRegistry.register(model_cls, *seeds, db=db)

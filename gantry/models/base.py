"""
Gantry Model base class.

Every model carries the base record columns (id, created_by, updated_by,
created_at, updated_at, deleted_at, remark, order) and ten async lifecycle
hooks, no-ops by default:

    class User(Model):
        name = CharField(max_length=64, unique=True)
        email = CharField(max_length=128)
        age = IntegerField(null=True)

        class Meta:
            excludes = {"name": ["root"]}

        async def create_before(self, ctx):
            self.email = self.email.lower()

Hooks receive the ``Context`` of the operation. They run inside the
database layer unless the operation uses ``without_hook()``.
"""

from __future__ import annotations

import copy
from typing import Any, ClassVar, Dict, Optional, Tuple

from .fields import (
    CharField,
    DateTimeField,
    Field,
    PositiveIntegerField,
    TextField,
)
from .options import Options
from .relations import Relation

__all__ = ["Model", "ModelMeta", "BASE_FIELDS"]

BASE_FIELDS = (
    "id",
    "created_by",
    "updated_by",
    "created_at",
    "updated_at",
    "deleted_at",
    "remark",
    "order",
)


class ModelMeta(type):
    """
    Metaclass for Gantry models.

    Handles:
    - Field collection and ordering (inherited first)
    - Relation collection
    - Meta class parsing into ``_meta``
    - Declaration in ModelRegistry (skips abstract models)
    """

    def __new__(mcs, name: str, bases: Tuple[type, ...], namespace: Dict[str, Any], **kwargs) -> "ModelMeta":
        meta_class = namespace.pop("Meta", None)

        fields: Dict[str, Field] = {}
        relations: Dict[str, Relation] = {}
        for parent in reversed(bases):
            parent_meta = getattr(parent, "_meta", None)
            if isinstance(parent_meta, Options):
                fields.update(parent_meta.fields)
                relations.update(parent_meta.relations)

        for key, value in namespace.items():
            if isinstance(value, Field):
                fields[key] = value
            elif isinstance(value, Relation):
                relations[key] = value

        cls = super().__new__(mcs, name, bases, namespace)

        opts = Options(name, meta_class)
        opts.fields = fields
        opts.relations = relations
        cls._meta = opts

        for rel in relations.values():
            if rel.model is None:
                rel.model = cls
        for field in fields.values():
            if field.model is None:
                field.model = cls

        unknown = [e for e in opts.expands if e not in relations]
        if unknown:
            raise TypeError(f"{name}.Meta.expands names unknown relations: {', '.join(unknown)}")

        if not opts.abstract:
            from .registry import ModelRegistry

            ModelRegistry.declare(cls)

        return cls


class Model(metaclass=ModelMeta):
    """
    Gantry model base class.

    Values live as plain instance attributes. Nullable fields default to
    ``None`` (unset); other fields default to their zero value.
    """

    _meta: ClassVar[Options]

    id = CharField(max_length=64, primary_key=True)
    created_by = CharField(max_length=128)
    updated_by = CharField(max_length=128)
    created_at = DateTimeField()
    updated_at = DateTimeField()
    deleted_at = DateTimeField(null=True, filter=False)
    remark = TextField(null=True)
    order = PositiveIntegerField(null=True)

    class Meta:
        abstract = True

    def __init__(self, **kwargs: Any):
        fields = self._meta.fields
        for attr_name, field in fields.items():
            if attr_name in kwargs:
                value = kwargs.pop(attr_name)
            elif field.column_name in kwargs:
                value = kwargs.pop(field.column_name)
            else:
                value = field.get_default()
            setattr(self, attr_name, value)
        for name, value in kwargs.items():
            if name in self._meta.relations:
                setattr(self, name, value)
            else:
                raise TypeError(f"{self.__class__.__name__} got an unexpected field '{name}'")

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} id={self.id!r}>"

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, self.__class__):
            return NotImplemented
        if self.id or other.id:
            return self.id == other.id
        return self is other

    def __hash__(self) -> int:
        return hash((self.__class__.__name__, self.id))

    # ── Metadata ─────────────────────────────────────────────────────

    @classmethod
    def table_name(cls) -> str:
        return cls._meta.table

    @classmethod
    def fields(cls) -> Dict[str, Field]:
        return dict(cls._meta.fields)

    @classmethod
    def declared_fields(cls) -> Dict[str, Field]:
        """Fields beyond the base record."""
        return {k: f for k, f in cls._meta.fields.items() if k not in BASE_FIELDS}

    # ── Construction ─────────────────────────────────────────────────

    @classmethod
    def blank(cls) -> "Model":
        """Instance with every field unset, ignoring declared defaults."""
        instance = cls.__new__(cls)
        for attr_name, field in cls._meta.fields.items():
            setattr(instance, attr_name, None if field.null else copy.copy(field.zero))
        return instance

    def apply_defaults(self) -> "Model":
        """Fill unset fields that declare a default."""
        for attr_name, field in self._meta.fields.items():
            if field.has_default() and not field.is_set(getattr(self, attr_name)):
                setattr(self, attr_name, field.get_default())
        return self

    # ── Conversion ───────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Model":
        """
        Build an instance from decoded JSON, validating every supplied field.

        Missing fields stay unset and unknown keys are ignored. Raises
        ``FieldValidationError`` (a ``ValueError``) on type or constraint
        violations.
        """
        if not isinstance(data, dict):
            raise TypeError(f"{cls.__name__} expects an object, got {type(data).__name__}")
        instance = cls.blank()
        for attr_name, field in cls._meta.fields.items():
            if attr_name in data:
                setattr(instance, attr_name, field.validate(data[attr_name]))
            elif field.column_name != attr_name and field.column_name in data:
                setattr(instance, attr_name, field.validate(data[field.column_name]))
        for name, rel in cls._meta.relations.items():
            value = data.get(name)
            if value is None:
                continue
            target = rel.target
            if isinstance(value, list):
                setattr(instance, name, [target.from_dict(v) for v in value])
            elif isinstance(value, dict):
                setattr(instance, name, target.from_dict(value))
        return instance

    @classmethod
    def from_row(cls, row: Any) -> "Model":
        """Build an instance from a database row (mapping of column -> value)."""
        instance = cls.blank()
        keys = row.keys()
        for attr_name, field in cls._meta.fields.items():
            if field.column_name in keys:
                setattr(instance, attr_name, field.to_python(row[field.column_name]))
        return instance

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation, including loaded relations."""
        out: Dict[str, Any] = {}
        for attr_name, field in self._meta.fields.items():
            out[attr_name] = field.to_json(getattr(self, attr_name))
        for name, rel in self._meta.relations.items():
            if not rel.is_loaded(self):
                continue
            value = getattr(self, name)
            if isinstance(value, list):
                out[name] = [v.to_dict() for v in value]
            else:
                out[name] = value.to_dict() if value is not None else None
        return out

    def to_row(self, columns: Optional[list] = None) -> Dict[str, Any]:
        """Column -> database value for the given columns (default: all)."""
        row: Dict[str, Any] = {}
        for attr_name, field in self._meta.fields.items():
            if columns is not None and field.column_name not in columns:
                continue
            row[field.column_name] = field.to_db(getattr(self, attr_name))
        return row

    def meaningful(self) -> Dict[str, Any]:
        """Attribute -> value for every field whose value counts as set."""
        return {
            attr_name: getattr(self, attr_name)
            for attr_name, field in self._meta.fields.items()
            if field.is_set(getattr(self, attr_name))
        }

    def validate(self, only: Optional[set] = None) -> "Model":
        """Re-validate field values in place."""
        for attr_name, field in self._meta.fields.items():
            if only is not None and attr_name not in only:
                continue
            setattr(self, attr_name, field.validate(getattr(self, attr_name)))
        return self

    def copy(self) -> "Model":
        return copy.deepcopy(self)

    # ── Lifecycle hooks ──────────────────────────────────────────────

    async def create_before(self, ctx: Any) -> None:
        pass

    async def create_after(self, ctx: Any) -> None:
        pass

    async def update_before(self, ctx: Any) -> None:
        pass

    async def update_after(self, ctx: Any) -> None:
        pass

    async def delete_before(self, ctx: Any) -> None:
        pass

    async def delete_after(self, ctx: Any) -> None:
        pass

    async def list_before(self, ctx: Any) -> None:
        pass

    async def list_after(self, ctx: Any) -> None:
        pass

    async def get_before(self, ctx: Any) -> None:
        pass

    async def get_after(self, ctx: Any) -> None:
        pass

"""
Gantry Model Relations.

Relations are not columns. They describe how to preload related rows when a
list or get request asks for expansion (``_expand=children``):

    class Category(Model):
        name = CharField()
        parent_id = CharField(max_length=64)

        parent = BelongsTo("self", foreign_key="parent_id")
        children = HasMany("self", foreign_key="parent_id")

        class Meta:
            expands = ["children", "parent"]

Targets may be a class, a registered model name or ``"self"``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Type, Union

if TYPE_CHECKING:
    from .base import Model

__all__ = ["Relation", "HasMany", "BelongsTo"]

_MISSING = object()


class Relation:
    """Base descriptor for an expandable relation."""

    many = False

    def __init__(self, target: Union[str, Type["Model"]], foreign_key: str):
        self._target = target
        self.foreign_key = foreign_key
        self.name = ""
        self.model: Optional[Type[Model]] = None

    def __set_name__(self, owner: type, name: str) -> None:
        self.name = name

    def __get__(self, instance: Any, owner: type) -> Any:
        if instance is None:
            return self
        loaded = instance.__dict__.get("_relations", {}).get(self.name, _MISSING)
        if loaded is _MISSING:
            return [] if self.many else None
        return loaded

    def __set__(self, instance: Any, value: Any) -> None:
        instance.__dict__.setdefault("_relations", {})[self.name] = value

    def is_loaded(self, instance: Any) -> bool:
        return self.name in instance.__dict__.get("_relations", {})

    @property
    def target(self) -> Type["Model"]:
        """Resolve the related model class."""
        target = self._target
        if isinstance(target, str):
            if target == "self":
                return self.model
            from .registry import ModelRegistry

            resolved = ModelRegistry.get(target)
            if resolved is None:
                raise LookupError(f"Relation '{self.name}' targets unknown model '{target}'")
            return resolved
        return target

    def __repr__(self) -> str:
        target = self._target if isinstance(self._target, str) else self._target.__name__
        return f"<{self.__class__.__name__}: {self.name} -> {target}>"


class HasMany(Relation):
    """Rows of ``target`` whose ``foreign_key`` equals this row's id."""

    many = True


class BelongsTo(Relation):
    """The ``target`` row whose id equals this row's ``foreign_key``."""

    many = False

"""
Gantry Models - declarative resources served by the CRUD pipeline.

    from gantry.models import Model, CharField, IntegerField, register

    class User(Model):
        name = CharField(max_length=64, unique=True)
        age = IntegerField(null=True)

    register(User, User(id="root", name="root"))
"""

from .fields import (
    DATETIME_LAYOUT,
    UNSET,
    BooleanField,
    CharField,
    DateTimeField,
    Field,
    FieldValidationError,
    FloatField,
    IntegerField,
    JSONField,
    PositiveIntegerField,
    TextField,
    utcnow,
)
from .relations import BelongsTo, HasMany, Relation
from .options import Options
from .base import BASE_FIELDS, Model, ModelMeta
from .faults import ModelRegistrationFault
from .registry import ModelRegistry, Registration, register
from .ids import new_id

__all__ = [
    # Base
    "Model",
    "ModelMeta",
    "Options",
    "BASE_FIELDS",
    # Fields
    "Field",
    "CharField",
    "TextField",
    "IntegerField",
    "PositiveIntegerField",
    "FloatField",
    "BooleanField",
    "DateTimeField",
    "JSONField",
    "FieldValidationError",
    "UNSET",
    "DATETIME_LAYOUT",
    "utcnow",
    # Relations
    "Relation",
    "HasMany",
    "BelongsTo",
    # Registry
    "ModelRegistry",
    "Registration",
    "ModelRegistrationFault",
    "register",
    "new_id",
]

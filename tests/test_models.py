"""
Tests for gantry.models: fields, the unset rule, conversion, relations,
the registry and id generation.
"""

import datetime

import pytest

from gantry.models import (
    BooleanField,
    CharField,
    DateTimeField,
    FieldValidationError,
    FloatField,
    HasMany,
    IntegerField,
    JSONField,
    Model,
    ModelRegistrationFault,
    ModelRegistry,
    PositiveIntegerField,
    TextField,
    new_id,
    register,
)
from gantry.models.ids import id_timestamp
from gantry.models.options import default_table_name, pluralize, snake_case
from gantry.models.registry import seed_id

from sample_models import Category, Ticket, User


class Gadget(Model):
    label = CharField(max_length=8, choices=[("a", "A"), ("b", "B")], default="a")
    weight = FloatField()
    active = BooleanField(null=True)
    stock = PositiveIntegerField()
    notes = TextField()
    attrs = JSONField(null=True)
    shipped_at = DateTimeField(null=True)


class AbstractThing(Model):
    title = CharField()

    class Meta:
        abstract = True


class ConcreteThing(AbstractThing):
    size = IntegerField()


class BareRecord(Model):
    pass


class LoginRequest(Model):
    username = CharField()


class TokenPayload(Model):
    token = CharField()


class Session(Model):
    user_id = CharField()

    async def request(self, ctx, req: LoginRequest, rsp: TokenPayload = None):
        pass


# ============================================================================
# Fields
# ============================================================================


class TestFields:
    def test_char_max_length(self):
        with pytest.raises(FieldValidationError) as exc:
            User.from_dict({"name": "x" * 65})
        assert exc.value.field_name == "name"

    def test_integer_coercion(self):
        assert IntegerField().validate("42") == 42
        assert IntegerField().validate(3.0) == 3
        with pytest.raises(FieldValidationError):
            IntegerField().validate("four")

    def test_positive_integer(self):
        with pytest.raises(FieldValidationError):
            PositiveIntegerField().validate(-1)

    def test_float_rejects_bool(self):
        with pytest.raises(FieldValidationError):
            FloatField().validate(True)

    def test_boolean_strings(self):
        field = BooleanField()
        assert field.validate("yes") is True
        assert field.validate("0") is False
        with pytest.raises(FieldValidationError):
            field.validate("maybe")

    def test_choices(self):
        with pytest.raises(FieldValidationError):
            Gadget.from_dict({"label": "z"})

    def test_datetime_layouts(self):
        field = DateTimeField()
        assert field.validate("2024-01-02 03:04:05") == datetime.datetime(2024, 1, 2, 3, 4, 5)
        assert field.validate("2024-01-02T03:04:05Z") == datetime.datetime(2024, 1, 2, 3, 4, 5)
        with pytest.raises(FieldValidationError):
            field.validate("yesterday")

    def test_datetime_to_db(self):
        value = datetime.datetime(2024, 5, 6, 7, 8, 9)
        assert DateTimeField().to_db(value) == "2024-05-06 07:08:09"

    def test_json_field(self):
        field = JSONField()
        assert field.to_db({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'
        assert field.to_python('{"a": 1}') == {"a": 1}
        assert field.filter is False

    def test_non_null_rejects_none(self):
        with pytest.raises(FieldValidationError):
            CharField().validate(None)

    def test_column_definition(self):
        assert User._meta.fields["name"].sql_column_def() == '"name" VARCHAR(64) UNIQUE NOT NULL DEFAULT \'\''
        assert User._meta.fields["age"].sql_column_def() == '"age" INTEGER'


class TestUnsetRule:
    def test_zero_values_are_unset_on_non_null_fields(self):
        assert not User._meta.fields["email"].is_set("")
        assert not Gadget._meta.fields["stock"].is_set(0)

    def test_zero_values_are_meaningful_on_null_fields(self):
        assert User._meta.fields["age"].is_set(0)
        assert Gadget._meta.fields["active"].is_set(False)
        assert not User._meta.fields["age"].is_set(None)

    def test_meaningful(self):
        user = User.blank()
        user.name = "alice"
        user.age = 0
        assert user.meaningful() == {"name": "alice", "age": 0}


# ============================================================================
# Model
# ============================================================================


class TestModel:
    def test_defaults(self):
        gadget = Gadget()
        assert gadget.label == "a"
        assert gadget.weight == 0.0
        assert gadget.active is None
        assert gadget.id == ""

    def test_blank_ignores_defaults(self):
        assert Gadget.blank().label == ""
        assert Ticket.blank().status == ""
        assert Ticket().status == "open"

    def test_unknown_kwarg(self):
        with pytest.raises(TypeError):
            User(nickname="x")

    def test_from_dict_rejects_non_objects(self):
        with pytest.raises(TypeError):
            User.from_dict([1, 2])

    def test_from_dict_ignores_unknown_keys(self):
        user = User.from_dict({"name": "bob", "favourite": "tea"})
        assert user.name == "bob"
        assert not hasattr(user, "favourite")

    def test_to_dict_and_back(self):
        user = User(id="u1", name="carol", email="c@x.io", age=41)
        user.created_at = datetime.datetime(2024, 1, 1, 12, 0, 0)
        data = user.to_dict()
        assert data["created_at"] == "2024-01-01 12:00:00"
        assert data["deleted_at"] is None
        again = User.from_dict(data)
        assert again.created_at == user.created_at
        assert again.age == 41

    def test_to_dict_includes_loaded_relations(self):
        parent = Category(id="c1", name="root")
        assert "children" not in parent.to_dict()
        parent.children = [Category(id="c2", name="leaf", parent_id="c1")]
        data = parent.to_dict()
        assert [c["id"] for c in data["children"]] == ["c2"]

    def test_unloaded_relation_defaults(self):
        category = Category()
        assert category.children == []
        assert category.parent is None

    def test_relation_from_dict(self):
        category = Category.from_dict({"id": "c1", "children": [{"id": "c2", "name": "leaf"}]})
        assert isinstance(category.children[0], Category)

    def test_validate_only(self):
        user = User.blank()
        user.age = "7"
        user.validate(only={"age"})
        assert user.age == 7

    def test_copy_is_deep(self):
        gadget = Gadget(attrs={"a": [1]})
        clone = gadget.copy()
        clone.attrs["a"].append(2)
        assert gadget.attrs == {"a": [1]}

    def test_equality_by_id(self):
        assert User(id="u1", name="a") == User(id="u1", name="b")
        assert User(id="u1") != User(id="u2")
        assert User() != User()

    def test_declared_fields_exclude_base_record(self):
        assert list(User.declared_fields()) == ["name", "email", "age"]
        assert "created_at" in User.fields()


class TestOptions:
    def test_default_table_names(self):
        assert User.table_name() == "users"
        assert Category.table_name() == "categories"
        assert Ticket.table_name() == "tickets"

    def test_naming_helpers(self):
        assert snake_case("HTTPRoute") == "http_route"
        assert snake_case("UserGroup") == "user_group"
        assert pluralize("box") == "boxes"
        assert pluralize("day") == "days"
        assert default_table_name("Story") == "stories"

    def test_inherits_abstract_fields(self):
        assert list(ConcreteThing.declared_fields()) == ["title", "size"]

    def test_excludes_normalized(self):
        assert Ticket._meta.excludes == {"status": ["archived"]}

    def test_unknown_expand_rejected(self):
        with pytest.raises(TypeError):
            class Broken(Model):
                name = CharField()
                items = HasMany("self", foreign_key="name")

                class Meta:
                    expands = ["items", "ghosts"]


# ============================================================================
# Registry
# ============================================================================


class TestRegistry:
    def test_declared_by_name(self):
        assert ModelRegistry.get("User") is User
        assert ModelRegistry.get("AbstractThing") is None

    def test_register_rejects_abstract(self):
        with pytest.raises(ModelRegistrationFault):
            register(AbstractThing)

    def test_register_rejects_payload_names(self):
        with pytest.raises(ModelRegistrationFault):
            register(LoginRequest)

    def test_register_rejects_bare_record(self):
        with pytest.raises(ModelRegistrationFault):
            register(BareRecord)

    def test_register_rejects_foreign_seeds(self):
        with pytest.raises(ModelRegistrationFault):
            register(User, Ticket(title="x"))

    def test_register_twice_extends_seeds(self):
        register(User, User(name="a"))
        reg = register(User, User(name="b"))
        assert [s.name for s in reg.seeds] == ["a", "b"]
        assert len(ModelRegistry.registrations()) == 1
        assert ModelRegistry.is_registered(User)

    def test_reset_keeps_declarations(self):
        register(User)
        ModelRegistry.reset()
        assert not ModelRegistry.is_registered(User)
        assert ModelRegistry.get("User") is User

    def test_request_types(self):
        assert ModelRegistry.request_types(Session) == (LoginRequest, TokenPayload)
        assert ModelRegistry.request_types(User) == (User, User)

    def test_seed_id_is_content_hash(self):
        a = seed_id(User(name="root", email="r@x.io"))
        b = seed_id(User(name="root", email="r@x.io"))
        c = seed_id(User(name="other"))
        assert a == b != c
        assert a.startswith("seed-") and len(a) == 5 + 32

    @pytest.mark.asyncio
    async def test_bootstrap_creates_tables_and_seeds(self, engine):
        from gantry.db import Database

        register(User, User(id="root", name="root"), User(name="guest"))
        register(Ticket)
        assert await ModelRegistry.bootstrap() == ["users", "tickets"]
        assert await Database(User).count() == 2

        # seeds are idempotent
        await ModelRegistry.bootstrap()
        assert await Database(User).count() == 2


class TestIds:
    def test_ids_sort_in_creation_order(self):
        ids = [new_id() for _ in range(200)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 200

    def test_version_nibble(self):
        assert new_id()[14] == "7"

    def test_timestamp(self):
        import time

        assert abs(id_timestamp(new_id()) - time.time()) < 5

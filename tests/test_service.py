"""
Tests for gantry.service: hook dispatch, fault mapping, registry,
import/export codecs.
"""

import orjson
import pytest

from gantry.context import Context, Phase
from gantry.faults import AfterHookFault, BadRequestFault, ConflictFault, InvalidJSONFault
from gantry.service import Service, register_service, registered_services, service_for

from sample_models import Ticket, User


class RecordingService(Service[User]):
    def __init__(self, model=None):
        super().__init__(model)
        self.calls = []

    async def create_before(self, ctx, item):
        self.calls.append((ctx.phase, item.name))

    async def batch_delete_after(self, ctx, items):
        self.calls.append((ctx.phase, len(items)))


class RejectingService(Service[User]):
    async def update_before(self, ctx, item):
        raise PermissionError("read-only record")

    async def delete_before(self, ctx, item):
        raise ConflictFault("record is locked")

    async def get_after(self, ctx, item):
        raise RuntimeError("audit sink down")


class TestDispatch:
    @pytest.mark.asyncio
    async def test_runs_hook_and_sets_phase(self):
        service = RecordingService(User)
        ctx = Context()
        await service.run(Phase.CREATE_BEFORE, ctx, User(name="a"))
        await service.run(Phase.BATCH_DELETE_AFTER, ctx, [User(), User()])
        assert service.calls == [(Phase.CREATE_BEFORE, "a"), (Phase.BATCH_DELETE_AFTER, 2)]
        assert ctx.phase is Phase.BATCH_DELETE_AFTER

    @pytest.mark.asyncio
    async def test_every_phase_has_a_default(self):
        service = Service(User)
        for phase in Phase:
            arg = [] if phase.value.startswith("batch_") or phase is Phase.LIST_AFTER else User()
            await service.run(phase, Context(), arg)

    @pytest.mark.asyncio
    async def test_before_hook_becomes_bad_request(self):
        with pytest.raises(BadRequestFault) as exc:
            await RejectingService(User).run(Phase.UPDATE_BEFORE, Context(), User())
        assert exc.value.code == "HOOK_REJECTED"
        assert "read-only" in exc.value.message

    @pytest.mark.asyncio
    async def test_before_hook_fault_passes_through(self):
        with pytest.raises(ConflictFault):
            await RejectingService(User).run(Phase.DELETE_BEFORE, Context(), User())

    @pytest.mark.asyncio
    async def test_after_hook_becomes_after_hook_fault(self):
        with pytest.raises(AfterHookFault) as exc:
            await RejectingService(User).run(Phase.GET_AFTER, Context(), User())
        assert exc.value.metadata["phase"] == "get_after"
        assert exc.value.status == 500

    def test_phase_is_before(self):
        assert Phase.CREATE_BEFORE.is_before
        assert not Phase.BATCH_UPDATE_PARTIAL_AFTER.is_before
        assert len(Phase) == 20


class TestRegistry:
    def test_default_is_noop_and_stable(self):
        service = service_for(User)
        assert type(service) is Service
        assert service.model is User
        assert service_for(User) is service
        assert registered_services() == {}

    def test_register_instance(self):
        service = RecordingService()
        assert register_service(User, service) is service
        assert service.model is User
        assert service_for(User) is service

    def test_register_class(self):
        service = register_service(Ticket, RejectingService)
        assert isinstance(service, RejectingService)
        assert service.model is Ticket

    def test_last_registration_wins(self):
        register_service(User, RecordingService())
        second = register_service(User, RecordingService())
        assert service_for(User) is second

    def test_rejects_non_services(self):
        with pytest.raises(TypeError):
            register_service(User, object())


class TestFilters:
    def test_defaults(self):
        service = Service(User)
        user = User(name="a")
        assert service.filter(Context(), user) is user
        assert service.filter_raw(Context()) == ""


class TestImportExport:
    @pytest.mark.asyncio
    async def test_import_array(self):
        items = await Service(User).import_(Context(), b'[{"name": "a"}, {"name": "b", "age": 3}]')
        assert [u.name for u in items] == ["a", "b"]
        assert items[1].age == 3

    @pytest.mark.asyncio
    async def test_import_items_object(self):
        items = await Service(User).import_(Context(), b'{"items": [{"name": "a"}]}')
        assert len(items) == 1

    @pytest.mark.asyncio
    async def test_import_empty(self):
        assert await Service(User).import_(Context(), b"") == []

    @pytest.mark.asyncio
    async def test_import_bad_json(self):
        with pytest.raises(InvalidJSONFault):
            await Service(User).import_(Context(), b"[{")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [b'"text"', b"[1, 2]", b'[{"age": "old"}]'])
    async def test_import_bad_shape(self, payload):
        with pytest.raises(BadRequestFault) as exc:
            await Service(User).import_(Context(), payload)
        assert exc.value.code == "INVALID_IMPORT"

    @pytest.mark.asyncio
    async def test_export(self):
        data = await Service(User).export(Context(), [User(id="u1", name="a")])
        decoded = orjson.loads(data)
        assert decoded[0]["id"] == "u1"
        assert decoded[0]["name"] == "a"

"""Tests for job dispatch through the module contract."""

import os
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from syncbridge.database.database import Base
from syncbridge.modules.registry import ModuleRegistry
from syncbridge.services.capability_cache import CapabilityCache
from syncbridge.services.change_detector import ChangeDetector
from syncbridge.services.dispatcher import JobDispatcher
from syncbridge.services.entity_map_service import EntityMapService
from syncbridge.services.import_guard import is_importing
from syncbridge.services.lock_service import LockService
from syncbridge.services.odoo_client import OdooRPCError, OdooServerError
from syncbridge.services.queue_service import QueueService
from syncbridge.services.sync_result import ErrorType
from tests.fakes import EventsModule, FakeOdooClient, ShopModule


@pytest.fixture
def db_session():
    """Create a test database session."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    SessionLocal = sessionmaker(bind=engine)
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def capabilities():
    return CapabilityCache(ttl=60)


@pytest.fixture
def registry(capabilities):
    registry = ModuleRegistry(capabilities)
    registry.register(ShopModule())
    registry.register(EventsModule())
    return registry


@pytest.fixture
def shop(registry):
    return registry.get("shop")


@pytest.fixture
def events(registry):
    return registry.get("events")


@pytest.fixture
def entity_map():
    return EntityMapService()


@pytest.fixture
def queue():
    return QueueService(max_attempts=3)


@pytest.fixture
def dispatcher(registry, entity_map, capabilities):
    return JobDispatcher(registry, entity_map, LockService(), capabilities, push_lock_ttl=30)


@pytest.fixture
def client():
    return FakeOdooClient(installed_models={"event.event"})


class TestPush:
    """Test local to Odoo dispatch."""

    @pytest.mark.asyncio
    async def test_create(self, db_session, dispatcher, queue, shop, entity_map, client):
        local_id = shop.put("product", {"name": "Mug", "sku": "MUG-1", "price": 9.5})
        job = queue.push(db_session, "shop", "product", "create", local_id)

        result = await dispatcher.dispatch(db_session, job, client)

        assert result.succeeded is True
        remote_id = result.entity_id
        assert client.records["product.template"][remote_id] == {
            "name": "Mug", "default_code": "MUG-1", "list_price": 9.5
        }
        mapping = entity_map.get_mapping(db_session, "shop", "product", local_id)
        assert mapping.remote_id == remote_id
        assert mapping.remote_model == "product.template"
        assert mapping.sync_hash == shop.compute_hash("product", shop.load_local_data("product", local_id))

    @pytest.mark.asyncio
    async def test_redelivered_create_does_not_duplicate(self, db_session, dispatcher, queue, shop, client):
        local_id = shop.put("product", {"name": "Mug", "sku": "MUG-1", "price": 9.5})
        job = queue.push(db_session, "shop", "product", "create", local_id)

        first = await dispatcher.dispatch(db_session, job, client)
        second = await dispatcher.dispatch(db_session, job, client)

        assert second.succeeded is True
        assert second.entity_id == first.entity_id
        assert len(client.calls_of("create")) == 1
        assert len(client.records["product.template"]) == 1

    @pytest.mark.asyncio
    async def test_changed_record_is_written(self, db_session, dispatcher, queue, shop, client):
        local_id = shop.put("product", {"name": "Mug", "sku": "MUG-1", "price": 9.5})
        created = await dispatcher.dispatch(db_session, queue.push(db_session, "shop", "product", "create", local_id), client)
        queue.ack(db_session, queue.get_pending(db_session, "shop")[0])

        shop.store["product"][local_id]["price"] = 12.0
        result = await dispatcher.dispatch(db_session, queue.push(db_session, "shop", "product", "update", local_id), client)

        assert result.succeeded is True
        assert client.records["product.template"][created.entity_id]["list_price"] == 12.0
        assert len(client.calls_of("write")) == 1

    @pytest.mark.asyncio
    async def test_create_adopts_existing_remote_record(self, db_session, dispatcher, queue, shop, entity_map, client):
        existing_id = client.add("product.template", {"name": "Old mug", "default_code": "MUG-1"})
        local_id = shop.put("product", {"name": "Mug", "sku": "MUG-1", "price": 9.5})

        result = await dispatcher.dispatch(db_session, queue.push(db_session, "shop", "product", "create", local_id), client)

        assert result.entity_id == existing_id
        assert client.calls_of("create") == []
        assert client.records["product.template"][existing_id]["name"] == "Mug"
        assert entity_map.get_remote_id(db_session, "shop", "product", local_id) == existing_id

    @pytest.mark.asyncio
    async def test_stale_mapping_is_recreated(self, db_session, dispatcher, queue, shop, entity_map, client):
        local_id = shop.put("product", {"name": "Mug", "sku": "MUG-1", "price": 9.5})
        entity_map.save(db_session, "shop", "product", local_id, 999, "old-hash", "product.template")

        result = await dispatcher.dispatch(db_session, queue.push(db_session, "shop", "product", "update", local_id), client)

        assert result.succeeded is True
        assert result.entity_id != 999
        assert entity_map.get_remote_id(db_session, "shop", "product", local_id) == result.entity_id
        assert len(client.calls_of("create")) == 1

    @pytest.mark.asyncio
    async def test_delete(self, db_session, dispatcher, queue, shop, entity_map, client):
        remote_id = client.add("product.template", {"name": "Mug"})
        entity_map.save(db_session, "shop", "product", 5, remote_id, "h", "product.template")

        result = await dispatcher.dispatch(db_session, queue.push(db_session, "shop", "product", "delete", 5), client)

        assert result.succeeded is True
        assert remote_id not in client.records["product.template"]
        assert entity_map.get_remote_id(db_session, "shop", "product", 5) is None

    @pytest.mark.asyncio
    async def test_delete_of_never_synced_entity_is_noop(self, db_session, dispatcher, queue, client):
        result = await dispatcher.dispatch(db_session, queue.push(db_session, "shop", "product", "delete", 5), client)

        assert result.succeeded is True
        assert client.calls_of("unlink") == []

    @pytest.mark.asyncio
    async def test_missing_local_record_is_permanent(self, db_session, dispatcher, queue, client):
        result = await dispatcher.dispatch(db_session, queue.push(db_session, "shop", "product", "create", 404), client)

        assert result.succeeded is False
        assert result.error_type == ErrorType.PERMANENT
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_identity_mapped_type(self, db_session, dispatcher, queue, shop, client):
        local_id = shop.put("order", {"partner": "Ada", "amount": 30})

        result = await dispatcher.dispatch(db_session, queue.push(db_session, "shop", "order", "create", local_id), client)

        assert client.records["sale.order"][result.entity_id] == {"partner": "Ada", "amount": 30}

    @pytest.mark.asyncio
    async def test_busy_create_lock_is_transient(self, db_session, dispatcher, queue, shop, client):
        local_id = shop.put("product", {"name": "Mug", "sku": "MUG-1", "price": 9.5})
        LockService().acquire(db_session, f"push:shop:product:{local_id}", 30)

        result = await dispatcher.dispatch(db_session, queue.push(db_session, "shop", "product", "create", local_id), client)

        assert result.succeeded is False
        assert result.error_type == ErrorType.TRANSIENT
        assert client.calls_of("create") == []

    @pytest.mark.asyncio
    async def test_remote_errors_are_classified(self, db_session, dispatcher, queue, shop, client):
        local_id = shop.put("product", {"name": "Mug", "sku": "MUG-1", "price": 9.5})
        job = queue.push(db_session, "shop", "product", "create", local_id)

        client.fail_with = OdooServerError("Server error HTTP 503 on /jsonrpc", code=503)
        assert (await dispatcher.dispatch(db_session, job, client)).error_type == ErrorType.TRANSIENT

        client.fail_with = OdooRPCError("Odoo RPC error: odoo.exceptions.ValidationError: bad price")
        assert (await dispatcher.dispatch(db_session, job, client)).error_type == ErrorType.PERMANENT


class TestDispatchGating:
    """Test integration and direction resolution."""

    @pytest.mark.asyncio
    async def test_unknown_integration_is_config_error(self, db_session, dispatcher, queue, client):
        job = queue.push(db_session, "crm", "lead", "create", 1)

        result = await dispatcher.dispatch(db_session, job, client)

        assert result.succeeded is False
        assert result.error_type == ErrorType.CONFIG

    @pytest.mark.asyncio
    async def test_direction_not_synced_is_noop(self, db_session, dispatcher, queue, client):
        push_on_pull_only = queue.push(db_session, "shop", "price_list", "create", 1)
        pull_on_push_only = queue.pull(db_session, "shop", "order", "update", 7)

        assert (await dispatcher.dispatch(db_session, push_on_pull_only, client)).succeeded is True
        assert (await dispatcher.dispatch(db_session, pull_on_push_only, client)).succeeded is True
        assert client.calls == []


class TestPull:
    """Test Odoo to local dispatch."""

    @pytest.mark.asyncio
    async def test_pull_create_saves_locally_inside_import_guard(
        self, db_session, dispatcher, queue, shop, entity_map, client
    ):
        remote_id = client.add("product.template", {"name": "Mug", "default_code": "MUG-1", "list_price": 9.5})
        guard_states = []
        original_save = shop.save_local_data

        def spy(entity_type, record, local_id=None):
            guard_states.append(is_importing())
            return original_save(entity_type, record, local_id)

        shop.save_local_data = spy

        result = await dispatcher.dispatch(db_session, queue.pull(db_session, "shop", "product", "create", remote_id), client)

        assert result.succeeded is True
        assert guard_states == [True]
        assert is_importing() is False
        local = shop.load_local_data("product", result.entity_id)
        assert local["sku"] == "MUG-1"
        mapping = entity_map.get_mapping(db_session, "shop", "product", result.entity_id)
        assert mapping.remote_id == remote_id
        # The stored hash matches what the poller computes for the saved record
        assert mapping.sync_hash == shop.compute_hash("product", local)

    @pytest.mark.asyncio
    async def test_pull_update_targets_mapped_record(self, db_session, dispatcher, queue, shop, entity_map, client):
        local_id = shop.put("product", {"name": "Mug", "sku": "MUG-1", "price": 9.5})
        remote_id = client.add("product.template", {"name": "Big mug", "default_code": "MUG-1", "list_price": 11.0})
        entity_map.save(db_session, "shop", "product", local_id, remote_id)

        result = await dispatcher.dispatch(db_session, queue.pull(db_session, "shop", "product", "update", remote_id), client)

        assert result.entity_id == local_id
        assert shop.load_local_data("product", local_id)["name"] == "Big mug"

    @pytest.mark.asyncio
    async def test_pull_missing_remote_record_is_permanent(self, db_session, dispatcher, queue, client):
        result = await dispatcher.dispatch(db_session, queue.pull(db_session, "shop", "product", "update", 404), client)

        assert result.succeeded is False
        assert result.error_type == ErrorType.PERMANENT

    @pytest.mark.asyncio
    async def test_pull_delete(self, db_session, dispatcher, queue, shop, entity_map, client):
        local_id = shop.put("product", {"name": "Mug", "sku": "MUG-1", "price": 9.5})
        entity_map.save(db_session, "shop", "product", local_id, 77)

        result = await dispatcher.dispatch(db_session, queue.pull(db_session, "shop", "product", "delete", 77), client)

        assert result.succeeded is True
        assert shop.load_local_data("product", local_id) == {}
        assert entity_map.get_local_id(db_session, "shop", "product", 77) is None

    @pytest.mark.asyncio
    async def test_pull_delete_of_unknown_record_is_noop(self, db_session, dispatcher, queue, client):
        result = await dispatcher.dispatch(db_session, queue.pull(db_session, "shop", "product", "delete", 77), client)

        assert result.succeeded is True


class TestEvents:
    """Test parent ensure, dual-model resolution and translations."""

    @pytest.mark.asyncio
    async def test_parent_is_synced_before_child(self, db_session, dispatcher, queue, events, entity_map, client):
        events.events[1] = {"title": "Gala", "start": "2024-06-01 18:00:00"}
        events.attendances[5] = {"email": "ada@example.com", "name": "Ada", "event_id": 1}

        result = await dispatcher.dispatch(db_session, queue.push(db_session, "events", "attendance", "create", 5), client)

        assert result.succeeded is True
        created_models = [call[1] for call in client.calls_of("create")]
        assert created_models == ["event.event", "event.registration"]
        assert entity_map.get_remote_id(db_session, "events", "event", 1) is not None

    @pytest.mark.asyncio
    async def test_synced_parent_is_not_pushed_again(self, db_session, dispatcher, queue, events, entity_map, client):
        events.events[1] = {"title": "Gala", "start": "2024-06-01 18:00:00"}
        events.attendances[5] = {"email": "ada@example.com", "name": "Ada", "event_id": 1}
        entity_map.save(db_session, "events", "event", 1, 300, "h", "event.event")

        await dispatcher.dispatch(db_session, queue.push(db_session, "events", "attendance", "create", 5), client)

        assert [call[1] for call in client.calls_of("create")] == ["event.registration"]

    @pytest.mark.asyncio
    async def test_falls_back_to_calendar_model(self, db_session, dispatcher, queue, events, entity_map):
        client = FakeOdooClient(installed_models=set())
        events.events[1] = {"title": "Gala", "start": "2024-06-01 18:00:00"}

        result = await dispatcher.dispatch(db_session, queue.push(db_session, "events", "event", "create", 1), client)

        assert result.entity_id in client.records["calendar.event"]
        assert entity_map.get_mapping(db_session, "events", "event", 1).remote_model == "calendar.event"

    @pytest.mark.asyncio
    async def test_model_probe_is_cached(self, db_session, dispatcher, queue, events, client):
        events.events[1] = {"title": "Gala", "start": "2024-06-01"}
        events.events[2] = {"title": "Fair", "start": "2024-07-01"}

        await dispatcher.dispatch(db_session, queue.push(db_session, "events", "event", "create", 1), client)
        await dispatcher.dispatch(db_session, queue.push(db_session, "events", "event", "create", 2), client)

        assert len(client.calls_of("model_exists")) == 1
        assert events.has_remote_model("event.event") is True

    @pytest.mark.asyncio
    async def test_translations_written_per_locale(self, db_session, dispatcher, queue, events, client):
        events.events[1] = {
            "title": "Gala",
            "start": "2024-06-01 18:00:00",
            "translations": {"fr_FR": {"title": "Gala FR"}, "de_DE": {"title": "Gala DE"}},
        }

        result = await dispatcher.dispatch(db_session, queue.push(db_session, "events", "event", "create", 1), client)

        assert client.records["event.event"][result.entity_id]["name"] == "Gala"
        assert client.translations[("event.event", result.entity_id, "fr_FR")] == {"name": "Gala FR"}
        assert client.translations[("event.event", result.entity_id, "de_DE")] == {"name": "Gala DE"}


class TestPayload:
    """Test that data queued with a job reaches the module contract."""

    @pytest.mark.asyncio
    async def test_status_change_reaches_odoo(self, db_session, dispatcher, queue, shop, entity_map, client):
        local_id = shop.put("order", {"partner": "Ada", "amount": 20.0, "status": "pending"})
        created = queue.push(db_session, "shop", "order", "create", local_id)
        result = await dispatcher.dispatch(db_session, created, client)
        queue.ack(db_session, created)

        detector = ChangeDetector(dispatcher.registry, queue, entity_map)
        job = detector.on_status_changed(db_session, "shop", "order", local_id, "paid")
        # The local record was not touched, only the queued status differs
        updated = await dispatcher.dispatch(db_session, job, client)

        assert updated.succeeded is True
        assert client.records["sale.order"][result.entity_id]["status"] == "paid"
        assert client.calls_of("write")[-1][3] == {"partner": "Ada", "amount": 20.0, "status": "paid"}

    @pytest.mark.asyncio
    async def test_payload_is_passed_to_map_to_remote(self, db_session, dispatcher, queue, shop, client):
        local_id = shop.put("product", {"name": "Mug", "sku": "MUG-1", "price": 9.5})
        received = []
        original = shop.map_to_remote

        def spy(entity_type, record, payload=None):
            received.append(payload)
            return original(entity_type, record, payload)

        shop.map_to_remote = spy
        job = queue.push(db_session, "shop", "product", "create", local_id, payload={"price": 7.0})

        result = await dispatcher.dispatch(db_session, job, client)

        assert received == [{"price": 7.0}]
        assert client.records["product.template"][result.entity_id]["list_price"] == 7.0

    @pytest.mark.asyncio
    async def test_job_without_payload_passes_none(self, db_session, dispatcher, queue, shop, client):
        local_id = shop.put("product", {"name": "Mug", "sku": "MUG-1", "price": 9.5})
        received = []
        original = shop.map_to_remote

        def spy(entity_type, record, payload=None):
            received.append(payload)
            return original(entity_type, record, payload)

        shop.map_to_remote = spy

        await dispatcher.dispatch(db_session, queue.push(db_session, "shop", "product", "create", local_id), client)

        assert received == [None]

    @pytest.mark.asyncio
    async def test_pull_payload_is_applied_to_local_record(self, db_session, dispatcher, queue, shop, client):
        remote_id = client.add("product.template", {"name": "Mug", "default_code": "MUG-1", "list_price": 9.5})
        job = queue.pull(db_session, "shop", "product", "create", remote_id, payload={"origin": "webhook"})

        result = await dispatcher.dispatch(db_session, job, client)

        assert result.succeeded is True
        local = shop.load_local_data("product", result.entity_id)
        assert local["origin"] == "webhook"
        assert local["sku"] == "MUG-1"

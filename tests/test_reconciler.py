"""Tests for orphaned mapping detection."""

import os
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from syncbridge.database.database import Base
from syncbridge.modules.registry import ModuleRegistry
from syncbridge.services.capability_cache import CapabilityCache
from syncbridge.services.entity_map_service import EntityMapService
from syncbridge.services.odoo_client import OdooServerError
from syncbridge.services.reconciler import Reconciler
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
def entity_map():
    return EntityMapService()


@pytest.fixture
def reconciler(entity_map):
    capabilities = CapabilityCache(ttl=60)
    registry = ModuleRegistry(capabilities)
    registry.register(ShopModule())
    registry.register(EventsModule())
    return Reconciler(registry, entity_map, capabilities)


@pytest.fixture
def client():
    return FakeOdooClient(installed_models={"event.event"})


class TestReconciler:
    """Test reconciliation reports and fixes."""

    @pytest.mark.asyncio
    async def test_no_mappings(self, db_session, reconciler, client):
        result = await reconciler.reconcile(db_session, client, "shop", "product")

        assert result == {"checked": 0, "orphaned": [], "fixed": 0}
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_all_mappings_valid(self, db_session, reconciler, client, entity_map):
        remote_id = client.add("product.template", {"name": "Mug"})
        entity_map.save(db_session, "shop", "product", 1, remote_id, "h", "product.template")

        result = await reconciler.reconcile(db_session, client, "shop", "product")

        assert result == {"checked": 1, "orphaned": [], "fixed": 0}

    @pytest.mark.asyncio
    async def test_orphans_reported_not_removed(self, db_session, reconciler, client, entity_map):
        remote_id = client.add("product.template", {"name": "Mug"})
        entity_map.save(db_session, "shop", "product", 2, 999, "h", "product.template")
        entity_map.save(db_session, "shop", "product", 1, remote_id, "h", "product.template")

        result = await reconciler.reconcile(db_session, client, "shop", "product")

        assert result["checked"] == 2
        assert result["orphaned"] == [{"local_id": 2, "remote_id": 999}]
        assert result["fixed"] == 0
        assert entity_map.get_remote_id(db_session, "shop", "product", 2) == 999

    @pytest.mark.asyncio
    async def test_fix_removes_orphans(self, db_session, reconciler, client, entity_map):
        entity_map.save(db_session, "shop", "product", 2, 998, "h", "product.template")
        entity_map.save(db_session, "shop", "product", 1, 999, "h", "product.template")

        result = await reconciler.reconcile(db_session, client, "shop", "product", fix=True)

        assert [item["local_id"] for item in result["orphaned"]] == [1, 2]
        assert result["fixed"] == 2
        assert entity_map.count(db_session, "shop") == 0

    @pytest.mark.asyncio
    async def test_mappings_without_model_use_resolved_model(self, db_session, reconciler, client, entity_map):
        remote_id = client.add("event.event", {"name": "Gala"})
        entity_map.save(db_session, "events", "event", 1, remote_id)

        result = await reconciler.reconcile(db_session, client, "events", "event")

        assert result["orphaned"] == []
        assert client.calls_of("search")[0][1] == "event.event"

    @pytest.mark.asyncio
    async def test_odoo_error_aborts_without_changes(self, db_session, reconciler, client, entity_map):
        entity_map.save(db_session, "shop", "product", 1, 999, "h", "product.template")
        client.fail_with = OdooServerError("Server error HTTP 503 on /jsonrpc", code=503)

        result = await reconciler.reconcile(db_session, client, "shop", "product", fix=True)

        assert result == {"checked": 1, "orphaned": [], "fixed": 0}
        assert entity_map.count(db_session) == 1

    @pytest.mark.asyncio
    async def test_unknown_integration(self, db_session, reconciler, client):
        with pytest.raises(ValueError):
            await reconciler.reconcile(db_session, client, "crm", "lead")

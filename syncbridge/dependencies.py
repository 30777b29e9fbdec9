"""Process-wide service instances shared by the API and the scheduler.

Integrations register themselves on the shared registry at import time of the
hosting application::

    from syncbridge.dependencies import get_registry
    get_registry().register(MyShopModule())
"""

from functools import lru_cache

from syncbridge.modules.registry import ModuleRegistry
from syncbridge.services.capability_cache import CapabilityCache
from syncbridge.services.change_detector import ChangeDetector
from syncbridge.services.circuit_breaker import CircuitBreaker
from syncbridge.services.dispatcher import JobDispatcher
from syncbridge.services.entity_map_service import EntityMapService
from syncbridge.services.lock_service import LockService
from syncbridge.services.odoo_client import OdooClient
from syncbridge.services.poller import Poller
from syncbridge.services.queue_service import QueueService
from syncbridge.services.reconciler import Reconciler
from syncbridge.services.scheduler import SyncScheduler
from syncbridge.services.sync_engine import SyncEngine


@lru_cache()
def get_lock_service() -> LockService:
    return LockService()


@lru_cache()
def get_capabilities() -> CapabilityCache:
    return CapabilityCache()


@lru_cache()
def get_registry() -> ModuleRegistry:
    return ModuleRegistry(get_capabilities())


@lru_cache()
def get_entity_map() -> EntityMapService:
    return EntityMapService()


@lru_cache()
def get_queue() -> QueueService:
    return QueueService()


@lru_cache()
def get_circuit_breaker() -> CircuitBreaker:
    return CircuitBreaker(get_lock_service())


def get_client_factory():
    """Callable returning a new Odoo client (used as an async context manager)."""
    return OdooClient


@lru_cache()
def get_dispatcher() -> JobDispatcher:
    return JobDispatcher(get_registry(), get_entity_map(), get_lock_service(), get_capabilities())


@lru_cache()
def get_engine() -> SyncEngine:
    return SyncEngine(
        get_queue(),
        get_dispatcher(),
        get_circuit_breaker(),
        get_lock_service(),
        get_registry(),
        client_factory=get_client_factory()
    )


@lru_cache()
def get_poller() -> Poller:
    return Poller(get_registry(), get_queue(), get_entity_map(), get_lock_service())


@lru_cache()
def get_change_detector() -> ChangeDetector:
    return ChangeDetector(get_registry(), get_queue(), get_entity_map())


@lru_cache()
def get_reconciler() -> Reconciler:
    return Reconciler(get_registry(), get_entity_map(), get_capabilities())


@lru_cache()
def get_scheduler() -> SyncScheduler:
    return SyncScheduler(get_engine(), get_poller())

"""Database models package."""

from syncbridge.models.sync_job import SyncJob
from syncbridge.models.entity_mapping import EntityMapping
from syncbridge.models.circuit_state import CircuitState
from syncbridge.models.sync_lock import SyncLock

__all__ = [
    "SyncJob",
    "EntityMapping",
    "CircuitState",
    "SyncLock",
]

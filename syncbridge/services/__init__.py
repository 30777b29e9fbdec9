"""Services package.

Only the services that do not depend on ``syncbridge.modules`` are re-exported
here, since the module contract itself imports from this package.
"""

from syncbridge.services.capability_cache import CapabilityCache
from syncbridge.services.circuit_breaker import CircuitBreaker
from syncbridge.services.encryption_service import EncryptionService
from syncbridge.services.entity_map_service import EntityMapService
from syncbridge.services.lock_service import LockService, LockTimeoutError
from syncbridge.services.odoo_client import OdooClient
from syncbridge.services.queue_service import QueueService
from syncbridge.services.sync_result import ErrorType, SyncResult

__all__ = [
    "CapabilityCache",
    "CircuitBreaker",
    "EncryptionService",
    "EntityMapService",
    "ErrorType",
    "LockService",
    "LockTimeoutError",
    "OdooClient",
    "QueueService",
    "SyncResult",
]

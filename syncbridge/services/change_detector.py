"""Event-driven change detection."""

import logging
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session

from syncbridge.models.sync_job import SyncJob
from syncbridge.modules.registry import ModuleRegistry
from syncbridge.services.entity_map_service import EntityMapService
from syncbridge.services.import_guard import is_importing
from syncbridge.services.queue_service import QueueService

logger = logging.getLogger(__name__)


class ChangeDetector:
    """Translate local save/delete events and Odoo notifications into jobs.

    Handlers return the enqueued job, or None when the event was ignored:
    raised by a pull (import guard active), for an unknown integration, or
    for a direction the entity type does not sync.
    """

    def __init__(self, registry: ModuleRegistry, queue: QueueService, entity_map: EntityMapService):
        self.registry = registry
        self.queue = queue
        self.entity_map = entity_map

    def _accepts(self, integration: str, entity_type: str, direction: str) -> bool:
        if is_importing():
            logger.debug(f"Ignoring {integration}/{entity_type} event raised during import")
            return False
        module = self.registry.get(integration)
        if module is None:
            logger.warning(f"Ignoring event for unknown integration '{integration}'")
            return False
        if not module.get_sync_direction(entity_type).allows(direction):
            return False
        return True

    def on_saved(
        self,
        db: Session,
        integration: str,
        entity_type: str,
        local_id: int,
        payload: Optional[Dict[str, Any]] = None
    ) -> Optional[SyncJob]:
        """A local record was created or updated."""
        if not self._accepts(integration, entity_type, "push"):
            return None
        remote_id = self.entity_map.get_remote_id(db, integration, entity_type, local_id)
        action = "update" if remote_id else "create"
        return self.queue.push(db, integration, entity_type, action, local_id, remote_id=remote_id, payload=payload)

    def on_deleted(self, db: Session, integration: str, entity_type: str, local_id: int) -> Optional[SyncJob]:
        """A local record was deleted.

        The remote id is captured now since the mapping is the only link left
        once the local record is gone.
        """
        if not self._accepts(integration, entity_type, "push"):
            return None
        remote_id = self.entity_map.get_remote_id(db, integration, entity_type, local_id)
        return self.queue.push(db, integration, entity_type, "delete", local_id, remote_id=remote_id)

    def on_status_changed(
        self,
        db: Session,
        integration: str,
        entity_type: str,
        local_id: int,
        status: Optional[str] = None
    ) -> Optional[SyncJob]:
        if not self._accepts(integration, entity_type, "push"):
            return None
        remote_id = self.entity_map.get_remote_id(db, integration, entity_type, local_id)
        payload = {"status": status} if status is not None else None
        return self.queue.push(db, integration, entity_type, "update", local_id, remote_id=remote_id, payload=payload)

    def on_remote_changed(
        self,
        db: Session,
        integration: str,
        entity_type: str,
        remote_id: int,
        action: str = "update"
    ) -> Optional[SyncJob]:
        """Odoo reported a change (webhook); enqueue a pull."""
        if not self._accepts(integration, entity_type, "pull"):
            return None
        local_id = self.entity_map.get_local_id(db, integration, entity_type, remote_id)
        return self.queue.pull(db, integration, entity_type, action, remote_id, local_id=local_id)

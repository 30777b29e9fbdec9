"""Polling change detector for sources without change events."""

import logging
from typing import Dict, Optional
from sqlalchemy.orm import Session

from syncbridge.modules.base import SyncModule
from syncbridge.modules.registry import ModuleRegistry
from syncbridge.services.entity_map_service import EntityMapService
from syncbridge.services.import_guard import is_importing
from syncbridge.services.lock_service import LockService
from syncbridge.services.queue_service import QueueService

logger = logging.getLogger(__name__)

POLL_LOCK_TTL = 300


class Poller:
    """Diff the current local record set against the entity map.

    For each pollable entity type of a module, every record is hashed
    (identity field excluded) and compared with the stored hash:
    unseen records enqueue a create, changed ones an update, and mapped
    records that disappeared a delete.
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        queue: QueueService,
        entity_map: EntityMapService,
        lock_service: LockService
    ):
        self.registry = registry
        self.queue = queue
        self.entity_map = entity_map
        self.lock_service = lock_service

    def poll(self, db: Session, integration: Optional[str] = None) -> Dict[str, Dict[str, Dict[str, int]]]:
        """Poll one integration or all of them.

        Returns:
            ``{integration: {entity_type: counts}}`` for integrations that ran.

        Raises:
            ValueError: If ``integration`` is given but not registered.
        """
        if integration is not None:
            module = self.registry.get(integration)
            if module is None:
                raise ValueError(f"Integration '{integration}' is not registered")
            modules = [module]
        else:
            modules = self.registry.all()

        results = {}
        for module in modules:
            if not module.get_polled_entity_types():
                continue
            counts = self.poll_module(db, module)
            if counts is not None:
                results[module.integration_id] = counts
        return results

    def poll_module(self, db: Session, module: SyncModule) -> Optional[Dict[str, Dict[str, int]]]:
        """Poll every pollable entity type of a module.

        Returns None when the tick was skipped (import in progress or another
        worker polling the same integration).
        """
        if is_importing():
            logger.debug(f"Import in progress, skipping poll of {module.integration_id}")
            return None

        lock_name = f"poll:{module.integration_id}"
        with self.lock_service.hold(db, lock_name, POLL_LOCK_TTL) as acquired:
            if not acquired:
                logger.info(f"Poll of {module.integration_id} already running, skipping")
                return None

            results = {}
            for entity_type in module.get_polled_entity_types():
                if not module.get_sync_direction(entity_type).allows("push"):
                    continue
                try:
                    results[entity_type] = self.poll_entity_type(db, module, entity_type)
                except Exception as e:
                    db.rollback()
                    logger.error(f"Polling {module.integration_id}/{entity_type} failed: {e}", exc_info=True)
            return results

    def poll_entity_type(self, db: Session, module: SyncModule, entity_type: str) -> Dict[str, int]:
        integration = module.integration_id
        identity = module.get_identity_field(entity_type)
        mappings = self.entity_map.get_all_for_entity_type(db, integration, entity_type)
        counts = {"created": 0, "updated": 0, "deleted": 0, "unchanged": 0}
        seen = set()

        for record in module.fetch_local_records(entity_type):
            local_id = record.get(identity)
            if not local_id:
                logger.warning(f"{integration}/{entity_type} record without '{identity}', skipping")
                continue
            seen.add(local_id)
            sync_hash = module.compute_hash(entity_type, record)
            mapping = mappings.get(local_id)

            if mapping is None:
                self.queue.push(db, integration, entity_type, "create", local_id)
                counts["created"] += 1
            elif mapping["sync_hash"] != sync_hash:
                self.queue.push(db, integration, entity_type, "update", local_id, remote_id=mapping["remote_id"])
                counts["updated"] += 1
            else:
                counts["unchanged"] += 1

        for local_id, mapping in mappings.items():
            if local_id not in seen:
                self.queue.push(db, integration, entity_type, "delete", local_id, remote_id=mapping["remote_id"])
                counts["deleted"] += 1

        if counts["created"] or counts["updated"] or counts["deleted"]:
            logger.info(
                f"Polled {integration}/{entity_type}: {counts['created']} new, "
                f"{counts['updated']} changed, {counts['deleted']} removed"
            )
        return counts

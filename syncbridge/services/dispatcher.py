"""Execute one sync job through the module contract."""

import logging
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session

from syncbridge.config import settings
from syncbridge.models.sync_job import SyncJob
from syncbridge.modules.base import SyncModule, TRANSLATIONS_KEY
from syncbridge.modules.registry import ModuleRegistry
from syncbridge.services.capability_cache import CapabilityCache
from syncbridge.services.entity_map_service import EntityMapService
from syncbridge.services.import_guard import importing
from syncbridge.services.lock_service import LockService
from syncbridge.services.odoo_client import OdooRPCError
from syncbridge.services.queue_service import QueueService
from syncbridge.services.sync_result import ErrorType, SyncResult, classify_exception

logger = logging.getLogger(__name__)

MISSING_RECORD_MARKERS = ("does not exist", "missingerror", "has been deleted")


class JobDispatcher:
    """Turn a queued job into Odoo calls (push) or local writes (pull).

    Every exception raised while handling a job is caught here and returned as
    a classified SyncResult, so one job never aborts a batch.
    """

    def __init__(
        self,
        registry: ModuleRegistry,
        entity_map: EntityMapService,
        lock_service: LockService,
        capabilities: CapabilityCache,
        push_lock_ttl: Optional[int] = None
    ):
        self.registry = registry
        self.entity_map = entity_map
        self.lock_service = lock_service
        self.capabilities = capabilities
        self.push_lock_ttl = push_lock_ttl or settings.push_lock_ttl

    async def dispatch(self, db: Session, job: SyncJob, client) -> SyncResult:
        """Run a job and return its outcome. Never raises."""
        try:
            module = self.registry.get(job.integration)
            if module is None:
                return SyncResult.failure(
                    f"Integration '{job.integration}' not found or not registered",
                    ErrorType.CONFIG
                )

            direction = module.get_sync_direction(job.entity_type)
            if not direction.allows(job.direction):
                logger.info(
                    f"{job.integration}/{job.entity_type} is {direction.value}: skipping {job.direction} job {job.id}"
                )
                return SyncResult.success(message=f"{job.direction} not supported for {job.entity_type}")

            payload = QueueService.decode_payload(job) or None
            if job.direction == "push":
                return await self.push(
                    db, client, module, job.entity_type, job.action, job.local_id, job.remote_id, payload=payload
                )
            return await self.pull(
                db, client, module, job.entity_type, job.action, job.remote_id, job.local_id, payload=payload
            )
        except Exception as e:
            db.rollback()
            error_type = classify_exception(e)
            logger.debug(f"Job {job.id} raised {type(e).__name__} ({error_type.value}): {e}")
            return SyncResult.failure(str(e) or type(e).__name__, error_type)

    async def push(
        self,
        db: Session,
        client,
        module: SyncModule,
        entity_type: str,
        action: str,
        local_id: int,
        remote_id: Optional[int] = None,
        ensure_parent: bool = True,
        payload: Optional[Dict[str, Any]] = None
    ) -> SyncResult:
        """Propagate a local record to Odoo.

        Creates go through search-before-create under a per-entity lock so a
        redelivered or racing create never makes a second Odoo record. A job
        carrying a payload is always written, even when the local record hash
        did not change.
        """
        integration = module.integration_id

        if action == "delete":
            mapping = self.entity_map.get_mapping(db, integration, entity_type, local_id)
            remote_id = remote_id or (mapping.remote_id if mapping else None)
            if not remote_id:
                logger.info(f"{integration}/{entity_type} #{local_id} was never synced, nothing to delete")
                return SyncResult.success(message="Nothing to delete")

            model = (mapping.remote_model if mapping else None) or await self._resolve_model(client, module, entity_type)
            try:
                await client.unlink(model, [remote_id])
            except OdooRPCError as e:
                if not self._is_missing_record(e):
                    raise
                logger.info(f"{model} #{remote_id} was already deleted in Odoo")
            self.entity_map.remove(db, integration, entity_type, local_id)
            logger.info(f"Deleted {model} #{remote_id} for {integration}/{entity_type} #{local_id}")
            return SyncResult.success(remote_id)

        record = module.load_local_data(entity_type, local_id)
        if not record:
            return SyncResult.failure(f"Local {entity_type} #{local_id} not found", ErrorType.PERMANENT)

        if ensure_parent:
            parent_result = await self._ensure_parent(db, client, module, entity_type, local_id)
            if parent_result is not None and not parent_result.succeeded:
                return SyncResult.failure(
                    f"Parent of {entity_type} #{local_id} could not be synced: {parent_result.message}",
                    parent_result.error_type or ErrorType.TRANSIENT
                )

        model = await self._resolve_model(client, module, entity_type)
        values = module.map_to_remote(entity_type, record, payload)
        if not values:
            return SyncResult.failure(f"Mapping {entity_type} #{local_id} produced no fields", ErrorType.PERMANENT)
        sync_hash = module.compute_hash(entity_type, record)

        mapping = self.entity_map.get_mapping(db, integration, entity_type, local_id)
        if remote_id is None and mapping is not None:
            remote_id = mapping.remote_id

        if remote_id:
            unchanged = mapping is not None and mapping.remote_id == remote_id and mapping.sync_hash == sync_hash
            if unchanged and not payload:
                logger.debug(f"{integration}/{entity_type} #{local_id} unchanged, skipping write")
                return SyncResult.success(remote_id, "Unchanged")
            try:
                await client.write(model, [remote_id], values)
            except OdooRPCError as e:
                if not self._is_missing_record(e):
                    raise
                logger.warning(f"{model} #{remote_id} no longer exists, recreating {entity_type} #{local_id}")
                self.entity_map.remove(db, integration, entity_type, local_id)
                remote_id = await self._create(db, client, module, entity_type, local_id, model, values)
        else:
            remote_id = await self._create(db, client, module, entity_type, local_id, model, values)

        await self._push_translations(client, module, entity_type, model, remote_id, record)
        self.entity_map.save(db, integration, entity_type, local_id, remote_id, sync_hash, model)
        return SyncResult.success(remote_id)

    async def _create(self, db, client, module, entity_type, local_id, model, values) -> int:
        """Create path, serialized per entity by a named lock.

        Raises:
            LockTimeoutError: If another worker is creating the same entity.
        """
        integration = module.integration_id
        lock_name = f"push:{integration}:{entity_type}:{local_id}"

        with self.lock_service.require(db, lock_name, self.push_lock_ttl):
            # Another worker may have finished the create while we waited
            remote_id = self.entity_map.get_remote_id(db, integration, entity_type, local_id)
            if remote_id:
                await client.write(model, [remote_id], values)
                return remote_id

            remote_id = await self._find_duplicate(client, module, entity_type, model, values)
            if remote_id:
                logger.info(f"Adopting existing {model} #{remote_id} for {integration}/{entity_type} #{local_id}")
                await client.write(model, [remote_id], values)
            else:
                remote_id = await client.create(model, values)
                logger.info(f"Created {model} #{remote_id} for {integration}/{entity_type} #{local_id}")

            # Map before releasing the lock; the hash is filled in once the push completes
            self.entity_map.save(db, integration, entity_type, local_id, remote_id, remote_model=model)
            return remote_id

    @staticmethod
    def _is_missing_record(exc: Exception) -> bool:
        message = str(exc).lower()
        return any(marker in message for marker in MISSING_RECORD_MARKERS)

    async def _find_duplicate(self, client, module, entity_type, model, values) -> Optional[int]:
        domain = module.get_dedup_domain(entity_type, values)
        if not domain:
            return None
        ids = await client.search(model, domain, limit=1)
        return ids[0] if ids else None

    async def _ensure_parent(self, db, client, module, entity_type, local_id) -> Optional[SyncResult]:
        """Push the parent record first if it was never synced (one level only)."""
        parent_type = module.get_parent_entity_type(entity_type)
        if not parent_type:
            return None
        parent_id = module.get_parent_local_id(entity_type, local_id)
        if not parent_id:
            return None
        if self.entity_map.get_remote_id(db, module.integration_id, parent_type, parent_id):
            return None

        logger.info(
            f"Syncing parent {parent_type} #{parent_id} before {entity_type} #{local_id} "
            f"({module.integration_id})"
        )
        return await self.push(db, client, module, parent_type, "create", parent_id, ensure_parent=False)

    async def _resolve_model(self, client, module: SyncModule, entity_type: str) -> str:
        candidates = module.get_model_candidates(entity_type)
        if len(candidates) == 1:
            return candidates[0]
        return await self.capabilities.resolve(client, candidates)

    async def _push_translations(self, client, module, entity_type, model, remote_id, record: Dict[str, Any]) -> None:
        """Write locale-specific values, one call per locale."""
        fields = module.get_translatable_fields(entity_type)
        translations = record.get(TRANSLATIONS_KEY) or {}
        if not fields or not translations:
            return

        for lang, translated in translations.items():
            values = {remote: translated[local] for remote, local in fields.items() if local in translated}
            if values:
                await client.write(model, [remote_id], values, context={"lang": lang})
                logger.debug(f"Pushed {lang} translation of {model} #{remote_id}")

    async def pull(
        self,
        db: Session,
        client,
        module: SyncModule,
        entity_type: str,
        action: str,
        remote_id: int,
        local_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> SyncResult:
        """Propagate an Odoo record to the local side.

        Local writes run inside the import guard so they do not trigger a push
        back to Odoo.
        """
        integration = module.integration_id
        if local_id is None:
            local_id = self.entity_map.get_local_id(db, integration, entity_type, remote_id)

        if action == "delete":
            if not local_id:
                logger.info(f"Odoo {entity_type} #{remote_id} has no local counterpart, nothing to delete")
                return SyncResult.success(message="Nothing to delete")
            with importing():
                deleted = module.delete_local_data(entity_type, local_id)
            if not deleted:
                return SyncResult.failure(f"Could not delete local {entity_type} #{local_id}", ErrorType.PERMANENT)
            self.entity_map.remove(db, integration, entity_type, local_id)
            return SyncResult.success(local_id)

        model = await self._resolve_model(client, module, entity_type)
        records = await client.read(model, [remote_id])
        if not records:
            return SyncResult.failure(f"Odoo {model} #{remote_id} not found", ErrorType.PERMANENT)

        record = module.map_from_remote(entity_type, records[0], payload)
        with importing():
            saved_id = module.save_local_data(entity_type, record, local_id)
        if not saved_id:
            return SyncResult.failure(f"Could not save local {entity_type} from Odoo #{remote_id}", ErrorType.PERMANENT)

        self.entity_map.save(
            db, integration, entity_type, saved_id, remote_id, module.compute_hash(entity_type, record), model
        )
        return SyncResult.success(saved_id)

"""Detect mappings whose Odoo record no longer exists."""

import logging
from typing import Any, Dict, List
from sqlalchemy.orm import Session

from syncbridge.modules.registry import ModuleRegistry
from syncbridge.services.capability_cache import CapabilityCache
from syncbridge.services.entity_map_service import EntityMapService

logger = logging.getLogger(__name__)

CHUNK_SIZE = 200


class Reconciler:
    """Compare the entity map with Odoo.

    A mapping is orphaned when its remote id is no longer found in Odoo
    (record deleted on the Odoo side). Orphans are reported and, with
    ``fix=True``, their mappings removed so the next push recreates them.
    """

    def __init__(self, registry: ModuleRegistry, entity_map: EntityMapService, capabilities: CapabilityCache):
        self.registry = registry
        self.entity_map = entity_map
        self.capabilities = capabilities

    async def reconcile(
        self,
        db: Session,
        client,
        integration: str,
        entity_type: str,
        fix: bool = False
    ) -> Dict[str, Any]:
        """Check every mapping of an entity type.

        Returns:
            ``{"checked": int, "orphaned": [{"local_id", "remote_id"}], "fixed": int}``.
            On an Odoo error nothing is reported as orphaned and nothing is fixed.

        Raises:
            ValueError: If the integration is not registered.
        """
        module = self.registry.get(integration)
        if module is None:
            raise ValueError(f"Integration '{integration}' is not registered")

        mappings = self.entity_map.get_all_for_entity_type(db, integration, entity_type)
        result = {"checked": len(mappings), "orphaned": [], "fixed": 0}
        if not mappings:
            return result

        by_model: Dict[str, Dict[int, int]] = {}
        try:
            default_model = None
            for local_id, mapping in mappings.items():
                model = mapping.get("remote_model")
                if not model:
                    if default_model is None:
                        default_model = await self.capabilities.resolve(
                            client, module.get_model_candidates(entity_type)
                        )
                    model = default_model
                by_model.setdefault(model, {})[mapping["remote_id"]] = local_id

            orphaned: List[Dict[str, int]] = []
            for model, local_by_remote in by_model.items():
                remote_ids = sorted(local_by_remote)
                existing = set()
                for start in range(0, len(remote_ids), CHUNK_SIZE):
                    chunk = remote_ids[start:start + CHUNK_SIZE]
                    existing.update(await client.search(model, [["id", "in", chunk]]))
                orphaned.extend(
                    {"local_id": local_by_remote[remote_id], "remote_id": remote_id}
                    for remote_id in remote_ids if remote_id not in existing
                )
        except Exception as e:
            logger.error(f"Reconciliation of {integration}/{entity_type} aborted: {e}")
            return result

        result["orphaned"] = sorted(orphaned, key=lambda item: item["local_id"])
        if orphaned:
            logger.warning(f"{len(orphaned)} orphaned {integration}/{entity_type} mapping(s) found")

        if fix:
            for item in result["orphaned"]:
                if self.entity_map.remove(db, integration, entity_type, item["local_id"]):
                    result["fixed"] += 1
            logger.info(f"Removed {result['fixed']} orphaned {integration}/{entity_type} mapping(s)")

        return result

"""Entity map service: local id to Odoo id correspondence."""

import logging
from typing import Dict, List, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from syncbridge.models.entity_mapping import EntityMapping

logger = logging.getLogger(__name__)


class EntityMapService:
    """Keyed access to the ``entity_map`` table.

    Writes are keyed by local id. Saving a mapping also evicts any other
    local id holding the same remote id, so a remote record is never shared
    by two local records. Concurrent writers resolve as last-writer-wins.
    """

    def get_mapping(
        self, db: Session, integration: str, entity_type: str, local_id: int
    ) -> Optional[EntityMapping]:
        return db.query(EntityMapping).filter(
            EntityMapping.integration == integration,
            EntityMapping.entity_type == entity_type,
            EntityMapping.local_id == local_id
        ).first()

    def get_remote_id(self, db: Session, integration: str, entity_type: str, local_id: int) -> Optional[int]:
        """Get the Odoo id mapped to a local id, or None."""
        mapping = self.get_mapping(db, integration, entity_type, local_id)
        return mapping.remote_id if mapping else None

    def get_local_id(self, db: Session, integration: str, entity_type: str, remote_id: int) -> Optional[int]:
        """Get the local id mapped to an Odoo id, or None."""
        mapping = db.query(EntityMapping).filter(
            EntityMapping.integration == integration,
            EntityMapping.entity_type == entity_type,
            EntityMapping.remote_id == remote_id
        ).first()
        return mapping.local_id if mapping else None

    def get_remote_ids(self, db: Session, integration: str, entity_type: str, local_ids: List[int]) -> Dict[int, int]:
        """Batch lookup of local id -> remote id."""
        if not local_ids:
            return {}
        rows = db.query(EntityMapping).filter(
            EntityMapping.integration == integration,
            EntityMapping.entity_type == entity_type,
            EntityMapping.local_id.in_(local_ids)
        ).all()
        return {row.local_id: row.remote_id for row in rows}

    def get_local_ids(self, db: Session, integration: str, entity_type: str, remote_ids: List[int]) -> Dict[int, int]:
        """Batch lookup of remote id -> local id."""
        if not remote_ids:
            return {}
        rows = db.query(EntityMapping).filter(
            EntityMapping.integration == integration,
            EntityMapping.entity_type == entity_type,
            EntityMapping.remote_id.in_(remote_ids)
        ).all()
        return {row.remote_id: row.local_id for row in rows}

    def get_all_for_entity_type(self, db: Session, integration: str, entity_type: str) -> Dict[int, dict]:
        """Return every mapping of an entity type, keyed by local id.

        Returns:
            ``{local_id: {"remote_id": int, "sync_hash": str | None, "remote_model": str | None}}``
        """
        rows = db.query(EntityMapping).filter(
            EntityMapping.integration == integration,
            EntityMapping.entity_type == entity_type
        ).all()
        return {
            row.local_id: {"remote_id": row.remote_id, "sync_hash": row.sync_hash, "remote_model": row.remote_model}
            for row in rows
        }

    def count(self, db: Session, integration: Optional[str] = None) -> int:
        query = db.query(EntityMapping)
        if integration:
            query = query.filter(EntityMapping.integration == integration)
        return query.count()

    def save(
        self,
        db: Session,
        integration: str,
        entity_type: str,
        local_id: int,
        remote_id: int,
        sync_hash: Optional[str] = None,
        remote_model: Optional[str] = None
    ) -> EntityMapping:
        """Create or refresh a mapping.

        Args:
            db: Database session.
            integration: Integration id.
            entity_type: Entity type.
            local_id: Local record id (the write key).
            remote_id: Odoo record id.
            sync_hash: Content hash of the last synced state.
            remote_model: Odoo model the record lives in.

        Returns:
            The stored mapping.
        """
        try:
            return self._save(db, integration, entity_type, local_id, remote_id, sync_hash, remote_model)
        except IntegrityError:
            # A concurrent writer inserted the same key; retry once on top of it
            db.rollback()
            logger.warning(
                f"Concurrent mapping write for {integration}/{entity_type} local={local_id}, retrying"
            )
            return self._save(db, integration, entity_type, local_id, remote_id, sync_hash, remote_model)

    def _save(self, db, integration, entity_type, local_id, remote_id, sync_hash, remote_model):
        stale = db.query(EntityMapping).filter(
            EntityMapping.integration == integration,
            EntityMapping.entity_type == entity_type,
            EntityMapping.remote_id == remote_id,
            EntityMapping.local_id != local_id
        ).all()
        for row in stale:
            logger.warning(
                f"Remote {entity_type} #{remote_id} moved from local #{row.local_id} to #{local_id}"
            )
            db.delete(row)
        if stale:
            db.flush()

        mapping = self.get_mapping(db, integration, entity_type, local_id)
        if mapping is None:
            mapping = EntityMapping(
                integration=integration,
                entity_type=entity_type,
                local_id=local_id,
                remote_id=remote_id
            )
            db.add(mapping)

        mapping.remote_id = remote_id
        if sync_hash is not None:
            mapping.sync_hash = sync_hash
        if remote_model is not None:
            mapping.remote_model = remote_model

        db.commit()
        db.refresh(mapping)
        return mapping

    def remove(self, db: Session, integration: str, entity_type: str, local_id: int) -> bool:
        """Delete the mapping of a local id. Returns True if one existed."""
        deleted = db.query(EntityMapping).filter(
            EntityMapping.integration == integration,
            EntityMapping.entity_type == entity_type,
            EntityMapping.local_id == local_id
        ).delete(synchronize_session=False)
        db.commit()
        return bool(deleted)

    def remove_by_remote(self, db: Session, integration: str, entity_type: str, remote_id: int) -> bool:
        """Delete the mapping of a remote id. Returns True if one existed."""
        deleted = db.query(EntityMapping).filter(
            EntityMapping.integration == integration,
            EntityMapping.entity_type == entity_type,
            EntityMapping.remote_id == remote_id
        ).delete(synchronize_session=False)
        db.commit()
        return bool(deleted)

"""Entity mapping database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint, Index
from syncbridge.database.database import Base


class EntityMapping(Base):
    """Correspondence between a local record and its Odoo record."""

    __tablename__ = "entity_map"

    id = Column(Integer, primary_key=True, index=True)
    integration = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    local_id = Column(Integer, nullable=False)
    remote_id = Column(Integer, nullable=False)
    remote_model = Column(String, nullable=True)
    sync_hash = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Each side of the mapping is unique within an (integration, entity_type)
    __table_args__ = (
        UniqueConstraint('integration', 'entity_type', 'local_id', name='uq_entity_map_local'),
        UniqueConstraint('integration', 'entity_type', 'remote_id', name='uq_entity_map_remote'),
        Index('ix_entity_map_type', 'integration', 'entity_type'),
    )

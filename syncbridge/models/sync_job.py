"""Sync queue job database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, CheckConstraint, Index, text
from syncbridge.database.database import Base

JOB_ACTIONS = ("create", "update", "delete")
JOB_DIRECTIONS = ("push", "pull")
JOB_STATUSES = ("pending", "processing", "completed", "failed")

PENDING_PUSH = text("status = 'pending' AND direction = 'push'")
PENDING_PULL = text("status = 'pending' AND direction = 'pull'")


class SyncJob(Base):
    """A pending or finished synchronization job.

    ``direction`` is ``push`` for local to Odoo and ``pull`` for Odoo to local.
    """

    __tablename__ = "sync_queue"

    id = Column(Integer, primary_key=True, index=True)
    integration = Column(String, nullable=False)
    direction = Column(String, nullable=False, default="push")
    entity_type = Column(String, nullable=False)
    action = Column(String, nullable=False)
    local_id = Column(Integer, nullable=True)
    remote_id = Column(Integer, nullable=True)
    payload = Column(Text, nullable=True)
    priority = Column(Integer, nullable=False, default=5)
    status = Column(String, nullable=False, default="pending")
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    error_message = Column(Text, nullable=True)
    error_type = Column(String, nullable=True)
    scheduled_at = Column(DateTime, default=datetime.utcnow)
    created_at = Column(DateTime, default=datetime.utcnow)
    claimed_at = Column(DateTime, nullable=True)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("action IN ('create', 'update', 'delete')", name='ck_sync_queue_action'),
        CheckConstraint("direction IN ('push', 'pull')", name='ck_sync_queue_direction'),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='ck_sync_queue_status'
        ),
        Index('ix_sync_queue_status_scheduled', 'status', 'scheduled_at'),
        Index('ix_sync_queue_subject', 'integration', 'entity_type', 'local_id'),
        # At most one pending job per subject, even with concurrent producers
        Index(
            'uq_sync_queue_pending_push', 'integration', 'entity_type', 'local_id',
            unique=True,
            sqlite_where=PENDING_PUSH,
            postgresql_where=PENDING_PUSH
        ),
        Index(
            'uq_sync_queue_pending_pull', 'integration', 'entity_type', 'remote_id',
            unique=True,
            sqlite_where=PENDING_PULL,
            postgresql_where=PENDING_PULL
        ),
    )

    @property
    def subject_id(self):
        """Id the job is about: local id for pushes, remote id for pulls."""
        return self.local_id if self.direction == "push" else self.remote_id

    def __repr__(self):
        return (
            f"<SyncJob {self.id} {self.integration}/{self.entity_type} "
            f"{self.direction}:{self.action} local={self.local_id} remote={self.remote_id} "
            f"{self.status}>"
        )

"""Named lock database model."""

from datetime import datetime
from sqlalchemy import Column, String, DateTime
from syncbridge.database.database import Base


class SyncLock(Base):
    """A held named lock. Rows past ``expires_at`` may be taken over."""

    __tablename__ = "sync_locks"

    name = Column(String, primary_key=True)
    owner = Column(String, nullable=False)
    acquired_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=False)

"""Circuit breaker state database model."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime
from syncbridge.database.database import Base


class CircuitState(Base):
    """Persisted counters for one circuit breaker."""

    __tablename__ = "circuit_state"

    name = Column(String, primary_key=True)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    opened_at = Column(DateTime, nullable=True)
    probe_expires_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

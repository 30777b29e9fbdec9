"""Named, non-blocking locks stored in the database."""

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from syncbridge.models.sync_lock import SyncLock

logger = logging.getLogger(__name__)


class LockTimeoutError(RuntimeError):
    """A required named lock is held by another worker."""


class LockService:
    """Acquire-or-skip locks shared by every worker using the same database.

    A lock is a row in ``sync_locks``. Acquisition never waits: it either
    inserts the row, takes over an expired row, or returns False. Every lock
    carries a TTL so a crashed worker cannot hold it forever.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow):
        self.clock = clock
        self.owner = uuid.uuid4().hex

    def acquire(self, db: Session, name: str, ttl_seconds: int = 60) -> bool:
        """Try to take the named lock.

        Args:
            db: Database session.
            name: Lock name.
            ttl_seconds: Seconds after which another worker may take over.

        Returns:
            True if this worker now holds the lock.
        """
        now = self.clock()
        expires_at = now + timedelta(seconds=ttl_seconds)

        # Take over an expired lock with a conditional update
        taken = db.query(SyncLock).filter(
            SyncLock.name == name,
            SyncLock.expires_at <= now
        ).update(
            {"owner": self.owner, "acquired_at": now, "expires_at": expires_at},
            synchronize_session=False
        )
        if taken:
            db.commit()
            logger.warning(f"Took over expired lock '{name}'")
            return True

        try:
            db.add(SyncLock(name=name, owner=self.owner, acquired_at=now, expires_at=expires_at))
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            return False

    def release(self, db: Session, name: str) -> None:
        """Release the named lock if this worker holds it."""
        db.query(SyncLock).filter(
            SyncLock.name == name,
            SyncLock.owner == self.owner
        ).delete(synchronize_session=False)
        db.commit()

    def extend(self, db: Session, name: str, ttl_seconds: int) -> bool:
        """Push the expiry of a lock this worker holds to ``ttl_seconds`` from now.

        Returns:
            False if the lock is no longer ours (expired and taken over).
        """
        extended = db.query(SyncLock).filter(
            SyncLock.name == name,
            SyncLock.owner == self.owner
        ).update({"expires_at": self.clock() + timedelta(seconds=ttl_seconds)}, synchronize_session=False)
        db.commit()
        if not extended:
            logger.warning(f"Lock '{name}' was lost before it could be extended")
        return bool(extended)

    def is_locked(self, db: Session, name: str) -> bool:
        """Check whether an unexpired lock exists."""
        return db.query(SyncLock).filter(
            SyncLock.name == name,
            SyncLock.expires_at > self.clock()
        ).first() is not None

    @contextmanager
    def hold(self, db: Session, name: str, ttl_seconds: int = 60) -> Iterator[bool]:
        """Context manager yielding whether the lock was acquired.

        The lock is released on exit only if it was acquired.
        """
        acquired = self.acquire(db, name, ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(db, name)

    @contextmanager
    def require(self, db: Session, name: str, ttl_seconds: int = 60) -> Iterator[None]:
        """Like ``hold`` but raise LockTimeoutError when the lock is busy."""
        with self.hold(db, name, ttl_seconds) as acquired:
            if not acquired:
                raise LockTimeoutError(f"Lock '{name}' is held by another worker")
            yield

"""Circuit breaker for Odoo connectivity."""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from syncbridge.config import settings
from syncbridge.models.circuit_state import CircuitState
from syncbridge.services.lock_service import LockService

logger = logging.getLogger(__name__)


class CircuitBreaker:
    """Pause queue processing while Odoo looks unreachable.

    States:
    - closed: processing proceeds normally.
    - open: processing is skipped entirely.
    - half_open: the recovery delay elapsed and one probe batch may run.

    Outcomes are recorded once per batch, never per job. A batch with at
    least one success counts as a success since Odoo answered.
    """

    PROBE_LOCK = "circuit_probe"

    def __init__(
        self,
        lock_service: LockService,
        name: str = "odoo",
        failure_threshold: Optional[int] = None,
        recovery_delay: Optional[int] = None,
        probe_ttl: Optional[int] = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.lock_service = lock_service
        self.name = name
        self.failure_threshold = failure_threshold or settings.circuit_failure_threshold
        self.recovery_delay = recovery_delay or settings.circuit_recovery_delay
        self.probe_ttl = probe_ttl or settings.circuit_probe_ttl
        self.clock = clock

    def _state(self, db: Session) -> CircuitState:
        state = db.query(CircuitState).filter(CircuitState.name == self.name).first()
        if state is None:
            state = CircuitState(name=self.name, consecutive_failures=0)
            db.add(state)
            try:
                db.commit()
            except IntegrityError:
                # Another worker created the row first
                db.rollback()
                state = db.query(CircuitState).filter(CircuitState.name == self.name).one()
        return state

    def is_available(self, db: Session) -> bool:
        """Check if queue processing is allowed.

        Returns True when closed, or for exactly one caller once the recovery
        delay has elapsed (the probe). Returns False while open.
        """
        state = self._state(db)
        if state.opened_at is None:
            return True

        if self.clock() - state.opened_at < timedelta(seconds=self.recovery_delay):
            return False

        if not self._try_acquire_probe(db):
            return False

        logger.info("Circuit breaker half-open: allowing probe batch.")
        return True

    def _try_acquire_probe(self, db: Session) -> bool:
        """Claim the single probe slot.

        The probe lock guards the check-then-set on ``probe_expires_at`` so two
        workers cannot both see the slot free.
        """
        now = self.clock()
        state = self._state(db)
        if state.probe_expires_at is not None and state.probe_expires_at > now:
            return False

        with self.lock_service.hold(db, self.PROBE_LOCK, ttl_seconds=5) as acquired:
            if not acquired:
                return False

            db.refresh(state)
            if state.probe_expires_at is not None and state.probe_expires_at > now:
                return False

            state.probe_expires_at = now + timedelta(seconds=self.probe_ttl)
            db.commit()
            return True

    def record_success(self, db: Session) -> None:
        """Record a batch with at least one success: close the circuit."""
        state = self._state(db)
        if state.opened_at is not None:
            logger.info("Circuit breaker closed: Odoo connection recovered.")

        state.consecutive_failures = 0
        state.opened_at = None
        state.probe_expires_at = None
        db.commit()

    def record_failure(self, db: Session) -> None:
        """Record a batch with zero successes.

        Opens the circuit at the threshold. A failed probe refreshes the
        opening time so a new recovery window starts.
        """
        state = self._state(db)
        state.consecutive_failures = (state.consecutive_failures or 0) + 1
        state.probe_expires_at = None

        if state.consecutive_failures >= self.failure_threshold:
            state.opened_at = self.clock()
            logger.warning(
                f"Circuit breaker opened: Odoo appears unreachable "
                f"(consecutive_batch_failures={state.consecutive_failures}, "
                f"recovery_delay_seconds={self.recovery_delay})"
            )
        else:
            logger.info(f"Batch failed ({state.consecutive_failures}/{self.failure_threshold} before opening circuit)")

        db.commit()

    def get_state(self, db: Session) -> dict:
        """Describe the circuit for status endpoints."""
        state = self._state(db)
        if state.opened_at is None:
            status = "closed"
        elif self.clock() - state.opened_at < timedelta(seconds=self.recovery_delay):
            status = "open"
        else:
            status = "half_open"

        return {
            "name": self.name,
            "state": status,
            "consecutive_failures": state.consecutive_failures,
            "opened_at": state.opened_at.isoformat() if state.opened_at else None,
            "probe_in_flight": bool(state.probe_expires_at and state.probe_expires_at > self.clock()),
        }

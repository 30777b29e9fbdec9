"""Queue consumer: drains due jobs in batches and settles their outcomes."""

import logging
import time
from typing import Callable, List, Optional
from sqlalchemy.orm import Session

from syncbridge.config import settings
from syncbridge.models.sync_job import SyncJob
from syncbridge.modules.registry import ModuleRegistry
from syncbridge.services.circuit_breaker import CircuitBreaker
from syncbridge.services.dispatcher import JobDispatcher
from syncbridge.services.lock_service import LockService
from syncbridge.services.odoo_client import OdooClient, max_call_seconds
from syncbridge.services.queue_service import QueueService
from syncbridge.services.sync_result import ErrorType, SyncResult, classify_exception

logger = logging.getLogger(__name__)

# Authenticate, version, model lookup, search and the write itself
CALLS_PER_JOB = 5


class SyncEngine:
    """Process queued jobs against Odoo.

    One batch runs at a time across all workers sharing the database (named
    lock ``sync_queue``). The circuit breaker is consulted before anything is
    dequeued and fed once per batch afterwards.
    """

    LOCK_NAME = "sync_queue"

    def __init__(
        self,
        queue: QueueService,
        dispatcher: JobDispatcher,
        circuit_breaker: CircuitBreaker,
        lock_service: LockService,
        registry: ModuleRegistry,
        client_factory: Optional[Callable] = None,
        batch_size: Optional[int] = None,
        batch_time_limit: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_base_delay: Optional[int] = None,
        dry_run: Optional[bool] = None,
        clock: Callable[[], float] = time.monotonic,
        lock_ttl: Optional[int] = None
    ):
        """Initialize sync engine.

        Args:
            queue: Queue service.
            dispatcher: Job dispatcher.
            circuit_breaker: Circuit breaker guarding Odoo.
            lock_service: Named lock service.
            registry: Registered integrations (used for dependency ordering).
            client_factory: Callable returning an async context manager that
                yields an Odoo client. Defaults to OdooClient.
            batch_size: Max jobs per batch.
            batch_time_limit: Seconds after which no new job is started.
            max_attempts: Default retry budget for jobs without one.
            retry_base_delay: Base of the exponential backoff, in seconds.
            dry_run: Log and complete jobs without calling Odoo.
            clock: Monotonic clock in seconds.
            lock_ttl: TTL of the ``sync_queue`` lock, extended after every
                job. Defaults to the batch time limit plus the worst case of
                one job's Odoo calls.
        """
        self.queue = queue
        self.dispatcher = dispatcher
        self.circuit_breaker = circuit_breaker
        self.lock_service = lock_service
        self.registry = registry
        self.client_factory = client_factory or OdooClient
        self.batch_size = batch_size or settings.batch_size
        self.batch_time_limit = batch_time_limit or settings.batch_time_limit
        self.max_attempts = max_attempts or settings.max_attempts
        self.retry_base_delay = retry_base_delay if retry_base_delay is not None else settings.retry_base_delay
        self.dry_run = settings.dry_run if dry_run is None else dry_run
        self.clock = clock
        # The time limit is only checked between jobs, so the last job may overrun it
        self.lock_ttl = lock_ttl or int(
            self.batch_time_limit + CALLS_PER_JOB * max_call_seconds(settings.odoo_timeout)
        ) + 60

    async def process_queue(self, db: Session) -> int:
        """Run one batch.

        Returns:
            Number of jobs that succeeded (0 when the batch was skipped).
        """
        with self.lock_service.hold(db, self.LOCK_NAME, self.lock_ttl) as acquired:
            if not acquired:
                logger.info("Queue processing already running elsewhere, skipping")
                return 0

            if not self.circuit_breaker.is_available(db):
                logger.info("Circuit breaker open, skipping queue processing")
                return 0

            self.queue.recover_stale(db)
            jobs = self.queue.dequeue_batch(db, self.batch_size)
            if not jobs:
                return 0

            jobs = self._order_by_dependency(jobs)
            logger.info(f"Processing {len(jobs)} job(s){' (dry run)' if self.dry_run else ''}")

            if self.dry_run:
                return self._run_dry(db, jobs)

            job_ids = [job.id for job in jobs]
            try:
                async with self.client_factory() as client:
                    successes, transient_failures = await self._run_batch(db, jobs, client)
            except Exception as e:
                db.rollback()
                released = self._release_claimed(db, job_ids)
                error_type = classify_exception(e)
                logger.error(f"Batch aborted ({error_type.value}), {released} job(s) returned to the queue: {e}")
                if error_type == ErrorType.TRANSIENT:
                    self.circuit_breaker.record_failure(db)
                return 0

            if successes:
                self.circuit_breaker.record_success(db)
            elif transient_failures:
                self.circuit_breaker.record_failure(db)

            return successes

    async def _run_batch(self, db: Session, jobs: List[SyncJob], client):
        started = self.clock()
        successes = 0
        transient_failures = 0

        for index, job in enumerate(jobs):
            if self.clock() - started >= self.batch_time_limit:
                remaining = jobs[index:]
                logger.warning(
                    f"Batch time limit of {self.batch_time_limit}s reached, "
                    f"returning {len(remaining)} job(s) to the queue"
                )
                for leftover in remaining:
                    self.queue.release(db, leftover)
                break

            result = await self.dispatcher.dispatch(db, job, client)
            if result.succeeded:
                successes += 1
            elif result.error_type == ErrorType.TRANSIENT:
                transient_failures += 1
            self._settle(db, job, result)
            self.lock_service.extend(db, self.LOCK_NAME, self.lock_ttl)

        return successes, transient_failures

    def _release_claimed(self, db: Session, job_ids: List[int]) -> int:
        """Return jobs of an aborted batch that are still claimed to the queue."""
        claimed = db.query(SyncJob).filter(
            SyncJob.id.in_(job_ids),
            SyncJob.status == "processing"
        ).order_by(SyncJob.id).all()
        for job in claimed:
            self.queue.release(db, job)
        return len(claimed)

    def _run_dry(self, db: Session, jobs: List[SyncJob]) -> int:
        for job in jobs:
            logger.info(
                f"[dry run] {job.direction} {job.action} {job.integration}/{job.entity_type} "
                f"local={job.local_id} remote={job.remote_id}"
            )
            self.queue.ack(db, job, "Dry run")
        return len(jobs)

    def _settle(self, db: Session, job: SyncJob, result: SyncResult) -> None:
        """Apply a dispatch outcome to the job row."""
        if result.succeeded:
            self.queue.ack(db, job, result.message or None)
            return

        attempts = (job.attempts or 0) + 1
        max_attempts = job.max_attempts or self.max_attempts
        error_type = (result.error_type or ErrorType.TRANSIENT).value
        context = (
            f"{job.direction} {job.action} {job.integration}/{job.entity_type} "
            f"local={job.local_id} remote={job.remote_id}"
        )

        if result.is_retryable and attempts < max_attempts:
            delay = self.retry_base_delay * 2 ** (attempts - 1)
            logger.warning(
                f"Job {job.id} ({context}) failed, retry {attempts}/{max_attempts} in {delay}s: {result.message}"
            )
            self.queue.requeue(db, job, delay, result.message, error_type)
            return

        if result.is_retryable:
            logger.error(f"Job {job.id} ({context}) gave up after {attempts} attempts: {result.message}")
            error_type = ErrorType.PERMANENT.value
        else:
            logger.error(f"Job {job.id} ({context}) failed permanently [{error_type}]: {result.message}")
        self.queue.fail(db, job, result.message, error_type)

    def _order_by_dependency(self, jobs: List[SyncJob]) -> List[SyncJob]:
        """Stable sort putting parent entity types before their children."""
        def depth(job: SyncJob) -> int:
            module = self.registry.get(job.integration)
            if module is None:
                return 0
            level = 0
            entity_type = job.entity_type
            seen = {entity_type}
            while True:
                parent = module.get_parent_entity_type(entity_type)
                if not parent or parent in seen:
                    return level
                seen.add(parent)
                entity_type = parent
                level += 1

        return sorted(jobs, key=depth)

"""Durable sync job queue."""

import json
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from syncbridge.config import settings
from syncbridge.models.sync_job import SyncJob, JOB_ACTIONS, JOB_DIRECTIONS

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 65535


class QueueService:
    """Enqueue, claim and settle sync jobs.

    At most one pending job exists per (integration, direction, entity_type,
    subject id). Enqueuing for a subject that already has a pending job
    rewrites that job to the newest intent, except that a delete is never
    replaced by a create or update.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.utcnow, max_attempts: Optional[int] = None):
        self.clock = clock
        self.max_attempts = max_attempts or settings.max_attempts

    def enqueue(
        self,
        db: Session,
        integration: str,
        entity_type: str,
        action: str,
        local_id: Optional[int] = None,
        remote_id: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
        direction: str = "push",
        priority: int = 5
    ) -> SyncJob:
        """Add a job or coalesce it into the pending job for the same subject.

        Args:
            db: Database session.
            integration: Integration id.
            entity_type: Entity type.
            action: create, update or delete.
            local_id: Local id (required for push jobs).
            remote_id: Odoo id (required for pull jobs).
            payload: Optional extra data, stored as JSON.
            direction: push (local to Odoo) or pull (Odoo to local).
            priority: 1 (first) to 10 (last).

        Returns:
            The new or coalesced pending job.

        Raises:
            ValueError: On an unknown action/direction or a missing subject id.
        """
        if action not in JOB_ACTIONS:
            raise ValueError(f"Invalid action '{action}'")
        if direction not in JOB_DIRECTIONS:
            raise ValueError(f"Invalid direction '{direction}'")
        if direction == "push" and not local_id:
            raise ValueError("Push jobs require a local id")
        if direction == "pull" and not remote_id:
            raise ValueError("Pull jobs require a remote id")

        priority = max(1, min(10, priority))
        payload_json = json.dumps(payload, sort_keys=True, default=str) if payload else None

        for attempt in range(2):
            existing = self._find_pending(db, integration, direction, entity_type, local_id, remote_id)
            if existing is not None:
                self._coalesce(existing, action, local_id, remote_id, payload_json, priority)
                db.commit()
                db.refresh(existing)
                return existing

            now = self.clock()
            job = SyncJob(
                integration=integration,
                direction=direction,
                entity_type=entity_type,
                action=action,
                local_id=local_id,
                remote_id=remote_id,
                payload=payload_json,
                priority=priority,
                status="pending",
                attempts=0,
                max_attempts=self.max_attempts,
                scheduled_at=now,
                created_at=now
            )
            db.add(job)
            try:
                db.commit()
            except IntegrityError:
                # Another producer inserted the pending job first
                db.rollback()
                if attempt:
                    raise
                logger.debug(f"Concurrent enqueue for {integration}/{entity_type} {direction}, coalescing")
                continue
            db.refresh(job)
            logger.debug(f"Enqueued {job!r}")
            return job

    @staticmethod
    def _coalesce(existing: SyncJob, action, local_id, remote_id, payload_json, priority) -> None:
        """Fold a newer intent into a pending job. A pending delete always stays."""
        if existing.action == "delete" and action != "delete":
            logger.debug(f"Pending delete kept over {action} for {existing!r}")
        else:
            existing.action = action
            if payload_json is not None:
                existing.payload = payload_json
        if local_id and not existing.local_id:
            existing.local_id = local_id
        if remote_id and not existing.remote_id:
            existing.remote_id = remote_id
        existing.priority = min(existing.priority or priority, priority)

    def push(self, db: Session, integration: str, entity_type: str, action: str, local_id: int,
             remote_id: Optional[int] = None, payload: Optional[Dict[str, Any]] = None,
             priority: int = 5) -> SyncJob:
        """Enqueue a local to Odoo job."""
        return self.enqueue(db, integration, entity_type, action, local_id=local_id, remote_id=remote_id,
                            payload=payload, direction="push", priority=priority)

    def pull(self, db: Session, integration: str, entity_type: str, action: str, remote_id: int,
             local_id: Optional[int] = None, payload: Optional[Dict[str, Any]] = None,
             priority: int = 5) -> SyncJob:
        """Enqueue an Odoo to local job."""
        return self.enqueue(db, integration, entity_type, action, local_id=local_id, remote_id=remote_id,
                            payload=payload, direction="pull", priority=priority)

    def _find_pending(
        self, db, integration, direction, entity_type, local_id, remote_id, exclude_id=None
    ) -> Optional[SyncJob]:
        query = db.query(SyncJob).filter(
            SyncJob.status == "pending",
            SyncJob.integration == integration,
            SyncJob.direction == direction,
            SyncJob.entity_type == entity_type
        )
        if direction == "push":
            query = query.filter(SyncJob.local_id == local_id)
        else:
            query = query.filter(SyncJob.remote_id == remote_id)
        if exclude_id is not None:
            query = query.filter(SyncJob.id != exclude_id)
        return query.order_by(SyncJob.id).first()

    def _merge_into_pending(self, db: Session, job: SyncJob, changes: Dict[str, Any]) -> SyncJob:
        """Put ``job`` back to pending, or fold it into the pending job for its subject.

        A job coming back from ``processing`` or ``failed`` may find that a
        newer job was enqueued for the same subject meanwhile. The two are
        merged into the pending one: a delete on either side wins, otherwise
        the newer job's action and payload are kept.

        Returns:
            The job that is now pending.
        """
        sibling = self._find_pending(
            db, job.integration, job.direction, job.entity_type, job.local_id, job.remote_id, exclude_id=job.id
        )
        if sibling is None:
            job.status = "pending"
            job.claimed_at = None
            for key, value in changes.items():
                setattr(job, key, value)
            db.flush()
            return job

        newer, older = (sibling, job) if sibling.id > job.id else (job, sibling)
        if "delete" in (job.action, sibling.action):
            sibling.action = "delete"
        else:
            sibling.action = newer.action
        sibling.payload = newer.payload or older.payload
        sibling.local_id = sibling.local_id or job.local_id
        sibling.remote_id = sibling.remote_id or job.remote_id
        sibling.priority = min(sibling.priority or 5, job.priority or 5)
        db.delete(job)
        db.flush()
        logger.info(f"Merged job {job.id} into pending {sibling!r}")
        return sibling

    def _return_to_pending(self, db: Session, job: SyncJob, changes: Dict[str, Any]) -> SyncJob:
        try:
            survivor = self._merge_into_pending(db, job, changes)
            db.commit()
        except IntegrityError:
            # A producer enqueued for the same subject between lookup and flush
            db.rollback()
            survivor = self._merge_into_pending(db, job, changes)
            db.commit()
        return survivor

    def dequeue_batch(self, db: Session, max_size: int, now: Optional[datetime] = None) -> List[SyncJob]:
        """Claim up to ``max_size`` due jobs.

        Each row is claimed with a conditional update on ``status = 'pending'``,
        so a job is handed to at most one consumer.

        Returns:
            Claimed jobs in priority, schedule and id order.
        """
        now = now or self.clock()
        candidates = db.query(SyncJob.id).filter(
            SyncJob.status == "pending",
            SyncJob.scheduled_at <= now
        ).order_by(
            SyncJob.priority, SyncJob.scheduled_at, SyncJob.id
        ).limit(max_size).all()

        claimed_ids = []
        for (job_id,) in candidates:
            updated = db.query(SyncJob).filter(
                SyncJob.id == job_id,
                SyncJob.status == "pending"
            ).update({"status": "processing", "claimed_at": now}, synchronize_session=False)
            if updated:
                claimed_ids.append(job_id)
        db.commit()

        if not claimed_ids:
            return []
        jobs = db.query(SyncJob).filter(SyncJob.id.in_(claimed_ids)).all()
        order = {job_id: index for index, job_id in enumerate(claimed_ids)}
        return sorted(jobs, key=lambda job: order[job.id])

    def ack(self, db: Session, job: SyncJob, message: Optional[str] = None) -> None:
        """Mark a job as completed."""
        job.status = "completed"
        job.processed_at = self.clock()
        job.error_message = message
        job.error_type = None
        db.commit()

    def requeue(
        self,
        db: Session,
        job: SyncJob,
        delay_seconds: int,
        error_message: Optional[str] = None,
        error_type: Optional[str] = None
    ) -> SyncJob:
        """Return a job to the queue after a delay, counting one more attempt.

        Returns:
            The pending job, which is a newer job for the same subject when
            one was enqueued while this one was in flight.
        """
        return self._return_to_pending(db, job, {
            "attempts": (job.attempts or 0) + 1,
            "scheduled_at": self.clock() + timedelta(seconds=delay_seconds),
            "error_message": error_message[:MAX_ERROR_LENGTH] if error_message else None,
            "error_type": error_type,
        })

    def release(self, db: Session, job: SyncJob) -> SyncJob:
        """Return a claimed job untouched (no attempt is counted)."""
        return self._return_to_pending(db, job, {})

    def fail(self, db: Session, job: SyncJob, error_message: str, error_type: str) -> None:
        """Mark a job as permanently failed."""
        job.status = "failed"
        job.attempts = (job.attempts or 0) + 1
        job.error_message = error_message[:MAX_ERROR_LENGTH]
        job.error_type = error_type
        job.processed_at = self.clock()
        db.commit()

    def recover_stale(self, db: Session, older_than_seconds: Optional[int] = None) -> int:
        """Return jobs stuck in ``processing`` (crashed worker) to the queue.

        Returns:
            Number of jobs recovered.
        """
        cutoff = self.clock() - timedelta(seconds=older_than_seconds or settings.stale_job_seconds)
        stale = db.query(SyncJob).filter(
            SyncJob.status == "processing",
            or_(SyncJob.claimed_at.is_(None), SyncJob.claimed_at <= cutoff)
        ).order_by(SyncJob.id).all()
        for job in stale:
            self._return_to_pending(db, job, {})
        recovered = len(stale)
        if recovered:
            logger.warning(f"Recovered {recovered} stale processing job(s)")
        return recovered

    def cancel(self, db: Session, job_id: int) -> bool:
        """Delete a pending job. Returns False if not found or not pending."""
        deleted = db.query(SyncJob).filter(
            SyncJob.id == job_id,
            SyncJob.status == "pending"
        ).delete(synchronize_session=False)
        db.commit()
        return bool(deleted)

    def get_pending(self, db: Session, integration: str, entity_type: Optional[str] = None) -> List[SyncJob]:
        """Get pending jobs for an integration."""
        query = db.query(SyncJob).filter(
            SyncJob.status == "pending",
            SyncJob.integration == integration
        )
        if entity_type:
            query = query.filter(SyncJob.entity_type == entity_type)
        return query.order_by(SyncJob.id).all()

    def get_stats(self, db: Session) -> Dict[str, Any]:
        """Count jobs by status."""
        stats: Dict[str, Any] = {"pending": 0, "processing": 0, "completed": 0, "failed": 0}
        for status in stats:
            stats[status] = db.query(SyncJob).filter(SyncJob.status == status).count()
        stats["total"] = sum(stats.values())

        last_completed = db.query(SyncJob).filter(
            SyncJob.status == "completed"
        ).order_by(SyncJob.processed_at.desc()).first()
        stats["last_completed_at"] = (
            last_completed.processed_at.isoformat()
            if last_completed and last_completed.processed_at else None
        )
        return stats

    def list_jobs(self, db: Session, page: int = 1, per_page: int = 30, status: Optional[str] = None) -> Dict[str, Any]:
        """Page through jobs, newest first."""
        page = max(1, page)
        per_page = max(1, min(100, per_page))
        query = db.query(SyncJob)
        if status:
            query = query.filter(SyncJob.status == status)
        total = query.count()
        items = query.order_by(SyncJob.id.desc()).limit(per_page).offset((page - 1) * per_page).all()
        return {
            "items": items,
            "total": total,
            "page": page,
            "pages": max(1, math.ceil(total / per_page)),
        }

    def recent_failures(self, db: Session, limit: int = 20) -> List[SyncJob]:
        """Most recent permanently failed jobs, for the operator."""
        return db.query(SyncJob).filter(
            SyncJob.status == "failed"
        ).order_by(SyncJob.processed_at.desc(), SyncJob.id.desc()).limit(limit).all()

    def retry_failed(self, db: Session) -> int:
        """Reset every failed job to pending with a fresh retry budget.

        A failed job whose subject already has a pending job is merged into it.
        """
        failed = db.query(SyncJob).filter(SyncJob.status == "failed").order_by(SyncJob.id).all()
        for job in failed:
            self._return_to_pending(db, job, {
                "attempts": 0,
                "error_message": None,
                "error_type": None,
                "scheduled_at": self.clock(),
                "processed_at": None,
            })
        count = len(failed)
        logger.info(f"{count} failed job(s) reset to pending")
        return count

    def cleanup(self, db: Session, days_old: int = 7) -> int:
        """Delete completed and failed jobs processed more than ``days_old`` days ago."""
        cutoff = self.clock() - timedelta(days=max(1, days_old))
        deleted = db.query(SyncJob).filter(
            SyncJob.status.in_(("completed", "failed")),
            SyncJob.processed_at < cutoff
        ).delete(synchronize_session=False)
        db.commit()
        logger.info(f"Cleaned up {deleted} job(s) older than {days_old} days")
        return deleted

    @staticmethod
    def decode_payload(job: SyncJob) -> Dict[str, Any]:
        """Decode the JSON payload of a job (empty dict when absent or invalid)."""
        if not job.payload:
            return {}
        try:
            payload = json.loads(job.payload)
        except ValueError:
            logger.warning(f"Invalid payload JSON on job {job.id}")
            return {}
        return payload if isinstance(payload, dict) else {}

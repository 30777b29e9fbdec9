"""Sync queue API endpoints."""

import logging
from typing import Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from syncbridge.database.database import get_db
from syncbridge.dependencies import get_queue, get_registry
from syncbridge.models.sync_job import SyncJob
from syncbridge.modules.registry import ModuleRegistry
from syncbridge.services.queue_service import QueueService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/queue", tags=["queue"])


class JobResponse(BaseModel):
    """Sync job response."""

    id: int
    integration: str
    direction: str
    entity_type: str
    action: str
    local_id: Optional[int] = None
    remote_id: Optional[int] = None
    priority: int
    status: str
    attempts: int
    max_attempts: int
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    scheduled_at: Optional[str] = None
    created_at: Optional[str] = None
    processed_at: Optional[str] = None


class JobListResponse(BaseModel):
    """Paginated job list."""

    items: List[JobResponse]
    total: int
    page: int
    pages: int


class QueueStatsResponse(BaseModel):
    """Queue counters."""

    pending: int
    processing: int
    completed: int
    failed: int
    total: int
    last_completed_at: Optional[str] = None


class EnqueueRequest(BaseModel):
    """Manual enqueue request."""

    integration: str
    entity_type: str
    action: str
    direction: str = "push"
    local_id: Optional[int] = None
    remote_id: Optional[int] = None
    payload: Optional[Dict[str, Any]] = None
    priority: int = 5


class CountResponse(BaseModel):
    """Number of affected jobs."""

    count: int


def job_to_response(job: SyncJob) -> JobResponse:
    return JobResponse(
        id=job.id,
        integration=job.integration,
        direction=job.direction,
        entity_type=job.entity_type,
        action=job.action,
        local_id=job.local_id,
        remote_id=job.remote_id,
        priority=job.priority,
        status=job.status,
        attempts=job.attempts,
        max_attempts=job.max_attempts,
        error_message=job.error_message,
        error_type=job.error_type,
        scheduled_at=job.scheduled_at.isoformat() if job.scheduled_at else None,
        created_at=job.created_at.isoformat() if job.created_at else None,
        processed_at=job.processed_at.isoformat() if job.processed_at else None
    )


@router.get("/stats", response_model=QueueStatsResponse)
async def get_queue_stats(
    db: Session = Depends(get_db),
    queue: QueueService = Depends(get_queue)
):
    """Get job counts by status."""
    try:
        return QueueStatsResponse(**queue.get_stats(db))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get queue stats: {str(e)}")


@router.get("/jobs", response_model=JobListResponse)
async def list_jobs(
    page: int = 1,
    per_page: int = 30,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
    queue: QueueService = Depends(get_queue)
):
    """Page through jobs, newest first, optionally filtered by status."""
    try:
        result = queue.list_jobs(db, page=page, per_page=per_page, status=status)
        return JobListResponse(
            items=[job_to_response(job) for job in result["items"]],
            total=result["total"],
            page=result["page"],
            pages=result["pages"]
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to list jobs: {str(e)}")


@router.get("/failures", response_model=List[JobResponse])
async def list_failures(
    limit: int = 20,
    db: Session = Depends(get_db),
    queue: QueueService = Depends(get_queue)
):
    """Most recent permanently failed jobs."""
    try:
        return [job_to_response(job) for job in queue.recent_failures(db, limit=limit)]
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to list failures: {str(e)}")


@router.post("/retry", response_model=CountResponse)
async def retry_failed(
    db: Session = Depends(get_db),
    queue: QueueService = Depends(get_queue)
):
    """Reset failed jobs to pending."""
    try:
        return CountResponse(count=queue.retry_failed(db))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to retry jobs: {str(e)}")


@router.post("/cleanup", response_model=CountResponse)
async def cleanup_jobs(
    days: int = 7,
    db: Session = Depends(get_db),
    queue: QueueService = Depends(get_queue)
):
    """Delete completed and failed jobs older than ``days``."""
    try:
        return CountResponse(count=queue.cleanup(db, days_old=days))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to clean up jobs: {str(e)}")


@router.delete("/jobs/{job_id}", status_code=204)
async def cancel_job(
    job_id: int,
    db: Session = Depends(get_db),
    queue: QueueService = Depends(get_queue)
):
    """Cancel a pending job."""
    if not queue.cancel(db, job_id):
        raise HTTPException(status_code=404, detail=f"Pending job {job_id} not found")


@router.post("/enqueue", response_model=JobResponse, status_code=201)
async def enqueue_job(
    request: EnqueueRequest,
    db: Session = Depends(get_db),
    queue: QueueService = Depends(get_queue),
    registry: ModuleRegistry = Depends(get_registry)
):
    """Manually enqueue a job for a registered integration."""
    if registry.get(request.integration) is None:
        raise HTTPException(status_code=404, detail=f"Integration '{request.integration}' not registered")
    try:
        job = queue.enqueue(
            db,
            request.integration,
            request.entity_type,
            request.action,
            local_id=request.local_id,
            remote_id=request.remote_id,
            payload=request.payload,
            direction=request.direction,
            priority=request.priority
        )
        return job_to_response(job)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to enqueue job: {str(e)}")

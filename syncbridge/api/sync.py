"""Sync control API endpoints."""

import logging
from typing import Dict, Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from syncbridge.database.database import get_db
from syncbridge.dependencies import get_circuit_breaker, get_engine, get_poller
from syncbridge.services.circuit_breaker import CircuitBreaker
from syncbridge.services.poller import Poller
from syncbridge.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class RunResponse(BaseModel):
    """Queue run response."""

    succeeded: int


class PollResponse(BaseModel):
    """Poll response: counts per integration and entity type."""

    results: Dict[str, Dict[str, Dict[str, int]]]


class CircuitResponse(BaseModel):
    """Circuit breaker state."""

    name: str
    state: str
    consecutive_failures: int
    opened_at: Optional[str] = None
    probe_in_flight: bool


@router.post("/run", response_model=RunResponse)
async def run_queue(
    db: Session = Depends(get_db),
    engine: SyncEngine = Depends(get_engine)
):
    """Process one batch of due jobs now."""
    try:
        return RunResponse(succeeded=await engine.process_queue(db))
    except Exception as e:
        logger.error(f"Manual queue run failed: {e}")
        raise HTTPException(status_code=500, detail=f"Queue run failed: {str(e)}")


@router.post("/poll", response_model=PollResponse)
async def run_poll(
    integration: Optional[str] = None,
    db: Session = Depends(get_db),
    poller: Poller = Depends(get_poller)
):
    """Poll one integration (or all) for local changes."""
    try:
        return PollResponse(results=poller.poll(db, integration))
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Poll failed: {str(e)}")


@router.get("/circuit", response_model=CircuitResponse)
async def get_circuit(
    db: Session = Depends(get_db),
    circuit_breaker: CircuitBreaker = Depends(get_circuit_breaker)
):
    """Get the Odoo circuit breaker state."""
    try:
        return CircuitResponse(**circuit_breaker.get_state(db))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get circuit state: {str(e)}")

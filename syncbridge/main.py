"""Main FastAPI application entry point."""

from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Dict, List, Optional

from syncbridge.config import settings
from syncbridge.database.database import init_db, get_db
from syncbridge.api.queue import router as queue_router
from syncbridge.api.sync import router as sync_router
from syncbridge.api.mappings import router as mappings_router
from syncbridge.dependencies import (
    get_circuit_breaker,
    get_client_factory,
    get_entity_map,
    get_queue,
    get_registry,
    get_scheduler,
)
from syncbridge.modules.registry import ModuleRegistry
from syncbridge.services.circuit_breaker import CircuitBreaker
from syncbridge.services.encryption_service import EncryptionService
from syncbridge.services.entity_map_service import EntityMapService
from syncbridge.services.queue_service import QueueService

app = FastAPI(
    title="SyncBridge",
    description="Queue-based bidirectional synchronization with Odoo",
    version="0.1.0",
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(queue_router)
app.include_router(sync_router)
app.include_router(mappings_router)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    database: str
    circuit: str
    odoo: Optional[str] = None
    message: Optional[str] = None


class StatsResponse(BaseModel):
    """System statistics response."""

    integrations: List[str]
    queue: Dict[str, Optional[int]]
    mappings_count: int
    circuit_state: str
    last_completed_at: Optional[str] = None


@app.on_event("startup")
async def startup_event():
    """Initialize database and start the scheduler."""
    # Fail fast on a bad encryption key rather than on the first batch
    if settings.odoo_api_key_encrypted:
        EncryptionService()
    init_db()
    if settings.scheduler_enabled:
        get_scheduler().start()


@app.on_event("shutdown")
async def shutdown_event():
    await get_scheduler().stop()


@app.get("/")
async def root():
    return {"message": "SyncBridge API", "version": "0.1.0"}


@app.get("/api/health", response_model=HealthResponse)
async def health_check(
    check_odoo: bool = False,
    db: Session = Depends(get_db),
    circuit_breaker: CircuitBreaker = Depends(get_circuit_breaker),
    client_factory=Depends(get_client_factory)
):
    """Health check endpoint.

    Checks database connectivity and reports the Odoo circuit state. An open
    circuit marks the service as degraded. With ``check_odoo=true`` the Odoo
    credentials are also tried, and a failed login marks it degraded too.
    """
    health_status = {
        "status": "healthy",
        "database": "connected",
        "circuit": "unknown"
    }

    try:
        db.execute(text("SELECT 1"))
        health_status["circuit"] = circuit_breaker.get_state(db)["state"]
        if health_status["circuit"] != "closed":
            health_status["status"] = "degraded"
            health_status["message"] = "Odoo circuit breaker is not closed"
    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["database"] = "disconnected"
        health_status["message"] = str(e)
        return HealthResponse(**health_status)

    if check_odoo:
        try:
            async with client_factory() as client:
                reachable = await client.health_check()
        except Exception as e:
            reachable = False
            health_status["message"] = f"Odoo client could not be opened: {e}"
        health_status["odoo"] = "reachable" if reachable else "unreachable"
        if not reachable:
            health_status["status"] = "degraded"
            health_status.setdefault("message", "Odoo rejected the health check")

    return HealthResponse(**health_status)


@app.get("/api/stats", response_model=StatsResponse)
async def get_stats(
    db: Session = Depends(get_db),
    registry: ModuleRegistry = Depends(get_registry),
    queue: QueueService = Depends(get_queue),
    entity_map: EntityMapService = Depends(get_entity_map),
    circuit_breaker: CircuitBreaker = Depends(get_circuit_breaker)
):
    """Get system statistics: integrations, queue counts, mappings and circuit state."""
    try:
        queue_stats = queue.get_stats(db)
        last_completed_at = queue_stats.pop("last_completed_at")
        return StatsResponse(
            integrations=registry.ids(),
            queue=queue_stats,
            mappings_count=entity_map.count(db),
            circuit_state=circuit_breaker.get_state(db)["state"],
            last_completed_at=last_completed_at
        )

    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get stats: {str(e)}")

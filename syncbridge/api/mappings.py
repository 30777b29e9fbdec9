"""Entity map API endpoints."""

import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from syncbridge.database.database import get_db
from syncbridge.dependencies import get_client_factory, get_entity_map, get_reconciler
from syncbridge.services.entity_map_service import EntityMapService
from syncbridge.services.reconciler import Reconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mappings", tags=["mappings"])


class MappingResponse(BaseModel):
    """Entity mapping response."""

    local_id: int
    remote_id: int
    remote_model: Optional[str] = None
    sync_hash: Optional[str] = None


class OrphanResponse(BaseModel):
    """Mapping whose Odoo record is gone."""

    local_id: int
    remote_id: int


class ReconcileResponse(BaseModel):
    """Reconciliation report."""

    checked: int
    orphaned: List[OrphanResponse]
    fixed: int


@router.get("/{integration}/{entity_type}", response_model=List[MappingResponse])
async def list_mappings(
    integration: str,
    entity_type: str,
    db: Session = Depends(get_db),
    entity_map: EntityMapService = Depends(get_entity_map)
):
    """List every mapping of an entity type."""
    try:
        mappings = entity_map.get_all_for_entity_type(db, integration, entity_type)
        return [
            MappingResponse(
                local_id=local_id,
                remote_id=mapping["remote_id"],
                remote_model=mapping["remote_model"],
                sync_hash=mapping["sync_hash"]
            )
            for local_id, mapping in sorted(mappings.items())
        ]
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to list mappings: {str(e)}")


@router.post("/{integration}/{entity_type}/reconcile", response_model=ReconcileResponse)
async def reconcile_mappings(
    integration: str,
    entity_type: str,
    fix: bool = False,
    db: Session = Depends(get_db),
    reconciler: Reconciler = Depends(get_reconciler),
    client_factory=Depends(get_client_factory)
):
    """Find (and with ``fix=true`` remove) mappings whose Odoo record is gone."""
    try:
        async with client_factory() as client:
            result = await reconciler.reconcile(db, client, integration, entity_type, fix=fix)
        return ReconcileResponse(**result)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Reconciliation failed: {str(e)}")

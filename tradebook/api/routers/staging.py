"""
Read-only views of the caller's staged orders.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from tradebook.api.schemas.ingest import StagedOrdersResponse, StagingStatusResponse
from tradebook.core.security import User, get_current_user
from tradebook.db.session import get_db
from tradebook.domain.ingest import staging

router = APIRouter(prefix="/staging", tags=["staging"])


@router.get("/orders", response_model=StagedOrdersResponse)
async def list_staged_orders(
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    status: Optional[str] = Query(None, description="Filter by migration status"),
    format_id: Optional[str] = Query(None, alias="formatId"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """List orders waiting on (or resolved by) format approval."""
    page = staging.get_staged_orders(
        db,
        current_user.id,
        limit=limit,
        offset=offset,
        migration_status=status.upper() if status else None,
        broker_csv_format_id=format_id,
    )
    return StagedOrdersResponse.model_validate(page)


@router.get("/status", response_model=StagingStatusResponse)
async def staging_status(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return StagingStatusResponse.model_validate(staging.get_staging_status(db, current_user.id))

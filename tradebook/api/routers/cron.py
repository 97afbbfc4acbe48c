"""
Scheduled maintenance endpoints, called by the platform cron with CRON_SECRET.
"""
import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tradebook.api.dependencies import require_cron_secret
from tradebook.api.schemas.ingest import CleanupResponse, CleanupStatusResponse
from tradebook.db.session import get_db
from tradebook.domain.ingest import monitor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(require_cron_secret)])


@router.post("/cleanup-staging", response_model=CleanupResponse)
async def cleanup_staging(db: Session = Depends(get_db)):
    """
    Delete expired staged orders and old monitoring records.

    Always answers 200 with the run report; failures of either half are listed
    in ``errors``.
    """
    report = monitor.run_staging_cleanup(db)
    return CleanupResponse.model_validate(asdict(report))


@router.get("/cleanup-staging", response_model=CleanupStatusResponse)
async def cleanup_staging_status(db: Session = Depends(get_db)):
    """Current staging health plus the recent cleanup runs."""
    history = monitor.get_cleanup_history(db)
    return CleanupStatusResponse(
        health_metrics=asdict(monitor.get_health_metrics(db)),
        cleanup_stats=history["cleanup_stats"],
        recent_runs=history["recent_runs"],
    )

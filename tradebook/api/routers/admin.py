"""
Admin endpoints for the broker format review queue.
"""
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from tradebook.api.schemas.ingest import (
    AiReview,
    AiReviewsResponse,
    ApproveFormatRequest,
    ApproveFormatResponse,
    FeedbackItem,
    PendingFormat,
    PendingFormatsResponse,
    RejectFormatRequest,
    RejectFormatResponse,
    StagingStatsResponse,
)
from tradebook.core.security import User, require_admin
from tradebook.db.models import AiIngestFeedbackItem, AiIngestToCheck
from tradebook.db.session import get_db
from tradebook.domain.ingest import monitor, staging
from tradebook.domain.ingest.approval import approve_format_and_migrate, reject_format
from tradebook.domain.ingest.broker_formats import get_format_stats, list_pending_formats

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/formats/pending", response_model=PendingFormatsResponse)
async def pending_formats(
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Unapproved broker formats, oldest first, with their staged order counts."""
    return PendingFormatsResponse(
        formats=[PendingFormat.model_validate(item) for item in list_pending_formats(db)],
        stats=get_format_stats(db),
    )


@router.post("/formats/{format_id}/approve", response_model=ApproveFormatResponse)
async def approve_format(
    format_id: str,
    request: Optional[ApproveFormatRequest] = None,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """Approve a format and migrate its staged orders into live orders."""
    logger.info("Admin %s approving format %s", current_user.id, format_id)
    result = approve_format_and_migrate(
        db,
        format_id,
        current_user.id,
        corrected_mappings=request.corrected_mappings if request else None,
    )
    return ApproveFormatResponse.model_validate(asdict(result))


@router.post("/formats/{format_id}/reject", response_model=RejectFormatResponse)
async def reject_format_endpoint(
    format_id: str,
    request: RejectFormatRequest,
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    logger.info("Admin %s rejecting format %s", current_user.id, format_id)
    result = reject_format(db, format_id, current_user.id, request.reason)
    return RejectFormatResponse.model_validate(asdict(result))


@router.get("/staging/stats", response_model=StagingStatsResponse)
async def staging_stats(
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    stats = staging.get_admin_staging_stats(db)
    return StagingStatsResponse(**stats, health=asdict(monitor.get_health_metrics(db)))


@router.get("/ai-reviews", response_model=AiReviewsResponse)
async def ai_reviews(
    status: Optional[str] = Query(None, description="Filter by admin review status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """AI mapping sessions with their per-header feedback, newest first."""
    query = db.query(AiIngestToCheck)
    if status:
        query = query.filter(AiIngestToCheck.admin_review_status == status.upper())
    total = query.count()
    checks = query.order_by(AiIngestToCheck.created_at.desc()).offset(offset).limit(limit).all()

    items_by_check = {}
    if checks:
        for item in (
            db.query(AiIngestFeedbackItem)
            .filter(AiIngestFeedbackItem.ai_ingest_check_id.in_([check.id for check in checks]))
            .order_by(AiIngestFeedbackItem.created_at.asc())
            .all()
        ):
            items_by_check.setdefault(item.ai_ingest_check_id, []).append(FeedbackItem.model_validate(item))

    reviews = []
    for check in checks:
        review = AiReview.model_validate(check)
        review.feedback_items = items_by_check.get(check.id, [])
        reviews.append(review)
    return AiReviewsResponse(reviews=reviews, total=total)

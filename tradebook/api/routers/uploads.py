"""
Upload session endpoints.
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from tradebook.api.dependencies import get_upload_limiter
from tradebook.api.schemas.ingest import CompleteSessionRequest, CompleteSessionResponse
from tradebook.core.security import User, get_current_user
from tradebook.db.session import get_db
from tradebook.domain.ingest.quota import UploadLimiter
from tradebook.domain.ingest.sessions import complete_session

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])


@router.post("/complete-session", response_model=CompleteSessionResponse)
async def complete_upload_session(
    request: CompleteSessionRequest,
    current_user: User = Depends(get_current_user),
    limiter: UploadLimiter = Depends(get_upload_limiter),
    db: Session = Depends(get_db),
):
    """
    Close an upload session whose remaining chunks will never arrive.

    The upload counts against the daily quota only if this call is the one
    that completes the session.
    """
    completion = complete_session(db, current_user.id, request.upload_session_id)
    if completion.newly_completed:
        try:
            limiter.increment_upload_count(db, current_user)
        except Exception as exc:
            db.rollback()
            logger.error("Failed to increment upload count for user %s: %s", current_user.id, exc)

    return CompleteSessionResponse(
        session_id=completion.session_id,
        batch_count=completion.batch_count,
        total_orders=completion.completed_row_count,
        was_already_complete=completion.was_already_complete,
        upload_counted=completion.newly_completed,
    )

"""
CSV upload and mapping finalization endpoints.
"""
import logging
from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.orm import Session

from tradebook.api.dependencies import get_mapping_finalizer, require_upload_capacity
from tradebook.api.schemas.ingest import (
    FinalizeMappingsBody,
    FinalizeMappingsResponse,
    RateLimitInfo,
    UploadResponse,
)
from tradebook.core.security import User, get_current_user
from tradebook.db.session import get_db
from tradebook.domain.ingest.finalization import FinalizeMappingsRequest, MappingFinalizer
from tradebook.domain.ingest.inference import MappingInference, get_mapping_inference
from tradebook.domain.ingest.intake import ingest_upload
from tradebook.domain.ingest.quota import RateLimitStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/csv", tags=["csv"])


@router.post("/upload", response_model=UploadResponse)
async def upload_csv(
    file: UploadFile = File(...),
    broker_name: Optional[str] = Form(None),
    expected_row_count: Optional[int] = Form(None),
    current_user: User = Depends(get_current_user),
    quota: RateLimitStatus = Depends(require_upload_capacity),
    inference: MappingInference = Depends(get_mapping_inference),
    db: Session = Depends(get_db),
):
    """
    Upload a broker CSV export (or one chunk of it) for mapping review.

    Returns the proposed column mappings and the batch id to pass to
    ``/csv/finalize-mappings``.
    """
    content = await file.read()
    result = ingest_upload(
        db,
        user_id=current_user.id,
        filename=file.filename or "",
        content=content,
        inference=inference,
        broker_name=broker_name,
        declared_total=expected_row_count,
    )
    return UploadResponse(
        **asdict(result),
        rate_limit=RateLimitInfo(
            remaining=quota.remaining,
            limit=quota.limit,
            reset_at=quota.reset_at,
            is_unlimited=quota.is_unlimited,
        ),
    )


@router.post("/finalize-mappings", response_model=FinalizeMappingsResponse)
async def finalize_mappings(
    body: FinalizeMappingsBody,
    current_user: User = Depends(get_current_user),
    finalizer: MappingFinalizer = Depends(get_mapping_finalizer),
    db: Session = Depends(get_db),
):
    """
    Approve, correct, cancel or report the AI-proposed mappings of a pending batch.
    """
    logger.info(
        "Finalizing batch %s for user %s (approved=%s, corrections=%d, report_error=%s)",
        body.import_batch_id,
        current_user.id,
        body.user_approved,
        len(body.corrected_mappings or {}),
        body.report_error,
    )
    result = finalizer.finalize(
        db,
        current_user.id,
        FinalizeMappingsRequest(
            import_batch_id=body.import_batch_id,
            corrected_mappings=body.corrected_mappings,
            user_approved=body.user_approved,
            report_error=body.report_error,
        ),
    )
    return FinalizeMappingsResponse.model_validate(asdict(result))

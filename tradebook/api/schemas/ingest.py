from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Wire models use camelCase keys; Python code uses snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ErrorResponse(CamelModel):
    error: str
    details: Optional[Any] = None


class RateLimitInfo(CamelModel):
    remaining: int
    limit: int
    reset_at: datetime
    is_unlimited: bool = False


class DetectedFormatInfo(CamelModel):
    format_id: str
    format_name: str
    broker_name: Optional[str] = None
    confidence: float
    is_exact_match: bool
    is_approved: bool


class UploadResponse(CamelModel):
    success: bool = True
    import_batch_id: str
    upload_session_id: str
    session_is_new: bool
    filename: str
    headers: List[str]
    row_count: int
    broker_name: str
    ai_mappings: Dict[str, Dict[str, Any]]
    overall_confidence: float
    metadata_fields: List[str] = Field(default_factory=list)
    unmapped_fields: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    detected_format: Optional[DetectedFormatInfo] = None
    requires_user_review: bool = True
    rate_limit: Optional[RateLimitInfo] = None


class FinalizeMappingsBody(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    import_batch_id: str
    corrected_mappings: Optional[Dict[str, str]] = None
    user_approved: bool = True
    report_error: bool = False

    @field_validator("import_batch_id")
    @classmethod
    def batch_id_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("importBatchId must not be blank")
        return v.strip()


class SessionProgressInfo(CamelModel):
    completed: int
    expected: int


class FinalizeMappingsResponse(CamelModel):
    success: bool
    import_batch_id: str
    message: Optional[str] = None
    success_count: int = 0
    error_count: int = 0
    errors: List[str] = Field(default_factory=list)
    broker_format_created: Optional[str] = None
    format_reused: bool = False
    requires_approval: bool = False
    ai_ingest_check_id: Optional[str] = None
    session_complete: bool = False
    session_progress: Optional[SessionProgressInfo] = None


class StagedOrder(CamelModel):
    id: str
    import_batch_id: str
    broker_csv_format_id: str
    format_name: Optional[str] = None
    broker_name: Optional[str] = None
    row_index: int
    migration_status: str
    initial_mapped_data: Optional[Dict[str, Any]] = None
    validation_errors: Optional[List[str]] = None
    created_at: Optional[datetime] = None


class StagedOrdersResponse(CamelModel):
    orders: List[StagedOrder]
    total: int
    has_more: bool


class StagingStatusResponse(CamelModel):
    pending_count: int
    total_staged: int
    formats_pending_approval: int


class CompleteSessionRequest(CamelModel):
    upload_session_id: str


class CompleteSessionResponse(CamelModel):
    success: bool = True
    session_id: str
    batch_count: int
    total_orders: int
    was_already_complete: bool
    upload_counted: bool


class PendingFormat(CamelModel):
    id: str
    format_name: str
    broker_name: str
    headers: List[str]
    field_mappings: Dict[str, Any]
    confidence: float
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None
    pending_order_count: int = 0


class PendingFormatsResponse(CamelModel):
    formats: List[PendingFormat]
    stats: Dict[str, int]


class ApproveFormatRequest(CamelModel):
    corrected_mappings: Optional[Dict[str, str]] = None


class ApproveFormatResponse(CamelModel):
    success: bool = True
    format_id: str
    format_name: str
    migrated_count: int
    failed_count: int
    errors: List[str] = Field(default_factory=list)
    affected_batches: List[str] = Field(default_factory=list)
    duration: float = 0.0


class RejectFormatRequest(CamelModel):
    reason: str = Field(min_length=1, max_length=1000)


class RejectFormatResponse(CamelModel):
    success: bool = True
    format_id: str
    rejected_count: int
    affected_batches: List[str] = Field(default_factory=list)


class FormatPendingCount(CamelModel):
    format_id: str
    pending_count: int


class StagingStatsResponse(CamelModel):
    total_pending: int
    formats_pending_approval: int
    format_details: List[FormatPendingCount] = Field(default_factory=list)
    oldest_pending_date: Optional[datetime] = None
    health: Dict[str, Any] = Field(default_factory=dict)


class FeedbackItem(CamelModel):
    csv_header: str
    ai_mapping: str
    suggested_mapping: str
    issue_type: str
    confidence: float
    is_correct: bool
    comment: Optional[str] = None


class AiReview(CamelModel):
    id: str
    user_id: str
    import_batch_id: str
    broker_csv_format_id: str
    processing_status: str
    admin_review_status: str
    ai_confidence: float
    order_ids: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    feedback_items: List[FeedbackItem] = Field(default_factory=list)


class AiReviewsResponse(CamelModel):
    reviews: List[AiReview]
    total: int


class CleanupResponse(CamelModel):
    success: bool
    duration: float
    total_deleted: int
    errors: List[str] = Field(default_factory=list)
    health_metrics: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime


class CleanupStatusResponse(CamelModel):
    health_metrics: Dict[str, Any]
    cleanup_stats: Dict[str, Any]
    recent_runs: List[Dict[str, Any]] = Field(default_factory=list)

"""
ORM models for the CSV ingestion pipeline.

All tables hang off the shared declarative ``Base`` so ``create_all`` at
startup (and in tests) builds the whole schema. Identifiers are UUID strings.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from tradebook.db.session import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from backends that drop tzinfo."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ImportStatus:
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SessionStatus:
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class UploadStatus:
    UPLOADED = "UPLOADED"
    PARSING = "PARSING"
    VALIDATED = "VALIDATED"
    MAPPED = "MAPPED"
    IMPORTED = "IMPORTED"
    FAILED = "FAILED"


class ParseMethod:
    STANDARD = "STANDARD"
    AI_MAPPED = "AI_MAPPED"
    USER_CORRECTED = "USER_CORRECTED"


class MigrationStatus:
    PENDING = "PENDING"
    MIGRATED = "MIGRATED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"

    TERMINAL = (MIGRATED, REJECTED, FAILED)


class ReviewStatus:
    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    APPROVED = "APPROVED"
    CORRECTED = "CORRECTED"
    DISMISSED = "DISMISSED"


class ImportBatch(Base):
    __tablename__ = "import_batches"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    filename = Column(String(255), nullable=False)
    file_size = Column(Integer, nullable=True)
    broker_type = Column(String(100), nullable=True)
    import_type = Column(String(30), nullable=False, default="CUSTOM")
    status = Column(String(20), nullable=False, default=ImportStatus.PENDING, index=True)
    total_records = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=True)
    ai_mapping_used = Column(Boolean, nullable=False, default=False)
    mapping_confidence = Column(Float, nullable=True)
    column_mappings = Column(JSON, nullable=True)
    temp_file_content = Column(Text, nullable=True)
    user_review_required = Column(Boolean, nullable=False, default=False)
    broker_csv_format_id = Column(String(36), ForeignKey("broker_csv_formats.id"), nullable=True)

    # Session aggregate lives on the batch that opened the session (id == upload_session_id).
    upload_session_id = Column(String(36), nullable=True, index=True)
    expected_row_count = Column(Integer, nullable=True)
    completed_row_count = Column(Integer, nullable=False, default=0)
    is_session_complete = Column(Boolean, nullable=False, default=False)
    session_attempts = Column(Integer, nullable=False, default=0)
    session_status = Column(String(20), nullable=True)

    finalized_at = Column(DateTime(timezone=True), nullable=True)
    processing_completed = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_import_batches_user_filename", "user_id", "filename"),
    )


class Broker(Base):
    __tablename__ = "brokers"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(100), nullable=False)
    name_key = Column(String(100), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class BrokerCsvFormat(Base):
    __tablename__ = "broker_csv_formats"

    id = Column(String(36), primary_key=True, default=_uuid)
    broker_id = Column(String(36), ForeignKey("brokers.id"), nullable=False)
    format_name = Column(String(150), nullable=False)
    description = Column(Text, nullable=True)
    header_fingerprint = Column(String(64), nullable=False)
    headers = Column(JSON, nullable=False)
    sample_data = Column(JSON, nullable=True)
    field_mappings = Column(JSON, nullable=False)
    confidence = Column(Float, nullable=False, default=0.0)
    is_approved = Column(Boolean, nullable=False, default=False)
    approved_by = Column(String(36), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=1.0)
    last_used = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("broker_id", "format_name", name="uq_broker_format_name"),
        Index("ix_broker_formats_fingerprint", "broker_id", "header_fingerprint"),
    )


class CsvUploadLog(Base):
    __tablename__ = "csv_upload_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    filename = Column(String(255), nullable=False)
    original_headers = Column(JSON, nullable=False)
    row_count = Column(Integer, nullable=False, default=0)
    upload_status = Column(String(20), nullable=False, default=UploadStatus.UPLOADED)
    parse_method = Column(String(20), nullable=False, default=ParseMethod.STANDARD)
    error_message = Column(Text, nullable=True)
    import_batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class AiIngestToCheck(Base):
    __tablename__ = "ai_ingest_checks"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    broker_csv_format_id = Column(String(36), ForeignKey("broker_csv_formats.id"), nullable=False)
    csv_upload_log_id = Column(String(36), ForeignKey("csv_upload_logs.id"), nullable=False)
    import_batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=False, unique=True)
    processing_status = Column(String(20), nullable=False, default=ImportStatus.PENDING)
    admin_review_status = Column(String(20), nullable=False, default=ReviewStatus.PENDING, index=True)
    order_ids = Column(JSON, nullable=False, default=list)
    ai_confidence = Column(Float, nullable=False, default=0.0)
    user_indicated_error = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    admin_notes = Column(Text, nullable=True)
    admin_reviewed_by = Column(String(36), nullable=True)
    admin_reviewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class AiIngestFeedbackItem(Base):
    __tablename__ = "ai_ingest_feedback_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    ai_ingest_check_id = Column(String(36), ForeignKey("ai_ingest_checks.id"), nullable=False, index=True)
    csv_header = Column(String(255), nullable=False)
    ai_mapping = Column(String(100), nullable=False)
    suggested_mapping = Column(String(100), nullable=False)
    issue_type = Column(String(50), nullable=False)
    confidence = Column(Float, nullable=False)
    is_correct = Column(Boolean, nullable=False)
    original_value = Column(JSON, nullable=True)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class OrderStaging(Base):
    __tablename__ = "order_staging"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    import_batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=False, index=True)
    broker_csv_format_id = Column(String(36), ForeignKey("broker_csv_formats.id"), nullable=False, index=True)
    raw_csv_row = Column(JSON, nullable=False)
    row_index = Column(Integer, nullable=False)
    initial_mapped_data = Column(JSON, nullable=True)
    migration_status = Column(String(20), nullable=False, default=MigrationStatus.PENDING, index=True)
    validation_errors = Column(JSON, nullable=True)
    retention_date = Column(DateTime(timezone=True), nullable=False)
    migrated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("import_batch_id", "row_index", name="uq_staging_batch_row"),
    )


class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    import_batch_id = Column(String(36), ForeignKey("import_batches.id"), nullable=True, index=True)
    broker_id = Column(String(36), ForeignKey("brokers.id"), nullable=True)
    order_id = Column(String(100), nullable=True)
    parent_order_id = Column(String(100), nullable=True)
    symbol = Column(String(21), nullable=False, index=True)
    side = Column(String(4), nullable=False)
    order_type = Column(String(20), nullable=False, default="MARKET")
    order_status = Column(String(20), nullable=False, default="FILLED")
    order_quantity = Column(Integer, nullable=False)
    limit_price = Column(Float, nullable=True)
    stop_price = Column(Float, nullable=True)
    time_in_force = Column(String(10), nullable=True)
    order_placed_time = Column(DateTime(timezone=True), nullable=False)
    order_executed_time = Column(DateTime(timezone=True), nullable=True)
    account_id = Column(String(100), nullable=True)
    broker_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class DailyUploadCount(Base):
    __tablename__ = "daily_upload_counts"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    date = Column(Date, nullable=False)
    count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_daily_upload_user_date"),
    )


class StagingAuditLog(Base):
    __tablename__ = "staging_audit_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    staging_id = Column(String(100), nullable=False)
    action = Column(String(50), nullable=False, index=True)
    performed_by = Column(String(36), nullable=False, default="system")
    previous_state = Column(JSON, nullable=True)
    new_state = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

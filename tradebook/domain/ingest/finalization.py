"""
Mapping finalization.

The user has reviewed the column mappings proposed at upload time and either
approves them (optionally with corrections), cancels, or reports the proposal
as wrong. Approval turns the held CSV into a broker format plus staged orders
(or live orders when the format is already approved) inside one bounded
transaction; usage statistics, metrics and the upload quota are updated
afterwards and never fail the request.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from tradebook.core.security import User
from tradebook.db.models import (
    AiIngestFeedbackItem,
    AiIngestToCheck,
    CsvUploadLog,
    ImportBatch,
    ImportStatus,
    ParseMethod,
    UploadStatus,
    utcnow,
)
from tradebook.db.session import transaction_scope
from tradebook.domain.ingest import monitor
from tradebook.domain.ingest.broker_formats import (
    FormatCreate,
    create_format,
    find_or_create_broker,
    find_reusable_format,
    generate_format_name,
    update_format_usage,
)
from tradebook.domain.ingest.errors import (
    ExpiredUploadError,
    ImportBatchNotFoundError,
    InvalidBatchStateError,
    InvalidCorrectionError,
    NoPendingMappingsError,
    OrphanedUploadLogError,
)
from tradebook.domain.ingest.mappings import (
    BROKER_METADATA,
    HIGH_CONFIDENCE,
    MEDIUM_CONFIDENCE,
    VALID_TARGET_FIELDS,
    FieldMapping,
    PendingReview,
    calculate_overall_confidence,
    mappings_to_json,
)
from tradebook.domain.ingest.orders import create_orders
from tradebook.domain.ingest.parser import parse_csv, sample_rows
from tradebook.domain.ingest.quota import UploadLimiter
from tradebook.domain.ingest.sessions import SessionProgress, record_session_attempt, record_session_progress
from tradebook.domain.ingest.staging import MAX_STORED_ERRORS, stage_orders

logger = logging.getLogger(__name__)

REPORTED_ERROR_NOTE = "User reported error with AI-generated mappings"
CANCELLED_NOTE = "User cancelled import during mapping review"
ORPHANED_LOG_NOTE = "Upload log not found for this import"


@dataclass
class FinalizeMappingsRequest:
    import_batch_id: str
    corrected_mappings: Optional[Dict[str, str]] = None
    user_approved: bool = True
    report_error: bool = False


@dataclass
class FinalizationResult:
    success: bool
    import_batch_id: str
    message: Optional[str] = None
    success_count: int = 0
    error_count: int = 0
    errors: List[str] = field(default_factory=list)
    broker_format_created: Optional[str] = None
    format_reused: bool = False
    requires_approval: bool = False
    ai_ingest_check_id: Optional[str] = None
    session_complete: bool = False
    session_progress: Optional[Dict[str, int]] = None


def validate_corrections(corrections: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Corrections must target a known order field or brokerMetadata."""
    if not corrections:
        return {}
    invalid = {header: target for header, target in corrections.items() if target not in VALID_TARGET_FIELDS}
    if invalid:
        raise InvalidCorrectionError(
            "Corrected mappings reference unknown fields",
            details={"invalid": invalid, "allowed": sorted(VALID_TARGET_FIELDS)},
        )
    return dict(corrections)


def merge_corrections(
    ai_mappings: Mapping[str, FieldMapping], corrections: Mapping[str, str]
) -> Dict[str, FieldMapping]:
    """Apply user corrections on top of the AI proposal; corrected headers get confidence 1.0."""
    final = dict(ai_mappings)
    for header, target in corrections.items():
        original = final.get(header)
        if original is None:
            logger.warning("Ignoring correction for unknown header '%s'", header)
            continue
        final[header] = original.model_copy(update={"field": target, "confidence": 1.0, "user_corrected": True})
    return final


def classify_feedback(mapping: FieldMapping, corrected_to: Optional[str]) -> str:
    if corrected_to is not None:
        if mapping.confidence < MEDIUM_CONFIDENCE:
            return "low_confidence_corrected"
        if corrected_to == BROKER_METADATA:
            return "should_be_metadata"
        return "user_corrected"
    if mapping.confidence >= HIGH_CONFIDENCE:
        return "accepted"
    if mapping.confidence >= MEDIUM_CONFIDENCE:
        return "medium_confidence_accepted"
    return "low_confidence_accepted"


def build_feedback_items(
    check_id: str, ai_mappings: Mapping[str, FieldMapping], corrections: Mapping[str, str]
) -> List[AiIngestFeedbackItem]:
    """One feedback row per AI-proposed header, scored with the AI's own confidence."""
    items = []
    for header, mapping in ai_mappings.items():
        corrected_to = corrections.get(header)
        items.append(
            AiIngestFeedbackItem(
                ai_ingest_check_id=check_id,
                csv_header=header,
                ai_mapping=mapping.field,
                suggested_mapping=corrected_to or mapping.field,
                issue_type=classify_feedback(mapping, corrected_to),
                confidence=mapping.confidence,
                is_correct=corrected_to is None,
                original_value=mapping.to_json(),
                comment=f"User corrected: {mapping.field} -> {corrected_to}" if corrected_to else None,
            )
        )
    return items


def locate_upload_log(db: Session, user_id: str, batch: ImportBatch) -> Optional[CsvUploadLog]:
    linked = db.query(CsvUploadLog).filter(CsvUploadLog.import_batch_id == batch.id).first()
    if linked is not None:
        return linked
    return (
        db.query(CsvUploadLog)
        .filter(
            CsvUploadLog.user_id == user_id,
            CsvUploadLog.filename == batch.filename,
            CsvUploadLog.import_batch_id.is_(None),
        )
        .order_by(CsvUploadLog.created_at.desc())
        .first()
    )


class MappingFinalizer:
    """
    Finalize a batch awaiting mapping review.

    The upload limiter is the quota collaborator chosen at startup; it is only
    charged when this call completes the batch's upload session.
    """

    def __init__(self, limiter: UploadLimiter):
        self.limiter = limiter

    def finalize(self, db: Session, user_id: str, request: FinalizeMappingsRequest) -> FinalizationResult:
        batch = (
            db.query(ImportBatch)
            .filter(ImportBatch.id == request.import_batch_id, ImportBatch.user_id == user_id)
            .first()
        )
        if batch is None:
            raise ImportBatchNotFoundError("Import batch not found")
        if batch.status != ImportStatus.PENDING:
            raise InvalidBatchStateError(
                "Import batch is not in pending state", details={"status": batch.status}
            )
        review = PendingReview.from_column_mappings(batch.column_mappings)
        if review is None:
            raise NoPendingMappingsError("No pending AI mappings found for this import batch")
        if not batch.temp_file_content:
            raise ExpiredUploadError(
                "File content not found. The temporary data may have expired. Please re-upload the file."
            )
        corrections = validate_corrections(request.corrected_mappings)

        if request.report_error:
            logger.info("User %s reported bad mappings for batch %s", user_id, batch.id)
            self._close_batch(db, user_id, batch, REPORTED_ERROR_NOTE)
            return FinalizationResult(
                success=False,
                import_batch_id=batch.id,
                message="AI mapping error reported. Thank you for the feedback.",
            )
        if not request.user_approved:
            logger.info("User %s cancelled batch %s during mapping review", user_id, batch.id)
            self._close_batch(db, user_id, batch, CANCELLED_NOTE)
            return FinalizationResult(success=False, import_batch_id=batch.id, message="Import cancelled by user")

        return self._approve(db, user_id, batch, review, corrections)

    def _close_batch(self, db: Session, user_id: str, batch: ImportBatch, note: str) -> None:
        batch.status = ImportStatus.FAILED
        batch.errors = [note]
        batch.temp_file_content = None
        batch.finalized_at = utcnow()
        upload_log = locate_upload_log(db, user_id, batch)
        if upload_log is not None:
            upload_log.import_batch_id = batch.id
            upload_log.upload_status = UploadStatus.FAILED
            upload_log.error_message = note
        db.commit()

    def _approve(
        self,
        db: Session,
        user_id: str,
        batch: ImportBatch,
        review: PendingReview,
        corrections: Dict[str, str],
    ) -> FinalizationResult:
        batch_id = batch.id
        final_mappings = merge_corrections(review.ai_mappings, corrections)
        applied = {header: target for header, target in corrections.items() if header in review.ai_mappings}
        parsed = parse_csv(batch.temp_file_content)

        upload_log = locate_upload_log(db, user_id, batch)
        if upload_log is None:
            self._mark_batch_failed(db, batch_id, ORPHANED_LOG_NOTE)
            raise OrphanedUploadLogError(ORPHANED_LOG_NOTE, details={"importBatchId": batch_id})
        upload_log_id = upload_log.id

        started = time.monotonic()
        try:
            with transaction_scope(db) as tx:
                locked = (
                    tx.query(ImportBatch)
                    .filter(ImportBatch.id == batch_id)
                    .populate_existing()
                    .with_for_update()
                    .one()
                )
                # A staged batch stays PENDING, so a finished finalize shows up
                # as a consumed review and cleared file content.
                if locked.status != ImportStatus.PENDING:
                    raise InvalidBatchStateError(
                        "Import batch is not in pending state", details={"status": locked.status}
                    )
                if PendingReview.from_column_mappings(locked.column_mappings) is None:
                    raise NoPendingMappingsError("No pending AI mappings found for this import batch")
                if not locked.temp_file_content:
                    raise InvalidBatchStateError(
                        "Import batch was finalized by another request", details={"status": locked.status}
                    )

                broker = find_or_create_broker(tx, review.broker_name)
                mapping_json = mappings_to_json(final_mappings)
                broker_format = find_reusable_format(tx, broker.id, parsed.headers, mapping_json)
                format_reused = broker_format is not None
                if broker_format is None:
                    broker_format = create_format(
                        tx,
                        FormatCreate(
                            broker_id=broker.id,
                            format_name=generate_format_name(tx, broker.id, broker.name),
                            headers=parsed.headers,
                            field_mappings=mapping_json,
                            confidence=1.0 if applied else review.overall_confidence,
                            sample_data=sample_rows(parsed),
                            description=(
                                f"User-approved AI format for {broker.name}"
                                f"{' with corrections' if applied else ''}"
                            ),
                            created_by=user_id,
                        ),
                    )

                log = tx.get(CsvUploadLog, upload_log_id)
                log.import_batch_id = batch_id
                log.parse_method = ParseMethod.USER_CORRECTED if applied else ParseMethod.AI_MAPPED

                check = AiIngestToCheck(
                    user_id=user_id,
                    broker_csv_format_id=broker_format.id,
                    csv_upload_log_id=log.id,
                    import_batch_id=batch_id,
                    processing_status=ImportStatus.PENDING,
                    ai_confidence=review.overall_confidence,
                    user_indicated_error=False,
                    order_ids=[],
                )
                tx.add(check)
                tx.flush()
                tx.add_all(build_feedback_items(check.id, review.ai_mappings, applied))

                locked.broker_csv_format_id = broker_format.id
                locked.column_mappings = mapping_json
                locked.mapping_confidence = calculate_overall_confidence(final_mappings)

                if broker_format.is_approved:
                    processed = create_orders(tx, parsed.rows, broker_format, locked, user_id)
                    success_count, errors = processed.success_count, processed.errors
                    locked.status = ImportStatus.COMPLETED
                    locked.success_count = success_count
                    locked.error_count = processed.error_count
                    locked.errors = errors[:MAX_STORED_ERRORS]
                    locked.user_review_required = False
                    locked.processing_completed = utcnow()
                    check.processing_status = ImportStatus.COMPLETED
                    check.order_ids = processed.order_ids
                    check.processed_at = utcnow()
                    log.upload_status = UploadStatus.IMPORTED
                    requires_approval = False
                else:
                    staged = stage_orders(tx, parsed.rows, broker_format, locked, user_id)
                    success_count, errors = staged.staged_count, staged.errors
                    log.upload_status = UploadStatus.MAPPED
                    requires_approval = True

                tx.flush()
                session_id = locked.upload_session_id or locked.id
                record_session_attempt(tx, session_id)
                progress = record_session_progress(tx, session_id, parsed.row_count)

                locked.temp_file_content = None
                locked.finalized_at = utcnow()

                format_id = broker_format.id
                format_name = broker_format.format_name
                check_id = check.id
        except (InvalidBatchStateError, NoPendingMappingsError):
            raise
        except Exception as exc:
            self._mark_upload_log_failed(db, upload_log_id, str(exc))
            raise

        duration = round((time.monotonic() - started) * 1000, 2)
        logger.info(
            "Finalized batch %s with format '%s' (reused=%s): %d ok, %d errors in %.0fms",
            batch_id,
            format_name,
            format_reused,
            success_count,
            len(errors),
            duration,
        )
        self._after_commit(db, user_id, format_id, success_count, len(errors), parsed.row_count, duration, progress)

        return FinalizationResult(
            success=True,
            import_batch_id=batch_id,
            success_count=success_count,
            error_count=len(errors),
            errors=errors,
            broker_format_created=format_name,
            format_reused=format_reused,
            requires_approval=requires_approval,
            ai_ingest_check_id=check_id,
            session_complete=progress.is_complete,
            session_progress={
                "completed": progress.completed_row_count,
                "expected": progress.expected_row_count,
            },
        )

    def _after_commit(
        self,
        db: Session,
        user_id: str,
        format_id: str,
        success_count: int,
        error_count: int,
        row_count: int,
        duration: float,
        progress: SessionProgress,
    ) -> None:
        if success_count > 0:
            update_format_usage(db, format_id, True)
        monitor.track_staging(db, format_id, success_count > 0, duration, row_count, error_count)

        if not progress.newly_completed:
            return
        try:
            user = db.get(User, user_id)
            if user is not None:
                self.limiter.increment_upload_count(db, user)
        except Exception as exc:
            db.rollback()
            logger.error("Failed to increment upload count for user %s: %s", user_id, exc)

    def _mark_batch_failed(self, db: Session, batch_id: str, note: str) -> None:
        try:
            batch = db.get(ImportBatch, batch_id)
            if batch is not None:
                batch.status = ImportStatus.FAILED
                batch.errors = [note]
                batch.finalized_at = utcnow()
                db.commit()
        except Exception as exc:
            db.rollback()
            logger.error("Failed to mark batch %s as failed: %s", batch_id, exc)

    def _mark_upload_log_failed(self, db: Session, upload_log_id: str, message: str) -> None:
        try:
            log = db.get(CsvUploadLog, upload_log_id)
            if log is not None:
                log.upload_status = UploadStatus.FAILED
                log.error_message = message[:1000]
                db.commit()
        except Exception as exc:
            db.rollback()
            logger.error("Failed to mark upload log %s as failed: %s", upload_log_id, exc)

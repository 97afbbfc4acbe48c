"""
Upload intake: turn an uploaded CSV chunk into a batch awaiting mapping review.

Nothing is imported here. The chunk is parsed, attached to its upload session
and held on a PENDING ImportBatch together with the proposed column mappings
(from a known format when the headers match one exactly, otherwise from
mapping inference). The user reviews the proposal and calls finalize.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from tradebook.core.config import settings
from tradebook.db.models import CsvUploadLog, ImportBatch, ImportStatus, ParseMethod, SessionStatus, UploadStatus
from tradebook.domain.ingest.broker_formats import FormatDetection, detect_format
from tradebook.domain.ingest.errors import FileTooLargeError, MalformedInputError
from tradebook.domain.ingest.inference import MappingInference
from tradebook.domain.ingest.mappings import (
    BROKER_METADATA,
    CRITICAL_FIELDS,
    PendingReview,
    calculate_overall_confidence,
    mappings_from_json,
)
from tradebook.domain.ingest.parser import ParsedCsv, decode_csv_bytes, parse_csv, sample_rows
from tradebook.domain.ingest.sessions import detect_or_create_session

logger = logging.getLogger(__name__)

UNKNOWN_BROKER = "Unknown Broker"


@dataclass
class IntakeResult:
    import_batch_id: str
    upload_session_id: str
    session_is_new: bool
    filename: str
    headers: List[str]
    row_count: int
    broker_name: str
    ai_mappings: Dict[str, Dict[str, Any]]
    overall_confidence: float
    metadata_fields: List[str] = field(default_factory=list)
    unmapped_fields: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)
    detected_format: Optional[Dict[str, Any]] = None
    requires_user_review: bool = True


def _review_from_known_format(detection: FormatDetection, headers: List[str]) -> PendingReview:
    stored = mappings_from_json(detection.format.field_mappings)
    ai_mappings = {header: stored[header] for header in headers if header in stored}
    metadata = [header for header, mapping in ai_mappings.items() if mapping.field == BROKER_METADATA]
    return PendingReview(
        ai_mappings=ai_mappings,
        broker_name=detection.broker.name,
        metadata_fields=metadata,
        overall_confidence=calculate_overall_confidence(ai_mappings),
        suggestions=[f"Matched known format '{detection.format.format_name}'"],
    )


def _check_upload(filename: str, content: bytes) -> None:
    if not filename or not filename.lower().endswith(".csv"):
        raise MalformedInputError("Invalid file type. Only CSV files are supported.")
    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if len(content) > max_bytes:
        raise FileTooLargeError(
            f"File size ({len(content) / 1024 / 1024:.1f}MB) exceeds maximum limit of "
            f"{settings.upload_max_file_size_mb}MB"
        )


def ingest_upload(
    db: Session,
    user_id: str,
    filename: str,
    content: bytes,
    inference: MappingInference,
    broker_name: Optional[str] = None,
    declared_total: Optional[int] = None,
) -> IntakeResult:
    """
    Parse an uploaded chunk and park it on a PENDING batch for mapping review.

    Raises:
        MalformedInputError: wrong file type, undecodable or empty CSV.
        FileTooLargeError: the chunk exceeds ``upload_max_file_size_mb``.
    """
    _check_upload(filename, content)
    text = decode_csv_bytes(content)
    parsed: ParsedCsv = parse_csv(text)
    logger.info("Upload '%s' from user %s: %d columns, %d rows", filename, user_id, len(parsed.headers), parsed.row_count)

    detection = detect_format(db, parsed.headers)
    known_format = detection is not None and detection.is_exact_match and set(
        (detection.format.field_mappings or {}).keys()
    ) >= set(parsed.headers)

    unmapped: List[str] = []
    if known_format:
        review = _review_from_known_format(detection, parsed.headers)
        if broker_name and broker_name.strip():
            review.broker_name = broker_name.strip()
        parse_method = ParseMethod.STANDARD
        mapped = {m.field for m in review.ai_mappings.values()}
        unmapped = [name for name in CRITICAL_FIELDS if name not in mapped]
    else:
        hint = (broker_name or "").strip() or (detection.broker.name if detection else None)
        result = inference.infer(parsed.headers, sample_rows(parsed), hint)
        review = PendingReview(
            ai_mappings=result.mappings,
            broker_name=hint or UNKNOWN_BROKER,
            metadata_fields=result.metadata_fields,
            overall_confidence=result.overall_confidence,
            suggestions=result.suggestions,
        )
        parse_method = ParseMethod.AI_MAPPED
        unmapped = result.unmapped_fields

    session = detect_or_create_session(db, user_id, filename, parsed.row_count, declared_total)

    batch = ImportBatch(
        user_id=user_id,
        filename=filename,
        file_size=len(content),
        broker_type=review.broker_name,
        import_type="CUSTOM",
        status=ImportStatus.PENDING,
        total_records=parsed.row_count,
        ai_mapping_used=not known_format,
        mapping_confidence=review.overall_confidence,
        column_mappings=review.to_column_mappings(),
        temp_file_content=text,
        user_review_required=True,
        upload_session_id=session.id,
        session_status=SessionStatus.ACTIVE,
    )
    if session.is_new:
        batch.id = session.id
        batch.expected_row_count = session.expected_row_count
    db.add(batch)
    db.flush()

    db.add(
        CsvUploadLog(
            user_id=user_id,
            filename=filename,
            original_headers=list(parsed.headers),
            row_count=parsed.row_count,
            upload_status=UploadStatus.VALIDATED,
            parse_method=parse_method,
        )
    )
    db.commit()

    detected = None
    if detection is not None:
        detected = {
            "format_id": detection.format.id,
            "format_name": detection.format.format_name,
            "broker_name": detection.broker.name if detection.broker else None,
            "confidence": detection.confidence,
            "is_exact_match": detection.is_exact_match,
            "is_approved": bool(detection.format.is_approved),
        }

    return IntakeResult(
        import_batch_id=batch.id,
        upload_session_id=session.id,
        session_is_new=session.is_new,
        filename=filename,
        headers=list(parsed.headers),
        row_count=parsed.row_count,
        broker_name=review.broker_name,
        ai_mappings={header: mapping.to_json() for header, mapping in review.ai_mappings.items()},
        overall_confidence=review.overall_confidence,
        metadata_fields=review.metadata_fields,
        unmapped_fields=unmapped,
        suggestions=review.suggestions,
        detected_format=detected,
    )

"""
Admin approval of broker formats.

Approving a format promotes every order staged against it into ``orders``
and completes every batch staged against it, including batches whose rows
all failed validation. Rejecting it closes the staged rows without importing
them. Both run as one transaction with the format row locked.
"""
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from tradebook.core.config import settings
from tradebook.db.models import (
    AiIngestToCheck,
    BrokerCsvFormat,
    ImportBatch,
    ImportStatus,
    MigrationStatus,
    OrderStaging,
    ReviewStatus,
    utcnow,
)
from tradebook.db.session import transaction_scope
from tradebook.domain.ingest import monitor
from tradebook.domain.ingest.errors import FormatAlreadyApprovedError, FormatNotFoundError
from tradebook.domain.ingest.finalization import merge_corrections, validate_corrections
from tradebook.domain.ingest.mappings import mappings_from_json, mappings_to_json
from tradebook.domain.ingest.orders import NormalizedOrder, build_order, existing_order_keys, normalize_order

logger = logging.getLogger(__name__)

DUPLICATE_NOTE = "Duplicate of an existing order"


@dataclass
class ApprovalResult:
    format_id: str
    format_name: str
    migrated_count: int = 0
    failed_count: int = 0
    errors: List[str] = field(default_factory=list)
    affected_batches: List[str] = field(default_factory=list)
    duration: float = 0.0


@dataclass
class RejectionResult:
    format_id: str
    rejected_count: int
    affected_batches: List[str] = field(default_factory=list)


def _lock_unapproved_format(db: Session, format_id: str) -> BrokerCsvFormat:
    broker_format = db.query(BrokerCsvFormat).filter(BrokerCsvFormat.id == format_id).with_for_update().first()
    if broker_format is None:
        raise FormatNotFoundError(f"Format {format_id} not found")
    if broker_format.is_approved:
        raise FormatAlreadyApprovedError(f"Format {format_id} is already approved")
    return broker_format


def _migrate_staged_orders(
    db: Session, broker_format: BrokerCsvFormat
) -> Tuple[int, List[str], Dict[str, Dict[str, int]], Dict[str, List[str]]]:
    """Promote PENDING staged rows of a format; returns (migrated, errors, per-batch counts, per-batch order ids)."""
    staged = (
        db.query(OrderStaging)
        .filter(
            OrderStaging.broker_csv_format_id == broker_format.id,
            OrderStaging.migration_status == MigrationStatus.PENDING,
        )
        .order_by(OrderStaging.import_batch_id, OrderStaging.row_index)
        .all()
    )

    per_batch: Dict[str, Dict[str, int]] = defaultdict(lambda: {"migrated": 0, "failed": 0})
    order_ids: Dict[str, List[str]] = defaultdict(list)
    errors: List[str] = []

    # Rows are re-normalized because corrected mappings may change how they read.
    valid: List[Tuple[OrderStaging, NormalizedOrder]] = []
    symbols: Dict[str, Set[str]] = defaultdict(set)
    for record in staged:
        try:
            normalized = normalize_order(record.raw_csv_row or {}, broker_format.field_mappings)
        except ValueError as exc:
            record.migration_status = MigrationStatus.FAILED
            record.validation_errors = [str(exc)]
            per_batch[record.import_batch_id]["failed"] += 1
            errors.append(f"Row {record.row_index + 1}: {exc}")
            continue
        valid.append((record, normalized))
        symbols[record.user_id].add(normalized.symbol)

    seen = {
        user_id: existing_order_keys(db, user_id, broker_format.broker_id, user_symbols)
        for user_id, user_symbols in symbols.items()
    }

    migrated = 0
    for start in range(0, len(valid), settings.staging_batch_size):
        chunk = valid[start:start + settings.staging_batch_size]
        for record, normalized in chunk:
            key = normalized.dedupe_key(broker_format.broker_id)
            if key in seen[record.user_id]:
                record.migration_status = MigrationStatus.REJECTED
                record.validation_errors = [DUPLICATE_NOTE]
                per_batch[record.import_batch_id]["failed"] += 1
                continue
            seen[record.user_id].add(key)

            order = build_order(normalized, record.user_id, broker_format.broker_id, record.import_batch_id)
            db.add(order)
            db.flush()
            record.migration_status = MigrationStatus.MIGRATED
            record.migrated_at = utcnow()
            order_ids[record.import_batch_id].append(order.id)
            per_batch[record.import_batch_id]["migrated"] += 1
            migrated += 1
        db.flush()
        logger.debug("Migrated staged rows %d-%d of format %s", start, start + len(chunk), broker_format.id)

    return migrated, errors, dict(per_batch), dict(order_ids)


def _pending_batch_ids(db: Session, format_id: str) -> List[str]:
    """Batches staged against a format that are still waiting on its review."""
    rows = (
        db.query(ImportBatch.id)
        .filter(ImportBatch.broker_csv_format_id == format_id, ImportBatch.status == ImportStatus.PENDING)
        .all()
    )
    return [batch_id for (batch_id,) in rows]


def approve_format_and_migrate(
    db: Session,
    format_id: str,
    admin_user_id: str,
    corrected_mappings: Optional[Dict[str, str]] = None,
) -> ApprovalResult:
    """
    Approve a format and migrate its staged orders into live orders.

    Raises:
        FormatNotFoundError: no such format.
        FormatAlreadyApprovedError: the format was approved before (nothing is migrated twice).
        InvalidCorrectionError: a corrected mapping targets an unknown field.
    """
    corrections = validate_corrections(corrected_mappings)
    started = time.monotonic()
    try:
        with transaction_scope(db) as tx:
            broker_format = _lock_unapproved_format(tx, format_id)
            if corrections:
                merged = merge_corrections(mappings_from_json(broker_format.field_mappings), corrections)
                broker_format.field_mappings = mappings_to_json(merged)
            broker_format.is_approved = True
            broker_format.approved_by = admin_user_id
            broker_format.approved_at = utcnow()

            migrated, errors, per_batch, order_ids = _migrate_staged_orders(tx, broker_format)
            # A batch whose rows all failed at staging has nothing to migrate but still completes.
            for batch_id in _pending_batch_ids(tx, format_id):
                per_batch.setdefault(batch_id, {"migrated": 0, "failed": 0})

            now = utcnow()
            for batch_id, counts in per_batch.items():
                batch = tx.get(ImportBatch, batch_id)
                if batch is None:
                    continue
                batch.status = ImportStatus.COMPLETED
                batch.success_count = counts["migrated"]
                batch.error_count = (batch.error_count or 0) + counts["failed"]
                batch.user_review_required = False
                batch.processing_completed = now

            review_status = ReviewStatus.CORRECTED if corrections else ReviewStatus.APPROVED
            checks = tx.query(AiIngestToCheck).filter(AiIngestToCheck.broker_csv_format_id == format_id).all()
            for check in checks:
                if check.import_batch_id in per_batch:
                    check.processing_status = ImportStatus.COMPLETED
                    check.order_ids = list(check.order_ids or []) + order_ids.get(check.import_batch_id, [])
                    check.processed_at = now
                check.admin_review_status = review_status
                check.admin_reviewed_by = admin_user_id
                check.admin_reviewed_at = now

            format_name = broker_format.format_name
            affected = sorted(per_batch)
            failed = sum(counts["failed"] for counts in per_batch.values())
    except (FormatNotFoundError, FormatAlreadyApprovedError):
        raise
    except Exception:
        monitor.track_approval(db, format_id, False, round((time.monotonic() - started) * 1000, 2))
        raise

    duration = round((time.monotonic() - started) * 1000, 2)
    logger.info(
        "Approved format %s (%s): %d migrated, %d failed across %d batches in %.0fms",
        format_id,
        format_name,
        migrated,
        failed,
        len(affected),
        duration,
    )
    monitor.track_approval(db, format_id, True, duration)
    monitor.track_migration(db, format_id, migrated > 0, duration, migrated + failed, failed)

    return ApprovalResult(
        format_id=format_id,
        format_name=format_name,
        migrated_count=migrated,
        failed_count=failed,
        errors=errors,
        affected_batches=affected,
        duration=duration,
    )


def reject_format(db: Session, format_id: str, admin_user_id: str, reason: str) -> RejectionResult:
    """Reject an unapproved format: staged rows become REJECTED and their batches FAILED."""
    with transaction_scope(db) as tx:
        _lock_unapproved_format(tx, format_id)
        staged = (
            tx.query(OrderStaging)
            .filter(
                OrderStaging.broker_csv_format_id == format_id,
                OrderStaging.migration_status == MigrationStatus.PENDING,
            )
            .all()
        )
        for record in staged:
            record.migration_status = MigrationStatus.REJECTED
            record.validation_errors = [reason]

        affected = sorted({record.import_batch_id for record in staged} | set(_pending_batch_ids(tx, format_id)))
        for batch_id in affected:
            batch = tx.get(ImportBatch, batch_id)
            if batch is not None and batch.status == ImportStatus.PENDING:
                batch.status = ImportStatus.FAILED
                batch.errors = list(batch.errors or []) + [f"Format rejected: {reason}"]
                batch.user_review_required = False

        now = utcnow()
        for check in tx.query(AiIngestToCheck).filter(AiIngestToCheck.broker_csv_format_id == format_id).all():
            check.admin_review_status = ReviewStatus.DISMISSED
            check.admin_reviewed_by = admin_user_id
            check.admin_reviewed_at = now
            check.admin_notes = reason

    logger.info("Rejected format %s: %d staged orders rejected", format_id, len(staged))
    return RejectionResult(format_id=format_id, rejected_count=len(staged), affected_batches=affected)

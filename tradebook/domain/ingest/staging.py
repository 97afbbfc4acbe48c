"""
Order staging for broker formats that are still awaiting admin approval.

Rows of an unapproved format never reach ``orders`` directly. They are
validated, normalized and parked in ``order_staging`` linked to their import
batch; approving the format later migrates them (see ``approval.py``).
Partial success is the rule: invalid rows are reported per row and the valid
ones are staged.
"""
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from tradebook.core.config import settings
from tradebook.db.models import (
    Broker,
    BrokerCsvFormat,
    ImportBatch,
    ImportStatus,
    MigrationStatus,
    OrderStaging,
    utcnow,
)
from tradebook.domain.ingest.errors import StagingLimitExceededError
from tradebook.domain.ingest.orders import normalize_order
from tradebook.domain.ingest.validators import sanitize_row

logger = logging.getLogger(__name__)

# Cap on per-row messages persisted on the batch; the counts stay exact.
MAX_STORED_ERRORS = 100


@dataclass
class StagingResult:
    staged_count: int
    error_count: int
    errors: List[str] = field(default_factory=list)
    import_batch_id: Optional[str] = None
    requires_approval: bool = True


def check_staging_limits(db: Session, user_id: str) -> int:
    pending = (
        db.query(func.count(OrderStaging.id))
        .filter(OrderStaging.user_id == user_id, OrderStaging.migration_status == MigrationStatus.PENDING)
        .scalar()
        or 0
    )
    if pending >= settings.max_staging_records:
        raise StagingLimitExceededError(
            f"Staging limit exceeded. You have {pending} pending orders. "
            f"Maximum allowed: {settings.max_staging_records}"
        )
    return pending


def stage_orders(
    db: Session,
    rows: Sequence[Mapping[str, Any]],
    broker_format: BrokerCsvFormat,
    import_batch: ImportBatch,
    user_id: str,
) -> StagingResult:
    """
    Validate rows against the format's mappings and stage the valid ones.

    Runs inside the caller's transaction and never commits. The batch keeps
    status PENDING with ``user_review_required`` set until the format is
    approved.

    Raises:
        ValueError: if the format is already approved (its rows belong in ``orders``).
        StagingLimitExceededError: if the user already has too many pending staged orders.
    """
    if broker_format.is_approved:
        raise ValueError(f"Format {broker_format.id} is approved; rows should be imported directly")

    check_staging_limits(db, user_id)

    retention_date = utcnow() + timedelta(days=settings.staging_retention_days)
    errors: List[str] = []
    pending_records: List[OrderStaging] = []
    staged = 0

    for index, row in enumerate(rows):
        try:
            normalized = normalize_order(row, broker_format.field_mappings)
        except ValueError as exc:
            errors.append(f"Row {index + 1}: {exc}")
            continue

        pending_records.append(
            OrderStaging(
                user_id=user_id,
                import_batch_id=import_batch.id,
                broker_csv_format_id=broker_format.id,
                raw_csv_row=sanitize_row(row),
                row_index=index,
                initial_mapped_data=normalized.to_json(),
                migration_status=MigrationStatus.PENDING,
                retention_date=retention_date,
            )
        )
        if len(pending_records) >= settings.staging_batch_size:
            db.add_all(pending_records)
            db.flush()
            staged += len(pending_records)
            pending_records = []

    if pending_records:
        db.add_all(pending_records)
        db.flush()
        staged += len(pending_records)

    import_batch.status = ImportStatus.PENDING
    import_batch.broker_csv_format_id = broker_format.id
    import_batch.success_count = staged
    import_batch.error_count = len(errors)
    import_batch.errors = errors[:MAX_STORED_ERRORS]
    import_batch.user_review_required = True

    logger.info(
        "Staged %d/%d rows for batch %s (format %s, %d errors)",
        staged,
        len(rows),
        import_batch.id,
        broker_format.id,
        len(errors),
    )
    return StagingResult(
        staged_count=staged,
        error_count=len(errors),
        errors=errors,
        import_batch_id=import_batch.id,
        requires_approval=True,
    )


def cleanup_expired_records(db: Session) -> int:
    """
    Delete staged rows past their retention date that are already resolved.

    PENDING rows are never touched, however old, so cleanup can run while
    uploads are being staged. Safe to repeat.
    """
    deleted = (
        db.query(OrderStaging)
        .filter(
            OrderStaging.retention_date < utcnow(),
            OrderStaging.migration_status.in_(MigrationStatus.TERMINAL),
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info("Cleaned up %d expired staging records", deleted)
    return deleted


def get_staging_status(db: Session, user_id: str) -> Dict[str, int]:
    pending_filter = (OrderStaging.user_id == user_id, OrderStaging.migration_status == MigrationStatus.PENDING)
    pending = db.query(func.count(OrderStaging.id)).filter(*pending_filter).scalar() or 0
    total = db.query(func.count(OrderStaging.id)).filter(OrderStaging.user_id == user_id).scalar() or 0
    formats = (
        db.query(func.count(func.distinct(OrderStaging.broker_csv_format_id))).filter(*pending_filter).scalar() or 0
    )
    return {
        "pending_count": pending,
        "total_staged": total,
        "formats_pending_approval": formats,
    }


def get_staged_orders(
    db: Session,
    user_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
    migration_status: Optional[str] = None,
    broker_csv_format_id: Optional[str] = None,
) -> Dict[str, Any]:
    query = db.query(OrderStaging).filter(OrderStaging.user_id == user_id)
    if migration_status:
        query = query.filter(OrderStaging.migration_status == migration_status)
    if broker_csv_format_id:
        query = query.filter(OrderStaging.broker_csv_format_id == broker_csv_format_id)

    total = query.count()
    records = (
        query.order_by(OrderStaging.created_at.desc(), OrderStaging.row_index.asc())
        .offset(offset)
        .limit(limit)
        .all()
    )

    format_ids = {record.broker_csv_format_id for record in records}
    format_names: Dict[str, Dict[str, str]] = {}
    if format_ids:
        for fmt_id, fmt_name, broker_name in (
            db.query(BrokerCsvFormat.id, BrokerCsvFormat.format_name, Broker.name)
            .join(Broker, Broker.id == BrokerCsvFormat.broker_id)
            .filter(BrokerCsvFormat.id.in_(format_ids))
            .all()
        ):
            format_names[fmt_id] = {"format_name": fmt_name, "broker_name": broker_name}

    orders = [
        {
            "id": record.id,
            "import_batch_id": record.import_batch_id,
            "broker_csv_format_id": record.broker_csv_format_id,
            "row_index": record.row_index,
            "migration_status": record.migration_status,
            "initial_mapped_data": record.initial_mapped_data,
            "validation_errors": record.validation_errors,
            "created_at": record.created_at,
            **format_names.get(record.broker_csv_format_id, {}),
        }
        for record in records
    ]
    return {"orders": orders, "total": total, "has_more": offset + limit < total}


def get_admin_staging_stats(db: Session) -> Dict[str, Any]:
    pending_filter = OrderStaging.migration_status == MigrationStatus.PENDING
    total_pending = db.query(func.count(OrderStaging.id)).filter(pending_filter).scalar() or 0
    per_format = (
        db.query(OrderStaging.broker_csv_format_id, func.count(OrderStaging.id))
        .filter(pending_filter)
        .group_by(OrderStaging.broker_csv_format_id)
        .all()
    )
    oldest = db.query(func.min(OrderStaging.created_at)).filter(pending_filter).scalar()
    return {
        "total_pending": total_pending,
        "formats_pending_approval": len(per_format),
        "format_details": [
            {"format_id": format_id, "pending_count": count} for format_id, count in per_format
        ],
        "oldest_pending_date": oldest,
    }

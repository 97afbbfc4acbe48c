"""
Staging health monitoring and the scheduled cleanup job.

Operational metrics (staging runs, approvals, migrations, cleanups) are stored
as rows in ``staging_audit_logs``; health is derived from the last day of
those rows plus the current staging backlog. Alerts are emitted as ERROR log
lines for the log pipeline to pick up.
"""
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from tradebook.core.config import settings
from tradebook.db.models import (
    BrokerCsvFormat,
    MigrationStatus,
    OrderStaging,
    StagingAuditLog,
    as_utc,
    utcnow,
)
from tradebook.domain.ingest import staging

logger = logging.getLogger(__name__)

HIGH_ERROR_RATE = 0.05
CRITICAL_ERROR_RATE = 0.1
BACKLOG_WARNING = 10000
BACKLOG_CRITICAL = 50000
APPROVAL_DELAY_WARNING_HOURS = 24
APPROVAL_DELAY_CRITICAL_HOURS = 48
HEALTH_WINDOW = timedelta(hours=24)
HEALTH_SAMPLE_SIZE = 100
CLEANUP_HISTORY_WINDOW = timedelta(days=7)


@dataclass
class StagingMetrics:
    operation: str
    success: bool
    duration: float
    record_count: int
    error_rate: float
    format_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class HealthMetrics:
    staging_health: str
    pending_orders_count: int
    pending_formats_count: int
    avg_processing_time: float
    error_rate: float
    oldest_pending_hours: float


@dataclass
class CleanupReport:
    success: bool
    duration: float
    total_deleted: int
    errors: List[str]
    health_metrics: Dict[str, Any]
    timestamp: datetime = field(default_factory=utcnow)


def _oldest_unapproved_hours(db: Session) -> float:
    oldest = db.query(func.min(BrokerCsvFormat.created_at)).filter(BrokerCsvFormat.is_approved.is_(False)).scalar()
    if oldest is None:
        return 0.0
    return (utcnow() - as_utc(oldest)).total_seconds() / 3600


def _pending_order_count(db: Session) -> int:
    return (
        db.query(func.count(OrderStaging.id))
        .filter(OrderStaging.migration_status == MigrationStatus.PENDING)
        .scalar()
        or 0
    )


def check_alerts(db: Session, metrics: StagingMetrics) -> List[str]:
    """Evaluate alert rules for a metrics entry and log each one that fires."""
    alerts = []
    if metrics.error_rate > HIGH_ERROR_RATE:
        alerts.append("HIGH_ERROR_RATE")
    if not metrics.success and "migration" in metrics.operation:
        alerts.append("MIGRATION_FAILED")
    if _pending_order_count(db) > BACKLOG_WARNING:
        alerts.append("STAGING_BACKLOG")
    if _oldest_unapproved_hours(db) > APPROVAL_DELAY_WARNING_HOURS:
        alerts.append("FORMAT_APPROVAL_DELAY")

    for alert in alerts:
        logger.error(
            "[ALERT] %s operation=%s format=%s error_rate=%.3f records=%d",
            alert,
            metrics.operation,
            metrics.format_id,
            metrics.error_rate,
            metrics.record_count,
        )
    return alerts


def record_metrics(db: Session, metrics: StagingMetrics) -> None:
    """Persist a metrics entry and evaluate alerts; never raises."""
    try:
        db.add(
            StagingAuditLog(
                staging_id=metrics.format_id or "system",
                action=metrics.operation,
                performed_by="system",
                previous_state=None,
                new_state={
                    "success": metrics.success,
                    "duration": metrics.duration,
                    "recordCount": metrics.record_count,
                    "errorRate": metrics.error_rate,
                },
                timestamp=metrics.timestamp,
            )
        )
        db.commit()
        check_alerts(db, metrics)
    except Exception as exc:
        db.rollback()
        logger.error("Failed to record %s metrics: %s", metrics.operation, exc)


def _error_rate(errors: int, records: int) -> float:
    return errors / records if records > 0 else 0.0


def track_staging(db: Session, format_id: str, success: bool, duration: float, record_count: int, error_count: int) -> None:
    record_metrics(
        db,
        StagingMetrics(
            operation="order_staging",
            format_id=format_id,
            success=success,
            duration=duration,
            record_count=record_count,
            error_rate=_error_rate(error_count, record_count),
        ),
    )


def track_approval(db: Session, format_id: str, success: bool, duration: float) -> None:
    record_metrics(
        db,
        StagingMetrics(
            operation="format_approval",
            format_id=format_id,
            success=success,
            duration=duration,
            record_count=1,
            error_rate=0.0 if success else 1.0,
        ),
    )


def track_migration(db: Session, format_id: str, success: bool, duration: float, record_count: int, error_count: int) -> None:
    record_metrics(
        db,
        StagingMetrics(
            operation="order_migration",
            format_id=format_id,
            success=success,
            duration=duration,
            record_count=record_count,
            error_rate=_error_rate(error_count, record_count),
        ),
    )


def get_health_metrics(db: Session) -> HealthMetrics:
    """Summarize staging health; a failure to compute it reads as CRITICAL."""
    try:
        pending_orders = _pending_order_count(db)
        pending_formats = (
            db.query(func.count(BrokerCsvFormat.id)).filter(BrokerCsvFormat.is_approved.is_(False)).scalar() or 0
        )
        oldest_hours = _oldest_unapproved_hours(db)
        recent = (
            db.query(StagingAuditLog.new_state)
            .filter(StagingAuditLog.timestamp >= utcnow() - HEALTH_WINDOW)
            .order_by(StagingAuditLog.timestamp.desc())
            .limit(HEALTH_SAMPLE_SIZE)
            .all()
        )
    except Exception as exc:
        db.rollback()
        logger.error("Failed to compute staging health metrics: %s", exc)
        return HealthMetrics("CRITICAL", 0, 0, 0.0, 1.0, 0.0)

    states = [row[0] or {} for row in recent]
    avg_duration = sum(float(s.get("duration") or 0) for s in states) / len(states) if states else 0.0
    error_rate = sum(1 for s in states if not s.get("success")) / len(states) if states else 0.0

    if error_rate > CRITICAL_ERROR_RATE or oldest_hours > APPROVAL_DELAY_CRITICAL_HOURS or pending_orders > BACKLOG_CRITICAL:
        health = "CRITICAL"
    elif error_rate > HIGH_ERROR_RATE or oldest_hours > APPROVAL_DELAY_WARNING_HOURS or pending_orders > BACKLOG_WARNING:
        health = "WARNING"
    else:
        health = "HEALTHY"

    return HealthMetrics(
        staging_health=health,
        pending_orders_count=pending_orders,
        pending_formats_count=pending_formats,
        avg_processing_time=round(avg_duration, 2),
        error_rate=round(error_rate, 4),
        oldest_pending_hours=round(oldest_hours, 2),
    )


def cleanup_old_records(db: Session) -> Dict[str, int]:
    """Delete resolved staged rows and audit entries older than the retention window."""
    cutoff = utcnow() - timedelta(days=settings.audit_log_retention_days)
    deleted_staging = (
        db.query(OrderStaging)
        .filter(OrderStaging.created_at < cutoff, OrderStaging.migration_status.in_(MigrationStatus.TERMINAL))
        .delete(synchronize_session=False)
    )
    deleted_logs = (
        db.query(StagingAuditLog).filter(StagingAuditLog.timestamp < cutoff).delete(synchronize_session=False)
    )
    db.commit()
    logger.info("Monitor cleanup removed %d staging records and %d audit logs", deleted_staging, deleted_logs)
    return {"deleted_staging": deleted_staging, "deleted_logs": deleted_logs}


def run_staging_cleanup(db: Session) -> CleanupReport:
    """
    Scheduled cleanup: expired staged orders, then old monitoring records.

    The two halves fail independently; each failure is reported in
    ``errors`` and the run always ends with a metrics entry and a report.
    """
    started = time.monotonic()
    total_deleted = 0
    errors: List[str] = []

    try:
        total_deleted += staging.cleanup_expired_records(db)
    except Exception as exc:
        db.rollback()
        message = f"Failed to cleanup staging records: {exc}"
        logger.error(message)
        errors.append(message)

    try:
        counts = cleanup_old_records(db)
        total_deleted += counts["deleted_staging"] + counts["deleted_logs"]
    except Exception as exc:
        db.rollback()
        message = f"Failed to cleanup monitoring records: {exc}"
        logger.error(message)
        errors.append(message)

    health = get_health_metrics(db)
    duration = round((time.monotonic() - started) * 1000, 2)
    success = not errors

    record_metrics(
        db,
        StagingMetrics(
            operation="staging_cleanup",
            success=success,
            duration=duration,
            record_count=total_deleted,
            error_rate=1.0 if errors else 0.0,
        ),
    )
    logger.info("Staging cleanup finished in %.0fms: %d deleted, %d errors", duration, total_deleted, len(errors))
    return CleanupReport(
        success=success,
        duration=duration,
        total_deleted=total_deleted,
        errors=errors,
        health_metrics=asdict(health),
    )


def get_cleanup_history(db: Session, limit: int = 10) -> Dict[str, Any]:
    """Recent cleanup runs (last 7 days) with success rate and average duration."""
    runs = (
        db.query(StagingAuditLog)
        .filter(
            StagingAuditLog.action == "staging_cleanup",
            StagingAuditLog.timestamp >= utcnow() - CLEANUP_HISTORY_WINDOW,
        )
        .order_by(StagingAuditLog.timestamp.desc())
        .limit(limit)
        .all()
    )
    states = [run.new_state or {} for run in runs]
    stats = {
        "last_run": runs[0].timestamp if runs else None,
        "total_runs": len(runs),
        "success_rate": sum(1 for s in states if s.get("success")) / len(states) if states else 0.0,
        "avg_duration": sum(float(s.get("duration") or 0) for s in states) / len(states) if states else 0.0,
    }
    recent_runs = [
        {
            "timestamp": run.timestamp,
            "success": bool(state.get("success")),
            "duration": state.get("duration") or 0,
            "records_deleted": state.get("recordCount") or 0,
        }
        for run, state in zip(runs, states)
    ]
    return {"cleanup_stats": stats, "recent_runs": recent_runs}

"""
Tests for staging health metrics, alerting and the scheduled cleanup run.
"""
import logging
from datetime import timedelta

from tradebook.db.models import MigrationStatus, OrderStaging, StagingAuditLog, utcnow
from tradebook.domain.ingest import monitor
from tradebook.domain.ingest.broker_formats import FormatCreate, create_format, find_or_create_broker
from tradebook.domain.ingest.finalization import FinalizeMappingsRequest
from tradebook.domain.ingest.monitor import StagingMetrics


def _audit(db, action, success=True, duration=10.0, age=timedelta(0)):
    db.add(
        StagingAuditLog(
            staging_id="system",
            action=action,
            new_state={"success": success, "duration": duration, "recordCount": 1, "errorRate": 0.0},
            timestamp=utcnow() - age,
        )
    )
    db.commit()


def test_health_is_healthy_when_idle(db_session):
    health = monitor.get_health_metrics(db_session)

    assert health.staging_health == "HEALTHY"
    assert health.pending_orders_count == 0
    assert health.error_rate == 0.0


def test_health_reflects_recent_failures(db_session):
    for _ in range(8):
        _audit(db_session, "order_staging", success=True, duration=20.0)
    for _ in range(2):
        _audit(db_session, "order_staging", success=False, duration=40.0)

    health = monitor.get_health_metrics(db_session)

    assert health.staging_health == "CRITICAL"
    assert health.error_rate == 0.2
    assert health.avg_processing_time == 24.0


def test_health_ignores_entries_outside_window(db_session):
    _audit(db_session, "order_staging", success=False, age=timedelta(days=2))

    assert monitor.get_health_metrics(db_session).staging_health == "HEALTHY"


def test_health_warns_on_old_unapproved_format(db_session):
    broker = find_or_create_broker(db_session, "Schwab")
    fmt = create_format(
        db_session,
        FormatCreate(broker_id=broker.id, format_name="Schwab Format 1", headers=["Symbol"], field_mappings={}, confidence=0.5),
    )
    fmt.created_at = utcnow() - timedelta(hours=30)
    db_session.commit()

    health = monitor.get_health_metrics(db_session)

    assert health.staging_health == "WARNING"
    assert health.pending_formats_count == 1
    assert health.oldest_pending_hours >= 30


def test_record_metrics_persists_and_alerts(db_session, caplog):
    with caplog.at_level(logging.ERROR, logger="tradebook.domain.ingest.monitor"):
        monitor.track_staging(db_session, "fmt-1", success=True, duration=12.5, record_count=10, error_count=3)

    entry = db_session.query(StagingAuditLog).one()
    assert entry.action == "order_staging"
    assert entry.staging_id == "fmt-1"
    assert entry.new_state["errorRate"] == 0.3
    assert "HIGH_ERROR_RATE" in caplog.text


def test_failed_migration_alerts(db_session):
    alerts = monitor.check_alerts(
        db_session,
        StagingMetrics(operation="order_migration", success=False, duration=1.0, record_count=0, error_rate=0.0),
    )

    assert alerts == ["MIGRATION_FAILED"]


def test_cleanup_run_reports_and_records(db_session, user, upload, finalizer):
    intake = upload()
    finalizer.finalize(db_session, user.id, FinalizeMappingsRequest(import_batch_id=intake.import_batch_id))
    rows = db_session.query(OrderStaging).order_by(OrderStaging.row_index).all()
    rows[0].migration_status = MigrationStatus.REJECTED
    rows[0].retention_date = utcnow() - timedelta(days=1)
    db_session.commit()
    _audit(db_session, "order_staging", age=timedelta(days=90))

    report = monitor.run_staging_cleanup(db_session)

    assert report.success is True
    assert report.errors == []
    assert report.total_deleted == 2
    assert report.health_metrics["pending_orders_count"] == 2
    assert db_session.query(OrderStaging).count() == 2

    history = monitor.get_cleanup_history(db_session)
    assert history["cleanup_stats"]["total_runs"] == 1
    assert history["cleanup_stats"]["success_rate"] == 1.0
    assert history["recent_runs"][0]["records_deleted"] == 2


def test_cleanup_halves_fail_independently(db_session, monkeypatch):
    def broken_cleanup(db):
        raise RuntimeError("lock timeout")

    monkeypatch.setattr(monitor.staging, "cleanup_expired_records", broken_cleanup)
    _audit(db_session, "order_staging", age=timedelta(days=90))

    report = monitor.run_staging_cleanup(db_session)

    assert report.success is False
    assert report.errors == ["Failed to cleanup staging records: lock timeout"]
    assert report.total_deleted == 1
    runs = db_session.query(StagingAuditLog).filter_by(action="staging_cleanup").all()
    assert len(runs) == 1
    assert runs[0].new_state["success"] is False

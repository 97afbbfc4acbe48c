"""
Tests for admin approval (staged order migration) and rejection of broker formats.
"""
import pytest

from tradebook.db.models import (
    AiIngestToCheck,
    BrokerCsvFormat,
    ImportBatch,
    ImportStatus,
    MigrationStatus,
    Order,
    OrderStaging,
    ReviewStatus,
    StagingAuditLog,
)
from tradebook.domain.ingest.approval import DUPLICATE_NOTE, approve_format_and_migrate, reject_format
from tradebook.domain.ingest.errors import FormatAlreadyApprovedError, FormatNotFoundError, InvalidCorrectionError
from tradebook.domain.ingest.finalization import FinalizeMappingsRequest


@pytest.fixture
def staged(db_session, user, upload, finalizer):
    """One finalized upload whose three rows wait on an unapproved format."""
    intake = upload(broker_name="Schwab")
    finalizer.finalize(db_session, user.id, FinalizeMappingsRequest(import_batch_id=intake.import_batch_id))
    return intake, db_session.query(BrokerCsvFormat).one()


def test_approval_migrates_staged_orders(db_session, admin_user, staged):
    intake, broker_format = staged

    result = approve_format_and_migrate(db_session, broker_format.id, admin_user.id)

    assert result.migrated_count == 3
    assert result.failed_count == 0
    assert result.affected_batches == [intake.import_batch_id]
    assert result.format_name == "Schwab Format 1"

    db_session.expire_all()
    approved = db_session.get(BrokerCsvFormat, broker_format.id)
    assert approved.is_approved is True
    assert approved.approved_by == admin_user.id
    assert approved.approved_at is not None

    rows = db_session.query(OrderStaging).all()
    assert {row.migration_status for row in rows} == {MigrationStatus.MIGRATED}
    assert all(row.migrated_at is not None for row in rows)

    orders = db_session.query(Order).order_by(Order.symbol).all()
    assert [order.symbol for order in orders] == ["AAPL", "MSFT", "TSLA"]
    assert {order.import_batch_id for order in orders} == {intake.import_batch_id}

    batch = db_session.get(ImportBatch, intake.import_batch_id)
    assert batch.status == ImportStatus.COMPLETED
    assert batch.success_count == 3
    assert batch.user_review_required is False

    check = db_session.query(AiIngestToCheck).one()
    assert check.processing_status == ImportStatus.COMPLETED
    assert check.admin_review_status == ReviewStatus.APPROVED
    assert sorted(check.order_ids) == sorted(order.id for order in orders)

    actions = {row.action for row in db_session.query(StagingAuditLog).all()}
    assert {"format_approval", "order_migration"} <= actions


def test_approval_is_not_repeated(db_session, admin_user, staged):
    _, broker_format = staged
    approve_format_and_migrate(db_session, broker_format.id, admin_user.id)

    with pytest.raises(FormatAlreadyApprovedError):
        approve_format_and_migrate(db_session, broker_format.id, admin_user.id)

    assert db_session.query(Order).count() == 3


def test_approval_of_unknown_format(db_session, admin_user):
    with pytest.raises(FormatNotFoundError):
        approve_format_and_migrate(db_session, "missing", admin_user.id)


def test_approval_with_corrections(db_session, admin_user, staged):
    _, broker_format = staged

    approve_format_and_migrate(db_session, broker_format.id, admin_user.id, corrected_mappings={"Price": "stopPrice"})

    db_session.expire_all()
    approved = db_session.get(BrokerCsvFormat, broker_format.id)
    assert approved.field_mappings["Price"]["field"] == "stopPrice"
    assert approved.field_mappings["Price"]["userCorrected"] is True
    orders = db_session.query(Order).all()
    assert all(order.limit_price is None and order.stop_price is not None for order in orders)
    assert db_session.query(AiIngestToCheck).one().admin_review_status == ReviewStatus.CORRECTED


def test_approval_rejects_unknown_correction_target(db_session, admin_user, staged):
    _, broker_format = staged

    with pytest.raises(InvalidCorrectionError):
        approve_format_and_migrate(db_session, broker_format.id, admin_user.id, corrected_mappings={"Price": "cost"})

    assert db_session.get(BrokerCsvFormat, broker_format.id).is_approved is False


def test_approval_marks_rows_that_no_longer_validate(db_session, admin_user, staged):
    _, broker_format = staged

    result = approve_format_and_migrate(
        db_session, broker_format.id, admin_user.id, corrected_mappings={"Symbol": "brokerMetadata"}
    )

    assert result.migrated_count == 0
    assert result.failed_count == 3
    assert all(error.endswith("Symbol is required") for error in result.errors)
    db_session.expire_all()
    assert {row.migration_status for row in db_session.query(OrderStaging)} == {MigrationStatus.FAILED}


def test_approval_rejects_duplicates_of_live_orders(db_session, user, admin_user, upload, finalizer):
    first = upload(broker_name="Schwab", filename="march.csv")
    finalizer.finalize(db_session, user.id, FinalizeMappingsRequest(import_batch_id=first.import_batch_id))
    second = upload(broker_name="Schwab", filename="march-again.csv")
    finalizer.finalize(db_session, user.id, FinalizeMappingsRequest(import_batch_id=second.import_batch_id))
    broker_format = db_session.query(BrokerCsvFormat).one()

    result = approve_format_and_migrate(db_session, broker_format.id, admin_user.id)

    assert result.migrated_count == 3
    assert result.failed_count == 3
    assert db_session.query(Order).count() == 3
    rejected = db_session.query(OrderStaging).filter_by(migration_status=MigrationStatus.REJECTED).all()
    assert len(rejected) == 3
    assert all(row.validation_errors == [DUPLICATE_NOTE] for row in rejected)


def test_reject_format(db_session, admin_user, staged):
    intake, broker_format = staged

    result = reject_format(db_session, broker_format.id, admin_user.id, "Columns shifted")

    assert result.rejected_count == 3
    assert result.affected_batches == [intake.import_batch_id]
    db_session.expire_all()
    assert {row.migration_status for row in db_session.query(OrderStaging)} == {MigrationStatus.REJECTED}
    batch = db_session.get(ImportBatch, intake.import_batch_id)
    assert batch.status == ImportStatus.FAILED
    assert batch.errors[-1] == "Format rejected: Columns shifted"
    check = db_session.query(AiIngestToCheck).one()
    assert check.admin_review_status == ReviewStatus.DISMISSED
    assert check.admin_notes == "Columns shifted"
    assert db_session.query(Order).count() == 0


ALL_INVALID_CSV = """Symbol,Side,Qty,Exec Time,Price
AAPL,BUY,none,2024-03-05 09:30:00,180
MSFT,SELL,zero,2024-03-05 10:15:00,410
"""


def test_approval_completes_batch_with_no_staged_rows(db_session, user, admin_user, upload, finalizer, staged):
    intake, broker_format = staged
    failed = upload(ALL_INVALID_CSV, broker_name="Schwab", filename="bad.csv")
    outcome = finalizer.finalize(db_session, user.id, FinalizeMappingsRequest(import_batch_id=failed.import_batch_id))
    assert outcome.success_count == 0
    assert outcome.error_count == 2
    assert db_session.query(BrokerCsvFormat).count() == 1

    result = approve_format_and_migrate(db_session, broker_format.id, admin_user.id)

    assert result.migrated_count == 3
    assert result.affected_batches == sorted([intake.import_batch_id, failed.import_batch_id])
    db_session.expire_all()
    batch = db_session.get(ImportBatch, failed.import_batch_id)
    assert batch.status == ImportStatus.COMPLETED
    assert batch.success_count == 0
    assert batch.error_count == 2
    assert batch.user_review_required is False
    assert batch.processing_completed is not None


def test_reject_fails_batch_with_no_staged_rows(db_session, user, admin_user, upload, finalizer, staged):
    _, broker_format = staged
    failed = upload(ALL_INVALID_CSV, broker_name="Schwab", filename="bad.csv")
    finalizer.finalize(db_session, user.id, FinalizeMappingsRequest(import_batch_id=failed.import_batch_id))

    result = reject_format(db_session, broker_format.id, admin_user.id, "Columns shifted")

    assert failed.import_batch_id in result.affected_batches
    db_session.expire_all()
    assert db_session.get(ImportBatch, failed.import_batch_id).status == ImportStatus.FAILED

"""
Tests for multi-chunk upload sessions and their one-time completion.
"""
from datetime import timedelta

import pytest

from tradebook.db.models import ImportBatch, SessionStatus, utcnow
from tradebook.domain.ingest.errors import UploadSessionNotFoundError
from tradebook.domain.ingest.sessions import (
    complete_session,
    detect_or_create_session,
    get_session_attempt_count,
    record_session_attempt,
    record_session_progress,
)


def _anchor(db, user, session, filename="big.csv", rows=2):
    batch = ImportBatch(
        id=session.id,
        user_id=user.id,
        filename=filename,
        total_records=rows,
        upload_session_id=session.id,
        expected_row_count=session.expected_row_count,
        session_status=SessionStatus.ACTIVE,
    )
    db.add(batch)
    db.commit()
    return batch


def test_new_session_uses_declared_total(db_session, user):
    session = detect_or_create_session(db_session, user.id, "big.csv", 2, declared_total=6)

    assert session.is_new is True
    assert session.expected_row_count == 6
    assert session.previous_completed == 0


def test_new_session_defaults_to_chunk_rows(db_session, user):
    session = detect_or_create_session(db_session, user.id, "big.csv", 3)

    assert session.expected_row_count == 3


def test_second_chunk_joins_open_session(db_session, user):
    first = detect_or_create_session(db_session, user.id, "big.csv", 2, declared_total=6)
    _anchor(db_session, user, first)
    record_session_progress(db_session, first.id, 2)
    db_session.commit()

    second = detect_or_create_session(db_session, user.id, "big.csv", 2, declared_total=999)

    assert second.is_new is False
    assert second.id == first.id
    assert second.expected_row_count == 6
    assert second.previous_completed == 2


def test_other_filename_or_user_starts_new_session(db_session, user, premium_user):
    first = detect_or_create_session(db_session, user.id, "big.csv", 2, declared_total=6)
    _anchor(db_session, user, first)

    assert detect_or_create_session(db_session, user.id, "other.csv", 2).is_new is True
    assert detect_or_create_session(db_session, premium_user.id, "big.csv", 2).is_new is True


def test_stale_session_is_not_joined(db_session, user):
    first = detect_or_create_session(db_session, user.id, "big.csv", 2, declared_total=6)
    anchor = _anchor(db_session, user, first)
    anchor.updated_at = utcnow() - timedelta(hours=2)
    db_session.commit()

    assert detect_or_create_session(db_session, user.id, "big.csv", 2).is_new is True


def test_progress_completes_exactly_once(db_session, user):
    session = detect_or_create_session(db_session, user.id, "big.csv", 2, declared_total=4)
    _anchor(db_session, user, session)

    first = record_session_progress(db_session, session.id, 2)
    second = record_session_progress(db_session, session.id, 2)
    retry = record_session_progress(db_session, session.id, 2)
    db_session.commit()

    assert (first.is_complete, first.newly_completed) == (False, False)
    assert (second.is_complete, second.newly_completed) == (True, True)
    assert (retry.is_complete, retry.newly_completed) == (True, False)

    anchor = db_session.get(ImportBatch, session.id)
    assert anchor.is_session_complete is True
    assert anchor.session_status == SessionStatus.COMPLETED
    assert anchor.completed_row_count == 6


def test_completion_propagates_to_sibling_batches(db_session, user):
    session = detect_or_create_session(db_session, user.id, "big.csv", 2, declared_total=4)
    _anchor(db_session, user, session)
    sibling = ImportBatch(
        user_id=user.id,
        filename="big.csv",
        total_records=2,
        upload_session_id=session.id,
        session_status=SessionStatus.ACTIVE,
    )
    db_session.add(sibling)
    db_session.commit()

    record_session_progress(db_session, session.id, 4)
    db_session.commit()
    db_session.expire_all()

    assert db_session.get(ImportBatch, sibling.id).session_status == SessionStatus.COMPLETED


def test_attempts_are_counted(db_session, user):
    session = detect_or_create_session(db_session, user.id, "big.csv", 2)
    _anchor(db_session, user, session)

    record_session_attempt(db_session, session.id)
    record_session_attempt(db_session, session.id)
    db_session.commit()

    assert get_session_attempt_count(db_session, session.id) == 2


def test_progress_for_unknown_session(db_session):
    with pytest.raises(UploadSessionNotFoundError):
        record_session_progress(db_session, "missing", 1)


def test_manual_completion_is_idempotent(db_session, user):
    session = detect_or_create_session(db_session, user.id, "big.csv", 2, declared_total=10)
    _anchor(db_session, user, session)
    record_session_progress(db_session, session.id, 2)
    db_session.commit()

    first = complete_session(db_session, user.id, session.id)
    second = complete_session(db_session, user.id, session.id)

    assert first.newly_completed is True
    assert first.was_already_complete is False
    assert first.completed_row_count == 2
    assert first.batch_count == 1
    assert second.newly_completed is False
    assert second.was_already_complete is True


def test_manual_completion_checks_ownership(db_session, user, premium_user):
    session = detect_or_create_session(db_session, user.id, "big.csv", 2)
    _anchor(db_session, user, session)

    with pytest.raises(UploadSessionNotFoundError):
        complete_session(db_session, premium_user.id, session.id)

"""
Upload session tracking.

Large broker exports arrive in several chunks (or as retries of the same file).
Every chunk gets its own ImportBatch, and all of them point at the batch that
opened the session through ``upload_session_id``. That anchor batch carries
the session aggregate: the declared total row count, the rows staged so far
and the completion flag.

Completion is decided with a conditional UPDATE on the anchor row, so exactly
one caller observes the false -> true transition and charges the upload quota.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from tradebook.core.config import settings
from tradebook.db.models import ImportBatch, SessionStatus, utcnow
from tradebook.domain.ingest.errors import UploadSessionNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class UploadSession:
    id: str
    expected_row_count: int
    previous_completed: int
    is_new: bool


@dataclass
class SessionProgress:
    session_id: str
    completed_row_count: int
    expected_row_count: int
    is_complete: bool
    newly_completed: bool


@dataclass
class SessionCompletion:
    session_id: str
    batch_count: int
    completed_row_count: int
    was_already_complete: bool
    newly_completed: bool


def detect_or_create_session(
    db: Session,
    user_id: str,
    filename: str,
    total_rows_in_chunk: int,
    declared_total: Optional[int] = None,
) -> UploadSession:
    """
    Join the open session for (user, filename) or start a new one.

    An open session is an ACTIVE, incomplete anchor batch touched within the
    session window. A new session's id is the id the caller must give the
    ImportBatch it creates for this chunk.
    """
    cutoff = utcnow() - timedelta(minutes=settings.upload_session_window_minutes)
    anchor = (
        db.query(ImportBatch)
        .filter(
            ImportBatch.user_id == user_id,
            ImportBatch.filename == filename,
            ImportBatch.upload_session_id == ImportBatch.id,
            ImportBatch.session_status == SessionStatus.ACTIVE,
            ImportBatch.is_session_complete.is_(False),
            ImportBatch.updated_at >= cutoff,
        )
        .order_by(ImportBatch.created_at.desc())
        .first()
    )
    if anchor is not None:
        logger.info(
            "Joining upload session %s for '%s' (%s/%s rows so far)",
            anchor.id,
            filename,
            anchor.completed_row_count,
            anchor.expected_row_count,
        )
        return UploadSession(
            id=anchor.id,
            expected_row_count=anchor.expected_row_count or anchor.total_records,
            previous_completed=anchor.completed_row_count or 0,
            is_new=False,
        )

    expected = declared_total if declared_total and declared_total > 0 else total_rows_in_chunk
    session_id = str(uuid.uuid4())
    logger.info("Starting upload session %s for '%s' expecting %d rows", session_id, filename, expected)
    return UploadSession(id=session_id, expected_row_count=expected, previous_completed=0, is_new=True)


def get_session_attempt_count(db: Session, session_id: str) -> int:
    """Number of finalize attempts recorded against a session."""
    attempts = db.query(ImportBatch.session_attempts).filter(ImportBatch.id == session_id).scalar()
    return attempts or 0


def record_session_attempt(db: Session, session_id: str) -> None:
    db.execute(
        update(ImportBatch)
        .where(ImportBatch.id == session_id)
        .values(session_attempts=ImportBatch.session_attempts + 1)
        .execution_options(synchronize_session=False)
    )


def _mark_complete(db: Session, session_id: str) -> bool:
    """Flip the anchor to complete; True only for the caller that performed the flip."""
    result = db.execute(
        update(ImportBatch)
        .where(ImportBatch.id == session_id, ImportBatch.is_session_complete.is_(False))
        .values(
            is_session_complete=True,
            session_status=SessionStatus.COMPLETED,
            processing_completed=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    db.execute(
        update(ImportBatch)
        .where(ImportBatch.upload_session_id == session_id, ImportBatch.id != session_id)
        .values(is_session_complete=True, session_status=SessionStatus.COMPLETED)
        .execution_options(synchronize_session=False)
    )
    return True


def record_session_progress(db: Session, session_id: str, row_count: int) -> SessionProgress:
    """
    Add the rows this chunk processed (staged or rejected) to the session and
    complete it when the expected total is reached.

    The increment is a single UPDATE on the anchor row; on Postgres it also
    takes the row lock, so concurrent chunks of the same session are applied
    one after the other.
    """
    db.execute(
        update(ImportBatch)
        .where(ImportBatch.id == session_id)
        .values(
            completed_row_count=ImportBatch.completed_row_count + max(row_count, 0),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )

    anchor = db.get(ImportBatch, session_id)
    if anchor is None:
        raise UploadSessionNotFoundError(f"Upload session {session_id} not found")
    db.refresh(anchor)

    expected = anchor.expected_row_count or anchor.total_records or 0
    completed = anchor.completed_row_count or 0
    is_complete = completed >= expected

    newly_completed = False
    if is_complete and not anchor.is_session_complete:
        newly_completed = _mark_complete(db, session_id)
        db.refresh(anchor)

    if newly_completed:
        logger.info("Upload session %s complete (%d/%d rows)", session_id, completed, expected)

    return SessionProgress(
        session_id=session_id,
        completed_row_count=completed,
        expected_row_count=expected,
        is_complete=is_complete,
        newly_completed=newly_completed,
    )


def complete_session(db: Session, user_id: str, session_id: str) -> SessionCompletion:
    """Manually close a session that will never receive its remaining chunks."""
    batch_count = (
        db.query(func.count(ImportBatch.id))
        .filter(ImportBatch.user_id == user_id, ImportBatch.upload_session_id == session_id)
        .scalar()
        or 0
    )
    anchor = (
        db.query(ImportBatch)
        .filter(ImportBatch.id == session_id, ImportBatch.user_id == user_id)
        .first()
    )
    if anchor is None or batch_count == 0:
        raise UploadSessionNotFoundError("No session found with this ID")

    was_already_complete = bool(anchor.is_session_complete)
    newly_completed = False
    if not was_already_complete:
        newly_completed = _mark_complete(db, session_id)
    db.commit()
    db.refresh(anchor)

    logger.info(
        "Manual completion of session %s: already_complete=%s newly_completed=%s",
        session_id,
        was_already_complete,
        newly_completed,
    )
    return SessionCompletion(
        session_id=session_id,
        batch_count=batch_count,
        completed_row_count=anchor.completed_row_count or 0,
        was_already_complete=was_already_complete,
        newly_completed=newly_completed,
    )

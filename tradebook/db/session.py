import logging
import os
import socket
import time
from contextlib import closing, contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from tradebook.core.config import settings

logger = logging.getLogger(__name__)

_engine = None

# Postgres SQLSTATEs raised when lock_timeout / statement_timeout fire.
TIMEOUT_SQLSTATES = {"55P03", "57014"}


class TransactionTimeoutError(Exception):
    """Raised when a bounded transaction could not acquire its locks or finish in time."""

    def __init__(self, message: str, elapsed_seconds: Optional[float] = None):
        super().__init__(message)
        self.elapsed_seconds = elapsed_seconds


def _report_connection_failure(exc: Exception) -> None:
    """Log high-signal diagnostics when the application cannot reach Postgres."""
    logger.warning("Could not connect to database: %s", exc)
    logger.warning("The application will start but database operations will fail until the connection succeeds.")

    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        logger.warning("Unable to parse DATABASE_URL (%s); skipping detailed diagnostics.", parse_error)
        return

    logger.warning(
        "Database settings: dialect=%s host=%s port=%s database=%s user=%s SKIP_DB_INIT=%r",
        url.get_backend_name(),
        url.host or "localhost",
        url.port or "(default)",
        url.database,
        url.username,
        os.getenv("SKIP_DB_INIT"),
    )

    if url.get_backend_name() != "postgresql":
        return

    host = url.host or "localhost"
    port = url.port or 5432
    try:
        with closing(socket.create_connection((host, port), timeout=2)):
            logger.warning("Socket check: able to reach %s:%s", host, port)
    except OSError as socket_err:
        logger.warning("Socket check: unable to reach %s:%s (%s)", host, port, socket_err)


def get_engine():
    global _engine
    if _engine is None:
        try:
            _engine = create_engine(settings.database_url, pool_pre_ping=True)
            # Test connection eagerly so failures surface immediately.
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            _report_connection_failure(e)
            _engine = create_engine(settings.database_url, pool_pre_ping=True)
    return _engine


# Don't create engine at import time
SessionLocal = None

Base = declarative_base()


def get_session_local():
    global SessionLocal
    if SessionLocal is None:
        engine = get_engine()
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return SessionLocal


def get_db():
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _is_timeout(exc: OperationalError) -> bool:
    return getattr(exc.orig, "pgcode", None) in TIMEOUT_SQLSTATES


@contextmanager
def transaction_scope(
    db: Session,
    *,
    max_wait_seconds: Optional[int] = None,
    timeout_seconds: Optional[int] = None,
) -> Iterator[Session]:
    """
    Run a block of work as one all-or-nothing transaction.

    Any read transaction left open by the caller is committed first so the
    block starts from a clean boundary. On Postgres the lock wait and the
    statement duration are bounded with ``SET LOCAL``; the overall duration is
    checked again before commit. Any exception rolls everything back and is
    re-raised; timeouts surface as ``TransactionTimeoutError``.
    """
    max_wait = max_wait_seconds if max_wait_seconds is not None else settings.finalize_max_wait_seconds
    timeout = timeout_seconds if timeout_seconds is not None else settings.finalize_timeout_seconds

    if db.in_transaction():
        db.commit()

    started = time.monotonic()
    try:
        if db.get_bind().dialect.name == "postgresql":
            db.execute(text(f"SET LOCAL lock_timeout = '{int(max_wait * 1000)}ms'"))
            db.execute(text(f"SET LOCAL statement_timeout = '{int(timeout * 1000)}ms'"))

        yield db

        elapsed = time.monotonic() - started
        if elapsed > timeout:
            raise TransactionTimeoutError(
                f"Transaction exceeded {timeout}s (took {elapsed:.1f}s)", elapsed_seconds=elapsed
            )
        db.commit()
    except OperationalError as exc:
        db.rollback()
        if _is_timeout(exc):
            elapsed = time.monotonic() - started
            logger.error("Transaction timed out after %.1fs: %s", elapsed, exc.orig)
            raise TransactionTimeoutError(
                "Database is busy; the operation timed out and was rolled back",
                elapsed_seconds=elapsed,
            ) from exc
        raise
    except Exception:
        db.rollback()
        raise

"""
Daily upload quota.

FREE accounts may finalize a limited number of uploads per UTC day; PREMIUM
accounts are unlimited. The limiter is chosen once at startup and handed to
the finalizer; the database backend is the one to run with several workers.
"""
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Protocol, Tuple

from sqlalchemy import text
from sqlalchemy.orm import Session

from tradebook.core.config import Settings
from tradebook.db.models import DailyUploadCount, utcnow

logger = logging.getLogger(__name__)

UNLIMITED = -1
PREMIUM_TIER = "PREMIUM"


@dataclass
class RateLimitStatus:
    allowed: bool
    remaining: int
    limit: int
    reset_at: datetime
    is_unlimited: bool = False


def _today() -> date:
    return utcnow().date()


def _next_reset() -> datetime:
    return datetime.combine(_today() + timedelta(days=1), time.min, tzinfo=timezone.utc)


class UploadLimiter(Protocol):
    def check_upload_limit(self, db: Session, user) -> RateLimitStatus:
        ...

    def increment_upload_count(self, db: Session, user) -> None:
        ...


def _is_unlimited(user) -> bool:
    return (getattr(user, "subscription_tier", None) or "").upper() == PREMIUM_TIER


class _TierLimiter:
    def __init__(self, daily_limit: int):
        self.daily_limit = daily_limit

    def _used_today(self, db: Session, user_id: str) -> int:
        raise NotImplementedError

    def _increment(self, db: Session, user_id: str) -> None:
        raise NotImplementedError

    def check_upload_limit(self, db: Session, user) -> RateLimitStatus:
        if _is_unlimited(user):
            return RateLimitStatus(
                allowed=True, remaining=UNLIMITED, limit=UNLIMITED, reset_at=_next_reset(), is_unlimited=True
            )
        used = self._used_today(db, user.id)
        remaining = max(self.daily_limit - used, 0)
        return RateLimitStatus(
            allowed=used < self.daily_limit,
            remaining=remaining,
            limit=self.daily_limit,
            reset_at=_next_reset(),
        )

    def increment_upload_count(self, db: Session, user) -> None:
        """Count one finished upload; unlimited tiers are not tracked."""
        if _is_unlimited(user):
            return
        self._increment(db, user.id)


class DatabaseUploadLimiter(_TierLimiter):
    """Counts kept in ``daily_upload_counts``, one row per user and UTC day."""

    def _used_today(self, db: Session, user_id: str) -> int:
        count = (
            db.query(DailyUploadCount.count)
            .filter(DailyUploadCount.user_id == user_id, DailyUploadCount.date == _today())
            .scalar()
        )
        return count or 0

    def _increment(self, db: Session, user_id: str) -> None:
        try:
            db.execute(
                text(
                    """
                    INSERT INTO daily_upload_counts (id, user_id, date, count)
                    VALUES (:id, :user_id, :date, 1)
                    ON CONFLICT (user_id, date) DO UPDATE SET count = daily_upload_counts.count + 1
                    """
                ),
                {"id": str(uuid.uuid4()), "user_id": user_id, "date": _today().isoformat()},
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            logger.error("Failed to increment upload count for user %s: %s", user_id, exc)


class InMemoryUploadLimiter(_TierLimiter):
    """Per-process counts; fine for a single worker or local development."""

    def __init__(self, daily_limit: int):
        super().__init__(daily_limit)
        self._counts: Dict[Tuple[str, date], int] = {}
        self._lock = threading.Lock()

    def _used_today(self, db: Session, user_id: str) -> int:
        with self._lock:
            return self._counts.get((user_id, _today()), 0)

    def _increment(self, db: Session, user_id: str) -> None:
        key = (user_id, _today())
        with self._lock:
            for stale in [k for k in self._counts if k[1] != key[1]]:
                del self._counts[stale]
            self._counts[key] = self._counts.get(key, 0) + 1


def build_upload_limiter(config: Settings) -> UploadLimiter:
    backend = (config.rate_limiter_backend or "database").lower()
    if backend == "memory":
        logger.info("Using in-memory upload limiter (%d uploads/day)", config.free_tier_daily_uploads)
        return InMemoryUploadLimiter(config.free_tier_daily_uploads)
    if backend != "database":
        raise ValueError(f"Unknown rate limiter backend '{config.rate_limiter_backend}'")
    return DatabaseUploadLimiter(config.free_tier_daily_uploads)

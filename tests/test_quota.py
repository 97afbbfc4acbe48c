"""
Tests for the daily upload quota backends.
"""
from types import SimpleNamespace

import pytest

from tradebook.core.config import Settings
from tradebook.db.models import DailyUploadCount
from tradebook.domain.ingest.quota import (
    UNLIMITED,
    DatabaseUploadLimiter,
    InMemoryUploadLimiter,
    build_upload_limiter,
)


@pytest.mark.parametrize("limiter_class", [DatabaseUploadLimiter, InMemoryUploadLimiter])
def test_free_tier_is_limited(db_session, user, limiter_class):
    limiter = limiter_class(2)

    assert limiter.check_upload_limit(db_session, user).remaining == 2
    limiter.increment_upload_count(db_session, user)
    status = limiter.check_upload_limit(db_session, user)
    assert (status.allowed, status.remaining, status.limit) == (True, 1, 2)

    limiter.increment_upload_count(db_session, user)
    status = limiter.check_upload_limit(db_session, user)
    assert status.allowed is False
    assert status.remaining == 0
    assert status.reset_at.hour == 0


@pytest.mark.parametrize("limiter_class", [DatabaseUploadLimiter, InMemoryUploadLimiter])
def test_premium_tier_is_unlimited(db_session, premium_user, limiter_class):
    limiter = limiter_class(0)

    limiter.increment_upload_count(db_session, premium_user)
    status = limiter.check_upload_limit(db_session, premium_user)

    assert status.allowed is True
    assert status.is_unlimited is True
    assert status.remaining == UNLIMITED


def test_database_limiter_upserts_one_row_per_day(db_session, user):
    limiter = DatabaseUploadLimiter(5)

    for _ in range(3):
        limiter.increment_upload_count(db_session, user)

    row = db_session.query(DailyUploadCount).one()
    assert row.user_id == user.id
    assert row.count == 3


def test_limiters_count_users_separately(db_session):
    limiter = InMemoryUploadLimiter(1)
    alice = SimpleNamespace(id="alice", subscription_tier="FREE")
    bob = SimpleNamespace(id="bob", subscription_tier="FREE")

    limiter.increment_upload_count(db_session, alice)

    assert limiter.check_upload_limit(db_session, alice).allowed is False
    assert limiter.check_upload_limit(db_session, bob).allowed is True


def test_build_upload_limiter_selects_backend():
    assert isinstance(build_upload_limiter(Settings(rate_limiter_backend="memory")), InMemoryUploadLimiter)
    assert isinstance(build_upload_limiter(Settings(rate_limiter_backend="database")), DatabaseUploadLimiter)

    with pytest.raises(ValueError):
        build_upload_limiter(Settings(rate_limiter_backend="redis"))

"""
Shared dependencies for the API routers.

The upload limiter is built once at startup and kept on ``app.state``; routers
reach it (and the finalizer built around it) through these dependencies so
tests can override either one.
"""
import hmac
import logging

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from tradebook.core.config import settings
from tradebook.core.security import User, get_current_user
from tradebook.db.session import get_db
from tradebook.domain.ingest.errors import UploadLimitExceededError
from tradebook.domain.ingest.finalization import MappingFinalizer
from tradebook.domain.ingest.quota import RateLimitStatus, UploadLimiter, build_upload_limiter

logger = logging.getLogger(__name__)


def get_upload_limiter(request: Request) -> UploadLimiter:
    limiter = getattr(request.app.state, "upload_limiter", None)
    if limiter is None:
        limiter = build_upload_limiter(settings)
        request.app.state.upload_limiter = limiter
    return limiter


def get_mapping_finalizer(limiter: UploadLimiter = Depends(get_upload_limiter)) -> MappingFinalizer:
    return MappingFinalizer(limiter)


def require_upload_capacity(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    limiter: UploadLimiter = Depends(get_upload_limiter),
) -> RateLimitStatus:
    """Reject the request with 429 once the user's daily upload quota is used up."""
    status = limiter.check_upload_limit(db, current_user)
    if not status.allowed:
        logger.info("Upload quota exhausted for user %s (%d/day)", current_user.id, status.limit)
        raise UploadLimitExceededError(
            "Daily upload limit reached",
            details={
                "limit": status.limit,
                "remaining": status.remaining,
                "resetAt": status.reset_at.isoformat(),
            },
        )
    return status


def require_cron_secret(authorization: str = Header(default="")) -> None:
    """Scheduled jobs authenticate with ``Authorization: Bearer <CRON_SECRET>``."""
    expected = settings.cron_secret
    if not expected:
        logger.error("CRON_SECRET is not configured; refusing cron request")
        raise HTTPException(status_code=401, detail="Unauthorized")
    if not hmac.compare_digest(authorization, f"Bearer {expected}"):
        raise HTTPException(status_code=401, detail="Unauthorized")

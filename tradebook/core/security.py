"""
Authentication glue for Tradebook.

Tokens are issued by the identity provider and carry the user id in ``sub``.
This module decodes the bearer token into a ``User`` row and guards the
admin-only routes; ownership of batches, sessions and staged orders is always
checked against that id.
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError, jwt
import bcrypt
from sqlalchemy.orm import Session
from sqlalchemy import Column, String, DateTime, Boolean
from tradebook.db.session import Base, get_db
from .config import settings

ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24
VALID_ROLES = {"admin", "user"}
VALID_TIERS = {"FREE", "PREMIUM"}

# auto_error is off so a missing header is a 401 like any other bad credential.
bearer_scheme = HTTPBearer(auto_error=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """Account row; ingestion only reads the id, role and subscription tier."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    is_active = Column(Boolean, default=True)
    role = Column(String(20), nullable=False, server_default="user", default="user")
    subscription_tier = Column(String(20), nullable=False, server_default="FREE", default="FREE")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Sign a token for ``user_id``; used by the console and the test suite."""
    expire = _utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    return jwt.encode({"sub": user_id, "exp": expire}, settings.secret_key, algorithm=ALGORITHM)


def decode_user_id(token: str) -> Optional[str]:
    """Return the ``sub`` claim of a valid token, or None when it cannot be trusted."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return None
    subject = payload.get("sub")
    return subject if isinstance(subject, str) and subject else None


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: Session = Depends(get_db)
) -> User:
    """Resolve the bearer token to an active user or answer 401."""
    user_id = decode_user_id(credentials.credentials) if credentials else None
    user = db.get(User, user_id) if user_id else None
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user


def create_user(
    db: Session,
    email: str,
    password: str,
    full_name: Optional[str] = None,
    role: str = "user",
    subscription_tier: str = "FREE",
) -> User:
    """
    Create an account row.

    Raises:
        ValueError: unknown role or tier, or the email is already registered.
    """
    tier = subscription_tier.upper()
    if role not in VALID_ROLES:
        raise ValueError(f"Invalid role '{role}'. Must be one of {sorted(VALID_ROLES)}")
    if tier not in VALID_TIERS:
        raise ValueError(f"Invalid subscription tier '{subscription_tier}'. Must be one of {sorted(VALID_TIERS)}")
    if db.query(User.id).filter(User.email == email).first() is not None:
        raise ValueError(f"Email already registered: {email}")

    user = User(
        email=email,
        hashed_password=hash_password(password),
        full_name=full_name,
        role=role,
        subscription_tier=tier,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user

"""
Pytest configuration and fixtures for the Tradebook ingest tests.

Every test runs against a fresh in-memory SQLite database built from the ORM
metadata; the FastAPI app is exercised through ``TestClient`` with ``get_db``,
the mapping inference backend and the upload limiter swapped for test doubles.
"""

import os

# Avoid database bootstrap; each test builds its own schema.
os.environ["SKIP_DB_INIT"] = "1"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tradebook.core import security  # noqa: F401  (registers the users table)
from tradebook.core.config import settings
from tradebook.core.security import create_access_token, create_user
from tradebook.db import models  # noqa: F401
from tradebook.db.session import Base, get_db
from tradebook.domain.ingest.finalization import MappingFinalizer
from tradebook.domain.ingest.inference import HeuristicMappingInference, InferenceResult, get_mapping_inference
from tradebook.domain.ingest.intake import ingest_upload
from tradebook.domain.ingest.mappings import (
    BROKER_METADATA,
    CRITICAL_FIELDS,
    FieldMapping,
    calculate_overall_confidence,
)
from tradebook.domain.ingest.quota import InMemoryUploadLimiter
from tradebook.main import app


BROKER_CSV = """Symbol,Side,Qty,Exec Time,Price
AAPL,BUY,100,2024-03-01 09:30:00,180.50
MSFT,SELL,50,2024-03-01 10:15:00,410.25
TSLA,BOT,10,2024-03-02 14:00:00,200
"""


class StaticInference:
    """Inference double that proposes exactly the mappings it was given."""

    def __init__(self, proposals):
        self.proposals = proposals
        self.calls = []

    def infer(self, headers, sample_rows, broker_name=None) -> InferenceResult:
        self.calls.append((list(headers), broker_name))
        mappings = {}
        for header in headers:
            target, confidence = self.proposals.get(header, (BROKER_METADATA, 0.1))
            mappings[header] = FieldMapping(field=target, confidence=confidence, reasoning="test proposal")
        mapped = {m.field for m in mappings.values()}
        return InferenceResult(
            mappings=mappings,
            overall_confidence=calculate_overall_confidence(mappings),
            unmapped_fields=[name for name in CRITICAL_FIELDS if name not in mapped],
            metadata_fields=[h for h, m in mappings.items() if m.field == BROKER_METADATA],
            suggestions=[],
            source="static",
        )


@pytest.fixture
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db_session):
    return create_user(db_session, email="trader@example.com", password="secret123", full_name="Test Trader")


@pytest.fixture
def premium_user(db_session):
    return create_user(db_session, email="premium@example.com", password="secret123", subscription_tier="PREMIUM")


@pytest.fixture
def admin_user(db_session):
    return create_user(db_session, email="admin@example.com", password="secret123", role="admin")


def bearer(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id)}"}


@pytest.fixture
def auth_headers(user):
    return bearer(user)


@pytest.fixture
def admin_headers(admin_user):
    return bearer(admin_user)


@pytest.fixture
def limiter():
    return InMemoryUploadLimiter(settings.free_tier_daily_uploads)


@pytest.fixture
def finalizer(limiter):
    return MappingFinalizer(limiter)


@pytest.fixture
def heuristic():
    return HeuristicMappingInference()


@pytest.fixture
def upload(db_session, user, heuristic):
    """Run intake for the default user; returns the IntakeResult."""

    def _upload(content=BROKER_CSV, filename="trades.csv", inference=None, **kwargs):
        raw = content.encode("utf-8") if isinstance(content, str) else content
        return ingest_upload(
            db_session,
            user_id=kwargs.pop("user_id", user.id),
            filename=filename,
            content=raw,
            inference=inference or heuristic,
            **kwargs,
        )

    return _upload


@pytest.fixture
def client(session_factory, limiter, heuristic):
    """TestClient wired to the test database, the in-memory limiter and heuristic inference."""

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    original_overrides = app.dependency_overrides.copy()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_mapping_inference] = lambda: heuristic
    app.state.upload_limiter = limiter

    yield TestClient(app)

    app.dependency_overrides = original_overrides
    del app.state.upload_limiter

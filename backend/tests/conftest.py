# backend/tests/conftest.py
"""
Pytest configuration for the Solvit backend.

Every test gets its own SQLite database file, so tests never share state
and the thread-pooled reconciliation sweep can open extra sessions on the
same data. External providers are replaced by the in-memory fakes.
"""

import os

# Set test configuration BEFORE any solvit imports
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
for _provider_key in ("RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET", "VIDEOSDK_API_KEY", "RESEND_API_KEY"):
    os.environ.pop(_provider_key, None)

# Never send real email from any test
import unittest.mock

global_resend_mock = unittest.mock.patch("resend.Emails.send")
mocked_send = global_resend_mock.start()
mocked_send.return_value = {"id": "test-email-id"}

from datetime import datetime, timezone
from typing import List

import pytest
from sqlalchemy.orm import Session, sessionmaker

from solvit.database import Base, build_engine
from solvit.integrations import FakeRazorpayClient, FakeVideoSdkClient
import solvit.models  # noqa: F401  (registers every table on Base.metadata)
from solvit.models import User, UserRole
from solvit.services.join_token_service import JoinTokenService
from solvit.services.refund_service import RefundService
from tests.factories.builders import (
    FAKE_KEY_SECRET,
    JOIN_SECRET,
    RecordingNotifier,
    create_user,
)

# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def engine(tmp_path):
    test_engine = build_engine(f"sqlite:///{tmp_path / 'solvit_test.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


# ============================================================================
# Time
# ============================================================================


@pytest.fixture
def now() -> datetime:
    """Fixed clock reading shared by a test and the services it drives."""
    return datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


# ============================================================================
# External clients
# ============================================================================


@pytest.fixture
def gateway() -> FakeRazorpayClient:
    return FakeRazorpayClient(key_secret=FAKE_KEY_SECRET)


@pytest.fixture
def video_client() -> FakeVideoSdkClient:
    return FakeVideoSdkClient()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def sleeps() -> List[float]:
    """Backoff delays (seconds) requested by the refund service under test."""
    return []


@pytest.fixture
def refund_service(db, gateway, notifier, sleeps) -> RefundService:
    return RefundService(db, gateway, notifier, sleep=sleeps.append, jitter=lambda: 0.0)


@pytest.fixture
def token_service() -> JoinTokenService:
    return JoinTokenService(JOIN_SECRET, ttl_seconds=120)


# ============================================================================
# Users
# ============================================================================


@pytest.fixture
def test_client_user(db) -> User:
    return create_user(db, UserRole.CLIENT.value, "Asha Client")


@pytest.fixture
def test_counselor(db) -> User:
    return create_user(db, UserRole.COUNSELOR.value, "Ravi Counselor")


@pytest.fixture
def other_user(db) -> User:
    return create_user(db, UserRole.CLIENT.value, "Outside User")

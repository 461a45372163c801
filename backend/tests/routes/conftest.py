# backend/tests/routes/conftest.py
"""
HTTP-level fixtures.

Routes use the real clock, so bookings here are placed relative to
``datetime.now`` rather than the fixed ``now`` fixture.
"""

from datetime import datetime, timezone

from fastapi.testclient import TestClient
import pytest

from solvit.dependencies import (
    get_db,
    get_join_token_service,
    get_payment_gateway,
    get_refund_notifier,
    get_video_client,
)
from solvit.main import app


@pytest.fixture
def wall_clock() -> datetime:
    return datetime.now(timezone.utc)


@pytest.fixture
def client(db, gateway, video_client, notifier, token_service):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_video_client] = lambda: video_client
    app.dependency_overrides[get_refund_notifier] = lambda: notifier
    app.dependency_overrides[get_join_token_service] = lambda: token_service
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()

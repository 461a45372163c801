# backend/solvit/dependencies/__init__.py
"""
Central export point for all dependencies.

This module re-exports all dependencies from submodules
for convenient access throughout the application.
"""

from .auth import get_current_user
from .database import get_db
from .services import (
    get_attendance_service,
    get_booking_service,
    get_idempotency_service,
    get_join_token_service,
    get_payment_gateway,
    get_payment_service,
    get_payout_releaser,
    get_refund_notifier,
    get_refund_service,
    get_video_client,
)

__all__ = [
    # Auth
    "get_current_user",
    # Database
    "get_db",
    # Clients
    "get_payment_gateway",
    "get_video_client",
    "get_join_token_service",
    "get_refund_notifier",
    "get_payout_releaser",
    # Services
    "get_attendance_service",
    "get_booking_service",
    "get_idempotency_service",
    "get_payment_service",
    "get_refund_service",
]

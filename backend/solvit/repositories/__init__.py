"""
Repository layer for the Solvit platform.

Data access lives here; services own transaction boundaries.
"""

from .attendance_repository import AttendanceRepository
from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .failed_action_repository import FailedActionRepository
from .factory import RepositoryFactory
from .idempotency_repository import IdempotencyRepository
from .payment_repository import PaymentRepository
from .slot_repository import SlotRepository

__all__ = [
    "BaseRepository",
    "RepositoryFactory",
    "SlotRepository",
    "BookingRepository",
    "AttendanceRepository",
    "PaymentRepository",
    "IdempotencyRepository",
    "FailedActionRepository",
]

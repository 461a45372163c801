# backend/solvit/repositories/factory.py
"""
Repository Factory for the Solvit platform.

Provides centralized creation of repository instances so services never
construct them directly.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

# Avoid circular imports
if TYPE_CHECKING:
    from .attendance_repository import AttendanceRepository
    from .booking_repository import BookingRepository
    from .failed_action_repository import FailedActionRepository
    from .idempotency_repository import IdempotencyRepository
    from .payment_repository import PaymentRepository
    from .slot_repository import SlotRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_slot_repository(db: Session) -> "SlotRepository":
        from .slot_repository import SlotRepository

        return SlotRepository(db)

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_attendance_repository(db: Session) -> "AttendanceRepository":
        from .attendance_repository import AttendanceRepository

        return AttendanceRepository(db)

    @staticmethod
    def create_payment_repository(db: Session) -> "PaymentRepository":
        from .payment_repository import PaymentRepository

        return PaymentRepository(db)

    @staticmethod
    def create_failed_action_repository(db: Session) -> "FailedActionRepository":
        from .failed_action_repository import FailedActionRepository

        return FailedActionRepository(db)

    @staticmethod
    def create_idempotency_repository(db: Session) -> "IdempotencyRepository":
        from .idempotency_repository import IdempotencyRepository

        return IdempotencyRepository(db)

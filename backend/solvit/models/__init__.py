"""
Database models for the Solvit platform.

Booking state is split across the core ``bookings`` row and its satellite
tables (attendance, dispute, payout). Payments and refunds form the ledger.
"""

from .attendance_log import AttendanceEvent, AttendanceLog
from .booking import (
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    Booking,
    BookingPaymentStatus,
    BookingStatus,
    NoShowType,
)
from .booking_attendance import AttendanceRole, BookingAttendance
from .booking_dispute import BookingDispute, DisputeStatus
from .booking_payout import BookingPayout, PayoutStatus
from .failed_action import FailedAction, FailedActionType
from .idempotency_key import IdempotencyKey, IdempotencyRequestType, IdempotencyStatus
from .payment import (
    Payment,
    PaymentBookingStatus,
    PaymentRefund,
    PaymentStatus,
    RefundReason,
    RefundStatus,
)
from .slot import Slot, SlotStatus
from .user import User, UserRole

__all__ = [
    "User",
    "UserRole",
    "Slot",
    "SlotStatus",
    "Booking",
    "BookingStatus",
    "BookingPaymentStatus",
    "NoShowType",
    "CANCELLABLE_STATUSES",
    "TERMINAL_STATUSES",
    "BookingAttendance",
    "AttendanceRole",
    "BookingDispute",
    "DisputeStatus",
    "BookingPayout",
    "PayoutStatus",
    "AttendanceLog",
    "AttendanceEvent",
    "FailedAction",
    "FailedActionType",
    "Payment",
    "PaymentStatus",
    "PaymentBookingStatus",
    "PaymentRefund",
    "RefundReason",
    "RefundStatus",
    "IdempotencyKey",
    "IdempotencyRequestType",
    "IdempotencyStatus",
]

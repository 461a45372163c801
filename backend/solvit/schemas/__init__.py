"""Pydantic schemas for the Solvit API."""

from .booking import (
    BookingResponse,
    CancelBookingRequest,
    CancellationPolicyResponse,
    CancellationResponse,
    CheckoutRequest,
    CheckoutResponse,
    DisputeBookingRequest,
    RefundSummary,
    RescheduleBookingRequest,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from .payment import RefundResponse
from .session import (
    AttendanceSummaryResponse,
    HeartbeatResponse,
    JoinIntentResponse,
    LeaveResponse,
    SessionDetailsResponse,
)

__all__ = [
    "BookingResponse",
    "CancelBookingRequest",
    "CancellationPolicyResponse",
    "CancellationResponse",
    "CheckoutRequest",
    "CheckoutResponse",
    "DisputeBookingRequest",
    "RefundSummary",
    "RescheduleBookingRequest",
    "VerifyPaymentRequest",
    "VerifyPaymentResponse",
    "RefundResponse",
    "AttendanceSummaryResponse",
    "HeartbeatResponse",
    "JoinIntentResponse",
    "LeaveResponse",
    "SessionDetailsResponse",
]

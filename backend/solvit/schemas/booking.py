# backend/solvit/schemas/booking.py
"""Booking request and response schemas."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import Field

from .base import StandardizedModel, StrictModel


class CheckoutRequest(StrictModel):
    slot_id: str = Field(..., min_length=1)


class CheckoutResponse(StandardizedModel):
    order_id: str
    amount: int = Field(..., description="Amount in paise")
    currency: str
    slot_id: str
    key_id: Optional[str] = None
    cached: bool = False


class VerifyPaymentRequest(StrictModel):
    order_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)
    slot_id: str = Field(..., min_length=1)


class CancelBookingRequest(StrictModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class RescheduleBookingRequest(StrictModel):
    new_slot_id: str = Field(..., min_length=1)
    reason: Optional[str] = Field(default=None, max_length=500)


class DisputeBookingRequest(StrictModel):
    issue_type: str = Field(..., min_length=1, max_length=50)
    description: str = Field(..., min_length=1, max_length=2000)


class BookingResponse(StandardizedModel):
    id: str
    client_id: str
    counselor_id: str
    slot_id: str
    status: str
    payment_status: str
    price: int
    duration_minutes: int
    start_time: datetime
    end_time: datetime
    meeting_url: Optional[str] = None
    reschedule_count: int = 0
    no_show_type: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    auto_confirm_at: Optional[datetime] = None


class RefundSummary(StandardizedModel):
    success: bool
    already_refunded: bool = False
    refund_id: Optional[str] = None
    amount: int = 0
    status: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 0


class CancellationResponse(StandardizedModel):
    booking: BookingResponse
    refund: Optional[RefundSummary] = None


class CancellationPolicyResponse(StandardizedModel):
    booking_id: str
    status: str
    can_cancel: bool
    can_reschedule: bool
    cancellation_deadline: datetime
    hours_until_start: float
    cancellation_window_hours: int


class VerifyPaymentResponse(StandardizedModel):
    success: bool
    duplicate: bool = False
    cached: bool = False
    booking: Dict[str, Any]
    payment: Dict[str, Any]

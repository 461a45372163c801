# backend/solvit/routes/v1/bookings.py
"""
Booking routes - API v1

Versioned booking endpoints under /api/v1/bookings.
All business logic delegated to BookingService and PaymentService.

Endpoints:
    POST /checkout - Create a gateway order for a slot
    POST /verify - Verify a captured payment and create the booking
    GET /{booking_id}/policy - Cancellation policy preview
    POST /{booking_id}/cancel - Cancel a booking (refunds the payment)
    POST /{booking_id}/reschedule - Move a booking to another slot
    POST /{booking_id}/dispute - Client dispute of a completed session
"""

import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, status

from ...core.constants import IDEMPOTENCY_HEADER
from ...core.exceptions import DomainException
from ...dependencies import get_booking_service, get_current_user, get_payment_service
from ...models.booking import Booking
from ...models.user import User
from ...schemas.booking import (
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
from ...services.booking_service import BookingService
from ...services.payment_service import PaymentService

logger = logging.getLogger(__name__)

# V1 router - no prefix here, will be added when mounting in main.py
router = APIRouter(tags=["bookings-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse.model_validate(booking)


# ============================================================================
# SECTION 1: Static routes (no path parameters)
# ============================================================================


@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    responses={409: {"description": "Slot not available or request in progress"}},
)
def create_checkout(
    payload: CheckoutRequest = Body(...),
    idempotency_key: Optional[str] = Header(default=None, alias=IDEMPOTENCY_HEADER),
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
) -> CheckoutResponse:
    try:
        result = payment_service.create_checkout_order(
            payload.slot_id, current_user.id, idempotency_key
        )
        return CheckoutResponse(**result)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/verify",
    response_model=VerifyPaymentResponse,
    responses={
        400: {"description": "Invalid payment signature"},
        409: {"description": "Slot taken by another client; payment refunded"},
    },
)
def verify_payment(
    payload: VerifyPaymentRequest = Body(...),
    idempotency_key: Optional[str] = Header(default=None, alias=IDEMPOTENCY_HEADER),
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
) -> VerifyPaymentResponse:
    """
    Verify a captured payment and book the slot.

    If the slot was taken in the meantime the payment is refunded and 409
    is returned.
    """
    try:
        result = payment_service.verify_and_book(
            order_id=payload.order_id,
            gateway_payment_id=payload.payment_id,
            signature=payload.signature,
            slot_id=payload.slot_id,
            client_id=current_user.id,
            idempotency_key=idempotency_key,
        )
        return VerifyPaymentResponse(**result)
    except DomainException as e:
        handle_domain_exception(e)


# ============================================================================
# SECTION 2: Dynamic routes (with path parameters - placed last)
# ============================================================================


@router.get("/{booking_id}/policy", response_model=CancellationPolicyResponse)
def get_cancellation_policy(
    booking_id: str,
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> CancellationPolicyResponse:
    try:
        policy = booking_service.get_cancellation_policy(booking_id, current_user.id)
        return CancellationPolicyResponse(**policy)
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/cancel",
    response_model=CancellationResponse,
    responses={422: {"description": "Inside the cancellation window"}},
)
def cancel_booking(
    booking_id: str,
    payload: Optional[CancelBookingRequest] = Body(default=None),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> CancellationResponse:
    try:
        reason = payload.reason if payload else None
        outcome = booking_service.cancel_booking(booking_id, current_user.id, reason)
        return CancellationResponse(
            booking=_booking_response(outcome.booking),
            refund=RefundSummary(**outcome.refund.to_dict()) if outcome.refund else None,
        )
    except DomainException as e:
        handle_domain_exception(e)


@router.post(
    "/{booking_id}/reschedule",
    response_model=BookingResponse,
    responses={
        409: {"description": "New slot no longer available"},
        422: {"description": "Inside the cancellation window"},
    },
)
def reschedule_booking(
    booking_id: str,
    payload: RescheduleBookingRequest = Body(...),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.reschedule_booking(
            booking_id, current_user.id, payload.new_slot_id, payload.reason
        )
        return _booking_response(booking)
    except DomainException as e:
        handle_domain_exception(e)


@router.post("/{booking_id}/dispute", response_model=BookingResponse)
def dispute_booking(
    booking_id: str,
    payload: DisputeBookingRequest = Body(...),
    current_user: User = Depends(get_current_user),
    booking_service: BookingService = Depends(get_booking_service),
) -> BookingResponse:
    try:
        booking = booking_service.dispute_booking(
            booking_id, current_user.id, payload.issue_type, payload.description
        )
        return _booking_response(booking)
    except DomainException as e:
        handle_domain_exception(e)

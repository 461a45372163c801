# backend/solvit/services/payment_service.py
"""
Payment Service for the Solvit platform.

Checkout and booking creation from a captured payment. Verification runs
in phases so a crash at any point leaves state the reconciliation sweeps
can find:

1. Verify the gateway signature and record the payment as captured but
   unlinked (committed on its own).
2. Reserve the slot and create the booking with its satellites, linking
   the payment, in a single transaction.
3. Provision the meeting room. A provider failure leaves the payment at
   ``pending_resources`` for the mismatch sweep.

A booking failure in phase 2 refunds the captured payment immediately.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Optional, Protocol

from sqlalchemy.orm import Session
import ulid

from ..core.config import settings
from ..core.exceptions import (
    BusinessRuleException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
    ServiceException,
    SlotUnavailableException,
    ValidationException,
)
from ..integrations.video_client import VideoSdkError
from ..models.booking import Booking, BookingPaymentStatus, BookingStatus
from ..models.booking_attendance import AttendanceRole, BookingAttendance
from ..models.booking_dispute import BookingDispute
from ..models.booking_payout import BookingPayout, PayoutStatus
from ..models.idempotency_key import IdempotencyRequestType
from ..models.payment import Payment, PaymentBookingStatus, PaymentStatus, RefundReason
from ..models.slot import Slot, SlotStatus
from ..repositories.factory import RepositoryFactory
from ..utils.time_helpers import ensure_utc, format_local
from .base import BaseService
from .idempotency_service import IdempotencyService
from .refund_service import RefundResult, RefundService

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    def create_order(
        self, *, amount: int, currency: str, receipt: str, notes: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        ...

    def verify_payment_signature(self, *, order_id: str, payment_id: str, signature: str) -> bool:
        ...


class VideoProvider(Protocol):
    def create_room(self) -> Dict[str, Any]:
        ...


@dataclass
class BookingFailure:
    """Refund details attached to a failed verification."""

    reason: str
    refund: RefundResult


def build_meeting_url(base_url: str, room_id: str) -> str:
    return f"{base_url.rstrip('/')}/{room_id}"


class PaymentService(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        video_client: VideoProvider,
        refund_service: RefundService,
        idempotency_service: Optional[IdempotencyService] = None,
        *,
        currency: Optional[str] = None,
        meeting_base_url: Optional[str] = None,
        minimum_booking_window_minutes: Optional[int] = None,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.video_client = video_client
        self.refund_service = refund_service
        self.idempotency = idempotency_service or IdempotencyService(db)
        self.currency = currency or settings.payment_currency
        self.meeting_base_url = meeting_base_url or settings.meeting_base_url
        self.minimum_booking_window = timedelta(
            minutes=minimum_booking_window_minutes or settings.minimum_booking_window_minutes
        )
        self.slot_repository = RepositoryFactory.create_slot_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)

    def _get_bookable_slot(self, slot_id: str, now: datetime) -> Slot:
        slot = self.slot_repository.get_by_id(slot_id, load_relationships=False)
        if slot is None:
            raise NotFoundException("Slot not found", details={"slot_id": slot_id})
        if slot.status != SlotStatus.AVAILABLE.value:
            raise SlotUnavailableException(slot.id, slot.status)
        if ensure_utc(slot.start_time) < now + self.minimum_booking_window:
            raise ValidationException(
                "This slot starts too soon to book",
                code="SLOT_TOO_SOON",
                details={
                    "minimum_booking_window_minutes": int(
                        self.minimum_booking_window.total_seconds() // 60
                    )
                },
            )
        return slot

    @BaseService.measure_operation("create_checkout_order")
    def create_checkout_order(
        self,
        slot_id: str,
        client_id: str,
        idempotency_key: Optional[str],
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        current = self._now(now)
        claim = self.idempotency.claim(
            IdempotencyRequestType.CHECKOUT.value,
            idempotency_key,
            user_id=client_id,
            request_data={"slot_id": slot_id},
            now=current,
        )
        if claim.is_replay:
            return dict(claim.cached_response or {}, cached=True)

        try:
            slot = self._get_bookable_slot(slot_id, current)
            order = self.gateway.create_order(
                amount=int(slot.total_price),
                currency=self.currency,
                receipt=f"slot_{slot.id}"[:40],
                notes={
                    "slot_id": slot.id,
                    "client_id": client_id,
                    "counselor_id": slot.counselor_id,
                },
            )
            response = {
                "order_id": order["id"],
                "amount": int(order.get("amount") or slot.total_price),
                "currency": order.get("currency") or self.currency,
                "slot_id": slot.id,
                "key_id": settings.razorpay_key_id,
            }
        except Exception as exc:
            self.idempotency.fail(claim.key, {"error": str(exc)})
            raise

        self.idempotency.complete(claim.key, response, now=current)
        self.logger.info(
            "Checkout order %s created for slot %s",
            response["order_id"],
            slot.id,
            extra={"slot_id": slot.id, "client_id": client_id},
        )
        return response

    @BaseService.measure_operation("verify_and_book")
    def verify_and_book(
        self,
        *,
        order_id: str,
        gateway_payment_id: str,
        signature: str,
        slot_id: str,
        client_id: str,
        idempotency_key: Optional[str],
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Verify a captured payment and turn it into a confirmed booking.

        Raises SlotUnavailableException when another client won the slot; the
        payment has been refunded by then.
        """
        current = self._now(now)
        claim = self.idempotency.claim(
            IdempotencyRequestType.VERIFY.value,
            idempotency_key,
            user_id=client_id,
            request_data={
                "order_id": order_id,
                "gateway_payment_id": gateway_payment_id,
                "slot_id": slot_id,
            },
            now=current,
        )
        if claim.is_replay:
            return dict(claim.cached_response or {}, cached=True)

        try:
            response = self._verify_and_book(
                order_id=order_id,
                gateway_payment_id=gateway_payment_id,
                signature=signature,
                slot_id=slot_id,
                client_id=client_id,
                now=current,
            )
        except Exception as exc:
            self.idempotency.fail(claim.key, {"error": str(exc)})
            raise

        self.idempotency.complete(claim.key, response, now=current)
        return response

    def _verify_and_book(
        self,
        *,
        order_id: str,
        gateway_payment_id: str,
        signature: str,
        slot_id: str,
        client_id: str,
        now: datetime,
    ) -> Dict[str, Any]:
        if not self.gateway.verify_payment_signature(
            order_id=order_id, payment_id=gateway_payment_id, signature=signature
        ):
            self.logger.warning(
                "Invalid payment signature for %s", gateway_payment_id, extra={"order_id": order_id}
            )
            raise ValidationException(
                "Invalid payment signature. Payment verification failed.",
                code="INVALID_PAYMENT_SIGNATURE",
            )

        payment = self.payment_repository.get_by_gateway_payment_id(gateway_payment_id)
        if payment is not None and payment.booking_id:
            booking = self.booking_repository.get_by_id(payment.booking_id, load_relationships=False)
            if booking is not None:
                self.logger.info("Payment %s already processed", payment.id)
                return self._response(booking, payment, duplicate=True)
        if payment is not None and payment.booking_status != PaymentBookingStatus.PAYMENT_CAPTURED.value:
            raise ConflictException(
                "This payment has already been processed",
                code="PAYMENT_ALREADY_PROCESSED",
                details={"booking_status": payment.booking_status},
            )

        slot = self.slot_repository.get_by_id(slot_id, load_relationships=False)
        if slot is None:
            raise NotFoundException("Slot not found", details={"slot_id": slot_id})

        if payment is None:
            # Phase 1: the captured payment exists before any booking work
            with self.transaction():
                payment = self.payment_repository.create(
                    gateway_order_id=order_id,
                    gateway_payment_id=gateway_payment_id,
                    gateway_signature=signature,
                    client_id=client_id,
                    slot_id=slot.id,
                    amount=int(slot.total_price),
                    currency=self.currency,
                    amount_refunded=0,
                    status=PaymentStatus.CAPTURED_UNLINKED.value,
                    booking_status=PaymentBookingStatus.PAYMENT_CAPTURED.value,
                    created_at=now,
                )
            self.logger.info("Unlinked payment %s recorded", payment.id)

        try:
            booking = self._create_booking(payment, slot, client_id, now)
        except SlotUnavailableException:
            self._refund_failed_booking(payment, RefundReason.SLOT_UNAVAILABLE.value, "slot taken", now)
            raise
        except Exception as exc:
            self.logger.error(
                "Booking transaction failed for payment %s: %s",
                payment.id,
                exc,
                exc_info=True,
                extra={"payment_id": payment.id, "slot_id": slot.id},
            )
            failure = self._refund_failed_booking(
                payment, RefundReason.BOOKING_FAILED.value, f"phase=booking|message={exc}", now
            )
            message = (
                "Booking failed. Refund initiated automatically."
                if failure.refund.success
                else "Booking failed. Our team will process your refund within 24 hours."
            )
            raise ServiceException(
                message,
                code="BOOKING_FAILED",
                details={"refund_initiated": failure.refund.success},
            ) from exc

        self._provision_meeting(booking, payment)
        return self._response(booking, payment)

    def _create_booking(self, payment: Payment, slot: Slot, client_id: str, now: datetime) -> Booking:
        booking_id = str(ulid.ULID())
        start = ensure_utc(slot.start_time)
        end = ensure_utc(slot.end_time)

        with self.transaction():
            if not self.slot_repository.reserve(slot.id, client_id, booking_id, now):
                raise SlotUnavailableException(slot.id)

            booking = self.booking_repository.create(
                id=booking_id,
                client_id=client_id,
                counselor_id=slot.counselor_id,
                slot_id=slot.id,
                payment_id=payment.id,
                price=int(slot.total_price),
                duration_minutes=int((end - start).total_seconds() // 60),
                start_time=start,
                end_time=end,
                status=BookingStatus.CONFIRMED.value,
                payment_status=BookingPaymentStatus.CAPTURED.value,
                reschedule_count=0,
            )
            for role in (AttendanceRole.CLIENT.value, AttendanceRole.COUNSELOR.value):
                self.db.add(BookingAttendance(booking_id=booking.id, role=role, total_heartbeats=0))
            self.db.add(BookingDispute(booking_id=booking.id, is_disputed=False))
            self.db.add(
                BookingPayout(
                    booking_id=booking.id,
                    amount=int(slot.base_price),
                    status=PayoutStatus.PENDING.value,
                )
            )
            linked = self.payment_repository.mark_linked(
                payment.id,
                booking.id,
                PaymentBookingStatus.PAYMENT_CAPTURED.value,
                {
                    Payment.status: PaymentStatus.CAPTURED.value,
                    Payment.booking_status: PaymentBookingStatus.PENDING_RESOURCES.value,
                },
            )
            if not linked:
                raise ConflictException(
                    "Payment was linked concurrently", code="PAYMENT_ALREADY_PROCESSED"
                )
            self.db.flush()

        self.logger.info(
            "Booking %s created for slot %s",
            booking.id,
            slot.id,
            extra={"booking_id": booking.id, "payment_id": payment.id},
        )
        return booking

    def _refund_failed_booking(
        self, payment: Payment, reason: str, detail: str, now: datetime
    ) -> BookingFailure:
        self.payment_repository.set_booking_status(
            payment.id,
            PaymentBookingStatus.PAYMENT_CAPTURED.value,
            PaymentBookingStatus.FAILED.value,
        )
        self.db.commit()
        refund = self.refund_service.initiate_refund(payment.id, reason, detail, now=now)
        if not refund.success:
            self.logger.error(
                "Automatic refund failed for payment %s; manual follow-up needed",
                payment.id,
                extra={"payment_id": payment.id, "reason": reason, "error": refund.error},
            )
        return BookingFailure(reason=reason, refund=refund)

    def _provision_meeting(self, booking: Booking, payment: Payment) -> None:
        try:
            room = self.video_client.create_room()
        except VideoSdkError as exc:
            self.logger.error(
                "Meeting room creation failed for booking %s: %s",
                booking.id,
                exc,
                extra={"booking_id": booking.id, "payment_id": payment.id},
            )
            return

        room_id = str(room["roomId"])
        with self.transaction():
            booking.meeting_room_id = room_id
            booking.meeting_url = build_meeting_url(self.meeting_base_url, room_id)
            self.payment_repository.set_booking_status(
                payment.id,
                PaymentBookingStatus.PENDING_RESOURCES.value,
                PaymentBookingStatus.COMPLETED.value,
            )
        self.db.refresh(payment)

    def _response(
        self, booking: Booking, payment: Payment, *, duplicate: bool = False
    ) -> Dict[str, Any]:
        start = ensure_utc(booking.start_time)
        return {
            "success": True,
            "duplicate": duplicate,
            "booking": {
                "id": booking.id,
                "status": booking.status,
                "start_time": start.isoformat(),
                "session_date": format_local(start, settings.timezone),
                "duration_minutes": booking.duration_minutes,
                "meeting_ready": bool(booking.meeting_url),
            },
            "payment": {
                "id": payment.id,
                "amount": payment.amount,
                "currency": payment.currency,
                "status": payment.status,
                "booking_status": payment.booking_status,
            },
        }

    def _booking_for_payment(self, payment: Payment) -> Optional[Booking]:
        if payment.booking_id:
            return self.booking_repository.get_by_id(payment.booking_id, load_relationships=False)
        # Linking may not have reached the payment row yet
        return self.booking_repository.get_by_payment_id(payment.id)

    @BaseService.measure_operation("request_refund")
    def request_refund(
        self,
        payment_id: str,
        user_id: str,
        idempotency_key: Optional[str],
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Client-requested refund of a payment they made.

        Only payments without a live booking qualify: unlinked payments, and
        payments whose booking is already cancelled (for example after its
        cancellation refund failed). A booked session is refunded by
        cancelling it, which enforces the cancellation window and releases
        the slot and payout together.
        """
        current = self._now(now)
        claim = self.idempotency.claim(
            IdempotencyRequestType.REFUND.value,
            idempotency_key,
            user_id=user_id,
            request_data={"payment_id": payment_id},
            now=current,
        )
        if claim.is_replay:
            return dict(claim.cached_response or {}, cached=True)

        try:
            payment = self.payment_repository.get_by_id(payment_id, load_relationships=False)
            if payment is None:
                raise NotFoundException("Payment not found", details={"payment_id": payment_id})
            if payment.client_id != user_id:
                raise ForbiddenException("You do not have access to this payment")
            booking = self._booking_for_payment(payment)
            if booking is not None and booking.status != BookingStatus.CANCELLED.value:
                raise BusinessRuleException(
                    "This payment belongs to an active booking; cancel the booking to get a refund",
                    code="REFUND_REQUIRES_CANCELLATION",
                    details={"booking_id": booking.id, "status": booking.status},
                )
            result = self.refund_service.initiate_refund(
                payment.id,
                RefundReason.USER_REQUESTED.value,
                f"requested by {user_id}",
                now=current,
            )
            if booking is not None and (result.success or result.already_refunded):
                with self.transaction():
                    booking.payment_status = BookingPaymentStatus.REFUNDED.value
        except Exception as exc:
            self.idempotency.fail(claim.key, {"error": str(exc)})
            raise

        response = result.to_dict()
        self.idempotency.complete(claim.key, response, now=current)
        return response

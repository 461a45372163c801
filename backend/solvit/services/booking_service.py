# backend/solvit/services/booking_service.py
"""
Booking Service for the Solvit platform.

Owns the client-initiated side of the booking state machine: cancellation,
rescheduling, disputes and the cancellation-policy preview. Each operation
touching booking, slot and payment state runs in one transaction; any
failure rolls the whole change back and the caller sees the original error.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    BusinessRuleException,
    CancellationWindowException,
    ConflictException,
    ForbiddenException,
    NotFoundException,
    SlotUnavailableException,
    ValidationException,
)
from ..models.booking import (
    CANCELLABLE_STATUSES,
    Booking,
    BookingPaymentStatus,
    BookingStatus,
)
from ..models.booking_dispute import BookingDispute, DisputeStatus
from ..models.booking_payout import BookingPayout, PayoutStatus
from ..models.payment import PaymentStatus, RefundReason
from ..models.slot import SlotStatus
from ..repositories.factory import RepositoryFactory
from ..utils.time_helpers import ensure_utc
from .base import BaseService
from .refund_service import RefundResult, RefundService

logger = logging.getLogger(__name__)

REFUNDABLE_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.CAPTURED.value, PaymentStatus.CAPTURED_UNLINKED.value}
)


@dataclass
class CancellationOutcome:
    booking: Booking
    refund: Optional[RefundResult] = None


class BookingService(BaseService):
    def __init__(
        self,
        db: Session,
        refund_service: Optional[RefundService] = None,
        *,
        cancellation_window_hours: Optional[int] = None,
        minimum_booking_window_minutes: Optional[int] = None,
    ):
        super().__init__(db)
        self.refund_service = refund_service
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.slot_repository = RepositoryFactory.create_slot_repository(db)
        self.cancellation_window = timedelta(
            hours=cancellation_window_hours or settings.cancellation_window_hours
        )
        self.minimum_booking_window = timedelta(
            minutes=minimum_booking_window_minutes or settings.minimum_booking_window_minutes
        )

    def _get_booking(self, booking_id: str) -> Booking:
        booking = self.booking_repository.get_booking_with_details(booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", details={"booking_id": booking_id})
        return booking

    @staticmethod
    def _require_party(booking: Booking, user_id: str) -> str:
        role = booking.role_of(user_id)
        if role is None:
            raise ForbiddenException("You do not have access to this booking")
        return role

    def _hours_until_start(self, booking: Booking, now: datetime) -> float:
        return (ensure_utc(booking.start_time) - now).total_seconds() / 3600

    def _within_policy_window(self, booking: Booking, now: datetime) -> bool:
        return ensure_utc(booking.start_time) - now >= self.cancellation_window

    @BaseService.measure_operation("get_cancellation_policy")
    def get_cancellation_policy(
        self, booking_id: str, user_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        current = self._now(now)
        booking = self._get_booking(booking_id)
        self._require_party(booking, user_id)

        deadline = ensure_utc(booking.start_time) - self.cancellation_window
        in_window = self._within_policy_window(booking, current)
        allowed_status = booking.status in CANCELLABLE_STATUSES
        return {
            "booking_id": booking.id,
            "status": booking.status,
            "can_cancel": allowed_status and in_window,
            "can_reschedule": allowed_status and in_window,
            "cancellation_deadline": deadline,
            "hours_until_start": round(self._hours_until_start(booking, current), 2),
            "cancellation_window_hours": int(self.cancellation_window.total_seconds() // 3600),
        }

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self,
        booking_id: str,
        user_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> CancellationOutcome:
        """
        Cancel a booking at least the configured window before its start.

        The booking, slot release and refund commit together; a failed
        gateway refund is recorded as a failed refund row and does not block
        the cancellation.
        """
        current = self._now(now)
        booking = self._get_booking(booking_id)
        self._require_party(booking, user_id)

        if booking.status not in CANCELLABLE_STATUSES:
            raise BusinessRuleException(
                f"Booking cannot be cancelled in status '{booking.status}'",
                code="BOOKING_NOT_CANCELLABLE",
                details={"status": booking.status},
            )
        if not self._within_policy_window(booking, current):
            raise CancellationWindowException(
                "cancelled",
                int(self.cancellation_window.total_seconds() // 3600),
                self._hours_until_start(booking, current),
            )

        refund_result: Optional[RefundResult] = None
        with self.transaction():
            moved = self.booking_repository.transition(
                booking.id,
                booking.status,
                {
                    Booking.status: BookingStatus.CANCELLED.value,
                    Booking.cancelled_at: current,
                    Booking.cancelled_by_id: user_id,
                    Booking.cancellation_reason: reason,
                },
            )
            if not moved:
                raise ConflictException(
                    "Booking was modified concurrently; please retry",
                    code="BOOKING_STATE_CHANGED",
                )

            self.slot_repository.release(booking.slot_id, booking.id)
            if booking.payout is not None:
                booking.payout.status = PayoutStatus.REFUNDED.value
                booking.payout.refunded_at = current

            payment = booking.payment
            if payment is not None and payment.status in REFUNDABLE_PAYMENT_STATUSES:
                if self.refund_service is None:
                    raise BusinessRuleException(
                        "Refunds are not available", code="REFUNDS_DISABLED"
                    )
                refund_result = self.refund_service.initiate_refund(
                    payment.id,
                    RefundReason.USER_REQUESTED.value,
                    f"booking {booking.id} cancelled by {user_id}",
                    session=self.db,
                    now=current,
                )
                if refund_result.success or refund_result.already_refunded:
                    booking.payment_status = BookingPaymentStatus.REFUNDED.value
                else:
                    booking.payment_status = BookingPaymentStatus.REFUND_FAILED.value
            self.db.flush()

        if refund_result is not None and self.refund_service is not None:
            self.refund_service.send_notification(refund_result)

        self.logger.info(
            "Booking %s cancelled",
            booking.id,
            extra={
                "booking_id": booking.id,
                "cancelled_by": user_id,
                "refund_success": refund_result.success if refund_result else None,
            },
        )
        return CancellationOutcome(booking=self._get_booking(booking.id), refund=refund_result)

    @BaseService.measure_operation("reschedule_booking")
    def reschedule_booking(
        self,
        booking_id: str,
        user_id: str,
        new_slot_id: str,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Booking:
        """
        Move a booking to another slot of the same counselor.

        The new slot is reserved with the same conditional update used at
        booking time; losing that race aborts the whole reschedule.
        """
        current = self._now(now)
        booking = self._get_booking(booking_id)
        self._require_party(booking, user_id)

        if booking.status not in CANCELLABLE_STATUSES:
            raise BusinessRuleException(
                f"Booking cannot be rescheduled in status '{booking.status}'",
                code="BOOKING_NOT_RESCHEDULABLE",
                details={"status": booking.status},
            )
        if not self._within_policy_window(booking, current):
            raise CancellationWindowException(
                "rescheduled",
                int(self.cancellation_window.total_seconds() // 3600),
                self._hours_until_start(booking, current),
            )
        if new_slot_id == booking.slot_id:
            raise ValidationException("New slot must differ from the current slot")

        new_slot = self.slot_repository.get_by_id(new_slot_id, load_relationships=False)
        if new_slot is None:
            raise NotFoundException("Slot not found", details={"slot_id": new_slot_id})
        if new_slot.counselor_id != booking.counselor_id:
            raise ValidationException("Bookings can only be moved to the same counselor's slots")
        if ensure_utc(new_slot.start_time) < current + self.minimum_booking_window:
            raise ValidationException("The selected slot starts too soon to book")
        if new_slot.status != SlotStatus.AVAILABLE.value:
            raise SlotUnavailableException(new_slot.id, new_slot.status)

        old_slot_id = booking.slot_id
        new_start = ensure_utc(new_slot.start_time)
        new_end = ensure_utc(new_slot.end_time)

        with self.transaction():
            if not self.slot_repository.reserve(new_slot.id, booking.client_id, booking.id, current):
                raise SlotUnavailableException(new_slot.id)
            self.slot_repository.release(old_slot_id, booking.id)
            moved = self.booking_repository.transition(
                booking.id,
                booking.status,
                {
                    Booking.slot_id: new_slot.id,
                    Booking.start_time: new_start,
                    Booking.end_time: new_end,
                    Booking.duration_minutes: int((new_end - new_start).total_seconds() // 60),
                    Booking.status: BookingStatus.CONFIRMED.value,
                    Booking.rescheduled_at: current,
                    Booking.rescheduled_from_slot_id: old_slot_id,
                    Booking.reschedule_count: Booking.reschedule_count + 1,
                    Booking.reschedule_reason: reason,
                },
            )
            if not moved:
                raise ConflictException(
                    "Booking was modified concurrently; please retry",
                    code="BOOKING_STATE_CHANGED",
                )

        self.logger.info(
            "Booking %s rescheduled",
            booking.id,
            extra={"booking_id": booking.id, "from_slot": old_slot_id, "to_slot": new_slot.id},
        )
        return self._get_booking(booking.id)

    @BaseService.measure_operation("dispute_booking")
    def dispute_booking(
        self,
        booking_id: str,
        user_id: str,
        issue_type: str,
        description: str,
        now: Optional[datetime] = None,
    ) -> Booking:
        """Client dispute of a completed session before it auto-confirms; holds the payout."""
        current = self._now(now)
        booking = self._get_booking(booking_id)
        if self._require_party(booking, user_id) != "client":
            raise ForbiddenException("Only the client can dispute a session")
        if booking.status != BookingStatus.COMPLETED_PENDING.value or booking.is_disputed:
            raise BusinessRuleException(
                "This session can no longer be disputed",
                code="DISPUTE_NOT_ALLOWED",
                details={"status": booking.status},
            )

        with self.transaction():
            moved = self.booking_repository.transition(
                booking.id,
                BookingStatus.COMPLETED_PENDING.value,
                {Booking.status: BookingStatus.DISPUTED.value},
            )
            if not moved:
                raise BusinessRuleException(
                    "This session can no longer be disputed", code="DISPUTE_NOT_ALLOWED"
                )
            dispute = booking.dispute or BookingDispute(booking_id=booking.id)
            self.db.add(dispute)
            dispute.is_disputed = True
            dispute.issue_type = issue_type
            dispute.description = description
            dispute.status = DisputeStatus.UNDER_REVIEW.value
            dispute.disputed_at = current
            if not dispute.reason:
                dispute.reason = "client_dispute"
            payout = booking.payout or BookingPayout(booking_id=booking.id, amount=0)
            self.db.add(payout)
            payout.status = PayoutStatus.HELD.value
            payout.hold_reason = "dispute_under_review"
            self.db.flush()

        self.logger.info(
            "Booking %s disputed by client",
            booking.id,
            extra={"booking_id": booking.id, "issue_type": issue_type},
        )
        return self._get_booking(booking.id)

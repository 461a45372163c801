# backend/solvit/services/payment_reconciliation_service.py
"""
Payment reconciliation sweeps.

Catches money captured by the gateway that never made it onto a working
booking:

- orphaned payments: captured and still unlinked past the threshold are
  linked to a booking that exists after all, or refunded with reason
  ``booking_failed``. Refunds run on a small thread pool, each worker with
  its own session, so gateway load stays bounded.
- stuck slots: ``booked`` slots that no live booking references are
  returned to the pool.
- mismatched bookings: payments parked at ``pending_resources`` are marked
  completed once their booking has a meeting room, and flagged for manual
  follow-up otherwise. This path never refunds.

Anything a sweep cannot fix on its own is parked as an open row in
``failed_actions`` for operators; repeat sightings bump its retry count.
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
import logging
from typing import Any, Callable, Dict, List, Optional, TypedDict

from sqlalchemy.orm import Session

from ..core.config import settings
from ..models.failed_action import FailedActionType
from ..models.payment import Payment, PaymentBookingStatus, PaymentStatus, RefundReason
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .refund_service import RefundService

logger = logging.getLogger(__name__)

RefundServiceFactory = Callable[[Session], RefundService]

ORPHAN_ACTION_TYPES = [
    FailedActionType.ORPHANED_PAYMENT_REFUND_FAILED.value,
    FailedActionType.ORPHANED_PAYMENT_PROCESSING_FAILED.value,
]


class ReconciliationResult(TypedDict):
    orphaned_payments: Dict[str, int]
    stuck_slots: Dict[str, int]
    mismatched_bookings: Dict[str, int]


class PaymentReconciliationService(BaseService):
    def __init__(
        self,
        db: Session,
        session_factory: Callable[[], Session],
        refund_service_factory: RefundServiceFactory,
        *,
        orphan_threshold_minutes: Optional[int] = None,
        orphan_batch_size: Optional[int] = None,
        refund_concurrency: Optional[int] = None,
        pending_resources_threshold_minutes: Optional[int] = None,
        pending_resources_batch_size: Optional[int] = None,
        stuck_slot_threshold_minutes: Optional[int] = None,
    ):
        super().__init__(db)
        self.session_factory = session_factory
        self.refund_service_factory = refund_service_factory
        self.orphan_threshold = timedelta(
            minutes=orphan_threshold_minutes or settings.orphaned_payment_threshold_minutes
        )
        self.orphan_batch_size = orphan_batch_size or settings.orphaned_payment_batch_size
        self.refund_concurrency = refund_concurrency or settings.refund_concurrency
        self.pending_resources_threshold = timedelta(
            minutes=pending_resources_threshold_minutes
            or settings.pending_resources_threshold_minutes
        )
        self.pending_resources_batch_size = (
            pending_resources_batch_size or settings.pending_resources_batch_size
        )
        self.stuck_slot_threshold = timedelta(
            minutes=stuck_slot_threshold_minutes or settings.stuck_slot_threshold_minutes
        )
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.slot_repository = RepositoryFactory.create_slot_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)

    @BaseService.measure_operation("process_orphaned_payments")
    def process_orphaned_payments(self, now: Optional[datetime] = None) -> Dict[str, int]:
        current = self._now(now)
        payment_ids = self.payment_repository.get_orphaned_payment_ids(
            current - self.orphan_threshold, self.orphan_batch_size
        )
        counts = {"processed": len(payment_ids), "linked": 0, "refunded": 0, "failed": 0}
        if not payment_ids:
            return counts

        self.logger.info("Found %s orphaned payments", len(payment_ids))
        with ThreadPoolExecutor(
            max_workers=self.refund_concurrency, thread_name_prefix="orphan-refund"
        ) as executor:
            outcomes: List[str] = list(
                executor.map(lambda pid: self._resolve_orphan(pid, current), payment_ids)
            )

        for outcome in outcomes:
            counts[outcome] += 1
            prometheus_metrics.record_job_items("orphaned_payments", outcome)
        if counts["failed"]:
            self.logger.warning(
                "%s orphaned payments could not be refunded", counts["failed"], extra=counts
            )
        return counts

    def _resolve_orphan(self, payment_id: str, now: datetime) -> str:
        session = self.session_factory()
        try:
            booking = RepositoryFactory.create_booking_repository(session).get_by_payment_id(
                payment_id
            )
            if booking is not None:
                linked = RepositoryFactory.create_payment_repository(session).mark_linked(
                    payment_id,
                    booking.id,
                    PaymentBookingStatus.PAYMENT_CAPTURED.value,
                    {
                        Payment.status: PaymentStatus.CAPTURED.value,
                        Payment.booking_status: PaymentBookingStatus.COMPLETED.value,
                    },
                )
                session.commit()
                self.logger.info(
                    "Orphaned payment %s linked to existing booking %s", payment_id, booking.id
                )
                return "linked" if linked else "failed"

            result = self.refund_service_factory(session).initiate_refund(
                payment_id,
                RefundReason.BOOKING_FAILED.value,
                "orphaned payment: booking creation never completed",
                now=now,
            )
            if result.success or result.already_refunded:
                resolved = RepositoryFactory.create_failed_action_repository(
                    session
                ).resolve_for_payment(payment_id, ORPHAN_ACTION_TYPES, now)
                if resolved:
                    session.commit()
                return "refunded"
            self.logger.error(
                "Refund failed for orphaned payment %s: %s",
                payment_id,
                result.error,
                extra={"payment_id": payment_id},
            )
            self._park_failure(
                session,
                FailedActionType.ORPHANED_PAYMENT_REFUND_FAILED.value,
                result.error or "refund failed",
                now,
                payment_id=payment_id,
                metadata={"error_code": result.error_code, "attempts": result.attempts},
            )
            session.commit()
            return "failed"
        except Exception as exc:
            session.rollback()
            self.logger.error(
                "Error reconciling orphaned payment %s: %s",
                payment_id,
                exc,
                exc_info=True,
                extra={"payment_id": payment_id},
            )
            self._park_failure_safely(
                session,
                FailedActionType.ORPHANED_PAYMENT_PROCESSING_FAILED.value,
                str(exc),
                now,
                payment_id=payment_id,
            )
            return "failed"
        finally:
            session.close()

    @BaseService.measure_operation("release_stuck_slots")
    def release_stuck_slots(self, now: Optional[datetime] = None) -> Dict[str, int]:
        current = self._now(now)
        cutoff = current - self.stuck_slot_threshold
        slots = self.slot_repository.find_stuck_booked(cutoff, self.orphan_batch_size)
        counts = {"processed": len(slots), "released": 0, "failed": 0}

        for slot in slots:
            try:
                with self.transaction():
                    released = self.slot_repository.release_stuck(slot.id, cutoff)
                if released:
                    counts["released"] += 1
                    self.logger.warning(
                        "Released stuck slot %s", slot.id, extra={"slot_id": slot.id}
                    )
            except Exception as exc:
                counts["failed"] += 1
                self.logger.error("Failed to release slot %s: %s", slot.id, exc)
                self._park_failure_safely(
                    self.db,
                    FailedActionType.SLOT_RELEASE_FAILED.value,
                    str(exc),
                    current,
                    slot_id=slot.id,
                )

        prometheus_metrics.record_job_items("stuck_slots", "released", counts["released"])
        prometheus_metrics.record_job_items("stuck_slots", "failed", counts["failed"])
        return counts

    @BaseService.measure_operation("process_mismatched_bookings")
    def process_mismatched_bookings(self, now: Optional[datetime] = None) -> Dict[str, int]:
        current = self._now(now)
        payments = self.payment_repository.get_pending_resource_payments(
            current - self.pending_resources_threshold, self.pending_resources_batch_size
        )
        counts = {"processed": len(payments), "completed": 0, "needs_attention": 0, "failed": 0}

        for payment in payments:
            try:
                booking = (
                    self.booking_repository.get_by_id(payment.booking_id, load_relationships=False)
                    if payment.booking_id
                    else None
                )
                if booking is not None and booking.meeting_room_id:
                    with self.transaction():
                        self.payment_repository.set_booking_status(
                            payment.id,
                            PaymentBookingStatus.PENDING_RESOURCES.value,
                            PaymentBookingStatus.COMPLETED.value,
                        )
                    counts["completed"] += 1
                    continue

                counts["needs_attention"] += 1
                self.logger.error(
                    "Payment %s stuck in pending_resources; manual intervention required",
                    payment.id,
                    extra={"payment_id": payment.id, "booking_id": payment.booking_id},
                )
                with self.transaction():
                    self._park_failure(
                        self.db,
                        FailedActionType.PAYMENT_STUCK_PENDING_RESOURCES.value,
                        "Payment stuck in pending_resources without a meeting room",
                        current,
                        payment_id=payment.id,
                        booking_id=payment.booking_id,
                    )
            except Exception as exc:
                counts["failed"] += 1
                self.logger.error("Failed to reconcile payment %s: %s", payment.id, exc)

        for outcome in ("completed", "needs_attention", "failed"):
            prometheus_metrics.record_job_items("mismatched_bookings", outcome, counts[outcome])
        return counts

    def _park_failure(
        self, session: Session, action_type: str, error: str, now: datetime, **refs: Any
    ) -> None:
        RepositoryFactory.create_failed_action_repository(session).record(
            action_type, error, now, **refs
        )
        prometheus_metrics.record_failed_action(action_type)

    def _park_failure_safely(
        self, session: Session, action_type: str, error: str, now: datetime, **refs: Any
    ) -> None:
        # Called after a failure; the session may be the thing that broke
        try:
            session.rollback()
            self._park_failure(session, action_type, error, now, **refs)
            session.commit()
        except Exception as exc:
            session.rollback()
            self.logger.error(
                "Could not record %s failure: %s", action_type, exc, extra=refs, exc_info=True
            )

    def reconcile(self, now: Optional[datetime] = None) -> ReconciliationResult:
        current = self._now(now)
        return {
            "orphaned_payments": self.process_orphaned_payments(now=current),
            "stuck_slots": self.release_stuck_slots(now=current),
            "mismatched_bookings": self.process_mismatched_bookings(now=current),
        }

# backend/tests/unit/services/test_payment_reconciliation_service.py
"""
Tests for the payment reconciliation sweeps.

Orphan workers open their own sessions from ``session_factory``. The
shared fixture pins the pool to one worker so the in-memory gateway sees
calls in order; the pool-size tests swap in a refund service that only
counts how many refunds are in flight at once.
"""

from datetime import timedelta
import threading
from typing import List, Optional

import pytest

from solvit.core.config import settings
from solvit.integrations.razorpay_client import RazorpayError
from solvit.models import (
    Booking,
    FailedAction,
    FailedActionType,
    Payment,
    PaymentBookingStatus,
    PaymentRefund,
    PaymentStatus,
    RefundReason,
    Slot,
    SlotStatus,
)
from solvit.monitoring.prometheus_metrics import REGISTRY
from solvit.services.payment_reconciliation_service import PaymentReconciliationService
from solvit.services.refund_service import RefundResult, RefundService
from tests.factories.builders import create_booking, create_payment, create_slot, reload


@pytest.fixture
def reconciliation(db, session_factory, gateway, notifier) -> PaymentReconciliationService:
    return PaymentReconciliationService(
        db,
        session_factory,
        lambda session: RefundService(
            session, gateway, notifier, sleep=lambda _s: None, jitter=lambda: 0.0
        ),
        refund_concurrency=1,
    )


class InFlightRefunds:
    """Stands in for RefundService and records concurrent initiate_refund calls."""

    def __init__(self, barrier: Optional[threading.Barrier] = None):
        self.barrier = barrier
        self.lock = threading.Lock()
        self.in_flight = 0
        self.peak = 0
        self.payment_ids: List[str] = []

    def initiate_refund(self, payment_id, reason, detail, *, session=None, now=None):
        with self.lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
            self.payment_ids.append(payment_id)
        try:
            if self.barrier is not None:
                self.barrier.wait()
            return RefundResult(success=True, payment_id=payment_id, reason=reason)
        finally:
            with self.lock:
                self.in_flight -= 1


def _orphan(db, client, counselor, now, *, age_minutes=45) -> Payment:
    slot = create_slot(db, counselor, now + timedelta(days=1))
    return create_payment(
        db,
        client,
        slot,
        status=PaymentStatus.CAPTURED_UNLINKED.value,
        booking_status=PaymentBookingStatus.PAYMENT_CAPTURED.value,
        created_at=now - timedelta(minutes=age_minutes),
    )


def _failed_action_count(action_type: str) -> float:
    value = REGISTRY.get_sample_value(
        "solvit_failed_actions_total", {"action_type": action_type}
    )
    return value or 0.0


class TestOrphanedPayments:
    def test_orphan_is_refunded_once(
        self, db, reconciliation, gateway, notifier, test_client_user, test_counselor, now
    ):
        payment = _orphan(db, test_client_user, test_counselor, now)

        counts = reconciliation.process_orphaned_payments(now=now)

        assert counts == {"processed": 1, "linked": 0, "refunded": 1, "failed": 0}
        refunded = reload(db, Payment, payment.id)
        assert refunded.booking_status == PaymentBookingStatus.REFUNDED.value
        assert refunded.amount_refunded == refunded.amount
        row = db.query(PaymentRefund).filter_by(payment_id=payment.id).one()
        assert row.reason == RefundReason.BOOKING_FAILED.value
        assert len(notifier.sent) == 1

        rerun = reconciliation.process_orphaned_payments(now=now + timedelta(minutes=15))
        assert rerun["processed"] == 0
        assert len(gateway.calls_for("refund_payment")) == 1

    def test_recent_payment_is_not_an_orphan_yet(
        self, db, reconciliation, gateway, test_client_user, test_counselor, now
    ):
        _orphan(db, test_client_user, test_counselor, now, age_minutes=10)

        counts = reconciliation.process_orphaned_payments(now=now)

        assert counts["processed"] == 0
        assert gateway.calls_for("refund_payment") == []

    def test_orphan_with_existing_booking_is_linked_not_refunded(
        self, db, reconciliation, gateway, test_client_user, test_counselor, now
    ):
        payment = _orphan(db, test_client_user, test_counselor, now)
        booking = create_booking(
            db, test_client_user, test_counselor, now + timedelta(days=1), with_payment=False
        )
        booking.payment_id = payment.id
        db.commit()

        counts = reconciliation.process_orphaned_payments(now=now)

        assert counts["linked"] == 1
        linked = reload(db, Payment, payment.id)
        assert linked.booking_id == booking.id
        assert linked.status == PaymentStatus.CAPTURED.value
        assert linked.booking_status == PaymentBookingStatus.COMPLETED.value
        assert gateway.calls_for("refund_payment") == []

    def test_failed_refund_is_retried_on_the_next_run(
        self, db, reconciliation, gateway, test_client_user, test_counselor, now
    ):
        payment = _orphan(db, test_client_user, test_counselor, now)
        gateway.set_error("refund_payment", RazorpayError("upstream timeout", 502))

        first = reconciliation.process_orphaned_payments(now=now)

        assert first["failed"] == 1
        still_orphaned = reload(db, Payment, payment.id)
        assert still_orphaned.booking_status == PaymentBookingStatus.PAYMENT_CAPTURED.value
        assert still_orphaned.amount_refunded == 0
        parked = db.query(FailedAction).filter_by(payment_id=payment.id).one()
        assert parked.action_type == FailedActionType.ORPHANED_PAYMENT_REFUND_FAILED.value
        assert parked.resolved is False

        again = reconciliation.process_orphaned_payments(now=now + timedelta(minutes=5))

        assert again["failed"] == 1
        db.expire_all()
        parked = db.query(FailedAction).filter_by(payment_id=payment.id).one()
        assert parked.retry_count == 1

        gateway.clear_errors()
        second = reconciliation.process_orphaned_payments(now=now + timedelta(minutes=15))

        assert second["refunded"] == 1
        statuses = sorted(
            row.status for row in db.query(PaymentRefund).filter_by(payment_id=payment.id)
        )
        assert statuses == ["failed", "failed", "processed"]
        db.expire_all()
        resolved = db.query(FailedAction).filter_by(payment_id=payment.id).one()
        assert resolved.resolved is True
        assert resolved.resolved_by == "auto"

    def test_refund_calls_never_exceed_the_configured_pool_size(
        self, db, session_factory, test_client_user, test_counselor, now
    ):
        bound = settings.refund_concurrency
        # Every worker must be in flight at the same moment to get past the barrier
        refunds = InFlightRefunds(threading.Barrier(bound, timeout=5))
        for _ in range(bound * 2):
            _orphan(db, test_client_user, test_counselor, now)
        service = PaymentReconciliationService(db, session_factory, lambda _session: refunds)

        counts = service.process_orphaned_payments(now=now)

        assert service.refund_concurrency == bound
        assert counts == {"processed": bound * 2, "linked": 0, "refunded": bound * 2, "failed": 0}
        assert refunds.peak == bound
        assert len(set(refunds.payment_ids)) == bound * 2

    def test_one_run_handles_at_most_one_batch_oldest_first(
        self, db, session_factory, test_client_user, test_counselor, now
    ):
        batch = settings.orphaned_payment_batch_size
        orphans = [
            _orphan(db, test_client_user, test_counselor, now, age_minutes=45 + i)
            for i in range(batch + 2)
        ]
        refunds = InFlightRefunds()
        service = PaymentReconciliationService(db, session_factory, lambda _session: refunds)

        counts = service.process_orphaned_payments(now=now)

        assert service.orphan_batch_size == batch
        assert counts["processed"] == batch
        assert counts["refunded"] == batch
        newest_two = {orphans[0].id, orphans[1].id}
        assert set(refunds.payment_ids) == {p.id for p in orphans} - newest_two

class TestStuckSlots:
    def test_booked_slot_without_booking_is_released(
        self, db, reconciliation, test_counselor, now
    ):
        stuck = create_slot(
            db,
            test_counselor,
            now + timedelta(days=1),
            status=SlotStatus.BOOKED.value,
            booked_at=now - timedelta(minutes=30),
        )

        counts = reconciliation.release_stuck_slots(now=now)

        assert counts == {"processed": 1, "released": 1, "failed": 0}
        released = reload(db, Slot, stuck.id)
        assert released.status == SlotStatus.AVAILABLE.value
        assert released.booked_at is None

    def test_live_and_recent_slots_are_kept(
        self, db, reconciliation, test_client_user, test_counselor, now
    ):
        booking = create_booking(db, test_client_user, test_counselor, now + timedelta(days=2))
        recent = create_slot(
            db,
            test_counselor,
            now + timedelta(days=1),
            status=SlotStatus.BOOKED.value,
            booked_at=now - timedelta(minutes=5),
        )

        counts = reconciliation.release_stuck_slots(now=now)

        assert counts["released"] == 0
        assert reload(db, Slot, booking.slot_id).status == SlotStatus.BOOKED.value
        assert reload(db, Slot, recent.id).status == SlotStatus.BOOKED.value


class TestMismatchedBookings:
    def _park(self, db, payment_id):
        payment = db.get(Payment, payment_id)
        payment.booking_status = PaymentBookingStatus.PENDING_RESOURCES.value
        db.commit()

    def test_booking_with_room_is_completed(
        self, db, reconciliation, gateway, test_client_user, test_counselor, now
    ):
        booking = create_booking(db, test_client_user, test_counselor, now + timedelta(days=1))
        self._park(db, booking.payment_id)

        counts = reconciliation.process_mismatched_bookings(now=now)

        assert counts["completed"] == 1
        payment = reload(db, Payment, booking.payment_id)
        assert payment.booking_status == PaymentBookingStatus.COMPLETED.value
        assert gateway.calls_for("refund_payment") == []

    def test_booking_without_room_needs_attention_and_is_never_refunded(
        self, db, reconciliation, gateway, test_client_user, test_counselor, now
    ):
        booking = create_booking(
            db, test_client_user, test_counselor, now + timedelta(days=1), meeting_url=None
        )
        self._park(db, booking.payment_id)

        counts = reconciliation.process_mismatched_bookings(now=now)

        assert counts["needs_attention"] == 1
        payment = reload(db, Payment, booking.payment_id)
        assert payment.booking_status == PaymentBookingStatus.PENDING_RESOURCES.value
        assert gateway.calls_for("refund_payment") == []
        assert reload(db, Booking, booking.id).meeting_url is None

    def test_stuck_payment_is_parked_once_for_operators(
        self, db, reconciliation, test_client_user, test_counselor, now
    ):
        booking = create_booking(
            db, test_client_user, test_counselor, now + timedelta(days=1), meeting_url=None
        )
        self._park(db, booking.payment_id)
        action_type = FailedActionType.PAYMENT_STUCK_PENDING_RESOURCES.value
        before = _failed_action_count(action_type)

        reconciliation.process_mismatched_bookings(now=now)
        reconciliation.process_mismatched_bookings(now=now + timedelta(minutes=15))

        db.expire_all()
        parked = db.query(FailedAction).filter_by(payment_id=booking.payment_id).one()
        assert parked.action_type == action_type
        assert parked.booking_id == booking.id
        assert parked.retry_count == 1
        assert parked.resolved is False
        assert _failed_action_count(action_type) == before + 2


class TestReconcile:
    def test_runs_all_three_sweeps(
        self, db, reconciliation, test_client_user, test_counselor, now
    ):
        _orphan(db, test_client_user, test_counselor, now)
        create_slot(
            db,
            test_counselor,
            now + timedelta(days=1),
            status=SlotStatus.BOOKED.value,
            booked_at=now - timedelta(hours=1),
        )

        result = reconciliation.reconcile(now=now)

        assert result["orphaned_payments"]["refunded"] == 1
        assert result["stuck_slots"]["released"] == 1
        assert result["mismatched_bookings"]["processed"] == 0

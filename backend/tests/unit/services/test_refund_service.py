# backend/tests/unit/services/test_refund_service.py
"""
Tests for RefundService.

Runs against a real SQLite session with the in-memory gateway so the
refund rows and payment counters can be checked directly.
"""

from datetime import timedelta

import pytest

from solvit.core.exceptions import NotFoundException
from solvit.integrations.razorpay_client import RazorpayError
from solvit.models import (
    Payment,
    PaymentBookingStatus,
    PaymentRefund,
    PaymentStatus,
    RefundReason,
    RefundStatus,
)
from solvit.services.refund_service import (
    RefundService,
    compute_backoff_ms,
    is_non_retryable,
)
from tests.factories.builders import create_payment, create_slot, reload


def _refunds(db, payment_id):
    db.expire_all()
    return db.query(PaymentRefund).filter(PaymentRefund.payment_id == payment_id).all()


@pytest.fixture
def captured_payment(db, test_client_user, test_counselor, now):
    slot = create_slot(db, test_counselor, now + timedelta(days=2))
    return create_payment(
        db,
        test_client_user,
        slot,
        status=PaymentStatus.CAPTURED.value,
        booking_status=PaymentBookingStatus.COMPLETED.value,
    )


class TestBackoffHelpers:
    def test_backoff_doubles_per_attempt(self):
        no_jitter = lambda: 0.0  # noqa: E731
        assert compute_backoff_ms(1, base_ms=1000, cap_ms=10000, jitter=no_jitter) == 2000
        assert compute_backoff_ms(2, base_ms=1000, cap_ms=10000, jitter=no_jitter) == 4000

    def test_backoff_is_capped(self):
        assert compute_backoff_ms(5, base_ms=1000, cap_ms=10000, jitter=lambda: 0.99) == 10000

    def test_jitter_adds_up_to_a_second(self):
        assert compute_backoff_ms(1, base_ms=1000, cap_ms=10000, jitter=lambda: 0.5) == 2500

    @pytest.mark.parametrize(
        "code,description,expected",
        [
            ("BAD_REQUEST_ERROR", "anything", True),
            (None, "The payment has been fully refunded already", True),
            (None, "The refund amount provided is greater than amount captured", True),
            ("GATEWAY_ERROR", "upstream timeout", False),
            (None, "", False),
        ],
    )
    def test_non_retryable_classification(self, code, description, expected):
        assert is_non_retryable(code, description) is expected


class TestInitiateRefund:
    def test_successful_refund_records_row_and_updates_payment(
        self, db, refund_service, gateway, notifier, captured_payment, now
    ):
        result = refund_service.initiate_refund(
            captured_payment.id, RefundReason.USER_REQUESTED.value, now=now
        )

        assert result.success is True
        assert result.amount == captured_payment.amount
        assert result.attempts == 1
        assert len(gateway.calls_for("refund_payment")) == 1

        payment = reload(db, Payment, captured_payment.id)
        assert payment.amount_refunded == payment.amount
        assert payment.refund_status == RefundStatus.FULL.value
        assert payment.booking_status == PaymentBookingStatus.REFUNDED.value

        rows = _refunds(db, captured_payment.id)
        assert len(rows) == 1
        assert rows[0].gateway_refund_id == result.refund_id
        assert rows[0].reason == RefundReason.USER_REQUESTED.value
        assert notifier.sent == [
            {
                "payment_id": captured_payment.id,
                "refund_id": result.refund_id,
                "reason": RefundReason.USER_REQUESTED.value,
            }
        ]

    def test_refunds_only_the_remaining_amount(
        self, db, refund_service, gateway, test_client_user, test_counselor, now
    ):
        slot = create_slot(db, test_counselor, now + timedelta(days=2))
        payment = create_payment(db, test_client_user, slot, amount=115000, amount_refunded=15000)

        result = refund_service.initiate_refund(
            payment.id, RefundReason.SYSTEM_ERROR.value, now=now
        )

        assert result.success is True
        assert gateway.calls_for("refund_payment")[0]["amount"] == 100000
        assert reload(db, Payment, payment.id).amount_refunded == 115000

    def test_already_refunded_makes_no_gateway_call(
        self, db, refund_service, gateway, test_client_user, test_counselor, now
    ):
        slot = create_slot(db, test_counselor, now + timedelta(days=2))
        payment = create_payment(db, test_client_user, slot, amount=115000, amount_refunded=115000)

        result = refund_service.initiate_refund(
            payment.id, RefundReason.USER_REQUESTED.value, now=now
        )

        assert result.success is False
        assert result.already_refunded is True
        assert gateway.calls_for("refund_payment") == []
        assert _refunds(db, payment.id) == []

    def test_below_minimum_amount_is_rejected_without_gateway_call(
        self, db, refund_service, gateway, test_client_user, test_counselor, now
    ):
        slot = create_slot(db, test_counselor, now + timedelta(days=2))
        payment = create_payment(db, test_client_user, slot, amount=115000, amount_refunded=114950)

        result = refund_service.initiate_refund(
            payment.id, RefundReason.USER_REQUESTED.value, now=now
        )

        assert result.success is False
        assert result.already_refunded is False
        assert "at least" in result.error
        assert gateway.calls_for("refund_payment") == []

    def test_unknown_payment_raises(self, refund_service, now):
        with pytest.raises(NotFoundException):
            refund_service.initiate_refund("missing", RefundReason.USER_REQUESTED.value, now=now)

    def test_unknown_reason_is_rejected(self, refund_service, captured_payment, now):
        with pytest.raises(ValueError):
            refund_service.initiate_refund(captured_payment.id, "because", now=now)

    def test_non_retryable_error_fails_after_one_attempt(
        self, db, refund_service, gateway, notifier, sleeps, captured_payment, now
    ):
        gateway.set_error(
            "refund_payment",
            RazorpayError(
                "The payment has been fully refunded already",
                400,
                code="BAD_REQUEST_ERROR",
                source="business",
                step="payment_refund",
            ),
        )

        result = refund_service.initiate_refund(
            captured_payment.id, RefundReason.BOOKING_FAILED.value, "phase=booking", now=now
        )

        assert result.success is False
        assert result.attempts == 1
        assert result.error_code == "BAD_REQUEST_ERROR"
        assert len(gateway.calls_for("refund_payment")) == 1
        assert sleeps == []
        assert notifier.sent == []

        rows = _refunds(db, captured_payment.id)
        assert len(rows) == 1
        failed = rows[0]
        assert failed.status == "failed"
        assert failed.gateway_refund_id.startswith(f"FAILED_{int(now.timestamp() * 1000)}_")
        assert "code=BAD_REQUEST_ERROR" in failed.error_details
        assert "attempts=1" in failed.error_details
        assert failed.refund_metadata["caller_detail"] == "phase=booking"
        assert reload(db, Payment, captured_payment.id).amount_refunded == 0

    def test_transient_errors_are_retried_with_backoff(
        self, db, refund_service, gateway, sleeps, captured_payment, now
    ):
        gateway.queue_errors(
            "refund_payment",
            RazorpayError("upstream timeout", 502, code="GATEWAY_ERROR"),
            RazorpayError("upstream timeout", 502, code="GATEWAY_ERROR"),
        )

        result = refund_service.initiate_refund(
            captured_payment.id, RefundReason.USER_REQUESTED.value, now=now
        )

        assert result.success is True
        assert result.attempts == 3
        assert len(gateway.calls_for("refund_payment")) == 3
        # base 1000ms * 2^attempt, no jitter
        assert sleeps == [2.0, 4.0]
        rows = _refunds(db, captured_payment.id)
        assert [row.status for row in rows] == ["processed"]

    def test_exhausted_retries_record_a_single_failed_row(
        self, db, refund_service, gateway, sleeps, captured_payment, now
    ):
        gateway.set_error("refund_payment", RazorpayError("upstream timeout", 502))

        result = refund_service.initiate_refund(
            captured_payment.id, RefundReason.USER_REQUESTED.value, now=now
        )

        assert result.success is False
        assert result.attempts == 3
        assert len(sleeps) == 2
        rows = _refunds(db, captured_payment.id)
        assert len(rows) == 1
        assert rows[0].status == "failed"
        assert "code=UNKNOWN_ERROR" in rows[0].error_details

    def test_max_retries_can_be_overridden_per_call(
        self, refund_service, gateway, sleeps, captured_payment, now
    ):
        gateway.set_error("refund_payment", RazorpayError("upstream timeout", 502))

        result = refund_service.initiate_refund(
            captured_payment.id, RefundReason.USER_REQUESTED.value, max_retries=1, now=now
        )

        assert result.attempts == 1
        assert sleeps == []


class TestAmbientSession:
    def test_ambient_session_is_not_committed_by_the_service(
        self, db, gateway, notifier, session_factory, captured_payment, now
    ):
        caller_session = session_factory()
        try:
            service = RefundService(db, gateway, notifier, sleep=lambda _s: None)
            result = service.initiate_refund(
                captured_payment.id,
                RefundReason.USER_REQUESTED.value,
                session=caller_session,
                now=now,
            )
            assert result.success is True
            # Caller owns the commit and the notification
            assert notifier.sent == []

            caller_session.rollback()
        finally:
            caller_session.close()

        assert _refunds(db, captured_payment.id) == []
        assert reload(db, Payment, captured_payment.id).amount_refunded == 0

    def test_ambient_session_commit_persists_refund(
        self, db, gateway, notifier, session_factory, captured_payment, now
    ):
        caller_session = session_factory()
        try:
            service = RefundService(db, gateway, notifier, sleep=lambda _s: None)
            result = service.initiate_refund(
                captured_payment.id,
                RefundReason.USER_REQUESTED.value,
                session=caller_session,
                now=now,
            )
            caller_session.commit()
            service.send_notification(result)
        finally:
            caller_session.close()

        assert len(_refunds(db, captured_payment.id)) == 1
        assert reload(db, Payment, captured_payment.id).amount_refunded == captured_payment.amount
        assert len(notifier.sent) == 1

    def test_notification_failure_is_swallowed(self, db, gateway, captured_payment, now):
        class BrokenNotifier:
            def notify_refund(self, payment_id, gateway_refund_id, reason):
                raise RuntimeError("broker down")

        service = RefundService(db, gateway, BrokenNotifier(), sleep=lambda _s: None)
        result = service.initiate_refund(
            captured_payment.id, RefundReason.USER_REQUESTED.value, now=now
        )
        assert result.success is True

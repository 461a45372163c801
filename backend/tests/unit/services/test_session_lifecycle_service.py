# backend/tests/unit/services/test_session_lifecycle_service.py
"""
Tests for the session lifecycle jobs: start, end (presence verdict) and
auto-confirm.

Every job is run twice somewhere in here; the second run must change
nothing.
"""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from solvit.domain.attendance_utils import PresenceResult, PresenceThresholds
from solvit.models import (
    Booking,
    BookingAttendance,
    BookingDispute,
    BookingPayout,
    BookingStatus,
    NoShowType,
    PayoutStatus,
)
from solvit.services.payout_service import LoggingPayoutReleaser
from solvit.services.session_lifecycle_service import SessionLifecycleService, decide_outcome
from solvit.utils.time_helpers import ensure_utc
from tests.factories.builders import create_booking, reload, set_attendance


@pytest.fixture
def releaser() -> LoggingPayoutReleaser:
    return LoggingPayoutReleaser()


@pytest.fixture
def lifecycle(db, releaser) -> SessionLifecycleService:
    return SessionLifecycleService(db, releaser)


def _ended_booking(db, client, counselor, now: datetime) -> Booking:
    """Ongoing 45 minute session that ended 15 minutes ago."""
    return create_booking(
        db,
        client,
        counselor,
        now - timedelta(minutes=60),
        status=BookingStatus.ONGOING.value,
        session_started_at=now - timedelta(minutes=60),
    )


def _attendance(db, booking_id, role) -> BookingAttendance:
    return db.query(BookingAttendance).filter_by(booking_id=booking_id, role=role).one()


class TestDecideOutcome:
    PRESENT = PresenceResult(present=True, estimated_minutes=40)
    ABSENT = PresenceResult(present=False, estimated_minutes=0)

    def test_both_present_completes(self):
        assert decide_outcome(self.PRESENT, self.PRESENT) == (
            BookingStatus.COMPLETED_PENDING.value,
            None,
        )

    def test_counselor_absent_is_counselor_no_show(self):
        assert decide_outcome(self.PRESENT, self.ABSENT) == (
            BookingStatus.NO_SHOW.value,
            NoShowType.COUNSELOR.value,
        )

    def test_client_absent_is_client_no_show(self):
        assert decide_outcome(self.ABSENT, self.PRESENT) == (
            BookingStatus.NO_SHOW.value,
            NoShowType.CLIENT.value,
        )

    def test_both_absent_falls_through_to_completed_pending(self):
        assert decide_outcome(self.ABSENT, self.ABSENT) == (
            BookingStatus.COMPLETED_PENDING.value,
            None,
        )


class TestStartSessions:
    def test_confirmed_booking_inside_lookback_starts(
        self, db, lifecycle, test_client_user, test_counselor, now
    ):
        booking = create_booking(db, test_client_user, test_counselor, now - timedelta(minutes=3))

        counts = lifecycle.start_sessions(now=now)

        assert counts["advanced"] == 1
        started = reload(db, Booking, booking.id)
        assert started.status == BookingStatus.ONGOING.value
        assert ensure_utc(started.session_started_at) == now

    def test_future_and_stale_bookings_are_left_alone(
        self, db, lifecycle, test_client_user, test_counselor, now
    ):
        future = create_booking(db, test_client_user, test_counselor, now + timedelta(minutes=1))
        stale = create_booking(db, test_client_user, test_counselor, now - timedelta(minutes=11))

        counts = lifecycle.start_sessions(now=now)

        assert counts["processed"] == 0
        assert reload(db, Booking, future.id).status == BookingStatus.CONFIRMED.value
        assert reload(db, Booking, stale.id).status == BookingStatus.CONFIRMED.value

    def test_second_run_is_a_noop(self, db, lifecycle, test_client_user, test_counselor, now):
        create_booking(db, test_client_user, test_counselor, now - timedelta(minutes=3))

        lifecycle.start_sessions(now=now)
        second = lifecycle.start_sessions(now=now + timedelta(minutes=1))

        assert second["processed"] == 0
        assert second["advanced"] == 0


class TestEndSessions:
    def test_both_present_completes_pending_with_auto_confirm(
        self, db, lifecycle, test_client_user, test_counselor, now
    ):
        booking = _ended_booking(db, test_client_user, test_counselor, now)
        joined = now - timedelta(minutes=59)
        set_attendance(db, booking, "client", joined_at=joined, total_heartbeats=40)
        set_attendance(db, booking, "counselor", joined_at=joined, total_heartbeats=42)

        counts = lifecycle.end_sessions(now=now)

        assert counts["advanced"] == 1
        ended = reload(db, Booking, booking.id)
        assert ended.status == BookingStatus.COMPLETED_PENDING.value
        assert ended.no_show_type is None
        assert ensure_utc(ended.session_ended_at) == now
        assert ensure_utc(ended.completed_pending_at) == now
        assert ensure_utc(ended.auto_confirm_at) == now + timedelta(hours=24)

        client_row = _attendance(db, booking.id, "client")
        assert client_row.present is True
        assert client_row.estimated_minutes == 40
        counselor_row = _attendance(db, booking.id, "counselor")
        assert counselor_row.estimated_minutes == 42

    def test_client_who_never_joined_is_a_client_no_show(
        self, db, lifecycle, test_client_user, test_counselor, now
    ):
        booking = _ended_booking(db, test_client_user, test_counselor, now)
        set_attendance(
            db, booking, "counselor", joined_at=now - timedelta(minutes=59), total_heartbeats=25
        )
        # Heartbeats without a redeemed join token do not count
        set_attendance(db, booking, "client", joined_at=None, total_heartbeats=3)

        lifecycle.end_sessions(now=now)

        ended = reload(db, Booking, booking.id)
        assert ended.status == BookingStatus.NO_SHOW.value
        assert ended.no_show_type == NoShowType.CLIENT.value
        dispute = db.query(BookingDispute).filter_by(booking_id=booking.id).one()
        assert dispute.reason == "client_no_show"
        assert dispute.is_disputed is False
        payout = db.query(BookingPayout).filter_by(booking_id=booking.id).one()
        assert payout.hold_reason == "client_no_show"
        assert payout.status == PayoutStatus.HELD.value
        assert _attendance(db, booking.id, "client").present is False
        assert _attendance(db, booking.id, "counselor").present is True

    def test_counselor_no_show(self, db, lifecycle, test_client_user, test_counselor, now):
        booking = _ended_booking(db, test_client_user, test_counselor, now)
        set_attendance(
            db, booking, "client", joined_at=now - timedelta(minutes=59), total_heartbeats=30
        )
        set_attendance(
            db, booking, "counselor", joined_at=now - timedelta(minutes=58), total_heartbeats=2
        )

        lifecycle.end_sessions(now=now)

        ended = reload(db, Booking, booking.id)
        assert ended.status == BookingStatus.NO_SHOW.value
        assert ended.no_show_type == NoShowType.COUNSELOR.value
        payout = db.query(BookingPayout).filter_by(booking_id=booking.id).one()
        assert payout.hold_reason == "counselor_no_show"

    def test_both_absent_is_not_flagged_as_no_show(
        self, db, lifecycle, test_client_user, test_counselor, now
    ):
        booking = _ended_booking(db, test_client_user, test_counselor, now)

        lifecycle.end_sessions(now=now)

        ended = reload(db, Booking, booking.id)
        assert ended.status == BookingStatus.COMPLETED_PENDING.value
        assert ended.no_show_type is None
        assert _attendance(db, booking.id, "client").present is False
        assert _attendance(db, booking.id, "counselor").present is False

    def test_session_inside_end_grace_is_left_ongoing(
        self, db, lifecycle, test_client_user, test_counselor, now
    ):
        # Ended 5 minutes ago; grace is 10
        booking = create_booking(
            db,
            test_client_user,
            test_counselor,
            now - timedelta(minutes=50),
            status=BookingStatus.ONGOING.value,
        )

        counts = lifecycle.end_sessions(now=now)

        assert counts["processed"] == 0
        assert reload(db, Booking, booking.id).status == BookingStatus.ONGOING.value

    def test_duplicate_run_is_a_noop(self, db, lifecycle, test_client_user, test_counselor, now):
        booking = _ended_booking(db, test_client_user, test_counselor, now)
        set_attendance(db, booking, "client", joined_at=now - timedelta(minutes=59), total_heartbeats=40)
        set_attendance(
            db, booking, "counselor", joined_at=now - timedelta(minutes=59), total_heartbeats=40
        )

        lifecycle.end_sessions(now=now)
        second = lifecycle.end_sessions(now=now + timedelta(minutes=5))

        assert second["processed"] == 0
        ended = reload(db, Booking, booking.id)
        assert ensure_utc(ended.session_ended_at) == now

    def test_transition_lost_to_another_worker_is_skipped(
        self, db, lifecycle, test_client_user, test_counselor, now
    ):
        booking = _ended_booking(db, test_client_user, test_counselor, now)
        lifecycle.booking_repository.transition = Mock(return_value=False)

        counts = lifecycle.end_sessions(now=now)

        assert counts["skipped"] == 1
        assert _attendance(db, booking.id, "client").present is None

    def test_failure_on_one_booking_does_not_stop_the_batch(
        self, db, lifecycle, test_client_user, test_counselor, now
    ):
        first = _ended_booking(db, test_client_user, test_counselor, now)
        second = create_booking(
            db,
            test_client_user,
            test_counselor,
            now - timedelta(minutes=70),
            status=BookingStatus.ONGOING.value,
        )
        original = lifecycle.evaluate_attendance

        def flaky(booking):
            if booking.id == second.id:
                raise RuntimeError("boom")
            return original(booking)

        lifecycle.evaluate_attendance = flaky

        counts = lifecycle.end_sessions(now=now)

        assert counts == {"processed": 2, "advanced": 1, "skipped": 0, "failed": 1}
        assert reload(db, Booking, first.id).status == BookingStatus.COMPLETED_PENDING.value
        assert reload(db, Booking, second.id).status == BookingStatus.ONGOING.value

    def test_presence_thresholds_are_injectable(
        self, db, releaser, test_client_user, test_counselor, now
    ):
        strict = SessionLifecycleService(
            db, releaser, thresholds=PresenceThresholds(minutes=40, heartbeats=40, ratio=0.9)
        )
        booking = _ended_booking(db, test_client_user, test_counselor, now)
        joined = now - timedelta(minutes=59)
        set_attendance(db, booking, "client", joined_at=joined, total_heartbeats=30)
        set_attendance(db, booking, "counselor", joined_at=joined, total_heartbeats=44)

        strict.end_sessions(now=now)

        ended = reload(db, Booking, booking.id)
        assert ended.no_show_type == NoShowType.CLIENT.value


class TestAutoConfirm:
    def _pending(self, db, client, counselor, now, **fields):
        return create_booking(
            db,
            client,
            counselor,
            now - timedelta(days=2),
            status=BookingStatus.COMPLETED_PENDING.value,
            auto_confirm_at=now - timedelta(minutes=1),
            **fields,
        )

    def test_undisputed_booking_is_finalized_and_payout_released(
        self, db, lifecycle, releaser, test_client_user, test_counselor, now
    ):
        booking = self._pending(db, test_client_user, test_counselor, now)

        counts = lifecycle.auto_confirm_sessions(now=now)

        assert counts["advanced"] == 1
        final = reload(db, Booking, booking.id)
        assert final.status == BookingStatus.COMPLETED_FINAL.value
        assert ensure_utc(final.completed_final_at) == now
        payout = db.query(BookingPayout).filter_by(booking_id=booking.id).one()
        assert payout.status == PayoutStatus.RELEASED.value
        assert ensure_utc(payout.released_at) == now
        assert releaser.released == [(booking.id, test_counselor.id, 100000)]

    def test_disputed_booking_is_skipped(
        self, db, lifecycle, releaser, test_client_user, test_counselor, now
    ):
        booking = self._pending(db, test_client_user, test_counselor, now)
        dispute = db.query(BookingDispute).filter_by(booking_id=booking.id).one()
        dispute.is_disputed = True
        db.commit()

        counts = lifecycle.auto_confirm_sessions(now=now)

        assert counts["processed"] == 0
        assert reload(db, Booking, booking.id).status == BookingStatus.COMPLETED_PENDING.value
        assert releaser.released == []

    def test_not_yet_due_is_left_alone(self, db, lifecycle, test_client_user, test_counselor, now):
        booking = create_booking(
            db,
            test_client_user,
            test_counselor,
            now - timedelta(hours=2),
            status=BookingStatus.COMPLETED_PENDING.value,
            auto_confirm_at=now + timedelta(hours=22),
        )

        lifecycle.auto_confirm_sessions(now=now)

        assert reload(db, Booking, booking.id).status == BookingStatus.COMPLETED_PENDING.value

    def test_no_show_bookings_are_not_auto_confirmed(
        self, db, lifecycle, test_client_user, test_counselor, now
    ):
        booking = create_booking(
            db,
            test_client_user,
            test_counselor,
            now - timedelta(days=2),
            status=BookingStatus.NO_SHOW.value,
            auto_confirm_at=now - timedelta(minutes=1),
        )

        lifecycle.auto_confirm_sessions(now=now)

        assert reload(db, Booking, booking.id).status == BookingStatus.NO_SHOW.value

    def test_second_run_is_a_noop(
        self, db, lifecycle, releaser, test_client_user, test_counselor, now
    ):
        self._pending(db, test_client_user, test_counselor, now)

        lifecycle.auto_confirm_sessions(now=now)
        second = lifecycle.auto_confirm_sessions(now=now + timedelta(minutes=5))

        assert second["processed"] == 0
        assert len(releaser.released) == 1

    def test_releaser_failure_does_not_undo_confirmation(
        self, db, test_client_user, test_counselor, now
    ):
        broken = Mock()
        broken.release.side_effect = RuntimeError("payout provider down")
        service = SessionLifecycleService(db, broken)
        booking = self._pending(db, test_client_user, test_counselor, now)

        counts = service.auto_confirm_sessions(now=now)

        assert counts["advanced"] == 1
        assert reload(db, Booking, booking.id).status == BookingStatus.COMPLETED_FINAL.value


class TestRunAll:
    def test_full_lifecycle_across_runs(
        self, db, lifecycle, releaser, test_client_user, test_counselor, now
    ):
        start = now - timedelta(minutes=2)
        booking = create_booking(db, test_client_user, test_counselor, start)

        result = lifecycle.run_all(now=now)
        assert result["started"]["advanced"] == 1
        assert reload(db, Booking, booking.id).status == BookingStatus.ONGOING.value

        joined = start + timedelta(minutes=1)
        set_attendance(db, booking, "client", joined_at=joined, total_heartbeats=44)
        set_attendance(db, booking, "counselor", joined_at=joined, total_heartbeats=44)

        end_run = start + timedelta(minutes=45 + 10)
        result = lifecycle.run_all(now=end_run)
        assert result["ended"]["advanced"] == 1
        assert reload(db, Booking, booking.id).status == BookingStatus.COMPLETED_PENDING.value

        result = lifecycle.run_all(now=end_run + timedelta(hours=24))
        assert result["auto_confirmed"]["advanced"] == 1
        assert reload(db, Booking, booking.id).status == BookingStatus.COMPLETED_FINAL.value
        assert len(releaser.released) == 1

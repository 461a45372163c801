# backend/solvit/services/session_lifecycle_service.py
"""
Session lifecycle jobs for the Solvit platform.

Three wall-clock driven passes advance bookings without any client action:

- start: ``confirmed`` bookings whose start passed recently become ``ongoing``
- end: ``ongoing`` bookings past their end plus grace get a presence verdict
- auto-confirm: undisputed ``completed_pending`` bookings become final

Every transition is a conditional UPDATE on the prior status, so a duplicate
run (or a second worker on the same schedule) finds nothing left to move.
Each booking commits on its own; one failure is logged and the rest of the
batch still runs.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Callable, List, Optional, TypedDict

from sqlalchemy.orm import Session

from ..core.config import settings
from ..domain.attendance_utils import PresenceResult, PresenceThresholds, determine_presence
from ..models.booking import Booking, BookingStatus, NoShowType
from ..models.booking_attendance import AttendanceRole, BookingAttendance
from ..models.booking_dispute import BookingDispute
from ..models.booking_payout import BookingPayout, PayoutStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from .base import BaseService
from .payout_service import PayoutReleaser

logger = logging.getLogger(__name__)


class JobCounts(TypedDict):
    processed: int
    advanced: int
    skipped: int
    failed: int


class LifecycleRunResult(TypedDict):
    started: JobCounts
    ended: JobCounts
    auto_confirmed: JobCounts


@dataclass(frozen=True)
class SessionVerdict:
    status: str
    no_show_type: Optional[str]
    client: PresenceResult
    counselor: PresenceResult


def _empty_counts() -> JobCounts:
    return {"processed": 0, "advanced": 0, "skipped": 0, "failed": 0}


def decide_outcome(
    client: PresenceResult, counselor: PresenceResult
) -> tuple[str, Optional[str]]:
    """
    Final status from the two presence verdicts.

    Only a one-sided absence is a no-show. Both parties absent is not
    distinguished and ends up ``completed_pending`` like a normal session.
    """
    if not counselor.present and client.present:
        return BookingStatus.NO_SHOW.value, NoShowType.COUNSELOR.value
    if not client.present and counselor.present:
        return BookingStatus.NO_SHOW.value, NoShowType.CLIENT.value
    return BookingStatus.COMPLETED_PENDING.value, None


class SessionLifecycleService(BaseService):
    def __init__(
        self,
        db: Session,
        payout_releaser: Optional[PayoutReleaser] = None,
        *,
        thresholds: Optional[PresenceThresholds] = None,
        start_lookback_minutes: Optional[int] = None,
        end_grace_minutes: Optional[int] = None,
        auto_confirm_hours: Optional[int] = None,
    ):
        super().__init__(db)
        self.payout_releaser = payout_releaser
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.thresholds = thresholds or PresenceThresholds(
            minutes=settings.presence_threshold_minutes,
            heartbeats=settings.presence_threshold_heartbeats,
            ratio=settings.presence_threshold_ratio,
        )
        self.start_lookback = timedelta(
            minutes=start_lookback_minutes or settings.session_start_lookback_minutes
        )
        self.end_grace = timedelta(minutes=end_grace_minutes or settings.session_end_grace_minutes)
        self.auto_confirm_delay = timedelta(
            hours=auto_confirm_hours or settings.auto_confirm_hours
        )

    def _process_batch(
        self, job: str, booking_ids: List[str], handler: Callable[[str], bool]
    ) -> JobCounts:
        counts = _empty_counts()
        for booking_id in booking_ids:
            counts["processed"] += 1
            try:
                if handler(booking_id):
                    counts["advanced"] += 1
                else:
                    counts["skipped"] += 1
            except Exception as exc:
                self.db.rollback()
                counts["failed"] += 1
                self.logger.error(
                    "%s failed for booking %s: %s",
                    job,
                    booking_id,
                    exc,
                    exc_info=True,
                    extra={"booking_id": booking_id, "job": job},
                )
        for outcome in ("advanced", "skipped", "failed"):
            prometheus_metrics.record_job_items(job, outcome, counts[outcome])  # type: ignore[literal-required]
        if counts["processed"]:
            self.logger.info("%s run complete: %s", job, counts)
        return counts

    @BaseService.measure_operation("start_sessions")
    def start_sessions(self, now: Optional[datetime] = None) -> JobCounts:
        """Move confirmed bookings that started within the lookback window to ongoing."""
        current = self._now(now)
        booking_ids = self.booking_repository.get_booking_ids_to_start(
            current - self.start_lookback, current
        )

        def _start(booking_id: str) -> bool:
            with self.transaction():
                return self.booking_repository.transition(
                    booking_id,
                    BookingStatus.CONFIRMED.value,
                    {
                        Booking.status: BookingStatus.ONGOING.value,
                        Booking.session_started_at: current,
                    },
                )

        return self._process_batch("session_start", booking_ids, _start)

    def evaluate_attendance(self, booking: Booking) -> SessionVerdict:
        duration = int(booking.duration_minutes or 0)

        def _presence(role: str) -> PresenceResult:
            row = booking.attendance_for(role)
            return determine_presence(
                joined_at=row.joined_at if row else None,
                total_heartbeats=int(row.total_heartbeats or 0) if row else 0,
                duration_minutes=duration,
                thresholds=self.thresholds,
            )

        client = _presence(AttendanceRole.CLIENT.value)
        counselor = _presence(AttendanceRole.COUNSELOR.value)
        status, no_show_type = decide_outcome(client, counselor)
        return SessionVerdict(
            status=status, no_show_type=no_show_type, client=client, counselor=counselor
        )

    @BaseService.measure_operation("end_sessions")
    def end_sessions(self, now: Optional[datetime] = None) -> JobCounts:
        """Close ongoing sessions past their end plus grace and record the presence verdict."""
        current = self._now(now)
        booking_ids = self.booking_repository.get_booking_ids_to_end(current - self.end_grace)

        def _end(booking_id: str) -> bool:
            booking = self.booking_repository.get_booking_with_details(booking_id)
            if booking is None or booking.status != BookingStatus.ONGOING.value:
                return False
            verdict = self.evaluate_attendance(booking)

            with self.transaction():
                moved = self.booking_repository.transition(
                    booking.id,
                    BookingStatus.ONGOING.value,
                    {
                        Booking.status: verdict.status,
                        Booking.no_show_type: verdict.no_show_type,
                        Booking.session_ended_at: current,
                        Booking.completed_pending_at: current,
                        Booking.auto_confirm_at: current + self.auto_confirm_delay,
                    },
                )
                if not moved:
                    return False
                self._store_presence(booking, AttendanceRole.CLIENT.value, verdict.client)
                self._store_presence(booking, AttendanceRole.COUNSELOR.value, verdict.counselor)
                if verdict.no_show_type:
                    self._record_no_show(booking, verdict.no_show_type)
                self.db.flush()

            self.logger.info(
                "Completed session %s with status %s",
                booking.id,
                verdict.status,
                extra={
                    "booking_id": booking.id,
                    "status": verdict.status,
                    "client_minutes": verdict.client.estimated_minutes,
                    "counselor_minutes": verdict.counselor.estimated_minutes,
                },
            )
            return True

        return self._process_batch("session_end", booking_ids, _end)

    def _store_presence(self, booking: Booking, role: str, result: PresenceResult) -> None:
        row = booking.attendance_for(role)
        if row is None:
            row = BookingAttendance(booking_id=booking.id, role=role, total_heartbeats=0)
            self.db.add(row)
        row.present = result.present
        row.estimated_minutes = result.estimated_minutes

    def _record_no_show(self, booking: Booking, no_show_type: str) -> None:
        reason = f"{no_show_type}_no_show"
        dispute = booking.dispute or BookingDispute(booking_id=booking.id, is_disputed=False)
        self.db.add(dispute)
        dispute.reason = reason

        payout = booking.payout or BookingPayout(booking_id=booking.id, amount=0)
        self.db.add(payout)
        payout.hold_reason = reason
        payout.status = PayoutStatus.HELD.value

    @BaseService.measure_operation("auto_confirm_sessions")
    def auto_confirm_sessions(self, now: Optional[datetime] = None) -> JobCounts:
        """Finalize undisputed completed sessions whose review period has passed."""
        current = self._now(now)
        booking_ids = self.booking_repository.get_booking_ids_to_auto_confirm(current)

        def _confirm(booking_id: str) -> bool:
            booking = self.booking_repository.get_booking_with_details(booking_id)
            if booking is None or booking.is_disputed:
                return False
            with self.transaction():
                moved = self.booking_repository.transition(
                    booking.id,
                    BookingStatus.COMPLETED_PENDING.value,
                    {
                        Booking.status: BookingStatus.COMPLETED_FINAL.value,
                        Booking.completed_final_at: current,
                    },
                )
                if not moved:
                    return False
                payout = booking.payout or BookingPayout(booking_id=booking.id, amount=0)
                self.db.add(payout)
                payout.status = PayoutStatus.RELEASED.value
                payout.released_at = current
                self.db.flush()
                amount = int(payout.amount or 0)

            self._release_payout(booking, amount)
            return True

        return self._process_batch("auto_confirm", booking_ids, _confirm)

    def _release_payout(self, booking: Booking, amount: int) -> None:
        if self.payout_releaser is None:
            return
        try:
            self.payout_releaser.release(booking.id, booking.counselor_id, amount)
        except Exception as exc:
            self.logger.error(
                "Payout release failed for booking %s: %s",
                booking.id,
                exc,
                extra={"booking_id": booking.id},
            )

    def run_all(self, now: Optional[datetime] = None) -> LifecycleRunResult:
        """Run start, end and auto-confirm in order against the same clock reading."""
        current = self._now(now)
        return {
            "started": self.start_sessions(now=current),
            "ended": self.end_sessions(now=current),
            "auto_confirmed": self.auto_confirm_sessions(now=current),
        }

# backend/solvit/services/attendance_service.py
"""
Attendance Service for the Solvit platform.

Turns client-reported session events (join intent, token redemption,
heartbeats, leaving) into per-role attendance counters plus an append-only
event log. Presence itself is never decided here: the end-of-session job
derives it from these counters.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    ForbiddenException,
    NotFoundException,
    ServiceException,
    SessionWindowException,
    ValidationException,
)
from ..models.attendance_log import AttendanceEvent
from ..models.booking import Booking, BookingStatus
from ..models.booking_attendance import BookingAttendance
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..utils.time_helpers import ensure_utc, ensure_utc_or_none
from .base import BaseService
from .join_token_service import JoinTokenService

logger = logging.getLogger(__name__)

CLOSED_STATUSES = frozenset({BookingStatus.CANCELLED.value})


@dataclass
class RequestContext:
    """Client metadata stored alongside each attendance log entry."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None

    def as_log_context(self, **extra: Any) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ip": self.ip, "user_agent": self.user_agent}
        data.update({key: value for key, value in extra.items() if value is not None})
        return data


@dataclass
class JoinIntent:
    booking_id: str
    role: str
    token: str
    expires_in: int
    redirect_url: str


@dataclass
class HeartbeatAck:
    rate_limited: bool
    heartbeat_count: int
    timestamp: datetime
    next_allowed_at: Optional[datetime] = None


class AttendanceService(BaseService):
    def __init__(
        self,
        db: Session,
        token_service: JoinTokenService,
        *,
        join_grace_minutes: Optional[int] = None,
        heartbeat_grace_minutes: Optional[int] = None,
        heartbeat_min_interval_seconds: Optional[int] = None,
    ):
        super().__init__(db)
        self.token_service = token_service
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.attendance_repository = RepositoryFactory.create_attendance_repository(db)
        self.join_grace = timedelta(
            minutes=join_grace_minutes or settings.session_join_grace_minutes
        )
        self.heartbeat_grace = timedelta(
            minutes=heartbeat_grace_minutes or settings.session_heartbeat_grace_minutes
        )
        self.heartbeat_interval = timedelta(
            seconds=heartbeat_min_interval_seconds or settings.heartbeat_min_interval_seconds
        )

    def _load(self, booking_id: str, user_id: str) -> tuple[Booking, str]:
        booking = self.booking_repository.get_booking_with_details(booking_id)
        if booking is None:
            raise NotFoundException("Session not found", details={"booking_id": booking_id})
        role = booking.role_of(user_id)
        if role is None:
            raise ForbiddenException("Access denied to this session")
        return booking, role

    def _ensure_attendance_row(self, booking: Booking, role: str) -> BookingAttendance:
        row = booking.attendance_for(role)
        if row is None:
            row = BookingAttendance(booking_id=booking.id, role=role, total_heartbeats=0)
            self.db.add(row)
            self.db.flush()
        return row

    @staticmethod
    def _ensure_open(booking: Booking) -> None:
        if booking.status in CLOSED_STATUSES:
            raise ValidationException(
                "This session has been cancelled", code="SESSION_CANCELLED"
            )

    @BaseService.measure_operation("record_join_intent")
    def record_join_intent(
        self,
        booking_id: str,
        user_id: str,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None,
    ) -> JoinIntent:
        """Validate the join window and issue a short-lived join token."""
        current = self._now(now)
        context = context or RequestContext()
        booking, role = self._load(booking_id, user_id)
        self._ensure_open(booking)

        start = ensure_utc(booking.start_time)
        if not (start - self.join_grace <= current <= start + self.join_grace):
            raise SessionWindowException(
                "Session join window has closed",
                details={
                    "opens_at": (start - self.join_grace).isoformat(),
                    "closes_at": (start + self.join_grace).isoformat(),
                },
            )

        with self.transaction():
            self._ensure_attendance_row(booking, role)
            self.attendance_repository.set_timestamp(booking.id, role, "join_intent_at", current)
            self.attendance_repository.log_event(
                booking_id=booking.id,
                user_id=user_id,
                role=role,
                event=AttendanceEvent.JOIN_INTENT.value,
                occurred_at=current,
                context=context.as_log_context(),
            )

        token = self.token_service.issue(booking.id, user_id, role, now=current)
        self.logger.info(
            "Join intent recorded", extra={"booking_id": booking.id, "role": role}
        )
        return JoinIntent(
            booking_id=booking.id,
            role=role,
            token=token,
            expires_in=self.token_service.ttl_seconds,
            redirect_url=f"/api/v1/sessions/{booking.id}/redirect?role={role}&token={token}",
        )

    @BaseService.measure_operation("redeem_join_token")
    def redeem_join_token(
        self,
        booking_id: str,
        token: str,
        role: Optional[str] = None,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None,
    ) -> str:
        """Verify a join token, record the join and return the meeting URL."""
        current = self._now(now)
        context = context or RequestContext()
        claims = self.token_service.verify(token, booking_id=booking_id, role=role, now=current)

        booking = self.booking_repository.get_booking_with_details(booking_id)
        if booking is None:
            raise NotFoundException("Session not found", details={"booking_id": booking_id})
        if booking.role_of(claims.user_id) != claims.role:
            raise ForbiddenException("Access denied to this session")
        self._ensure_open(booking)
        if not booking.meeting_url:
            raise ServiceException("Meeting URL not configured", code="MEETING_NOT_READY")

        with self.transaction():
            self._ensure_attendance_row(booking, claims.role)
            self.attendance_repository.set_timestamp(booking.id, claims.role, "joined_at", current)
            self.attendance_repository.log_event(
                booking_id=booking.id,
                user_id=claims.user_id,
                role=claims.role,
                event=AttendanceEvent.JOINED.value,
                occurred_at=current,
                context=context.as_log_context(session_token=token),
            )

        self.logger.info("Participant joined", extra={"booking_id": booking.id, "role": claims.role})
        return str(booking.meeting_url)

    @BaseService.measure_operation("record_heartbeat")
    def record_heartbeat(
        self,
        booking_id: str,
        user_id: str,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None,
    ) -> HeartbeatAck:
        """
        Count one heartbeat for the caller's role.

        Heartbeats closer together than the minimum interval are acknowledged
        as rate limited and change nothing.
        """
        current = self._now(now)
        context = context or RequestContext()
        booking, role = self._load(booking_id, user_id)
        self._ensure_open(booking)

        start = ensure_utc(booking.start_time)
        end = ensure_utc(booking.end_time)
        if current < start - self.heartbeat_grace or current > end + self.heartbeat_grace:
            prometheus_metrics.record_heartbeat(role, "outside_window")
            raise SessionWindowException("Session window closed")

        with self.transaction():
            row = self._ensure_attendance_row(booking, role)
            accepted = self.attendance_repository.record_heartbeat(
                booking.id, role, current, accept_before=current - self.heartbeat_interval
            )
            if accepted:
                self.attendance_repository.log_event(
                    booking_id=booking.id,
                    user_id=user_id,
                    role=role,
                    event=AttendanceEvent.HEARTBEAT.value,
                    occurred_at=current,
                    context=context.as_log_context(),
                )

        self.db.refresh(row)
        if not accepted:
            prometheus_metrics.record_heartbeat(role, "rate_limited")
            last = ensure_utc_or_none(row.last_heartbeat_at) or current
            return HeartbeatAck(
                rate_limited=True,
                heartbeat_count=int(row.total_heartbeats or 0),
                timestamp=current,
                next_allowed_at=last + self.heartbeat_interval,
            )

        prometheus_metrics.record_heartbeat(role, "accepted")
        return HeartbeatAck(
            rate_limited=False,
            heartbeat_count=int(row.total_heartbeats or 0),
            timestamp=current,
        )

    @BaseService.measure_operation("mark_left")
    def mark_left(
        self,
        booking_id: str,
        user_id: str,
        context: Optional[RequestContext] = None,
        now: Optional[datetime] = None,
    ) -> datetime:
        """Record that the caller left; presence is unaffected."""
        current = self._now(now)
        context = context or RequestContext()
        booking, role = self._load(booking_id, user_id)

        with self.transaction():
            self._ensure_attendance_row(booking, role)
            self.attendance_repository.set_timestamp(booking.id, role, "left_at", current)
            self.attendance_repository.log_event(
                booking_id=booking.id,
                user_id=user_id,
                role=role,
                event=AttendanceEvent.LEFT.value,
                occurred_at=current,
                context=context.as_log_context(),
            )
        return current

    @BaseService.measure_operation("get_session_details")
    def get_session_details(
        self, booking_id: str, user_id: str, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        current = self._now(now)
        booking, role = self._load(booking_id, user_id)
        start = ensure_utc(booking.start_time)
        end = ensure_utc(booking.end_time)
        return {
            "booking_id": booking.id,
            "user_role": role,
            "status": booking.status,
            "start_time": start,
            "end_time": end,
            "duration_minutes": booking.duration_minutes,
            "timezone": settings.timezone,
            "session_window": {
                "can_join": start - self.join_grace <= current <= start + self.join_grace
                and booking.status not in CLOSED_STATUSES,
                "is_active": booking.status == BookingStatus.ONGOING.value,
                "seconds_until_start": max(0, int((start - current).total_seconds())),
                "seconds_until_end": max(0, int((end - current).total_seconds())),
            },
        }

    @BaseService.measure_operation("get_attendance_summary")
    def get_attendance_summary(self, booking_id: str, user_id: str) -> Dict[str, Any]:
        booking, _role = self._load(booking_id, user_id)

        def _role_summary(role: str) -> Dict[str, Any]:
            row = booking.attendance_for(role)
            if row is None:
                return {
                    "joined_at": None,
                    "left_at": None,
                    "total_heartbeats": 0,
                    "estimated_minutes": None,
                    "present": None,
                }
            return {
                "joined_at": ensure_utc_or_none(row.joined_at),
                "left_at": ensure_utc_or_none(row.left_at),
                "total_heartbeats": int(row.total_heartbeats or 0),
                "estimated_minutes": row.estimated_minutes,
                "present": row.present,
            }

        return {
            "booking_id": booking.id,
            "status": booking.status,
            "client": _role_summary("client"),
            "counselor": _role_summary("counselor"),
            "session_started_at": ensure_utc_or_none(booking.session_started_at),
            "session_ended_at": ensure_utc_or_none(booking.session_ended_at),
            "auto_confirm_at": ensure_utc_or_none(booking.auto_confirm_at),
            "can_dispute": booking.status == BookingStatus.COMPLETED_PENDING.value
            and not booking.is_disputed,
        }

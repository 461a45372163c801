# backend/solvit/repositories/attendance_repository.py
"""
Attendance repository: per-role counters plus the append-only event log.

Heartbeat acceptance is a conditional UPDATE on ``last_heartbeat_at`` so
two near-simultaneous heartbeats for the same role cannot both count.
"""

from datetime import datetime
import logging
from typing import Any, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..models.attendance_log import AttendanceLog
from ..models.booking_attendance import BookingAttendance
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class AttendanceRepository(BaseRepository[BookingAttendance]):
    def __init__(self, db: Session):
        super().__init__(db, BookingAttendance)

    def get_for_role(self, booking_id: str, role: str) -> Optional[BookingAttendance]:
        return (
            self.db.query(BookingAttendance)
            .filter(BookingAttendance.booking_id == booking_id, BookingAttendance.role == role)
            .populate_existing()
            .first()
        )

    def record_heartbeat(
        self, booking_id: str, role: str, now: datetime, accept_before: datetime
    ) -> bool:
        """
        Count a heartbeat unless one was accepted after ``accept_before``.

        Returns False when rate limited; no state changes in that case.
        """
        updated = self._conditional_update(
            [
                BookingAttendance.booking_id == booking_id,
                BookingAttendance.role == role,
                or_(
                    BookingAttendance.last_heartbeat_at.is_(None),
                    BookingAttendance.last_heartbeat_at <= accept_before,
                ),
            ],
            {
                BookingAttendance.total_heartbeats: BookingAttendance.total_heartbeats + 1,
                BookingAttendance.last_heartbeat_at: now,
            },
        )
        return updated == 1

    def set_timestamp(self, booking_id: str, role: str, field: str, value: datetime) -> bool:
        column = getattr(BookingAttendance, field)
        updated = self._conditional_update(
            [BookingAttendance.booking_id == booking_id, BookingAttendance.role == role],
            {column: value},
        )
        return updated == 1

    def log_event(
        self,
        *,
        booking_id: str,
        user_id: Optional[str],
        role: str,
        event: str,
        occurred_at: datetime,
        context: Optional[Dict[str, Any]] = None,
    ) -> AttendanceLog:
        entry = AttendanceLog(
            booking_id=booking_id,
            user_id=user_id,
            role=role,
            event=event,
            occurred_at=occurred_at,
            context=context or {},
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def count_events(self, booking_id: str, event: Optional[str] = None) -> int:
        query = self.db.query(AttendanceLog).filter(AttendanceLog.booking_id == booking_id)
        if event:
            query = query.filter(AttendanceLog.event == event)
        return query.count()

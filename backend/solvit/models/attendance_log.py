"""Append-only audit trail of session attendance events."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, String
import ulid

from ..database import Base


class AttendanceEvent(str, Enum):
    JOIN_INTENT = "join_intent"
    JOINED = "joined"
    HEARTBEAT = "heartbeat"
    LEFT = "left"
    FORCED_END = "forced_end"


class AttendanceLog(Base):
    """One immutable row per attendance event.

    Attendance can be reconstructed from these rows independently of the
    mutable counters on ``booking_attendance``.
    """

    __tablename__ = "attendance_logs"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(String(26), ForeignKey("bookings.id"), nullable=False)
    user_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    role = Column(String(20), nullable=False)
    event = Column(String(20), nullable=False)
    occurred_at = Column(DateTime(timezone=True), nullable=False)
    # ip, user_agent, session_token
    context = Column(JSON, nullable=True)

    __table_args__ = (Index("ix_attendance_logs_booking_occurred", "booking_id", "occurred_at"),)

    def __repr__(self) -> str:
        return f"<AttendanceLog booking={self.booking_id} role={self.role} event={self.event}>"

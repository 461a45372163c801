"""Per-role attendance satellite table for bookings."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
import ulid

from ..database import Base


class AttendanceRole(str, Enum):
    CLIENT = "client"
    COUNSELOR = "counselor"


class BookingAttendance(Base):
    """Heartbeat counters and timestamps for one party on one booking.

    ``present`` and ``estimated_minutes`` stay NULL until the end-of-session
    job computes them; clients never write them.
    """

    __tablename__ = "booking_attendance"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(
        String(26),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    role = Column(String(20), nullable=False)

    join_intent_at = Column(DateTime(timezone=True), nullable=True)
    joined_at = Column(DateTime(timezone=True), nullable=True)
    left_at = Column(DateTime(timezone=True), nullable=True)
    last_heartbeat_at = Column(DateTime(timezone=True), nullable=True)
    total_heartbeats = Column(Integer, nullable=False, default=0)

    present = Column(Boolean, nullable=True)
    estimated_minutes = Column(Integer, nullable=True)

    booking = relationship("Booking", back_populates="attendance")

    __table_args__ = (UniqueConstraint("booking_id", "role", name="uq_booking_attendance_role"),)

    def __repr__(self) -> str:
        return (
            f"<BookingAttendance booking={self.booking_id} role={self.role} "
            f"heartbeats={self.total_heartbeats}>"
        )

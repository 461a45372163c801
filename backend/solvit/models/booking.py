# backend/solvit/models/booking.py
"""
Booking model for the Solvit platform.

A booking binds a client, a counselor, a slot and a payment. Attendance,
dispute and payout state live in satellite tables so the scheduled jobs can
update them without rewriting the core row.

Status flow:
    pending -> confirmed -> ongoing -> completed_pending -> completed_final
Side branches: cancelled, no_show, disputed.
"""

from enum import Enum
import logging
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..database import Base

if TYPE_CHECKING:
    from .booking_attendance import BookingAttendance

logger = logging.getLogger(__name__)


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    ONGOING = "ongoing"
    COMPLETED_PENDING = "completed_pending"
    COMPLETED_FINAL = "completed_final"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    DISPUTED = "disputed"


class BookingPaymentStatus(str, Enum):
    PENDING = "pending"
    CAPTURED = "captured"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    REFUND_FAILED = "refund_failed"


class NoShowType(str, Enum):
    CLIENT = "client"
    COUNSELOR = "counselor"


CANCELLABLE_STATUSES = frozenset({BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value})
TERMINAL_STATUSES = frozenset(
    {BookingStatus.COMPLETED_FINAL.value, BookingStatus.CANCELLED.value}
)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    client_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    counselor_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    slot_id = Column(String(26), ForeignKey("slots.id"), nullable=False)
    payment_id = Column(String(26), ForeignKey("payments.id"), nullable=True, index=True)

    # Snapshot of the slot at booking time, in paise / minutes
    price = Column(Integer, nullable=False)
    duration_minutes = Column(Integer, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=False)

    status = Column(String(20), nullable=False, default=BookingStatus.CONFIRMED.value, index=True)
    payment_status = Column(String(20), nullable=False, default=BookingPaymentStatus.PENDING.value)

    # Video meeting
    meeting_room_id = Column(String(100), nullable=True)
    meeting_url = Column(Text, nullable=True)

    # Cancellation
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    # Reschedule
    rescheduled_at = Column(DateTime(timezone=True), nullable=True)
    rescheduled_from_slot_id = Column(String(26), nullable=True)
    reschedule_count = Column(Integer, nullable=False, default=0)
    reschedule_reason = Column(Text, nullable=True)

    # Session lifecycle (written by the scheduled jobs)
    session_started_at = Column(DateTime(timezone=True), nullable=True)
    session_ended_at = Column(DateTime(timezone=True), nullable=True)
    completed_pending_at = Column(DateTime(timezone=True), nullable=True)
    auto_confirm_at = Column(DateTime(timezone=True), nullable=True, index=True)
    completed_final_at = Column(DateTime(timezone=True), nullable=True)
    no_show_type = Column(String(20), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    client = relationship("User", foreign_keys=[client_id])
    counselor = relationship("User", foreign_keys=[counselor_id])
    cancelled_by = relationship("User", foreign_keys=[cancelled_by_id])
    slot = relationship("Slot", foreign_keys=[slot_id])
    payment = relationship("Payment", foreign_keys=[payment_id])
    attendance = relationship(
        "BookingAttendance",
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    dispute = relationship(
        "BookingDispute",
        back_populates="booking",
        uselist=False,
        cascade="all, delete-orphan",
    )
    payout = relationship(
        "BookingPayout",
        back_populates="booking",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        # One non-cancelled booking per slot
        Index(
            "uq_bookings_active_slot",
            "slot_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
        Index("ix_bookings_status_start", "status", "start_time"),
        Index("ix_bookings_status_end", "status", "end_time"),
    )

    def attendance_for(self, role: str) -> Optional["BookingAttendance"]:
        for row in self.attendance or []:
            if row.role == role:
                return row
        return None

    def role_of(self, user_id: str) -> Optional[str]:
        """Return the caller's role on this booking, or None for non-parties."""
        if user_id == self.client_id:
            return "client"
        if user_id == self.counselor_id:
            return "counselor"
        return None

    @property
    def is_disputed(self) -> bool:
        return bool(self.dispute and self.dispute.is_disputed)

    def __repr__(self) -> str:
        return f"<Booking {self.id} status={self.status}>"



"""Booking payout satellite table."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
import ulid

from ..database import Base


class PayoutStatus(str, Enum):
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"


class BookingPayout(Base):
    """Counselor payout state for a single booking (amount in paise)."""

    __tablename__ = "booking_payouts"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(
        String(26),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    amount = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=PayoutStatus.PENDING.value)
    hold_reason = Column(String(100), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    booking = relationship("Booking", back_populates="payout")

    def __repr__(self) -> str:
        return f"<BookingPayout booking={self.booking_id} status={self.status}>"

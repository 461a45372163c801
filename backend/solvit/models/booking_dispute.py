"""Booking dispute satellite table."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship
import ulid

from ..database import Base


class DisputeStatus(str, Enum):
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class BookingDispute(Base):
    """Dispute state for a single booking."""

    __tablename__ = "booking_disputes"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(
        String(26),
        ForeignKey("bookings.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    is_disputed = Column(Boolean, nullable=False, default=False)
    # Set by the end-of-session job (e.g. "client_no_show") or by a client dispute
    reason = Column(String(100), nullable=True)
    issue_type = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    status = Column(String(30), nullable=True)
    disputed_at = Column(DateTime(timezone=True), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    booking = relationship("Booking", back_populates="dispute")

    def __repr__(self) -> str:
        return f"<BookingDispute booking={self.booking_id} status={self.status}>"

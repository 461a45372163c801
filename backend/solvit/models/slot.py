# backend/solvit/models/slot.py
"""
Slot model: a counselor's bookable time window.

The slot table is the single source of truth for bookability. A slot moves
``available -> booked`` only through a conditional UPDATE in
``SlotRepository.reserve`` and reverts to ``available`` on cancellation,
reschedule, or stuck-slot release.
"""

from enum import Enum

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..database import Base


class SlotStatus(str, Enum):
    AVAILABLE = "available"
    BOOKED = "booked"
    UNAVAILABLE = "unavailable"


class Slot(Base):
    __tablename__ = "slots"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    counselor_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)

    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(20), nullable=False, default=SlotStatus.AVAILABLE.value, index=True)

    # Prices in paise; total_price includes the platform fee.
    base_price = Column(Integer, nullable=False)
    total_price = Column(Integer, nullable=False)

    booking_id = Column(String(26), nullable=True)
    client_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    booked_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    counselor = relationship("User", foreign_keys=[counselor_id])

    __table_args__ = (
        UniqueConstraint("counselor_id", "start_time", name="uq_slots_counselor_start"),
        CheckConstraint("end_time > start_time", name="ck_slots_time_order"),
        CheckConstraint(
            "status IN ('available', 'booked', 'unavailable')", name="ck_slots_status"
        ),
        Index("ix_slots_status_booked_at", "status", "booked_at"),
    )

    @property
    def duration_minutes(self) -> int:
        return int((self.end_time - self.start_time).total_seconds() // 60)

    def __repr__(self) -> str:
        return f"<Slot {self.id} counselor={self.counselor_id} status={self.status}>"

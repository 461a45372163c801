# backend/solvit/repositories/slot_repository.py
"""
Slot repository.

``reserve`` is the only admission-control point for booking: a conditional
UPDATE from ``available`` to ``booked``. Concurrent callers serialize on the
row and all but one observe zero affected rows.
"""

from datetime import datetime
import logging
from typing import List

from sqlalchemy import and_, exists
from sqlalchemy.orm import Session

from ..models.booking import Booking, BookingStatus
from ..models.slot import Slot, SlotStatus
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class SlotRepository(BaseRepository[Slot]):
    def __init__(self, db: Session):
        super().__init__(db, Slot)

    def reserve(self, slot_id: str, client_id: str, booking_id: str, now: datetime) -> bool:
        """Atomically flip an available slot to booked. False means the slot was taken."""
        updated = self._conditional_update(
            [Slot.id == slot_id, Slot.status == SlotStatus.AVAILABLE.value],
            {
                Slot.status: SlotStatus.BOOKED.value,
                Slot.booking_id: booking_id,
                Slot.client_id: client_id,
                Slot.booked_at: now,
            },
        )
        return updated == 1

    def release(self, slot_id: str, booking_id: str) -> bool:
        """Return a booked slot to the pool if it is still held by ``booking_id``."""
        updated = self._conditional_update(
            [
                Slot.id == slot_id,
                Slot.status == SlotStatus.BOOKED.value,
                Slot.booking_id == booking_id,
            ],
            {
                Slot.status: SlotStatus.AVAILABLE.value,
                Slot.booking_id: None,
                Slot.client_id: None,
                Slot.booked_at: None,
            },
        )
        return updated == 1

    def find_stuck_booked(self, booked_before: datetime, limit: int) -> List[Slot]:
        """Slots marked booked before the cutoff that no live booking references."""
        has_active_booking = exists().where(
            and_(
                Booking.slot_id == Slot.id,
                Booking.status != BookingStatus.CANCELLED.value,
            )
        )
        return (
            self.db.query(Slot)
            .filter(
                Slot.status == SlotStatus.BOOKED.value,
                Slot.booked_at <= booked_before,
                ~has_active_booking,
            )
            .limit(limit)
            .all()
        )

    def release_stuck(self, slot_id: str, booked_before: datetime) -> bool:
        updated = self._conditional_update(
            [
                Slot.id == slot_id,
                Slot.status == SlotStatus.BOOKED.value,
                Slot.booked_at <= booked_before,
            ],
            {
                Slot.status: SlotStatus.AVAILABLE.value,
                Slot.booking_id: None,
                Slot.client_id: None,
                Slot.booked_at: None,
            },
        )
        return updated == 1

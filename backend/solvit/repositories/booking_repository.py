# backend/solvit/repositories/booking_repository.py
"""
Booking Repository for the Solvit platform.

Handles booking lookups, the candidate queries used by the session
lifecycle jobs, and status transitions guarded by the prior status.
"""

from datetime import datetime
import logging
from typing import Any, Dict, List, Optional, cast

from sqlalchemy import and_, or_
from sqlalchemy.orm import Query, Session, joinedload, selectinload

from ..core.exceptions import RepositoryException
from ..models.booking import Booking, BookingStatus
from ..models.booking_dispute import BookingDispute
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def get_booking_with_details(self, booking_id: str) -> Optional[Booking]:
        """Booking with slot, parties, payment and every satellite loaded."""
        try:
            return cast(
                Optional[Booking],
                self._apply_eager_loading(self.db.query(Booking))
                .options(joinedload(Booking.payment))
                .filter(Booking.id == booking_id)
                .populate_existing()
                .first(),
            )
        except Exception as e:
            self.logger.error(f"Error getting booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to get booking: {str(e)}")

    def get_by_payment_id(self, payment_id: str) -> Optional[Booking]:
        return cast(
            Optional[Booking],
            self.db.query(Booking).filter(Booking.payment_id == payment_id).first(),
        )

    def transition(
        self, booking_id: str, from_status: str, values: Dict[Any, Any]
    ) -> bool:
        """
        Move a booking out of ``from_status``.

        Returns False when the booking is no longer in ``from_status``, which
        makes repeated job runs and concurrent requests no-ops.
        """
        updated = self._conditional_update(
            [Booking.id == booking_id, Booking.status == from_status], values
        )
        return updated == 1

    def get_booking_ids_to_start(self, window_start: datetime, now: datetime) -> List[str]:
        """Confirmed bookings whose start time fell within [window_start, now]."""
        try:
            rows = (
                self.db.query(Booking.id)
                .filter(
                    and_(
                        Booking.status == BookingStatus.CONFIRMED.value,
                        Booking.start_time >= window_start,
                        Booking.start_time <= now,
                    )
                )
                .order_by(Booking.start_time)
                .all()
            )
            return [row.id for row in rows]
        except Exception as e:
            self.logger.error(f"Error getting bookings to start: {str(e)}")
            raise RepositoryException(f"Failed to get bookings to start: {str(e)}")

    def get_booking_ids_to_end(self, ended_before: datetime) -> List[str]:
        """Ongoing bookings whose end time is at or before the cutoff."""
        try:
            rows = (
                self.db.query(Booking.id)
                .filter(
                    and_(
                        Booking.status == BookingStatus.ONGOING.value,
                        Booking.end_time <= ended_before,
                    )
                )
                .order_by(Booking.end_time)
                .all()
            )
            return [row.id for row in rows]
        except Exception as e:
            self.logger.error(f"Error getting bookings to end: {str(e)}")
            raise RepositoryException(f"Failed to get bookings to end: {str(e)}")

    def get_booking_ids_to_auto_confirm(self, now: datetime) -> List[str]:
        """Undisputed completed_pending bookings whose auto-confirm time has passed."""
        try:
            rows = (
                self.db.query(Booking.id)
                .outerjoin(BookingDispute, BookingDispute.booking_id == Booking.id)
                .filter(
                    and_(
                        Booking.status == BookingStatus.COMPLETED_PENDING.value,
                        Booking.auto_confirm_at.isnot(None),
                        Booking.auto_confirm_at <= now,
                        or_(
                            BookingDispute.id.is_(None),
                            BookingDispute.is_disputed.is_(False),
                        ),
                    )
                )
                .order_by(Booking.auto_confirm_at)
                .all()
            )
            return [row.id for row in rows]
        except Exception as e:
            self.logger.error(f"Error getting bookings to auto-confirm: {str(e)}")
            raise RepositoryException(f"Failed to get bookings to auto-confirm: {str(e)}")

    def _apply_eager_loading(self, query: Query) -> Query:
        return query.options(
            joinedload(Booking.slot),
            joinedload(Booking.client),
            joinedload(Booking.counselor),
            joinedload(Booking.dispute),
            joinedload(Booking.payout),
            selectinload(Booking.attendance),
        )

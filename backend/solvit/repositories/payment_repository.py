# backend/solvit/repositories/payment_repository.py
"""
Payment Repository for the Solvit platform.

Covers payments, refund attempt rows, and the reconciliation candidate
queries. Every method works on whatever session it was built with, so a
refund can run inside a caller's transaction or in its own.
"""

from datetime import datetime
import logging
from typing import Any, Dict, List, Optional, cast

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.payment import (
    Payment,
    PaymentBookingStatus,
    PaymentRefund,
    PaymentStatus,
)
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class PaymentRepository(BaseRepository[Payment]):
    def __init__(self, db: Session):
        super().__init__(db, Payment)

    def get_for_update(self, payment_id: str) -> Optional[Payment]:
        """Reload a payment, taking a row lock where the backend supports it."""
        try:
            return cast(
                Optional[Payment],
                self.db.query(Payment)
                .filter(Payment.id == payment_id)
                .populate_existing()
                .with_for_update()
                .first(),
            )
        except Exception as e:
            self.logger.error(f"Error loading payment {payment_id}: {str(e)}")
            raise RepositoryException(f"Failed to load payment: {str(e)}")

    def get_by_gateway_payment_id(self, gateway_payment_id: str) -> Optional[Payment]:
        return cast(
            Optional[Payment],
            self.db.query(Payment)
            .filter(Payment.gateway_payment_id == gateway_payment_id)
            .first(),
        )

    def get_orphaned_payment_ids(self, created_before: datetime, limit: int) -> List[str]:
        """Captured payments never linked to a booking, oldest first."""
        try:
            rows = (
                self.db.query(Payment.id)
                .filter(
                    and_(
                        Payment.status == PaymentStatus.CAPTURED_UNLINKED.value,
                        Payment.booking_status == PaymentBookingStatus.PAYMENT_CAPTURED.value,
                        Payment.created_at < created_before,
                    )
                )
                .order_by(Payment.created_at)
                .limit(limit)
                .all()
            )
            return [row.id for row in rows]
        except Exception as e:
            self.logger.error(f"Error getting orphaned payments: {str(e)}")
            raise RepositoryException(f"Failed to get orphaned payments: {str(e)}")

    def get_pending_resource_payments(self, updated_before: datetime, limit: int) -> List[Payment]:
        """Payments stuck waiting for booking resources (video room) past the cutoff."""
        try:
            return cast(
                List[Payment],
                self.db.query(Payment)
                .filter(
                    and_(
                        Payment.booking_status == PaymentBookingStatus.PENDING_RESOURCES.value,
                        Payment.created_at < updated_before,
                    )
                )
                .order_by(Payment.created_at)
                .limit(limit)
                .all(),
            )
        except Exception as e:
            self.logger.error(f"Error getting pending-resource payments: {str(e)}")
            raise RepositoryException(f"Failed to get pending-resource payments: {str(e)}")

    def mark_linked(
        self, payment_id: str, booking_id: str, from_booking_status: str, values: Dict[Any, Any]
    ) -> bool:
        """Link a payment to a booking if it is still in ``from_booking_status``."""
        merged = {Payment.booking_id: booking_id}
        merged.update(values)
        updated = self._conditional_update(
            [Payment.id == payment_id, Payment.booking_status == from_booking_status], merged
        )
        return updated == 1

    def set_booking_status(
        self, payment_id: str, from_booking_status: str, to_booking_status: str
    ) -> bool:
        updated = self._conditional_update(
            [Payment.id == payment_id, Payment.booking_status == from_booking_status],
            {Payment.booking_status: to_booking_status},
        )
        return updated == 1

    def create_refund(self, **kwargs: Any) -> PaymentRefund:
        """Insert one refund attempt row (successful or failed)."""
        try:
            refund = PaymentRefund(**kwargs)
            self.db.add(refund)
            self.db.flush()
            return refund
        except IntegrityError as exc:
            self.logger.error("Integrity error creating refund row: %s", exc)
            raise RepositoryException(f"Integrity constraint violated: {exc}") from exc

    def get_refunds(self, payment_id: str) -> List[PaymentRefund]:
        return cast(
            List[PaymentRefund],
            self.db.query(PaymentRefund)
            .filter(PaymentRefund.payment_id == payment_id)
            .order_by(PaymentRefund.created_at)
            .all(),
        )

# backend/solvit/models/payment.py
"""
Payment and refund ledger models.

Amounts are integer paise. ``status`` tracks the gateway side of a payment;
``booking_status`` tracks how far the platform got in linking the captured
money to a booking, which is what the reconciliation sweeps key on.
"""

from enum import Enum

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..database import Base


class PaymentStatus(str, Enum):
    CREATED = "created"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    CAPTURED_UNLINKED = "captured_unlinked"


class PaymentBookingStatus(str, Enum):
    PENDING = "pending"
    PAYMENT_CAPTURED = "payment_captured"
    PENDING_RESOURCES = "pending_resources"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class RefundStatus(str, Enum):
    PARTIAL = "partial"
    FULL = "full"


class RefundReason(str, Enum):
    BOOKING_FAILED = "booking_failed"
    SLOT_UNAVAILABLE = "slot_unavailable"
    VIDEOSDK_FAILED = "videosdk_failed"
    DUPLICATE_PAYMENT = "duplicate_payment"
    USER_REQUESTED = "user_requested"
    SYSTEM_ERROR = "system_error"


class Payment(Base):
    __tablename__ = "payments"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    gateway_order_id = Column(String(100), nullable=False, index=True)
    gateway_payment_id = Column(String(100), nullable=False, unique=True, index=True)
    gateway_signature = Column(String(255), nullable=True)

    client_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    slot_id = Column(String(26), ForeignKey("slots.id"), nullable=False)
    booking_id = Column(String(26), nullable=True, index=True)

    amount = Column(Integer, nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    amount_refunded = Column(Integer, nullable=False, default=0)
    refund_status = Column(String(10), nullable=True)

    status = Column(String(30), nullable=False, default=PaymentStatus.CAPTURED.value, index=True)
    booking_status = Column(
        String(30), nullable=False, default=PaymentBookingStatus.PENDING.value, index=True
    )

    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    refunds = relationship("PaymentRefund", back_populates="payment", order_by="PaymentRefund.created_at")

    __table_args__ = (
        CheckConstraint("amount_refunded <= amount", name="ck_payments_refund_le_amount"),
        CheckConstraint("amount_refunded >= 0", name="ck_payments_refund_non_negative"),
        Index("ix_payments_reconciliation", "status", "booking_status", "created_at"),
    )

    @property
    def refundable_amount(self) -> int:
        return int(self.amount or 0) - int(self.amount_refunded or 0)

    def __repr__(self) -> str:
        return f"<Payment {self.id} status={self.status} booking_status={self.booking_status}>"


class PaymentRefund(Base):
    """One row per refund attempt, failed attempts included."""

    __tablename__ = "payment_refunds"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    payment_id = Column(String(26), ForeignKey("payments.id"), nullable=False, index=True)
    gateway_payment_id = Column(String(100), nullable=False)
    # Gateway refund id, or FAILED_<epoch millis> when the gateway never issued one
    gateway_refund_id = Column(String(100), nullable=False, unique=True)

    amount = Column(Integer, nullable=False)
    reason = Column(String(30), nullable=False)
    status = Column(String(20), nullable=False)
    speed_requested = Column(String(20), nullable=True)
    speed_processed = Column(String(20), nullable=True)
    error_details = Column(Text, nullable=True)
    refund_metadata = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    payment = relationship("Payment", back_populates="refunds")

    __table_args__ = (
        CheckConstraint(
            "reason IN ('booking_failed', 'slot_unavailable', 'videosdk_failed', "
            "'duplicate_payment', 'user_requested', 'system_error')",
            name="ck_payment_refunds_reason",
        ),
    )

    def __repr__(self) -> str:
        return f"<PaymentRefund {self.gateway_refund_id} status={self.status}>"

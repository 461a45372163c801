"""Reconciliation failures parked for manual follow-up."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.sql import func
import ulid

from ..database import Base


class FailedActionType(str, Enum):
    ORPHANED_PAYMENT_REFUND_FAILED = "orphaned_payment_refund_failed"
    ORPHANED_PAYMENT_PROCESSING_FAILED = "orphaned_payment_processing_failed"
    PAYMENT_STUCK_PENDING_RESOURCES = "payment_stuck_pending_resources"
    SLOT_RELEASE_FAILED = "slot_release_failed"


class FailedAction(Base):
    """
    One open problem per (type, payment, slot) that a sweep could not fix.

    A sweep hitting the same problem again bumps ``retry_count`` on the open
    row; resolving it is an operator action.
    """

    __tablename__ = "failed_actions"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    action_type = Column(String(50), nullable=False, index=True)

    payment_id = Column(String(26), nullable=True, index=True)
    booking_id = Column(String(26), nullable=True, index=True)
    slot_id = Column(String(26), nullable=True)

    error = Column(Text, nullable=False)
    action_metadata = Column(JSON, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_retry_at = Column(DateTime(timezone=True), nullable=True)

    resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (Index("ix_failed_actions_open_by_type", "action_type", "resolved"),)

    def __repr__(self) -> str:
        return f"<FailedAction {self.action_type} resolved={self.resolved}>"

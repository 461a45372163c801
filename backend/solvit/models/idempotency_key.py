"""Idempotency keys guarding client-retried payment operations."""

from __future__ import annotations

from enum import Enum

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.sql import func
import ulid

from ..database import Base


class IdempotencyRequestType(str, Enum):
    CHECKOUT = "checkout"
    VERIFY = "verify"
    REFUND = "refund"


class IdempotencyStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    # Namespaced as "<request_type>:<user_id>:<client key>"
    key = Column(String(255), nullable=False, unique=True, index=True)
    request_type = Column(String(20), nullable=False)
    user_id = Column(String(26), nullable=True)

    request_data = Column(JSON, nullable=True)
    response_data = Column(JSON, nullable=True)
    status = Column(String(20), nullable=False, default=IdempotencyStatus.PROCESSING.value)
    attempts = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<IdempotencyKey {self.key} status={self.status}>"

"""
Idempotency guard for client-retried payment operations.

Keys are namespaced by request type and calling user, so two users sending
the same client key never see each other's responses. Keys expire a fixed
time after creation; expired keys are treated as absent and swept by a
periodic task.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    IdempotencyInProgressException,
    RepositoryException,
    ValidationException,
)
from ..models.idempotency_key import IdempotencyRequestType, IdempotencyStatus
from ..repositories.factory import RepositoryFactory
from ..utils.time_helpers import ensure_utc
from .base import BaseService

logger = logging.getLogger(__name__)


@dataclass
class IdempotencyClaim:
    """Outcome of claiming a key: either a cached response or permission to proceed."""

    key: str
    cached_response: Optional[Dict[str, Any]] = None
    attempts: int = 1

    @property
    def is_replay(self) -> bool:
        return self.cached_response is not None


def namespaced_key(request_type: str, key: str, user_id: Optional[str] = None) -> str:
    # Client keys are only unique per caller
    if user_id:
        return f"{request_type}:{user_id}:{key}"
    return f"{request_type}:{key}"


class IdempotencyService(BaseService):
    def __init__(self, db: Session, ttl_hours: Optional[int] = None):
        super().__init__(db)
        self.repository = RepositoryFactory.create_idempotency_repository(db)
        self.ttl = timedelta(hours=ttl_hours or settings.idempotency_ttl_hours)

    @BaseService.measure_operation("claim_idempotency_key")
    def claim(
        self,
        request_type: str,
        key: Optional[str],
        *,
        user_id: Optional[str] = None,
        request_data: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> IdempotencyClaim:
        """
        Reserve ``key`` for one in-flight request.

        Raises IdempotencyInProgressException while another request holds the
        key, returns the cached response for completed keys, and lets failed
        or expired keys be retried.
        """
        if not key:
            raise ValidationException(
                "Idempotency-Key header is required", code="IDEMPOTENCY_KEY_REQUIRED"
            )
        request_type = IdempotencyRequestType(request_type).value
        full_key = namespaced_key(request_type, key, user_id)
        current = self._now(now)

        record = self.repository.get_by_key(full_key)
        if record is not None and ensure_utc(record.expires_at) <= current:
            self.logger.info("Replacing expired idempotency key %s", full_key)
            self.db.delete(record)
            self.db.flush()
            record = None

        if record is None:
            try:
                with self.transaction():
                    self.repository.create(
                        key=full_key,
                        request_type=request_type,
                        user_id=user_id,
                        request_data=request_data or {},
                        status=IdempotencyStatus.PROCESSING.value,
                        attempts=1,
                        created_at=current,
                        last_attempt_at=current,
                        expires_at=current + self.ttl,
                    )
            except RepositoryException as exc:
                if isinstance(exc.__cause__, IntegrityError):
                    # Lost a race with a concurrent first request for the same key
                    raise IdempotencyInProgressException(key) from exc
                raise
            return IdempotencyClaim(key=full_key)

        if record.status == IdempotencyStatus.PROCESSING.value:
            raise IdempotencyInProgressException(key)
        if record.status == IdempotencyStatus.COMPLETED.value:
            self.logger.info("Replaying cached response for %s", full_key)
            return IdempotencyClaim(
                key=full_key, cached_response=record.response_data, attempts=record.attempts
            )

        # Failed: retry under the same key
        with self.transaction():
            record.status = IdempotencyStatus.PROCESSING.value
            record.attempts = int(record.attempts or 0) + 1
            record.last_attempt_at = current
            if request_data is not None:
                record.request_data = request_data
        return IdempotencyClaim(key=full_key, attempts=record.attempts)

    def complete(
        self, full_key: str, response: Dict[str, Any], now: Optional[datetime] = None
    ) -> None:
        record = self.repository.get_by_key(full_key)
        if record is None:
            return
        with self.transaction():
            record.status = IdempotencyStatus.COMPLETED.value
            record.response_data = response
            record.completed_at = self._now(now)

    def fail(self, full_key: str, error: Optional[Dict[str, Any]] = None) -> None:
        # The request may have failed mid-transaction; start clean.
        self.db.rollback()
        record = self.repository.get_by_key(full_key)
        if record is None:
            return
        with self.transaction():
            record.status = IdempotencyStatus.FAILED.value
            record.response_data = error or {}

    @BaseService.measure_operation("purge_expired_idempotency_keys")
    def purge_expired(self, now: Optional[datetime] = None) -> int:
        with self.transaction():
            deleted = self.repository.delete_expired(self._now(now))
        self.logger.info("Purged %s expired idempotency keys", deleted)
        return deleted

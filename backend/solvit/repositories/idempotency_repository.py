"""Idempotency key repository."""

from datetime import datetime
import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..models.idempotency_key import IdempotencyKey
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class IdempotencyRepository(BaseRepository[IdempotencyKey]):
    def __init__(self, db: Session):
        super().__init__(db, IdempotencyKey)

    def get_by_key(self, key: str) -> Optional[IdempotencyKey]:
        return (
            self.db.query(IdempotencyKey)
            .filter(IdempotencyKey.key == key)
            .populate_existing()
            .first()
        )

    def delete_expired(self, now: datetime) -> int:
        return (
            self.db.query(IdempotencyKey)
            .filter(IdempotencyKey.expires_at <= now)
            .delete(synchronize_session=False)
        )

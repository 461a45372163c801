"""Failed action repository."""

from datetime import datetime
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.failed_action import FailedAction
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class FailedActionRepository(BaseRepository[FailedAction]):
    def __init__(self, db: Session):
        super().__init__(db, FailedAction)

    def record(
        self,
        action_type: str,
        error: str,
        now: datetime,
        *,
        payment_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        slot_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FailedAction:
        """Open a failed action, or bump the retry count of the matching open one."""
        try:
            existing = (
                self.db.query(FailedAction)
                .filter(
                    FailedAction.action_type == action_type,
                    FailedAction.payment_id == payment_id,
                    FailedAction.slot_id == slot_id,
                    FailedAction.resolved.is_(False),
                )
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error looking up failed action: {str(e)}")
            raise RepositoryException(f"Failed to look up failed action: {str(e)}")

        if existing is not None:
            existing.retry_count = int(existing.retry_count or 0) + 1
            existing.last_retry_at = now
            existing.error = error
            if metadata:
                existing.action_metadata = metadata
            self.db.flush()
            return existing

        return self.create(
            action_type=action_type,
            error=error,
            payment_id=payment_id,
            booking_id=booking_id,
            slot_id=slot_id,
            action_metadata=metadata or {},
            retry_count=0,
            resolved=False,
            created_at=now,
        )

    def get_unresolved(
        self, action_type: Optional[str] = None, limit: int = 100
    ) -> List[FailedAction]:
        query = self.db.query(FailedAction).filter(FailedAction.resolved.is_(False))
        if action_type:
            query = query.filter(FailedAction.action_type == action_type)
        return query.order_by(FailedAction.created_at.desc()).limit(limit).all()

    def resolve_for_payment(
        self, payment_id: str, action_types: List[str], now: datetime, resolved_by: str = "auto"
    ) -> int:
        """Close open actions for ``payment_id`` once a later run fixed the problem."""
        open_actions = (
            self.db.query(FailedAction)
            .filter(
                FailedAction.payment_id == payment_id,
                FailedAction.action_type.in_(action_types),
                FailedAction.resolved.is_(False),
            )
            .all()
        )
        for action in open_actions:
            action.resolved = True
            action.resolved_at = now
            action.resolved_by = resolved_by
        if open_actions:
            self.db.flush()
        return len(open_actions)

# backend/solvit/tasks/payment_tasks.py
"""
Celery tasks for payment reconciliation and idempotency housekeeping.
"""

import logging
from typing import Any, Dict, cast

from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies.services import build_reconciliation_service
from ..services.idempotency_service import IdempotencyService
from ..utils.time_helpers import utc_now
from .celery_app import BaseTask, typed_task

logger = logging.getLogger(__name__)


@typed_task(base=BaseTask, name="solvit.tasks.payment_tasks.reconcile_payments")
def reconcile_payments() -> Dict[str, Any]:
    """Refund orphaned payments, release stuck slots and settle pending-resource payments."""
    db = cast(Session, next(get_db()))
    try:
        now = utc_now()
        result = build_reconciliation_service(db).reconcile(now=now)
        orphaned = result["orphaned_payments"]
        if orphaned["processed"]:
            logger.info(
                "Payment reconciliation: %s orphaned, %s refunded, %s failed",
                orphaned["processed"],
                orphaned["refunded"],
                orphaned["failed"],
            )
        return {"processed_at": now.isoformat(), **result}
    finally:
        db.close()


@typed_task(base=BaseTask, name="solvit.tasks.payment_tasks.purge_expired_idempotency_keys")
def purge_expired_idempotency_keys() -> Dict[str, Any]:
    db = cast(Session, next(get_db()))
    try:
        deleted = IdempotencyService(db).purge_expired()
        return {"deleted": deleted}
    finally:
        db.close()

# backend/solvit/tasks/email.py
"""
Email-related Celery tasks for Solvit.
"""

import logging
from typing import Any, Dict

from ..database import get_db
from ..dependencies.services import build_email_service
from ..models.payment import Payment, PaymentRefund
from ..models.user import User
from .celery_app import BaseTask, celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    base=BaseTask,
    name="solvit.tasks.email.send_refund_notification",
    bind=True,
    max_retries=3,
)
def send_refund_notification(
    self: Any, payment_id: str, gateway_refund_id: str, reason: str
) -> Dict[str, Any]:
    """
    Tell the client their refund was initiated.

    Args:
        payment_id: Payment that was refunded
        gateway_refund_id: Refund id returned by the gateway
        reason: Refund reason code

    Returns:
        dict: Result of email sending operation
    """
    db = next(get_db())
    try:
        payment = db.query(Payment).filter(Payment.id == payment_id).first()
        if not payment:
            logger.error(f"Payment {payment_id} not found")
            return {"status": "error", "message": f"Payment {payment_id} not found"}

        client = db.query(User).filter(User.id == payment.client_id).first()
        if not client or not client.email:
            logger.warning(f"No email address for client of payment {payment_id}")
            return {"status": "skipped", "payment_id": payment_id}

        refund = (
            db.query(PaymentRefund)
            .filter(PaymentRefund.gateway_refund_id == gateway_refund_id)
            .first()
        )
        amount = int(refund.amount) if refund else payment.refundable_amount

        build_email_service().send_refund_notification(
            to_email=client.email,
            client_name=client.full_name or client.email,
            amount_paise=amount,
            reason=reason,
            refund_id=gateway_refund_id,
            booking_id=payment.booking_id,
        )
        return {"status": "success", "payment_id": payment_id, "refund_id": gateway_refund_id}

    except Exception as exc:
        logger.error(f"Failed to send refund notification for payment {payment_id}: {exc}")
        raise self.retry(exc=exc, countdown=60 * (2**self.request.retries))
    finally:
        db.close()

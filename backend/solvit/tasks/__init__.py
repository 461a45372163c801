# backend/solvit/tasks/__init__.py
"""
Celery tasks package for Solvit.

- Session lifecycle jobs (start, end, auto-confirm)
- Payment reconciliation and idempotency housekeeping
- Refund notification emails
"""

from .celery_app import BaseTask, celery_app
from .email import send_refund_notification
from .payment_tasks import purge_expired_idempotency_keys, reconcile_payments
from .session_tasks import run_attendance_jobs

__all__ = [
    "celery_app",
    "BaseTask",
    "run_attendance_jobs",
    "reconcile_payments",
    "purge_expired_idempotency_keys",
    "send_refund_notification",
]

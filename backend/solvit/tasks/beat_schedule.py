# backend/solvit/tasks/beat_schedule.py
"""
Celery Beat schedule configuration for Solvit.

Cadences come from settings so operators can retune them without a
deploy. Every scheduled job is safe to run twice: each transition is a
conditional update on the prior state.
"""

from typing import Any, Dict

from celery.schedules import crontab

from ..core.config import settings


def get_beat_schedule() -> Dict[str, Dict[str, Any]]:
    return {
        # Start monitor, end monitor and auto-confirm, in that order
        "run-attendance-jobs": {
            "task": "solvit.tasks.session_tasks.run_attendance_jobs",
            "schedule": crontab(minute=f"*/{settings.attendance_job_interval_minutes}"),
            "options": {"queue": "sessions", "expires": 240},
        },
        "reconcile-payments": {
            "task": "solvit.tasks.payment_tasks.reconcile_payments",
            "schedule": crontab(minute=f"*/{settings.payment_reconciliation_interval_minutes}"),
            "options": {"queue": "payments", "expires": 600},
        },
        "purge-expired-idempotency-keys": {
            "task": "solvit.tasks.payment_tasks.purge_expired_idempotency_keys",
            "schedule": crontab(hour=3, minute=0),  # Daily at 3 AM
            "options": {"queue": "payments"},
        },
    }

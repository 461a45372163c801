# backend/solvit/tasks/session_tasks.py
"""
Celery tasks driving the session lifecycle.
"""

import logging
from typing import Any, Dict, cast

from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies.services import build_session_lifecycle_service
from ..utils.time_helpers import utc_now
from .celery_app import BaseTask, typed_task

logger = logging.getLogger(__name__)


@typed_task(base=BaseTask, name="solvit.tasks.session_tasks.run_attendance_jobs")
def run_attendance_jobs() -> Dict[str, Any]:
    """
    Advance bookings by wall clock: start, end (presence verdict), auto-confirm.

    Failures on individual bookings are logged by the service and retried on
    the next tick, so the task itself does not retry.
    """
    db = cast(Session, next(get_db()))
    try:
        now = utc_now()
        result = build_session_lifecycle_service(db).run_all(now=now)
        logger.info("Attendance jobs finished", extra={"result": result})
        return {"processed_at": now.isoformat(), **result}
    finally:
        db.close()

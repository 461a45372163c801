# backend/solvit/dependencies/auth.py
"""
Acting-user resolution.

Authentication itself lives in front of this service; requests arrive with
the authenticated user's id in ``X-User-Id``. This module is the single
place that trusts that header.
"""

import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from ..models.user import User
from .database import get_db

logger = logging.getLogger(__name__)


def get_current_user(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id"),
    db: Session = Depends(get_db),
) -> User:
    """Resolve the acting user or fail with 401."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    user = db.query(User).filter(User.id == x_user_id).first()
    if user is None:
        logger.info("Rejected request for unknown user %s", x_user_id)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user

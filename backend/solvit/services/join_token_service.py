"""
Short-lived signed tokens that gate access to the external meeting room.

Tokens are HS256 JWTs scoped to (booking, user, role) and are not
revocable before they expire.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Dict, Optional

import jwt
from pydantic import SecretStr

from ..core.constants import JOIN_TOKEN_ALGORITHM, JOIN_TOKEN_TYPE
from ..core.exceptions import JoinTokenError
from ..utils.time_helpers import ensure_utc, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JoinClaims:
    booking_id: str
    user_id: str
    role: str
    expires_at: datetime


class JoinTokenService:
    def __init__(self, secret: str | SecretStr, ttl_seconds: int = 120):
        self._secret = secret.get_secret_value() if isinstance(secret, SecretStr) else secret
        self.ttl_seconds = ttl_seconds

    def issue(
        self, booking_id: str, user_id: str, role: str, now: Optional[datetime] = None
    ) -> str:
        issued_at = ensure_utc(now) if now is not None else utc_now()
        payload: Dict[str, Any] = {
            "bookingId": booking_id,
            "userId": user_id,
            "role": role,
            "type": JOIN_TOKEN_TYPE,
            "iat": int(issued_at.timestamp()),
            "exp": int((issued_at + timedelta(seconds=self.ttl_seconds)).timestamp()),
        }
        token: str = jwt.encode(payload, self._secret, algorithm=JOIN_TOKEN_ALGORITHM)
        return token

    def verify(
        self,
        token: str,
        *,
        booking_id: str,
        role: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> JoinClaims:
        """
        Check signature, expiry and scope of a join token.

        Expiry is compared against ``now`` rather than the wall clock so the
        check is reproducible.
        """
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[JOIN_TOKEN_ALGORITHM],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["exp", "bookingId", "role"],
                },
            )
        except jwt.InvalidTokenError as exc:
            logger.info("Rejected join token: %s", exc)
            raise JoinTokenError() from exc

        current = ensure_utc(now) if now is not None else utc_now()
        if int(claims["exp"]) <= int(current.timestamp()):
            raise JoinTokenError()
        if claims.get("type") != JOIN_TOKEN_TYPE:
            raise JoinTokenError()
        if claims["bookingId"] != booking_id or (role is not None and claims["role"] != role):
            raise JoinTokenError("Join token does not match this session")

        return JoinClaims(
            booking_id=claims["bookingId"],
            user_id=claims["userId"],
            role=claims["role"],
            expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=current.tzinfo),
        )

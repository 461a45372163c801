"""VideoSDK Integration Client.

Only room provisioning is needed server-side: the meeting URL handed to
participants on redirect is derived from the room id.
"""

from __future__ import annotations

import logging
import time
from typing import Any, cast
import uuid

import httpx
import jwt
from pydantic import SecretStr

logger = logging.getLogger(__name__)


class VideoSdkError(RuntimeError):
    """Raised when the VideoSDK API responds with an error."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        details: Any | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


class VideoSdkClient:
    """HTTP client for the VideoSDK REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        secret: str | SecretStr,
        base_url: str = "https://api.videosdk.live/v2",
        timeout: float = 10.0,
    ) -> None:
        self._api_key = api_key
        self._secret = secret.get_secret_value() if isinstance(secret, SecretStr) else secret
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _generate_auth_token(self) -> str:
        """Short-lived HS256 token authorizing server-side room management."""
        now = int(time.time())
        payload = {
            "apikey": self._api_key,
            "permissions": ["allow_join"],
            "version": 2,
            "iat": now,
            "exp": now + 600,
        }
        token: str = jwt.encode(payload, self._secret, algorithm="HS256")
        return token

    def create_room(self) -> dict[str, Any]:
        url = f"{self._base_url}/rooms"
        headers = {"Authorization": self._generate_auth_token(), "Content-Type": "application/json"}
        try:
            with httpx.Client(timeout=self._timeout) as client:
                response = client.post(url, headers=headers)
        except httpx.TransportError as exc:
            logger.error("VideoSDK API unreachable: %s", exc)
            raise VideoSdkError(f"VideoSDK API unreachable: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "VideoSDK API error %s creating room: %s",
                response.status_code,
                response.text[:500],
            )
            raise VideoSdkError(
                message=response.text[:500] or "VideoSDK room creation failed",
                status_code=response.status_code,
            )

        data = cast(dict[str, Any], response.json())
        if not data.get("roomId"):
            raise VideoSdkError("VideoSDK response did not include a roomId", details=data)
        return data


class FakeVideoSdkClient:
    """In-memory stub for testing/non-production environments."""

    def __init__(self, **kwargs: Any) -> None:
        self._calls: list[dict[str, Any]] = []
        self._errors: dict[str, VideoSdkError] = {}

    @property
    def calls(self) -> list[dict[str, Any]]:
        return list(self._calls)

    def set_error(self, method: str, error: VideoSdkError) -> None:
        self._errors[method] = error

    def clear_errors(self) -> None:
        self._errors.clear()

    def create_room(self) -> dict[str, Any]:
        self._calls.append({"method": "create_room"})
        error = self._errors.get("create_room")
        if error is not None:
            raise error
        return {"roomId": f"fake-{uuid.uuid4().hex[:4]}-{uuid.uuid4().hex[:4]}"}

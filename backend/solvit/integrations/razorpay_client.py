"""Razorpay Payment Gateway Integration Client.

Covers the three calls the booking flow needs: order creation for checkout,
payment-signature verification, and refunds. Authenticates with HTTP basic
auth using the key id / key secret pair.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, cast
import uuid

import httpx
from pydantic import SecretStr

logger = logging.getLogger(__name__)


class RazorpayError(RuntimeError):
    """Raised when the Razorpay API responds with an error or is unreachable."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        *,
        code: str | None = None,
        source: str | None = None,
        step: str | None = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.description = message
        self.status_code = status_code
        self.code = code
        self.source = source
        self.step = step
        self.reason = reason


def _secret_value(secret: str | SecretStr) -> str:
    return secret.get_secret_value() if isinstance(secret, SecretStr) else secret


def compute_payment_signature(order_id: str, payment_id: str, key_secret: str | SecretStr) -> str:
    """HMAC-SHA256 of ``order_id|payment_id``, hex encoded, as Razorpay signs checkouts."""
    message = f"{order_id}|{payment_id}".encode()
    return hmac.new(_secret_value(key_secret).encode(), message, hashlib.sha256).hexdigest()


class RazorpayClient:
    """HTTP client for the Razorpay REST API."""

    def __init__(
        self,
        *,
        key_id: str,
        key_secret: str | SecretStr,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 15.0,
    ) -> None:
        self._key_id = key_id
        self._key_secret = _secret_value(key_secret)
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        try:
            with httpx.Client(
                timeout=self._timeout, auth=(self._key_id, self._key_secret)
            ) as client:
                response = client.request(method, url, json=json_body)
        except httpx.TransportError as exc:
            logger.error("Razorpay API unreachable for %s %s: %s", method, path, exc)
            raise RazorpayError(
                message=f"Razorpay API unreachable: {exc}",
                code="NETWORK_ERROR",
                source="razorpay",
            ) from exc

        if response.status_code >= 400:
            error_body: dict[str, Any] = {}
            try:
                parsed_body = response.json()
                if isinstance(parsed_body, dict):
                    error_body = parsed_body.get("error") or {}
            except Exception:
                error_body = {}

            logger.error(
                "Razorpay API error %s for %s %s: %s",
                response.status_code,
                method,
                path,
                response.text[:500],
            )
            raise RazorpayError(
                message=error_body.get("description") or response.text[:500],
                status_code=response.status_code,
                code=error_body.get("code"),
                source=error_body.get("source"),
                step=error_body.get("step"),
                reason=error_body.get("reason"),
            )

        return cast(dict[str, Any], response.json())

    def create_order(
        self,
        *,
        amount: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Create a checkout order; ``amount`` is in paise."""
        body: dict[str, Any] = {"amount": amount, "currency": currency, "receipt": receipt}
        if notes:
            body["notes"] = notes
        return self._request("POST", "orders", json_body=body)

    def refund_payment(
        self,
        payment_id: str,
        *,
        amount: int,
        speed: str = "normal",
        notes: dict[str, Any] | None = None,
        receipt: str | None = None,
    ) -> dict[str, Any]:
        """Refund ``amount`` paise of a captured payment."""
        body: dict[str, Any] = {"amount": amount, "speed": speed}
        if notes:
            body["notes"] = notes
        if receipt:
            body["receipt"] = receipt
        return self._request("POST", f"payments/{payment_id}/refund", json_body=body)

    def verify_payment_signature(self, *, order_id: str, payment_id: str, signature: str) -> bool:
        expected = compute_payment_signature(order_id, payment_id, self._key_secret)
        return hmac.compare_digest(expected, signature or "")


class FakeRazorpayClient:
    """In-memory stand-in used when Razorpay credentials are not configured, and in tests."""

    def __init__(self, key_secret: str | SecretStr = "fake_key_secret", **kwargs: Any) -> None:
        self._key_secret = _secret_value(key_secret)
        self._calls: list[dict[str, Any]] = []
        self._errors: dict[str, RazorpayError] = {}
        self._queued_errors: dict[str, list[RazorpayError]] = {}

    @property
    def calls(self) -> list[dict[str, Any]]:
        return list(self._calls)

    def calls_for(self, method: str) -> list[dict[str, Any]]:
        return [call for call in self._calls if call["method"] == method]

    def set_error(self, method: str, error: RazorpayError) -> None:
        """Fail every call to ``method`` with ``error``."""
        self._errors[method] = error

    def queue_errors(self, method: str, *errors: RazorpayError) -> None:
        """Fail the next ``len(errors)`` calls to ``method``, then succeed."""
        self._queued_errors.setdefault(method, []).extend(errors)

    def clear_errors(self) -> None:
        self._errors.clear()
        self._queued_errors.clear()

    def _raise_if_injected(self, method: str) -> None:
        queued = self._queued_errors.get(method)
        if queued:
            raise queued.pop(0)
        error = self._errors.get(method)
        if error is not None:
            raise error

    def create_order(
        self, *, amount: int, currency: str, receipt: str, notes: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        self._calls.append(
            {"method": "create_order", "amount": amount, "currency": currency, "receipt": receipt}
        )
        self._raise_if_injected("create_order")
        return {
            "id": f"order_fake_{uuid.uuid4().hex[:14]}",
            "entity": "order",
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "notes": notes or {},
        }

    def refund_payment(
        self,
        payment_id: str,
        *,
        amount: int,
        speed: str = "normal",
        notes: dict[str, Any] | None = None,
        receipt: str | None = None,
    ) -> dict[str, Any]:
        self._calls.append(
            {
                "method": "refund_payment",
                "payment_id": payment_id,
                "amount": amount,
                "speed": speed,
                "notes": notes or {},
                "receipt": receipt,
            }
        )
        self._raise_if_injected("refund_payment")
        return {
            "id": f"rfnd_fake_{uuid.uuid4().hex[:14]}",
            "entity": "refund",
            "amount": amount,
            "payment_id": payment_id,
            "status": "processed",
            "speed_requested": speed,
            "speed_processed": speed,
            "notes": notes or {},
        }

    def verify_payment_signature(self, *, order_id: str, payment_id: str, signature: str) -> bool:
        self._calls.append(
            {"method": "verify_payment_signature", "order_id": order_id, "payment_id": payment_id}
        )
        expected = compute_payment_signature(order_id, payment_id, self._key_secret)
        return hmac.compare_digest(expected, signature or "")

# backend/solvit/services/email.py
"""
Email Service for the Solvit platform.

Sends transactional email through Resend. The provider client is injected
so services and tasks can be exercised with an in-memory sender.
"""

import html
import logging
from typing import Any, Dict, List, Optional, Protocol

import resend

from ..core.constants import BRAND_NAME
from ..core.exceptions import ServiceException
from ..models.payment import RefundReason

logger = logging.getLogger(__name__)

REFUND_REASON_TEXT: Dict[str, str] = {
    RefundReason.BOOKING_FAILED.value: "Booking could not be completed",
    RefundReason.SLOT_UNAVAILABLE.value: "The selected slot was no longer available",
    RefundReason.VIDEOSDK_FAILED.value: "Video session setup failed",
    RefundReason.DUPLICATE_PAYMENT.value: "Duplicate payment detected",
    RefundReason.USER_REQUESTED.value: "Cancelled at your request",
    RefundReason.SYSTEM_ERROR.value: "A system error occurred",
}


def format_refund_reason(reason: str) -> str:
    return REFUND_REASON_TEXT.get(reason, "Refund processed")


class EmailSender(Protocol):
    def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        ...


class ResendEmailSender:
    """Thin adapter over the Resend SDK."""

    def __init__(self, api_key: str):
        if not api_key:
            raise ServiceException("Resend API key not configured")
        resend.api_key = api_key

    def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response: Dict[str, Any] = resend.Emails.send(payload)
        return response


class LoggingEmailSender:
    """Used when no provider key is configured; records and logs instead of sending."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, Any]] = []

    def send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.sent.append(payload)
        logger.info(
            "Email not sent (no provider configured): %s -> %s", payload["subject"], payload["to"]
        )
        return {"id": f"logged-{len(self.sent)}"}


class EmailService:
    def __init__(self, sender: EmailSender, *, from_email: str, from_name: str = BRAND_NAME):
        self.sender = sender
        self.from_email = from_email
        self.from_name = from_name
        self.logger = logging.getLogger(self.__class__.__name__)

    def send_email(
        self,
        to_email: str,
        subject: str,
        html_content: str,
        text_content: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = {
            "from": f"{self.from_name} <{self.from_email}>",
            "to": to_email,
            "subject": subject,
            "html": html_content,
            "text": text_content or subject,
        }
        try:
            response = self.sender.send(payload)
        except Exception as e:
            self.logger.error(f"Failed to send email to {to_email}: {str(e)}")
            raise ServiceException(f"Email sending failed: {str(e)}")
        self.logger.info(f"Email sent successfully to {to_email} - Subject: {subject}")
        return response

    def send_refund_notification(
        self,
        *,
        to_email: str,
        client_name: str,
        amount_paise: int,
        reason: str,
        refund_id: str,
        booking_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        amount = f"₹{amount_paise / 100:.2f}"
        reason_text = format_refund_reason(reason)
        subject = f"Your {BRAND_NAME} refund of {amount} has been initiated"
        lines = [
            f"Hi {html.escape(client_name)},",
            f"We have initiated a refund of {amount} to your original payment method.",
            f"Reason: {reason_text}",
            f"Refund reference: {html.escape(refund_id)}",
        ]
        if booking_id:
            lines.append(f"Booking: {html.escape(booking_id)}")
        lines.append("Refunds usually reach your account within 5-7 business days.")
        html_content = "".join(f"<p>{line}</p>" for line in lines)
        return self.send_email(
            to_email=to_email,
            subject=subject,
            html_content=html_content,
            text_content="\n".join(html.unescape(line) for line in lines),
        )

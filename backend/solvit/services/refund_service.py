# backend/solvit/services/refund_service.py
"""
Refund issuance against the payment gateway.

Every refund attempt leaves a ``payment_refunds`` row: the gateway refund on
success, or a synthesized ``FAILED_...`` row once retries are exhausted or a
non-retryable error comes back. Callers may pass their own session so the
refund commits or rolls back together with a larger change (for example a
cancellation); without one the service commits its own work.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import random
import time
from typing import Any, Callable, Dict, Optional, Protocol

from sqlalchemy.orm import Session
import ulid

from ..core.config import settings
from ..core.exceptions import NotFoundException
from ..integrations.razorpay_client import RazorpayError
from ..models.payment import Payment, PaymentBookingStatus, RefundReason, RefundStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..repositories.payment_repository import PaymentRepository
from .base import BaseService

logger = logging.getLogger(__name__)

NON_RETRYABLE_ERROR_SIGNATURES = (
    "BAD_REQUEST_ERROR",
    "The payment has been fully refunded already",
    "The refund amount provided is greater than amount captured",
)


class RefundGateway(Protocol):
    def refund_payment(
        self,
        payment_id: str,
        *,
        amount: int,
        speed: str = "normal",
        notes: Optional[Dict[str, Any]] = None,
        receipt: Optional[str] = None,
    ) -> Dict[str, Any]:
        ...


class RefundNotifier(Protocol):
    def notify_refund(self, payment_id: str, gateway_refund_id: str, reason: str) -> None:
        ...


class CeleryRefundNotifier:
    """Queues the refund email; a queueing failure is logged, never raised."""

    def notify_refund(self, payment_id: str, gateway_refund_id: str, reason: str) -> None:
        try:
            from ..tasks.email import send_refund_notification

            send_refund_notification.delay(payment_id, gateway_refund_id, reason)
        except Exception as exc:
            logger.error(
                "Failed to queue refund notification for payment %s: %s",
                payment_id,
                exc,
                extra={"payment_id": payment_id, "refund_id": gateway_refund_id},
            )


@dataclass
class RefundResult:
    success: bool
    already_refunded: bool = False
    refund_id: Optional[str] = None
    amount: int = 0
    status: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 0
    payment_id: Optional[str] = None
    reason: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "already_refunded": self.already_refunded,
            "refund_id": self.refund_id,
            "amount": self.amount,
            "status": self.status,
            "error": self.error,
            "error_code": self.error_code,
            "attempts": self.attempts,
        }


def is_non_retryable(code: Optional[str], description: str) -> bool:
    return any(
        code == signature or signature in (description or "")
        for signature in NON_RETRYABLE_ERROR_SIGNATURES
    )


def compute_backoff_ms(
    attempt: int, *, base_ms: int, cap_ms: int, jitter: Callable[[], float] = random.random
) -> float:
    """Jittered exponential backoff: min(base * 2^attempt + U(0, 1000), cap)."""
    return min(base_ms * (2**attempt) + jitter() * 1000, cap_ms)


class RefundService(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: RefundGateway,
        notifier: Optional[RefundNotifier] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        jitter: Callable[[], float] = random.random,
        minimum_amount: Optional[int] = None,
        default_max_retries: Optional[int] = None,
        backoff_base_ms: Optional[int] = None,
        backoff_cap_ms: Optional[int] = None,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.notifier = notifier
        self._sleep = sleep
        self._jitter = jitter
        self.minimum_amount = (
            settings.minimum_refund_amount_paise if minimum_amount is None else minimum_amount
        )
        self.default_max_retries = default_max_retries or settings.refund_max_retries
        self.backoff_base_ms = backoff_base_ms or settings.refund_backoff_base_ms
        self.backoff_cap_ms = backoff_cap_ms or settings.refund_backoff_cap_ms

    @BaseService.measure_operation("initiate_refund")
    def initiate_refund(
        self,
        payment_id: str,
        reason: str,
        error_detail: Optional[str] = None,
        *,
        session: Optional[Session] = None,
        max_retries: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> RefundResult:
        """
        Refund whatever is still refundable on a payment.

        With ``session`` every write joins the caller's transaction and is
        only flushed; the caller commits and is responsible for calling
        ``send_notification`` afterwards. Without it the service commits and
        notifies on its own.
        """
        reason = RefundReason(reason).value
        db = session if session is not None else self.db
        owns_transaction = session is None
        repo = RepositoryFactory.create_payment_repository(db)
        retries = max_retries or self.default_max_retries

        payment = repo.get_for_update(payment_id)
        if payment is None:
            raise NotFoundException(f"Payment {payment_id} not found")

        refundable = payment.refundable_amount
        log_extra = {"payment_id": payment.id, "reason": reason, "refundable": refundable}

        if refundable <= 0:
            self.logger.warning("Payment %s already fully refunded", payment.id, extra=log_extra)
            return RefundResult(
                success=False,
                already_refunded=True,
                error="Payment already fully refunded",
                payment_id=payment.id,
                reason=reason,
            )
        if refundable < self.minimum_amount:
            self.logger.error(
                "Refund amount too small for payment %s: %s paise",
                payment.id,
                refundable,
                extra=log_extra,
            )
            return RefundResult(
                success=False,
                error=f"Refund amount must be at least {self.minimum_amount} paise",
                payment_id=payment.id,
                reason=reason,
            )

        self.logger.info("Initiating refund for payment %s", payment.id, extra=log_extra)

        for attempt in range(1, retries + 1):
            current = self._now(now)
            try:
                response = self.gateway.refund_payment(
                    payment.gateway_payment_id,
                    amount=refundable,
                    speed="normal",
                    notes={
                        "reason": reason,
                        "payment_id": payment.id,
                        "booking_id": payment.booking_id or "N/A",
                        "timestamp": current.isoformat(),
                        "attempt": attempt,
                    },
                    receipt=f"rf_{payment.id}_{int(current.timestamp())}",
                )
            except Exception as exc:
                code, description, source, step = self._describe_error(exc)
                self.logger.error(
                    "Refund attempt %s failed for payment %s: %s",
                    attempt,
                    payment.id,
                    description,
                    extra={**log_extra, "attempt": attempt, "error_code": code},
                )
                non_retryable = is_non_retryable(code, description)
                if non_retryable or attempt == retries:
                    prometheus_metrics.record_refund_attempt(reason, "failed")
                    self._record_failure(
                        repo,
                        payment,
                        reason=reason,
                        amount=refundable,
                        attempts=attempt,
                        code=code,
                        description=description,
                        source=source,
                        step=step,
                        error_detail=error_detail,
                        now=current,
                    )
                    if owns_transaction:
                        db.commit()
                    return RefundResult(
                        success=False,
                        error=description,
                        error_code=code,
                        attempts=attempt,
                        amount=refundable,
                        payment_id=payment.id,
                        reason=reason,
                    )

                prometheus_metrics.record_refund_attempt(reason, "retry")
                delay_ms = compute_backoff_ms(
                    attempt,
                    base_ms=self.backoff_base_ms,
                    cap_ms=self.backoff_cap_ms,
                    jitter=self._jitter,
                )
                self._sleep(delay_ms / 1000.0)
                continue

            result = self._record_success(
                repo,
                payment,
                response,
                reason=reason,
                error_detail=error_detail,
                attempts=attempt,
                fallback_amount=refundable,
            )
            prometheus_metrics.record_refund_attempt(reason, "success")
            self.logger.info(
                "Refund successful (attempt %s): %s",
                attempt,
                result.refund_id,
                extra={**log_extra, "refund_id": result.refund_id},
            )
            if owns_transaction:
                db.commit()
                self.send_notification(result)
            return result

        # Only reachable when retries < 1
        return RefundResult(success=False, error="Refund failed after maximum retries")

    def send_notification(self, result: RefundResult) -> None:
        """Fire-and-forget refund email for a successful refund."""
        if not result.success or not self.notifier or not result.payment_id or not result.refund_id:
            return
        try:
            self.notifier.notify_refund(result.payment_id, result.refund_id, result.reason or "")
        except Exception as exc:
            self.logger.error(
                "Failed to send refund notification (non-critical): %s",
                exc,
                extra={"payment_id": result.payment_id},
            )

    def _record_success(
        self,
        repo: PaymentRepository,
        payment: Payment,
        response: Dict[str, Any],
        *,
        reason: str,
        error_detail: Optional[str],
        attempts: int,
        fallback_amount: int,
    ) -> RefundResult:
        amount = int(response.get("amount") or fallback_amount)
        repo.create_refund(
            payment_id=payment.id,
            gateway_payment_id=payment.gateway_payment_id,
            gateway_refund_id=response["id"],
            amount=amount,
            reason=reason,
            status=response.get("status") or "processed",
            speed_requested=response.get("speed_requested"),
            speed_processed=response.get("speed_processed"),
            error_details=error_detail,
            refund_metadata={
                "entity": response.get("entity"),
                "currency": response.get("currency"),
                "receipt": response.get("receipt"),
                "notes": response.get("notes"),
                "created_at": response.get("created_at"),
                "batch_id": response.get("batch_id"),
                "acquirer_data": response.get("acquirer_data") or {},
                "attempts": attempts,
            },
        )

        total_refunded = min(int(payment.amount_refunded or 0) + amount, int(payment.amount))
        payment.amount_refunded = total_refunded
        payment.refund_status = (
            RefundStatus.FULL.value if total_refunded >= payment.amount else RefundStatus.PARTIAL.value
        )
        payment.booking_status = PaymentBookingStatus.REFUNDED.value
        repo.flush()

        return RefundResult(
            success=True,
            refund_id=response["id"],
            amount=amount,
            status=response.get("status"),
            attempts=attempts,
            payment_id=payment.id,
            reason=reason,
        )

    def _record_failure(
        self,
        repo: PaymentRepository,
        payment: Payment,
        *,
        reason: str,
        amount: int,
        attempts: int,
        code: Optional[str],
        description: str,
        source: Optional[str],
        step: Optional[str],
        error_detail: Optional[str],
        now: datetime,
    ) -> None:
        millis = int(now.timestamp() * 1000)
        repo.create_refund(
            payment_id=payment.id,
            gateway_payment_id=payment.gateway_payment_id,
            gateway_refund_id=f"FAILED_{millis}_{str(ulid.ULID())[-6:]}",
            amount=amount,
            reason=reason,
            status="failed",
            error_details=(
                f"code={code or 'UNKNOWN_ERROR'}|description={description}"
                f"|source={source or 'razorpay'}|step={step or 'refund_initiation'}"
                f"|attempts={attempts}"
            ),
            refund_metadata={
                "last_attempt_at": now.isoformat(),
                "total_attempts": attempts,
                "caller_detail": error_detail,
                "booking_id": payment.booking_id,
            },
        )

    @staticmethod
    def _describe_error(exc: Exception) -> tuple[Optional[str], str, Optional[str], Optional[str]]:
        if isinstance(exc, RazorpayError):
            return exc.code, exc.description or str(exc), exc.source, exc.step
        return None, str(exc) or type(exc).__name__, None, None

# backend/solvit/dependencies/services.py
"""
Service layer dependencies for dependency injection.

External clients are built once per process and chosen from settings: the
real Razorpay / VideoSDK / Resend clients when credentials are configured,
in-memory fakes otherwise. Celery tasks use the ``build_*`` helpers so both
entry points wire services the same way.
"""

from functools import lru_cache
import logging
from typing import Callable, Union

from fastapi import Depends
from sqlalchemy.orm import Session

from ..core.config import settings
from ..database import SessionLocal
from ..integrations import FakeRazorpayClient, FakeVideoSdkClient, RazorpayClient, VideoSdkClient
from ..services.attendance_service import AttendanceService
from ..services.booking_service import BookingService
from ..services.email import EmailSender, EmailService, LoggingEmailSender, ResendEmailSender
from ..services.idempotency_service import IdempotencyService
from ..services.join_token_service import JoinTokenService
from ..services.payment_reconciliation_service import PaymentReconciliationService
from ..services.payment_service import PaymentService
from ..services.payout_service import LoggingPayoutReleaser, PayoutReleaser
from ..services.refund_service import CeleryRefundNotifier, RefundNotifier, RefundService
from ..services.session_lifecycle_service import SessionLifecycleService
from .database import get_db

logger = logging.getLogger(__name__)

PaymentGatewayClient = Union[RazorpayClient, FakeRazorpayClient]
VideoClient = Union[VideoSdkClient, FakeVideoSdkClient]


@lru_cache(maxsize=1)
def get_payment_gateway() -> PaymentGatewayClient:
    if settings.razorpay_enabled:
        return RazorpayClient(
            key_id=settings.razorpay_key_id or "",
            key_secret=settings.razorpay_key_secret or "",
            base_url=settings.razorpay_base_url,
        )
    logger.warning("Razorpay credentials not configured; using FakeRazorpayClient")
    return FakeRazorpayClient()


@lru_cache(maxsize=1)
def get_video_client() -> VideoClient:
    if settings.videosdk_enabled:
        return VideoSdkClient(
            api_key=settings.videosdk_api_key or "",
            secret=settings.videosdk_secret or "",
            base_url=settings.videosdk_base_url,
        )
    logger.warning("VideoSDK credentials not configured; using FakeVideoSdkClient")
    return FakeVideoSdkClient()


@lru_cache(maxsize=1)
def get_email_sender() -> EmailSender:
    if settings.resend_api_key:
        return ResendEmailSender(settings.resend_api_key)
    logger.warning("RESEND_API_KEY not configured; emails will only be logged")
    return LoggingEmailSender()


@lru_cache(maxsize=1)
def get_join_token_service() -> JoinTokenService:
    return JoinTokenService(settings.join_token_secret, ttl_seconds=settings.join_token_ttl_seconds)


def get_refund_notifier() -> RefundNotifier:
    return CeleryRefundNotifier()


def get_payout_releaser() -> PayoutReleaser:
    return LoggingPayoutReleaser()


def build_email_service(sender: EmailSender | None = None) -> EmailService:
    return EmailService(
        sender or get_email_sender(),
        from_email=settings.email_from_address,
        from_name=settings.email_from_name,
    )


def build_refund_service(db: Session, notifier: RefundNotifier | None = None) -> RefundService:
    return RefundService(db, get_payment_gateway(), notifier or CeleryRefundNotifier())


def build_reconciliation_service(
    db: Session,
    session_factory: Callable[[], Session] = SessionLocal,
) -> PaymentReconciliationService:
    return PaymentReconciliationService(db, session_factory, build_refund_service)


def build_session_lifecycle_service(db: Session) -> SessionLifecycleService:
    return SessionLifecycleService(db, get_payout_releaser())


def get_refund_service(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
    notifier: RefundNotifier = Depends(get_refund_notifier),
) -> RefundService:
    return RefundService(db, gateway, notifier)


def get_idempotency_service(db: Session = Depends(get_db)) -> IdempotencyService:
    return IdempotencyService(db)


def get_booking_service(
    db: Session = Depends(get_db),
    refund_service: RefundService = Depends(get_refund_service),
) -> BookingService:
    """Get BookingService instance with proper dependencies."""
    return BookingService(db, refund_service)


def get_attendance_service(
    db: Session = Depends(get_db),
    token_service: JoinTokenService = Depends(get_join_token_service),
) -> AttendanceService:
    return AttendanceService(db, token_service)


def get_payment_service(
    db: Session = Depends(get_db),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
    video_client: VideoClient = Depends(get_video_client),
    refund_service: RefundService = Depends(get_refund_service),
    idempotency_service: IdempotencyService = Depends(get_idempotency_service),
) -> PaymentService:
    return PaymentService(db, gateway, video_client, refund_service, idempotency_service)

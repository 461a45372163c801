# backend/solvit/routes/v1/payments.py
"""
Payment routes - API v1

Endpoints:
    POST /{payment_id}/refund - Client-requested refund of a payment with no live
                                booking (Idempotency-Key required); booked
                                sessions are refunded by cancelling them
"""

import logging
from typing import NoReturn, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from ...core.constants import IDEMPOTENCY_HEADER
from ...core.exceptions import DomainException
from ...dependencies import get_current_user, get_payment_service
from ...models.user import User
from ...schemas.payment import RefundResponse
from ...services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["payments-v1"])


def handle_domain_exception(exc: DomainException) -> NoReturn:
    """Convert domain exceptions to HTTP exceptions."""
    if hasattr(exc, "to_http_exception"):
        raise exc.to_http_exception()
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))


@router.post(
    "/{payment_id}/refund",
    response_model=RefundResponse,
    responses={
        400: {"description": "Idempotency-Key header missing"},
        409: {"description": "Same request still in progress"},
        422: {"description": "Payment belongs to a live booking; cancel it instead"},
    },
)
def request_refund(
    payment_id: str,
    idempotency_key: Optional[str] = Header(default=None, alias=IDEMPOTENCY_HEADER),
    current_user: User = Depends(get_current_user),
    payment_service: PaymentService = Depends(get_payment_service),
) -> RefundResponse:
    try:
        result = payment_service.request_refund(payment_id, current_user.id, idempotency_key)
        return RefundResponse(**result)
    except DomainException as e:
        handle_domain_exception(e)

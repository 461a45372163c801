"""Payment schemas."""

from typing import Optional

from .base import StandardizedModel


class RefundResponse(StandardizedModel):
    success: bool
    already_refunded: bool = False
    refund_id: Optional[str] = None
    amount: int = 0
    status: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    attempts: int = 0
    cached: bool = False

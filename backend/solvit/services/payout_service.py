"""
Payout release hook.

Moving money to counselors happens outside this backend; auto-confirmation
only needs something to hand a released payout to.
"""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class PayoutReleaser(Protocol):
    def release(self, booking_id: str, counselor_id: str, amount: int) -> None:
        ...


class LoggingPayoutReleaser:
    """Records releases in the log for the finance export to pick up."""

    def __init__(self) -> None:
        self.released: list[tuple[str, str, int]] = []

    def release(self, booking_id: str, counselor_id: str, amount: int) -> None:
        self.released.append((booking_id, counselor_id, amount))
        logger.info(
            "Payout released for booking %s: %s paise to counselor %s",
            booking_id,
            amount,
            counselor_id,
            extra={"booking_id": booking_id, "counselor_id": counselor_id, "amount": amount},
        )

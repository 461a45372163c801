# backend/tests/factories/builders.py
"""
Row builders shared by service, route and task tests.

Each builder commits, so the object exists for any session the code under
test opens.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session
import ulid

from solvit.integrations.razorpay_client import compute_payment_signature
from solvit.models import (
    AttendanceRole,
    Booking,
    BookingAttendance,
    BookingDispute,
    BookingPaymentStatus,
    BookingPayout,
    BookingStatus,
    Payment,
    PaymentBookingStatus,
    PaymentStatus,
    PayoutStatus,
    Slot,
    SlotStatus,
    User,
)

FAKE_KEY_SECRET = "fake_key_secret"
JOIN_SECRET = "test-join-token-secret"


class RecordingNotifier:
    """Refund notifier that remembers what it was asked to send."""

    def __init__(self) -> None:
        self.sent: List[Dict[str, str]] = []

    def notify_refund(self, payment_id: str, gateway_refund_id: str, reason: str) -> None:
        self.sent.append(
            {"payment_id": payment_id, "refund_id": gateway_refund_id, "reason": reason}
        )


def sign(order_id: str, gateway_payment_id: str) -> str:
    return compute_payment_signature(order_id, gateway_payment_id, FAKE_KEY_SECRET)


def create_user(db: Session, role: str, name: str) -> User:
    user = User(
        id=str(ulid.ULID()),
        email=f"{name.lower().replace(' ', '.')}.{str(ulid.ULID())[-6:].lower()}@example.com",
        full_name=name,
        role=role,
    )
    db.add(user)
    db.commit()
    return user


def create_slot(
    db: Session,
    counselor: User,
    start: datetime,
    *,
    duration_minutes: int = 45,
    base_price: int = 100000,
    total_price: int = 115000,
    status: str = SlotStatus.AVAILABLE.value,
    booked_at: Optional[datetime] = None,
    booking_id: Optional[str] = None,
) -> Slot:
    slot = Slot(
        id=str(ulid.ULID()),
        counselor_id=counselor.id,
        start_time=start,
        end_time=start + timedelta(minutes=duration_minutes),
        status=status,
        base_price=base_price,
        total_price=total_price,
        booked_at=booked_at,
        booking_id=booking_id,
    )
    db.add(slot)
    db.commit()
    return slot


def create_payment(
    db: Session,
    client: User,
    slot: Slot,
    *,
    amount: Optional[int] = None,
    amount_refunded: int = 0,
    status: str = PaymentStatus.CAPTURED.value,
    booking_status: str = PaymentBookingStatus.COMPLETED.value,
    booking_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Payment:
    payment = Payment(
        id=str(ulid.ULID()),
        gateway_order_id=f"order_{ulid.ULID()}",
        gateway_payment_id=f"pay_{ulid.ULID()}",
        client_id=client.id,
        slot_id=slot.id,
        booking_id=booking_id,
        amount=slot.total_price if amount is None else amount,
        amount_refunded=amount_refunded,
        currency="INR",
        status=status,
        booking_status=booking_status,
        created_at=created_at or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc),
    )
    db.add(payment)
    db.commit()
    return payment


def create_booking(
    db: Session,
    client: User,
    counselor: User,
    start: datetime,
    *,
    status: str = BookingStatus.CONFIRMED.value,
    duration_minutes: int = 45,
    meeting_url: Optional[str] = "https://meet.test/session/room-1",
    with_payment: bool = True,
    payout_amount: int = 100000,
    **booking_fields: Any,
) -> Booking:
    """Booking with its slot, payment and satellites, as verify_and_book leaves it."""
    booking_id = str(ulid.ULID())
    slot = create_slot(
        db,
        counselor,
        start,
        duration_minutes=duration_minutes,
        status=SlotStatus.BOOKED.value,
        booked_at=start - timedelta(days=3),
        booking_id=booking_id,
    )
    payment = create_payment(db, client, slot, booking_id=booking_id) if with_payment else None
    booking = Booking(
        id=booking_id,
        client_id=client.id,
        counselor_id=counselor.id,
        slot_id=slot.id,
        payment_id=payment.id if payment else None,
        price=slot.total_price,
        duration_minutes=duration_minutes,
        start_time=slot.start_time,
        end_time=slot.end_time,
        status=status,
        payment_status=BookingPaymentStatus.CAPTURED.value,
        meeting_room_id="room-1" if meeting_url else None,
        meeting_url=meeting_url,
        reschedule_count=0,
        **booking_fields,
    )
    db.add(booking)
    for role in (AttendanceRole.CLIENT.value, AttendanceRole.COUNSELOR.value):
        db.add(BookingAttendance(booking_id=booking_id, role=role, total_heartbeats=0))
    db.add(BookingDispute(booking_id=booking_id, is_disputed=False))
    db.add(
        BookingPayout(
            booking_id=booking_id, amount=payout_amount, status=PayoutStatus.PENDING.value
        )
    )
    db.commit()
    return booking


def set_attendance(
    db: Session,
    booking: Booking,
    role: str,
    *,
    joined_at: Optional[datetime] = None,
    total_heartbeats: int = 0,
) -> None:
    row = (
        db.query(BookingAttendance)
        .filter(BookingAttendance.booking_id == booking.id, BookingAttendance.role == role)
        .one()
    )
    row.joined_at = joined_at
    row.total_heartbeats = total_heartbeats
    db.commit()


def reload(db: Session, model: Any, id: str) -> Any:
    """Fresh copy of a row, bypassing whatever the session has cached."""
    db.expire_all()
    return db.get(model, id)


def auth_headers(user: User, **extra: str) -> Dict[str, str]:
    headers = {"X-User-Id": user.id}
    headers.update(extra)
    return headers


def create_unlinked_payment(
    db: Session,
    client: User,
    counselor: User,
    start: datetime,
    *,
    booking_status: str = PaymentBookingStatus.FAILED.value,
    **payment_fields: Any,
) -> Payment:
    """Captured payment that never became a booking, on a fresh open slot."""
    slot = create_slot(db, counselor, start)
    return create_payment(
        db,
        client,
        slot,
        status=PaymentStatus.CAPTURED_UNLINKED.value,
        booking_status=booking_status,
        **payment_fields,
    )

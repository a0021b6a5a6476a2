"""Booking and payment lifecycle.

Status values are persisted as plain strings; every write goes through
``transition_booking`` / ``transition_payment`` so out-of-order changes are
rejected instead of silently stored.
"""
import enum
from datetime import datetime, timezone


class InvalidTransition(Exception):
    def __init__(self, current, new):
        self.current = current
        self.new = new
        super().__init__(f"Invalid status transition: {current} -> {new}")


class BookingStatus(str, enum.Enum):
    PENDING_VERIFICATION = "PendingVerification"
    PENDING_PAYMENT = "PendingPayment"
    CONFIRMED = "Confirmed"
    ACTIVE = "Active"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"

    @classmethod
    def parse(cls, value):
        """Accept legacy spellings such as 'confirmed' or 'pending_payment'."""
        if isinstance(value, cls):
            return value
        key = str(value).replace("_", "").replace(" ", "").lower()
        for status in cls:
            if status.value.lower() == key:
                return status
        raise ValueError(f"Unknown booking status: {value}")


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        value = str(value).strip().lower()
        if value == "completed":
            return cls.PAID
        return cls(value)


BOOKING_TRANSITIONS = {
    BookingStatus.PENDING_VERIFICATION: {
        BookingStatus.PENDING_PAYMENT,
        BookingStatus.CANCELLED,
        BookingStatus.EXPIRED,
    },
    BookingStatus.PENDING_PAYMENT: {
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.EXPIRED,
    },
    BookingStatus.CONFIRMED: {BookingStatus.ACTIVE, BookingStatus.CANCELLED},
    BookingStatus.ACTIVE: {BookingStatus.COMPLETED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
    BookingStatus.EXPIRED: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.PARTIAL, PaymentStatus.FAILED},
    PaymentStatus.PARTIAL: {PaymentStatus.PAID, PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: {PaymentStatus.PENDING},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}

# statuses that keep a vehicle occupied for the booked range
BLOCKING_STATUSES = (
    BookingStatus.PENDING_VERIFICATION,
    BookingStatus.PENDING_PAYMENT,
    BookingStatus.CONFIRMED,
    BookingStatus.ACTIVE,
)

_STAMPS = {
    BookingStatus.CONFIRMED: "confirmed_at",
    BookingStatus.CANCELLED: "cancelled_at",
    BookingStatus.EXPIRED: "expired_at",
}


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the DateTime columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def can_transition(current, new) -> bool:
    return BookingStatus.parse(new) in BOOKING_TRANSITIONS[BookingStatus.parse(current)]


def transition_booking(booking, new_status, now=None):
    current = BookingStatus.parse(booking.booking_status)
    new_status = BookingStatus.parse(new_status)
    if new_status not in BOOKING_TRANSITIONS[current]:
        raise InvalidTransition(current.value, new_status.value)

    booking.booking_status = new_status.value
    stamp = _STAMPS.get(new_status)
    if stamp:
        setattr(booking, stamp, now or utcnow())
    return booking


def transition_payment(booking, new_status, now=None):
    current = PaymentStatus.parse(booking.payment_status)
    new_status = PaymentStatus.parse(new_status)
    if new_status not in PAYMENT_TRANSITIONS[current]:
        raise InvalidTransition(current.value, new_status.value)

    booking.payment_status = new_status.value
    if new_status in (PaymentStatus.PAID, PaymentStatus.PARTIAL):
        booking.paid_at = now or utcnow()
    return booking

import pytest

from booking_status import (
    BookingStatus, InvalidTransition, PaymentStatus, can_transition,
    transition_booking, transition_payment,
)
from models import Booking


def make_booking(status=BookingStatus.PENDING_VERIFICATION, payment=PaymentStatus.PENDING):
    return Booking(booking_status=status.value, payment_status=payment.value)


def test_happy_path_to_completed():
    b = make_booking()
    for status in (BookingStatus.PENDING_PAYMENT, BookingStatus.CONFIRMED,
                   BookingStatus.ACTIVE, BookingStatus.COMPLETED):
        transition_booking(b, status)
    assert b.booking_status == "Completed"
    assert b.confirmed_at is not None


def test_verification_cannot_jump_to_confirmed():
    b = make_booking()
    with pytest.raises(InvalidTransition):
        transition_booking(b, BookingStatus.CONFIRMED)
    assert b.booking_status == "PendingVerification"


@pytest.mark.parametrize("terminal", [BookingStatus.CANCELLED, BookingStatus.EXPIRED, BookingStatus.COMPLETED])
def test_terminal_states(terminal):
    for status in BookingStatus:
        assert not can_transition(terminal, status)


def test_expired_stamps_timestamp():
    b = make_booking()
    transition_booking(b, BookingStatus.EXPIRED)
    assert b.expired_at is not None


def test_legacy_status_spelling():
    assert BookingStatus.parse("confirmed") is BookingStatus.CONFIRMED
    assert BookingStatus.parse("pending_payment") is BookingStatus.PENDING_PAYMENT
    assert PaymentStatus.parse("completed") is PaymentStatus.PAID
    with pytest.raises(ValueError):
        BookingStatus.parse("unknown")


def test_payment_transitions():
    b = make_booking()
    transition_payment(b, PaymentStatus.PARTIAL)
    assert b.paid_at is not None
    transition_payment(b, PaymentStatus.PAID)
    transition_payment(b, PaymentStatus.REFUNDED)
    with pytest.raises(InvalidTransition):
        transition_payment(b, PaymentStatus.PAID)


def test_failed_payment_can_retry():
    b = make_booking()
    transition_payment(b, PaymentStatus.FAILED)
    transition_payment(b, PaymentStatus.PENDING)
    assert b.payment_status == "pending"

import logging
from collections import namedtuple
from datetime import timedelta

from booking_status import (
    BLOCKING_STATUSES, BookingStatus, transition_booking, utcnow,
)
from config import CARD_SETUP_TTL_MINUTES, PENDING_PAYMENT_TTL_MINUTES, VERIFICATION_TTL_MINUTES
from models import Booking, CheckoutHold, VehicleBlock

logger = logging.getLogger(__name__)

AvailabilityResult = namedtuple("AvailabilityResult", ["is_available", "reason", "conflict_type"])
AVAILABLE = AvailabilityResult(True, None, None)


def ranges_overlap(a_start, a_end, b_start, b_end) -> bool:
    """Half-open intervals [start, end); ranges touching at an endpoint do not overlap."""
    return a_start < b_end and b_start < a_end


def conflicting_bookings(db, vehicle_id, pickup_at, return_at, exclude_booking_id=None):
    query = db.query(Booking).filter(
        Booking.vehicle_id == vehicle_id,
        Booking.booking_status.in_([s.value for s in BLOCKING_STATUSES]),
        Booking.pickup_at < return_at,
        Booking.return_at > pickup_at,
    )
    if exclude_booking_id:
        query = query.filter(Booking.id != exclude_booking_id)
    return query.all()


def overlapping_blocks(db, vehicle_id, pickup_at, return_at):
    return db.query(VehicleBlock).filter(
        VehicleBlock.vehicle_id == vehicle_id,
        VehicleBlock.blocked_from < return_at,
        VehicleBlock.blocked_until > pickup_at,
    ).all()


def active_holds(db, vehicle_id, pickup_at, return_at, ignore_session_id=None):
    query = db.query(CheckoutHold).filter(
        CheckoutHold.vehicle_id == vehicle_id,
        CheckoutHold.status == "active",
        CheckoutHold.pickup_at < return_at,
        CheckoutHold.return_at > pickup_at,
    )
    if ignore_session_id:
        query = query.filter(CheckoutHold.stripe_session_id != ignore_session_id)
    return query.all()


def check_vehicle_availability(db, vehicle_id, pickup_at, return_at,
                               exclude_booking_id=None, include_holds=True,
                               ignore_hold_session=None):
    if not vehicle_id or not pickup_at or not return_at or return_at <= pickup_at:
        return AvailabilityResult(False, "Invalid booking parameters", None)

    bookings = conflicting_bookings(db, vehicle_id, pickup_at, return_at, exclude_booking_id)
    if bookings:
        logger.info("Vehicle %s already booked (%d conflicts)", vehicle_id, len(bookings))
        return AvailabilityResult(False, "Vehicle is already booked for this period", "booking")

    blocks = overlapping_blocks(db, vehicle_id, pickup_at, return_at)
    if blocks:
        return AvailabilityResult(False, blocks[0].reason or "Vehicle is blocked for this period", "block")

    if include_holds and active_holds(db, vehicle_id, pickup_at, return_at, ignore_hold_session):
        return AvailabilityResult(
            False,
            "Vehicle is currently being booked by another customer. "
            "Please try again in a few minutes or choose different dates.",
            "hold",
        )

    return AVAILABLE


def release_expired_holds(db, now=None):
    """Expire stale checkout holds and pending bookings that stopped occupying the vehicle."""
    now = now or utcnow()

    holds = db.query(CheckoutHold).filter(
        CheckoutHold.status == "active",
        CheckoutHold.expires_at <= now,
    ).all()
    for hold in holds:
        hold.status = "expired"

    stale = []
    verification_cutoff = now - timedelta(minutes=VERIFICATION_TTL_MINUTES)
    stale += db.query(Booking).filter(
        Booking.booking_status == BookingStatus.PENDING_VERIFICATION.value,
        Booking.created_at <= verification_cutoff,
    ).all()

    payment_cutoff = now - timedelta(minutes=PENDING_PAYMENT_TTL_MINUTES)
    stale += db.query(Booking).filter(
        Booking.booking_status == BookingStatus.PENDING_PAYMENT.value,
        Booking.email_verified_at <= payment_cutoff,
        Booking.stripe_setup_intent_id.is_(None),
    ).all()

    # card setup started but never finished
    setup_cutoff = now - timedelta(minutes=CARD_SETUP_TTL_MINUTES)
    stale += db.query(Booking).filter(
        Booking.booking_status == BookingStatus.PENDING_PAYMENT.value,
        Booking.email_verified_at <= setup_cutoff,
        Booking.stripe_setup_intent_id.isnot(None),
    ).all()
    for booking in stale:
        transition_booking(booking, BookingStatus.EXPIRED, now)

    if holds or stale:
        logger.info("Released %d checkout holds and %d pending bookings", len(holds), len(stale))
        db.commit()
    return len(holds), len(stale)

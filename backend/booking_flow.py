"""Booking orchestration: holds, checkout, card setup and confirmation.

Every step re-reads persisted rows; nothing is kept in process between
requests. Availability is checked again whenever a payment arrives, so a
booking that lost a race is cancelled (and refunded) instead of confirmed.
"""
import logging
import time as time_mod
from datetime import datetime, timedelta
from urllib.parse import urlparse

from sqlalchemy.exc import IntegrityError

from availability import check_vehicle_availability, release_expired_holds
from booking_status import (
    BookingStatus, PaymentStatus, transition_booking, transition_payment, utcnow,
)
from config import CHECKOUT_SESSION_TTL_MINUTES, HOLD_GRACE_MINUTES, settings
from models import Booking, CheckoutHold, StripeCustomer, Vehicle
from pricing import (
    after_hours_fee, check_client_total, compute_fees, location_address,
    location_fee, rental_days, split_payment,
)
from services import stripe_service

logger = logging.getLogger(__name__)

TEST_MODE_NOTE = "[TEST MODE] No payment processed - Created for testing purposes"


class BookingError(Exception):
    def __init__(self, message, status_code=400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class BookingUnavailable(BookingError):
    pass


# ================== HELPERS ==================
def is_allowed_redirect(url: str) -> bool:
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if not parsed.scheme or not parsed.netloc:
        return False
    origin = f"{parsed.scheme}://{parsed.netloc}"
    return origin in settings.ALLOWED_ORIGINS


def get_vehicle(db, vehicle_id, lock=False) -> Vehicle:
    query = db.query(Vehicle).filter(Vehicle.id == vehicle_id)
    if lock:
        # row lock on the vehicle serializes competing bookings until commit; a no-op on SQLite
        query = query.with_for_update()
    vehicle = query.first()
    if vehicle is None:
        raise BookingError("Vehicle not found", 404)
    return vehicle


def get_booking(db, booking_id) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise BookingError("Booking not found", 404)
    return booking


def quote(site, vehicle, request):
    """Recompute the fee breakdown on the server; the client total is only compared."""
    try:
        pickup_fee = location_fee(request.pickup_location, request.pickup_location_address)
        return_fee = location_fee(request.return_location, request.return_location_address)
    except ValueError as e:
        raise BookingError(str(e))

    fees = compute_fees(
        price_per_day=vehicle.price_per_day,
        days=rental_days(request.pickup_date, request.return_date),
        cleaning_fee=site.cleaning_fee(),
        pickup_fee=pickup_fee,
        return_fee=return_fee,
        after_hours=after_hours_fee(request.pickup_time, request.return_time, site.after_hours_fee()),
        unlimited_km=request.unlimited_kilometers,
        unlimited_km_fee_per_day=site.unlimited_km_fee_per_day(),
    )
    check_client_total(request.total_amount, fees.total, reject=settings.REJECT_PRICE_MISMATCH)
    return fees


def ensure_bookable(db, vehicle, request, include_holds=True):
    if vehicle.status != "available":
        raise BookingError("Vehicle is not available")
    if request.customer_age < (vehicle.minimum_age or 0):
        raise BookingError(f"Minimum age for this vehicle is {vehicle.minimum_age}")

    result = check_vehicle_availability(db, vehicle.id, request.pickup_at, request.return_at,
                                        include_holds=include_holds)
    if not result.is_available:
        raise BookingUnavailable(result.reason or "Vehicle is no longer available for the selected dates")


def new_booking(vehicle, request, fees, split, status=BookingStatus.PENDING_VERIFICATION):
    return Booking(
        vehicle_id=vehicle.id,
        customer_name=request.customer_name.strip(),
        customer_email=str(request.customer_email).strip().lower(),
        customer_phone=request.customer_phone.strip(),
        customer_age=request.customer_age,
        pickup_at=request.pickup_at,
        return_at=request.return_at,
        pickup_location=request.pickup_location,
        return_location=request.return_location,
        pickup_location_address=location_address(request.pickup_location, request.pickup_location_address),
        return_location_address=location_address(request.return_location, request.return_location_address),
        rental_days=fees.rental_days,
        rental_cost=fees.rental_cost,
        cleaning_fee=fees.cleaning_fee,
        pickup_fee=fees.pickup_fee,
        return_fee=fees.return_fee,
        after_hours_fee=fees.after_hours_fee,
        unlimited_kilometers=request.unlimited_kilometers,
        unlimited_km_fee=fees.unlimited_km_fee,
        total_price=fees.total,
        booking_status=status.value,
        payment_method=request.payment_method,
        payment_status=PaymentStatus.PENDING.value,
        deposit_amount=split.deposit_amount,
        remaining_amount=split.remaining_amount if split.payment_type == "deposit" else None,
        language=request.language,
        notes=request.notes,
        contract_number=request.contract_number,
    )


# ================== PENDING BOOKING (card verification flow) ==================
def create_pending_booking(db, site, request):
    release_expired_holds(db)
    vehicle = get_vehicle(db, request.vehicle_id, lock=True)
    ensure_bookable(db, vehicle, request)
    fees = quote(site, vehicle, request)
    split = split_payment(fees.total, vehicle.price_per_day, request.payment_method)

    booking = new_booking(vehicle, request, fees, split)
    db.add(booking)
    db.commit()
    db.refresh(booking)
    logger.info("Pending booking %s created for vehicle %s", booking.id, vehicle.id)
    return booking


def start_card_verification(db, booking_id, customer_email):
    booking = get_booking(db, booking_id)
    if not customer_email or customer_email.strip().lower() != booking.customer_email.lower():
        raise BookingError("Unauthorized: Email does not match booking", 403)
    if booking.booking_status != BookingStatus.PENDING_PAYMENT.value:
        raise BookingError(f"Invalid booking status: {booking.booking_status}. Expected PendingPayment.")

    customer = db.query(StripeCustomer).filter(StripeCustomer.email == booking.customer_email).first()
    if customer is None:
        customer_id = stripe_service.create_customer(
            booking.customer_email, booking.customer_name, {"booking_id": booking.id})
        customer = StripeCustomer(customer_id=customer_id, email=booking.customer_email,
                                  name=booking.customer_name)
        db.add(customer)

    intent = stripe_service.create_setup_intent(customer.customer_id, {
        "booking_id": booking.id,
        "customer_email": booking.customer_email,
        "customer_name": booking.customer_name,
    })
    booking.stripe_setup_intent_id = intent["id"]
    booking.stripe_customer_id = customer.customer_id
    db.commit()

    return {
        "success": True,
        "client_secret": intent["client_secret"],
        "setup_intent_id": intent["id"],
        "customer_id": customer.customer_id,
    }


def confirm_card_setup(db, setup_intent):
    """Handle a succeeded setup intent: the stored card confirms the pending booking."""
    booking = db.query(Booking).filter(Booking.stripe_setup_intent_id == setup_intent["id"]).first()
    if booking is None:
        logger.warning("No booking for setup intent %s", setup_intent["id"])
        return "unknown", None
    if booking.booking_status != BookingStatus.PENDING_PAYMENT.value:
        logger.info("Setup intent %s already handled (booking %s is %s)",
                    setup_intent["id"], booking.id, booking.booking_status)
        return "ignored", booking

    booking.stripe_payment_method_id = setup_intent.get("payment_method")
    get_vehicle(db, booking.vehicle_id, lock=True)
    result = check_vehicle_availability(db, booking.vehicle_id, booking.pickup_at, booking.return_at,
                                        exclude_booking_id=booking.id, include_holds=False)
    if result.is_available:
        transition_booking(booking, BookingStatus.CONFIRMED)
        status = "confirmed"
    else:
        logger.error("Booking %s lost its dates (%s), cancelling", booking.id, result.reason)
        transition_booking(booking, BookingStatus.CANCELLED)
        status = "cancelled"
    db.commit()
    db.refresh(booking)
    return status, booking


def abandon_card_setup(db, setup_intent):
    """A canceled setup intent frees the dates held by its pending booking."""
    booking = db.query(Booking).filter(Booking.stripe_setup_intent_id == setup_intent["id"]).first()
    if booking is None or booking.booking_status != BookingStatus.PENDING_PAYMENT.value:
        return None
    logger.warning("Card setup %s canceled, releasing booking %s", setup_intent["id"], booking.id)
    transition_booking(booking, BookingStatus.CANCELLED)
    db.commit()
    return booking


# ================== CHECKOUT ==================
def checkout_metadata(vehicle, request, fees, split):
    return {
        "vehicle_id": vehicle.id,
        "vehicle_brand": vehicle.brand,
        "vehicle_model": vehicle.model,
        "customer_name": request.customer_name,
        "customer_email": str(request.customer_email),
        "customer_phone": request.customer_phone,
        "customer_age": str(request.customer_age),
        "pickup_at": request.pickup_at.isoformat(),
        "return_at": request.return_at.isoformat(),
        "pickup_location": request.pickup_location,
        "return_location": request.return_location,
        "pickup_location_address": request.pickup_location_address or "",
        "return_location_address": request.return_location_address or "",
        "pickup_fee": str(fees.pickup_fee),
        "return_fee": str(fees.return_fee),
        "contract_number": request.contract_number or "",
        "notes": (request.notes or "")[:400],
        "language": request.language,
        "payment_method": request.payment_method,
        "payment_type": split.payment_type,
        "rental_days": str(fees.rental_days),
        "rental_cost": str(fees.rental_cost),
        "cleaning_fee": str(fees.cleaning_fee),
        "after_hours_fee": str(fees.after_hours_fee),
        "unlimited_kilometers": "true" if request.unlimited_kilometers else "false",
        "unlimited_km_fee": str(fees.unlimited_km_fee),
        "total_amount": str(fees.total),
        "deposit_amount": str(split.deposit_amount or 0),
        "remaining_amount": str(split.remaining_amount),
    }


def prepare_checkout(db, site, request):
    if not is_allowed_redirect(request.success_url):
        raise BookingError("Invalid success_url")
    if not is_allowed_redirect(request.cancel_url):
        raise BookingError("Invalid cancel_url")

    release_expired_holds(db)
    vehicle = get_vehicle(db, request.vehicle_id, lock=True)
    ensure_bookable(db, vehicle, request)
    fees = quote(site, vehicle, request)
    split = split_payment(fees.total, vehicle.price_per_day, request.payment_method)

    expires_at = int(time_mod.time()) + CHECKOUT_SESSION_TTL_MINUTES * 60
    session = stripe_service.create_checkout_session(
        line_items=stripe_service.build_line_items(f"{vehicle.brand} {vehicle.model}", fees, split),
        metadata=checkout_metadata(vehicle, request, fees, split),
        customer_email=str(request.customer_email),
        success_url=request.success_url,
        cancel_url=request.cancel_url,
        expires_at=expires_at,
    )

    hold = CheckoutHold(
        vehicle_id=vehicle.id,
        stripe_session_id=session["id"],
        pickup_at=request.pickup_at,
        return_at=request.return_at,
        customer_email=str(request.customer_email).lower(),
        expires_at=utcnow() + timedelta(minutes=CHECKOUT_SESSION_TTL_MINUTES + HOLD_GRACE_MINUTES),
    )
    db.add(hold)
    db.commit()

    return {
        "sessionId": session["id"],
        "url": session["url"],
        "payment_type": split.payment_type,
        "amount_to_pay": split.amount_due_now,
        "remaining_due": split.remaining_amount,
    }


def _float(metadata, key, default=0.0):
    try:
        return float(metadata.get(key) or default)
    except ValueError:
        return default


def booking_from_metadata(session):
    metadata = session.get("metadata") or {}
    deposit = metadata.get("payment_type") == "deposit"
    return Booking(
        vehicle_id=metadata["vehicle_id"],
        customer_name=metadata.get("customer_name", ""),
        customer_email=metadata.get("customer_email", "").lower(),
        customer_phone=metadata.get("customer_phone", ""),
        customer_age=int(metadata.get("customer_age") or 0) or None,
        pickup_at=datetime.fromisoformat(metadata["pickup_at"]),
        return_at=datetime.fromisoformat(metadata["return_at"]),
        pickup_location=metadata.get("pickup_location"),
        return_location=metadata.get("return_location"),
        pickup_location_address=metadata.get("pickup_location_address") or None,
        return_location_address=metadata.get("return_location_address") or None,
        pickup_fee=_float(metadata, "pickup_fee"),
        return_fee=_float(metadata, "return_fee"),
        rental_days=int(metadata.get("rental_days") or 1),
        rental_cost=_float(metadata, "rental_cost"),
        cleaning_fee=_float(metadata, "cleaning_fee"),
        after_hours_fee=_float(metadata, "after_hours_fee"),
        unlimited_kilometers=metadata.get("unlimited_kilometers") == "true",
        unlimited_km_fee=_float(metadata, "unlimited_km_fee"),
        total_price=_float(metadata, "total_amount"),
        booking_status=BookingStatus.PENDING_PAYMENT.value,
        payment_method=metadata.get("payment_method", "stripe"),
        payment_status=PaymentStatus.PENDING.value,
        deposit_amount=_float(metadata, "deposit_amount") if deposit else None,
        remaining_amount=_float(metadata, "remaining_amount") if deposit else None,
        contract_number=metadata.get("contract_number") or None,
        notes=metadata.get("notes") or None,
        language=metadata.get("language") or "de",
        stripe_session_id=session["id"],
        stripe_payment_intent_id=session.get("payment_intent"),
    )


def find_by_session(db, session_id):
    return db.query(Booking).filter(Booking.stripe_session_id == session_id).first()


def finalize_checkout_session(db, session):
    """Turn a paid checkout session into a booking exactly once.

    Returns (status, booking) with status "found", "created" or "cancelled".
    """
    existing = find_by_session(db, session["id"])
    if existing is not None:
        logger.info("Booking already exists for session %s", session["id"])
        return "found", existing

    metadata = session.get("metadata") or {}
    if not metadata.get("vehicle_id"):
        raise BookingError("No booking metadata in session")

    booking = booking_from_metadata(session)
    get_vehicle(db, booking.vehicle_id, lock=True)
    result = check_vehicle_availability(db, booking.vehicle_id, booking.pickup_at, booking.return_at,
                                        include_holds=False)
    now = utcnow()
    deposit = booking.deposit_amount is not None
    if result.is_available:
        transition_booking(booking, BookingStatus.CONFIRMED, now)
        transition_payment(booking, PaymentStatus.PARTIAL if deposit else PaymentStatus.PAID, now)
        if deposit:
            booking.deposit_paid_at = now
        status = "created"
    else:
        logger.error("Vehicle %s no longer available for session %s (%s)",
                     booking.vehicle_id, session["id"], result.reason)
        transition_booking(booking, BookingStatus.CANCELLED, now)
        transition_payment(booking, PaymentStatus.PARTIAL if deposit else PaymentStatus.PAID, now)
        booking.notes = f"{result.reason}\n\n{booking.notes or ''}".strip()
        status = "cancelled"

    hold = db.query(CheckoutHold).filter(CheckoutHold.stripe_session_id == session["id"]).first()
    if hold is not None:
        hold.status = "converted" if status == "created" else "expired"

    db.add(booking)
    try:
        db.commit()
    except IntegrityError:
        # another delivery of the same session committed first
        db.rollback()
        existing = find_by_session(db, session["id"])
        if existing is None:
            raise
        return "found", existing
    db.refresh(booking)

    if status == "cancelled" and booking.stripe_payment_intent_id:
        try:
            stripe_service.create_refund(booking.stripe_payment_intent_id)
        except stripe_service.PaymentProviderError:
            logger.error("Refund failed for booking %s, manual refund required", booking.id)
        else:
            transition_payment(booking, PaymentStatus.REFUNDED)
            db.commit()

    logger.info("Checkout session %s -> booking %s (%s)", session["id"], booking.id, status)
    return status, booking


def expire_checkout_session(db, session_id):
    hold = db.query(CheckoutHold).filter(CheckoutHold.stripe_session_id == session_id).first()
    if hold is None or hold.status != "active":
        return False
    hold.status = "expired"
    db.commit()
    logger.info("Hold released for expired session %s", session_id)
    return True


def mark_payment_failed(db, payment_intent):
    message = (payment_intent.get("last_payment_error") or {}).get("message", "Unknown error")
    logger.warning("Payment failed: %s (%s)", payment_intent.get("id"), message)

    booking = db.query(Booking).filter(Booking.stripe_payment_intent_id == payment_intent.get("id")).first()
    if booking is None or booking.payment_status != PaymentStatus.PENDING.value:
        return None
    transition_payment(booking, PaymentStatus.FAILED)
    db.commit()
    return booking


# ================== TEST MODE ==================
def create_test_booking(db, site, request):
    if not site.test_mode_enabled():
        raise BookingError("Test mode is not enabled", 403)

    release_expired_holds(db)
    vehicle = get_vehicle(db, request.vehicle_id, lock=True)
    ensure_bookable(db, vehicle, request)
    fees = quote(site, vehicle, request)
    split = split_payment(fees.total, vehicle.price_per_day, request.payment_method)

    booking = new_booking(vehicle, request, fees, split, status=BookingStatus.PENDING_PAYMENT)
    booking.is_test_mode = True
    booking.notes = f"{TEST_MODE_NOTE}\n\n{request.notes or ''}".strip()
    transition_booking(booking, BookingStatus.CONFIRMED)
    transition_payment(booking, PaymentStatus.PARTIAL if split.payment_type == "deposit" else PaymentStatus.PAID)

    db.add(booking)
    db.commit()
    db.refresh(booking)
    logger.info("Test booking %s created: %s %s, total EUR%.2f",
                booking.id, vehicle.brand, vehicle.model, booking.total_price)
    return booking

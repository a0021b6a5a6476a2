import logging
import uuid
from datetime import timedelta

from booking_status import BookingStatus, can_transition, transition_booking, utcnow
from config import VERIFICATION_TTL_MINUTES, settings
from models import EmailVerification

logger = logging.getLogger(__name__)


class VerificationError(Exception):
    def __init__(self, message, booking_id=None):
        super().__init__(message)
        self.message = message
        self.booking_id = booking_id


def verification_link(token: str) -> str:
    return f"{settings.SITE_URL}/verify-email?token={token}"


def issue_verification(db, booking, email, ip_address=None, now=None):
    now = now or utcnow()
    verification = EmailVerification(
        booking_id=booking.id,
        email=email,
        token=str(uuid.uuid4()),
        expires_at=now + timedelta(minutes=VERIFICATION_TTL_MINUTES),
        ip_address=ip_address or "unknown",
    )
    db.add(verification)
    db.commit()
    db.refresh(verification)
    return verification


def consume_verification(db, token, now=None):
    """Mark a token as used and move its booking on to PendingPayment.

    Raises VerificationError for unknown, reused or expired tokens; an expired
    token also expires the booking so it never reaches Confirmed.
    """
    if not token:
        raise VerificationError("Missing token")

    now = now or utcnow()
    verification = db.query(EmailVerification).filter(EmailVerification.token == token).first()
    if verification is None:
        raise VerificationError("Invalid verification token")

    booking = verification.booking
    if verification.verified:
        raise VerificationError("Email already verified", booking.id)

    current = BookingStatus.parse(booking.booking_status)
    if now > verification.expires_at or current == BookingStatus.EXPIRED:
        if can_transition(current, BookingStatus.EXPIRED):
            transition_booking(booking, BookingStatus.EXPIRED, now)
            db.commit()
        logger.info("Verification token expired for booking %s", booking.id)
        raise VerificationError("Verification token expired", booking.id)

    if current != BookingStatus.PENDING_VERIFICATION:
        raise VerificationError("Booking is no longer awaiting verification", booking.id)

    verification.verified = True
    verification.verified_at = now
    verification.attempts = (verification.attempts or 0) + 1
    transition_booking(booking, BookingStatus.PENDING_PAYMENT, now)
    booking.email_verified_at = now
    db.commit()
    db.refresh(booking)
    return booking

"""Rate limiting and fraud scoring over recorded booking attempts."""
import logging
from collections import namedtuple
from datetime import timedelta

from sqlalchemy import func, or_

from booking_status import BookingStatus, utcnow
from models import Booking, BookingAttempt

logger = logging.getLogger(__name__)

RateLimitResult = namedtuple("RateLimitResult", ["allowed", "reason", "wait_seconds"])
FraudScore = namedtuple("FraudScore", ["score", "reasons"])

IP_WINDOW = timedelta(hours=1)
MAX_ATTEMPTS_PER_IP = 10
BLOCK_WINDOW = timedelta(hours=24)
MAX_BLOCKED_ATTEMPTS = 3
BLOCKED_WAIT_SECONDS = 3600

BLOCK_THRESHOLD = 70
WARNING_THRESHOLD = 50

DISPOSABLE_DOMAINS = {
    "10minutemail.com", "guerrillamail.com", "mailinator.com", "tempmail.com",
    "temp-mail.org", "throwawaymail.com", "yopmail.com", "trashmail.com",
    "getnada.com", "sharklasers.com", "dispostable.com", "maildrop.cc",
}


def normalize_phone(phone: str) -> str:
    return "".join(ch for ch in (phone or "") if ch.isdigit() or ch == "+")


def is_disposable_email(email: str) -> bool:
    return email.rsplit("@", 1)[-1].strip().lower() in DISPOSABLE_DOMAINS


def check_rate_limit(db, ip_address, email, phone, fingerprint=None, now=None) -> RateLimitResult:
    now = now or utcnow()

    ip_attempts = db.query(BookingAttempt).filter(
        BookingAttempt.ip_address == ip_address,
        BookingAttempt.created_at > now - IP_WINDOW,
    ).order_by(BookingAttempt.created_at).all()
    if len(ip_attempts) >= MAX_ATTEMPTS_PER_IP:
        oldest = ip_attempts[-MAX_ATTEMPTS_PER_IP].created_at
        wait = int((oldest + IP_WINDOW - now).total_seconds()) + 1
        return RateLimitResult(False, "Too many booking attempts from this network", max(wait, 1))

    contact_filters = [BookingAttempt.email == email.strip().lower(), BookingAttempt.phone == normalize_phone(phone)]
    if fingerprint:
        contact_filters.append(BookingAttempt.fingerprint == fingerprint)
    blocked = db.query(func.count(BookingAttempt.id)).filter(
        BookingAttempt.blocked.is_(True),
        BookingAttempt.created_at > now - BLOCK_WINDOW,
        or_(*contact_filters),
    ).scalar()
    if blocked >= MAX_BLOCKED_ATTEMPTS:
        return RateLimitResult(False, "Too many blocked booking attempts", BLOCKED_WAIT_SECONDS)

    return RateLimitResult(True, None, 0)


def _distinct_emails(db, column, value, since):
    return db.query(func.count(func.distinct(BookingAttempt.email))).filter(
        column == value,
        BookingAttempt.created_at > since,
    ).scalar()


def calculate_fraud_score(db, email, phone, ip_address, fingerprint=None,
                          blacklist=(set(), set()), now=None) -> FraudScore:
    now = now or utcnow()
    email = email.strip().lower()
    phone = normalize_phone(phone)
    blocked_emails, blocked_phones = blacklist

    reasons = {
        "disposable_email": is_disposable_email(email),
        "blacklisted": email in blocked_emails or phone in blocked_phones,
        "new_customer": False,
        "shared_device": False,
        "shared_network": False,
    }

    returning = db.query(Booking.id).filter(
        func.lower(Booking.customer_email) == email,
        Booking.booking_status.in_([BookingStatus.CONFIRMED.value, BookingStatus.ACTIVE.value,
                                    BookingStatus.COMPLETED.value]),
    ).first()
    reasons["new_customer"] = returning is None

    since = now - BLOCK_WINDOW
    if fingerprint:
        reasons["shared_device"] = _distinct_emails(db, BookingAttempt.fingerprint, fingerprint, since) >= 3
    reasons["shared_network"] = _distinct_emails(db, BookingAttempt.ip_address, ip_address, since) >= 3

    score = 0
    if reasons["disposable_email"]:
        score += 50
    if reasons["blacklisted"]:
        score += 100
    if reasons["new_customer"]:
        score += 20
    if reasons["shared_device"]:
        score += 30
    if reasons["shared_network"]:
        score += 20

    return FraudScore(min(score, 100), reasons)


def warning_level(score: int) -> str:
    if score >= BLOCK_THRESHOLD:
        return "high"
    if score >= WARNING_THRESHOLD:
        return "medium"
    return "low"


def record_attempt(db, ip_address, email, phone, fingerprint, success, blocked_reason=None):
    attempt = BookingAttempt(
        ip_address=ip_address,
        email=email.strip().lower(),
        phone=normalize_phone(phone),
        fingerprint=fingerprint,
        success=success,
        blocked=blocked_reason is not None,
        blocked_reason=blocked_reason,
    )
    db.add(attempt)
    db.commit()
    if blocked_reason:
        logger.warning("Booking attempt blocked ip=%s email=%s reason=%s", ip_address, attempt.email, blocked_reason)
    return attempt

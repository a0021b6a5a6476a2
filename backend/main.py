import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool

import booking_flow
import fraud
from admin import check_credentials, router as admin_router
from availability import check_vehicle_availability, release_expired_holds
from booking_status import InvalidTransition, utcnow
from config import VERIFICATION_TTL_MINUTES, settings
from database import get_db, init_db
from models import Booking, Vehicle
from pricing import PriceMismatch
from schemas import (
    BookingEmailRequest, BookingRequest, CardVerificationRequest, CheckoutRequest,
    ContactRequest, EmailVerificationRequest, FraudCheckRequest, PaymentIntentRequest,
    VerifyPaymentRequest, VerifyTokenRequest,
)
from services import email_service, stripe_service, whatsapp_service
from site_settings import SettingsCache, get_site_settings
from verification import VerificationError, consume_verification, issue_verification, verification_link

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("easyrent")

GENERIC_ERROR = "An error occurred while processing your request"


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


# ================== APP ==================
app = FastAPI(title="EasyRentCars API", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.state.settings_cache = SettingsCache(ttl=settings.SETTINGS_CACHE_TTL)
app.include_router(admin_router)


# ================== ERRORS ==================
@app.exception_handler(RequestValidationError)
async def validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.exception_handler(booking_flow.BookingError)
async def booking_error(request: Request, exc: booking_flow.BookingError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(VerificationError)
async def verification_error(request: Request, exc: VerificationError):
    return JSONResponse(status_code=400, content={"detail": exc.message, "booking_id": exc.booking_id})


@app.exception_handler(InvalidTransition)
async def invalid_transition(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(PriceMismatch)
async def price_mismatch(request: Request, exc: PriceMismatch):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(stripe_service.PaymentProviderError)
async def payment_provider_error(request: Request, exc: stripe_service.PaymentProviderError):
    logger.error("Payment provider error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR})


@app.exception_handler(Exception)
async def unhandled_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"detail": GENERIC_ERROR})


# ================== HELPERS ==================
def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def notify_confirmed(db, site, booking):
    """Confirmation mail to customer and business, WhatsApp ping to the admin."""
    vehicle = db.get(Vehicle, booking.vehicle_id)
    email_sent = await email_service.send_booking_confirmation(booking, vehicle, site.logo_url())
    await run_in_threadpool(whatsapp_service.send_whatsapp, whatsapp_service.booking_summary(booking, vehicle))
    return email_sent


# ================== VEHICLES ==================
@app.get("/api/vehicles")
def list_vehicles(category: Optional[str] = None, status: Optional[str] = None, db=Depends(get_db)):
    query = db.query(Vehicle)
    if category:
        query = query.filter(Vehicle.category == category)
    if status:
        query = query.filter(Vehicle.status == status)
    vehicles = query.order_by(Vehicle.is_featured.desc(), Vehicle.price_per_day).all()
    return [v.to_dict() for v in vehicles]


@app.get("/api/vehicles/{vehicle_id}")
def get_vehicle(vehicle_id: str, db=Depends(get_db)):
    return booking_flow.get_vehicle(db, vehicle_id).to_dict()


@app.get("/api/vehicles/{vehicle_id}/availability")
def vehicle_availability(vehicle_id: str, pickup_at: datetime, return_at: datetime, db=Depends(get_db)):
    booking_flow.get_vehicle(db, vehicle_id)
    release_expired_holds(db)
    result = check_vehicle_availability(db, vehicle_id, pickup_at, return_at)
    return {
        "available": result.is_available,
        "reason": result.reason,
        "conflict_type": result.conflict_type,
    }


# ================== FRAUD ==================
@app.post("/api/check-fraud-score")
def check_fraud_score(body: FraudCheckRequest, request: Request, db=Depends(get_db),
                      site=Depends(get_site_settings)):
    ip = client_ip(request)

    rate = fraud.check_rate_limit(db, ip, body.email, body.phone, body.fingerprint)
    if not rate.allowed:
        fraud.record_attempt(db, ip, body.email, body.phone, body.fingerprint, False, rate.reason)
        return JSONResponse(
            status_code=429,
            content={
                "allowed": False,
                "reason": rate.reason,
                "wait_seconds": rate.wait_seconds,
                "fraud_score": 100,
            },
            headers={"Retry-After": str(rate.wait_seconds)},
        )

    result = fraud.calculate_fraud_score(db, body.email, body.phone, ip, body.fingerprint, site.blacklist())
    allowed = result.score < fraud.BLOCK_THRESHOLD
    fraud.record_attempt(db, ip, body.email, body.phone, body.fingerprint, allowed,
                         None if allowed else f"fraud score {result.score}")

    return JSONResponse(
        status_code=200 if allowed else 403,
        content={
            "allowed": allowed,
            "fraud_score": result.score,
            "warning_level": fraud.warning_level(result.score),
            "reasons": result.reasons,
        },
    )


# ================== BOOKINGS ==================
@app.post("/api/bookings")
def create_booking(body: BookingRequest, db=Depends(get_db), site=Depends(get_site_settings)):
    booking = booking_flow.create_pending_booking(db, site, body)
    return {"success": True, "booking_id": booking.id, "booking": booking.to_dict()}


@app.post("/api/send-email-verification")
async def send_email_verification(body: EmailVerificationRequest, request: Request, db=Depends(get_db),
                                  site=Depends(get_site_settings)):
    booking = booking_flow.get_booking(db, body.booking_id)
    email = body.email.strip().lower()
    if email != booking.customer_email.lower():
        raise HTTPException(403, "Unauthorized: Email does not match booking")

    verification = issue_verification(db, booking, email, client_ip(request))
    email_sent = await email_service.send_verification_email(
        email, verification_link(verification.token), body.language, site.logo_url())

    return {
        "success": True,
        "message": "Verification email sent successfully" if email_sent
        else "Verification created (email not sent - mail not configured)",
        "verification_id": verification.id,
        "expires_at": verification.expires_at.isoformat(),
        "expires_in_minutes": VERIFICATION_TTL_MINUTES,
        "email_sent": email_sent,
    }


@app.post("/api/verify-email-token")
def verify_email_token(body: VerifyTokenRequest, db=Depends(get_db)):
    booking = consume_verification(db, body.token)
    return {
        "success": True,
        "message": "Email verified successfully",
        "booking_id": booking.id,
        "redirect_url": f"/verify-card?booking_id={booking.id}",
        "booking": booking.to_dict(),
    }


@app.post("/api/create-card-verification")
def create_card_verification(body: CardVerificationRequest, db=Depends(get_db)):
    return booking_flow.start_card_verification(db, body.booking_id, body.customer_email)


@app.post("/api/create-booking-checkout")
def create_booking_checkout(body: CheckoutRequest, db=Depends(get_db), site=Depends(get_site_settings)):
    return booking_flow.prepare_checkout(db, site, body)


@app.post("/api/create-payment-intent")
def create_payment_intent(body: PaymentIntentRequest):
    if body.amount <= 0:
        raise HTTPException(400, "Invalid amount")
    metadata = {str(k): str(v)[:500] for k, v in list((body.booking_details or {}).items())[:50]}
    intent = stripe_service.create_payment_intent(body.amount, metadata)
    return {"clientSecret": intent["client_secret"], "paymentIntentId": intent["id"]}


@app.post("/api/create-test-booking")
async def create_test_booking(body: BookingRequest, db=Depends(get_db), site=Depends(get_site_settings)):
    booking = booking_flow.create_test_booking(db, site, body)
    email_sent = await notify_confirmed(db, site, booking)
    return {
        "success": True,
        "message": "Test booking created successfully",
        "booking_id": booking.id,
        "booking": booking.to_dict(),
        "email_sent": email_sent,
    }


@app.post("/api/send-booking-confirmation")
async def send_booking_confirmation(body: BookingEmailRequest, db=Depends(get_db),
                                    site=Depends(get_site_settings)):
    booking = booking_flow.get_booking(db, body.booking_id)
    if body.customer_email.strip().lower() != booking.customer_email.lower():
        raise HTTPException(403, "Unauthorized: Email does not match booking")

    vehicle = db.get(Vehicle, booking.vehicle_id)
    email_sent = await email_service.send_booking_confirmation(booking, vehicle, site.logo_url())
    return {"success": True, "email_sent": email_sent}


@app.post("/api/send-contact-message")
async def send_contact_message(body: ContactRequest):
    email_sent = await email_service.send_contact_message(body.name, str(body.email), body.phone, body.message)
    return {"success": True, "email_sent": email_sent}


# ================== STRIPE ==================
@app.post("/api/stripe-webhook")
async def stripe_webhook(request: Request, db=Depends(get_db), site=Depends(get_site_settings)):
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    if not signature:
        raise HTTPException(400, "Missing Stripe-Signature header")
    try:
        event = stripe_service.construct_webhook_event(payload, signature)
    except stripe_service.WebhookSignatureError as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise HTTPException(400, "Invalid signature")

    event_type = event["type"]
    obj = event["data"]["object"]
    logger.info("Stripe event %s (%s)", event_type, event.get("id"))

    if event_type == "checkout.session.completed":
        if obj.get("payment_status") == "unpaid":
            logger.info("Session %s completed without payment, waiting for async payment", obj["id"])
        else:
            status, booking = booking_flow.finalize_checkout_session(db, obj)
            if status == "created":
                await notify_confirmed(db, site, booking)
    elif event_type == "checkout.session.expired":
        booking_flow.expire_checkout_session(db, obj["id"])
    elif event_type == "payment_intent.payment_failed":
        booking_flow.mark_payment_failed(db, obj)
    elif event_type == "setup_intent.succeeded":
        status, booking = booking_flow.confirm_card_setup(db, obj)
        if status == "confirmed":
            await notify_confirmed(db, site, booking)
    elif event_type == "setup_intent.setup_failed":
        # the customer can retry the same intent; the setup window expires it otherwise
        error = obj.get("last_setup_error") or {}
        logger.warning("Card setup %s failed: %s", obj["id"], error.get("message", "Unknown error"))
    elif event_type == "setup_intent.canceled":
        booking_flow.abandon_card_setup(db, obj)
    else:
        logger.info("Unhandled event type: %s", event_type)

    return {"received": True}


@app.post("/api/verify-stripe-payment")
async def verify_stripe_payment(body: VerifyPaymentRequest, db=Depends(get_db), site=Depends(get_site_settings)):
    if not body.session_id:
        raise HTTPException(400, "session_id is required")

    existing = booking_flow.find_by_session(db, body.session_id)
    if existing is not None:
        return {"status": "found", "booking_id": existing.id}

    session = stripe_service.retrieve_checkout_session(body.session_id)
    if session["payment_status"] != "paid":
        return {"status": "unpaid", "payment_status": session["payment_status"]}

    status, booking = booking_flow.finalize_checkout_session(db, session)
    if status == "created":
        logger.info("Booking %s created from polling fallback", booking.id)
        await notify_confirmed(db, site, booking)
    return {"status": status, "booking_id": booking.id}


# ================== MISC ==================
@app.get("/api/keep-alive")
def keep_alive(db=Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok", "timestamp": utcnow().isoformat(), "bookings": db.query(Booking).count()}


@app.post("/admin/login")
def admin_login(user: str = Form(...), password: str = Form(...)):
    if check_credentials(user, password):
        return {"ok": True}
    raise HTTPException(401)

import hashlib
import hmac
import json
import time
from datetime import datetime

import pytest

from config import settings
from conftest import booking_payload
from models import Booking, CheckoutHold, EmailVerification

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def webhook_secret(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)


def signed(event):
    payload = json.dumps(event)
    timestamp = int(time.time())
    signature = hmac.new(WEBHOOK_SECRET.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
    return payload, {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def post_event(client, event_type, obj, event_id="evt_1"):
    payload, headers = signed({"id": event_id, "type": event_type, "data": {"object": obj}})
    return client.post("/api/stripe-webhook", content=payload, headers=headers)


def start_checkout(client, vehicle, **overrides):
    payload = booking_payload(vehicle.id, success_url="http://localhost:5173/booking-success",
                              cancel_url="http://localhost:5173/booking", **overrides)
    response = client.post("/api/create-booking-checkout", json=payload)
    assert response.status_code == 200
    return response.json()


def completed_session(fake_stripe, session_id):
    session = fake_stripe.sessions[session_id]
    return {
        "id": session_id,
        "payment_status": "paid",
        "payment_intent": session["payment_intent"],
        "metadata": session["metadata"],
    }


def test_missing_signature(client):
    response = client.post("/api/stripe-webhook", content="{}")
    assert response.status_code == 400


def test_bad_signature(client):
    payload, headers = signed({"id": "evt", "type": "ping", "data": {"object": {}}})
    headers["Stripe-Signature"] = headers["Stripe-Signature"][:-4] + "0000"
    response = client.post("/api/stripe-webhook", content=payload, headers=headers)
    assert response.status_code == 400


def test_completed_session_creates_one_booking(client, db, vehicle, fake_stripe):
    checkout = start_checkout(client, vehicle)
    session = completed_session(fake_stripe, checkout["sessionId"])

    assert post_event(client, "checkout.session.completed", session).status_code == 200
    assert post_event(client, "checkout.session.completed", session, "evt_2").status_code == 200

    bookings = db.query(Booking).all()
    assert len(bookings) == 1
    booking = bookings[0]
    assert booking.booking_status == "Confirmed"
    assert booking.payment_status == "paid"
    assert booking.total_price == 154.00
    assert booking.stripe_payment_intent_id == session["payment_intent"]
    assert booking.pickup_at == datetime(2099, 12, 1, 10, 0)

    hold = db.query(CheckoutHold).filter(CheckoutHold.stripe_session_id == session["id"]).first()
    assert hold.status == "converted"


def test_cash_checkout_is_partial(client, db, vehicle, fake_stripe):
    checkout = start_checkout(client, vehicle, payment_method="cash")
    assert checkout["payment_type"] == "deposit"
    assert checkout["amount_to_pay"] == 49
    assert checkout["remaining_due"] == 105

    post_event(client, "checkout.session.completed", completed_session(fake_stripe, checkout["sessionId"]))
    booking = db.query(Booking).one()
    assert booking.payment_status == "partial"
    assert booking.deposit_amount == 49
    assert booking.remaining_amount == 105


def test_conflict_on_completion_refunds(client, db, vehicle, fake_stripe):
    checkout = start_checkout(client, vehicle)
    session = completed_session(fake_stripe, checkout["sessionId"])

    # another booking grabbed the dates while the customer was paying
    db.add(Booking(vehicle_id=vehicle.id, customer_name="B", customer_email="b@test.com",
                   customer_phone="2", pickup_at=datetime(2099, 12, 2, 10), return_at=datetime(2099, 12, 3, 10),
                   total_price=56, booking_status="Confirmed"))
    db.commit()

    assert post_event(client, "checkout.session.completed", session).status_code == 200

    booking = db.query(Booking).filter(Booking.stripe_session_id == session["id"]).one()
    assert booking.booking_status == "Cancelled"
    assert booking.payment_status == "refunded"
    assert fake_stripe.refunds == [session["payment_intent"]]


def test_expired_session_releases_hold(client, db, vehicle, fake_stripe):
    checkout = start_checkout(client, vehicle)

    # the hold keeps a second customer out
    response = client.post("/api/create-booking-checkout", json=booking_payload(
        vehicle.id, customer_email="other@test.com",
        success_url="http://localhost:5173/ok", cancel_url="http://localhost:5173/cancel"))
    assert response.status_code == 400

    post_event(client, "checkout.session.expired", {"id": checkout["sessionId"]})
    hold = db.query(CheckoutHold).one()
    assert hold.status == "expired"

    start_checkout(client, vehicle, customer_email="other@test.com")


def test_verify_stripe_payment_fallback(client, db, vehicle, fake_stripe):
    checkout = start_checkout(client, vehicle)

    response = client.post("/api/verify-stripe-payment", json={"session_id": checkout["sessionId"]})
    assert response.json()["status"] == "created"
    booking_id = response.json()["booking_id"]

    # webhook arriving late must not duplicate
    post_event(client, "checkout.session.completed", completed_session(fake_stripe, checkout["sessionId"]))
    response = client.post("/api/verify-stripe-payment", json={"session_id": checkout["sessionId"]})
    assert response.json() == {"status": "found", "booking_id": booking_id}
    assert db.query(Booking).count() == 1


def test_verify_stripe_payment_unpaid(client, vehicle, fake_stripe):
    checkout = start_checkout(client, vehicle)
    fake_stripe.sessions[checkout["sessionId"]]["payment_status"] = "unpaid"

    response = client.post("/api/verify-stripe-payment", json={"session_id": checkout["sessionId"]})
    assert response.json()["status"] == "unpaid"


def test_verify_stripe_payment_requires_session(client):
    response = client.post("/api/verify-stripe-payment", json={})
    assert response.status_code == 400


def test_setup_intent_confirms_booking(client, db, vehicle, fake_stripe):
    booking_id = client.post("/api/bookings", json=booking_payload(vehicle.id)).json()["booking_id"]
    client.post("/api/send-email-verification", json={"booking_id": booking_id, "email": "test@test.com"})
    token = db.query(EmailVerification).one().token
    client.post("/api/verify-email-token", json={"token": token})

    response = client.post("/api/create-card-verification", json={
        "booking_id": booking_id,
        "customer_email": "test@test.com",
    })
    assert response.status_code == 200
    intent_id = response.json()["setup_intent_id"]

    obj = {"id": intent_id, "payment_method": "pm_card_visa"}
    assert post_event(client, "setup_intent.succeeded", obj).status_code == 200
    # replay is a no-op
    assert post_event(client, "setup_intent.succeeded", obj, "evt_2").status_code == 200

    booking = db.get(Booking, booking_id)
    assert booking.booking_status == "Confirmed"
    assert booking.payment_status == "pending"
    assert booking.stripe_payment_method_id == "pm_card_visa"


def test_payment_failed_marks_booking(client, db, vehicle, fake_stripe):
    checkout = start_checkout(client, vehicle)
    session = completed_session(fake_stripe, checkout["sessionId"])
    session["payment_status"] = "unpaid"
    post_event(client, "checkout.session.completed", session)
    assert db.query(Booking).count() == 0

    post_event(client, "payment_intent.payment_failed", {
        "id": session["payment_intent"],
        "last_payment_error": {"message": "Your card was declined."},
    })
    assert db.query(Booking).count() == 0


def start_card_setup(client, db, vehicle):
    booking_id = client.post("/api/bookings", json=booking_payload(vehicle.id)).json()["booking_id"]
    client.post("/api/send-email-verification", json={"booking_id": booking_id, "email": "test@test.com"})
    token = db.query(EmailVerification).one().token
    client.post("/api/verify-email-token", json={"token": token})
    response = client.post("/api/create-card-verification", json={
        "booking_id": booking_id,
        "customer_email": "test@test.com",
    })
    return booking_id, response.json()["setup_intent_id"]


def test_canceled_setup_intent_frees_dates(client, db, vehicle, fake_stripe):
    booking_id, intent_id = start_card_setup(client, db, vehicle)

    assert post_event(client, "setup_intent.canceled", {"id": intent_id, "status": "canceled"}).status_code == 200
    booking = db.get(Booking, booking_id)
    db.refresh(booking)
    assert booking.booking_status == "Cancelled"

    # a late success for the same intent does not revive it
    post_event(client, "setup_intent.succeeded", {"id": intent_id, "payment_method": "pm_card_visa"}, "evt_2")
    db.refresh(booking)
    assert booking.booking_status == "Cancelled"

    response = client.post("/api/bookings", json=booking_payload(vehicle.id, customer_email="b@test.com"))
    assert response.status_code == 200


def test_failed_setup_intent_can_be_retried(client, db, vehicle, fake_stripe):
    booking_id, intent_id = start_card_setup(client, db, vehicle)

    response = post_event(client, "setup_intent.setup_failed", {
        "id": intent_id,
        "last_setup_error": {"message": "Your card was declined."},
    })
    assert response.status_code == 200
    booking = db.get(Booking, booking_id)
    db.refresh(booking)
    assert booking.booking_status == "PendingPayment"

    post_event(client, "setup_intent.succeeded", {"id": intent_id, "payment_method": "pm_card_visa"}, "evt_2")
    db.refresh(booking)
    assert booking.booking_status == "Confirmed"

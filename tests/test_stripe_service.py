import pytest
import stripe

from config import settings
from conftest import booking_payload
from models import Booking
from services import stripe_service
from services.stripe_service import retrieve_checkout_session


@pytest.fixture
def stripe_session(monkeypatch):
    """Serve ``stripe.checkout.Session.retrieve`` from real StripeObjects."""
    sessions = {}
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(stripe.checkout.Session, "retrieve", lambda session_id, **kwargs: sessions[session_id])

    def add(values):
        sessions[values["id"]] = stripe.StripeObject.construct_from(values, "sk_test_123")

    return add


def test_retrieve_returns_plain_metadata(stripe_session):
    stripe_session({
        "id": "cs_1",
        "payment_status": "paid",
        "payment_intent": "pi_1",
        "metadata": {"vehicle_id": "v1", "total_amount": "154.0"},
    })

    session = retrieve_checkout_session("cs_1")
    assert session == {
        "id": "cs_1",
        "payment_status": "paid",
        "payment_intent": "pi_1",
        "metadata": {"vehicle_id": "v1", "total_amount": "154.0"},
    }
    assert type(session["metadata"]) is dict


def test_retrieve_without_metadata(stripe_session):
    stripe_session({"id": "cs_2", "payment_status": "unpaid", "payment_intent": None, "metadata": None})
    assert retrieve_checkout_session("cs_2")["metadata"] == {}


def test_retrieve_requires_secret_key(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "")
    with pytest.raises(stripe_service.PaymentProviderError):
        retrieve_checkout_session("cs_1")


def test_verify_payment_with_stripe_objects(client, db, vehicle, fake_stripe, stripe_session, monkeypatch):
    response = client.post("/api/create-booking-checkout", json=booking_payload(
        vehicle.id, success_url="http://localhost:5173/ok", cancel_url="http://localhost:5173/cancel"))
    session_id = response.json()["sessionId"]
    fake = fake_stripe.sessions[session_id]
    stripe_session({
        "id": session_id,
        "payment_status": "paid",
        "payment_intent": fake["payment_intent"],
        "metadata": fake["metadata"],
    })
    monkeypatch.setattr(stripe_service, "retrieve_checkout_session", retrieve_checkout_session)

    response = client.post("/api/verify-stripe-payment", json={"session_id": session_id})
    assert response.status_code == 200
    assert response.json()["status"] == "created"

    booking = db.get(Booking, response.json()["booking_id"])
    assert booking.booking_status == "Confirmed"
    assert booking.stripe_payment_intent_id == fake["payment_intent"]

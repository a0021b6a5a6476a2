import sys
import os
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# --- path to backend ---
BASE_DIR = os.path.dirname(os.path.dirname(__file__))
BACKEND_DIR = os.path.join(BASE_DIR, "backend")
sys.path.insert(0, BACKEND_DIR)

from database import Base  # noqa: E402
from main import app  # noqa: E402
from models import Vehicle  # noqa: E402
from services import stripe_service  # noqa: E402

# ------------------ engine ------------------
engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(bind=engine)
Base.metadata.create_all(bind=engine)


# ------------------ fixtures ------------------
@pytest.fixture(autouse=True)
def override_db(monkeypatch):
    monkeypatch.setattr("database.SessionLocal", TestingSessionLocal)
    app.state.settings_cache.invalidate()
    yield
    # fresh tables for every test
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def vehicle(db):
    car = Vehicle(
        brand="VW",
        model="Golf",
        year=2022,
        category="Standard",
        price_per_day=49,
        minimum_age=21,
        status="available",
    )
    db.add(car)
    db.commit()
    db.refresh(car)
    return car


class FakeStripe:
    """Records calls instead of talking to Stripe."""

    def __init__(self):
        self.sessions = {}
        self.refunds = []
        self.customers = []
        self.setup_intents = []

    def create_checkout_session(self, line_items, metadata, customer_email, success_url, cancel_url, expires_at):
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions[session_id] = {
            "id": session_id,
            "payment_status": "paid",
            "payment_intent": f"pi_test_{len(self.sessions) + 1}",
            "metadata": metadata,
            "line_items": line_items,
        }
        return {"id": session_id, "url": f"https://checkout.stripe.test/{session_id}"}

    def retrieve_checkout_session(self, session_id):
        return self.sessions[session_id]

    def create_customer(self, email, name, metadata=None):
        self.customers.append(email)
        return f"cus_test_{len(self.customers)}"

    def create_setup_intent(self, customer_id, metadata):
        intent_id = f"seti_test_{len(self.setup_intents) + 1}"
        self.setup_intents.append(intent_id)
        return {"id": intent_id, "client_secret": f"{intent_id}_secret"}

    def create_payment_intent(self, amount_cents, metadata):
        return {"id": "pi_direct", "client_secret": "pi_direct_secret"}

    def create_refund(self, payment_intent_id):
        self.refunds.append(payment_intent_id)
        return f"re_{payment_intent_id}"


@pytest.fixture
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    for name in ("create_checkout_session", "retrieve_checkout_session", "create_customer",
                 "create_setup_intent", "create_payment_intent", "create_refund"):
        monkeypatch.setattr(stripe_service, name, getattr(fake, name))
    return fake


def booking_payload(vehicle_id, **overrides):
    data = {
        "vehicle_id": vehicle_id,
        "customer_name": "Test User",
        "customer_email": "test@test.com",
        "customer_phone": "+43 660 1234567",
        "customer_age": 30,
        "pickup_date": "2099-12-01",
        "return_date": "2099-12-04",
        "pickup_time": "10:00",
        "return_time": "10:00",
        "payment_method": "stripe",
    }
    data.update(overrides)
    return data

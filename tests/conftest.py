"""Shared test fixtures for the credit ledger test suite.

Provides:
- app: Flask app configured for testing (in-memory SQLite, no outbound charges)
- client: Flask test client
- db_session: clean database per test (tables created/dropped)
- engine: the app's CreditEngine
- seed_data: a funded tradie, an empty client and a completed purchase
- sign_payload / make_event: build real Stripe-signed webhook deliveries
"""

import hashlib
import hmac
import json
import time
import uuid
from decimal import Decimal

import pytest

from creditledger import create_app
from creditledger.extensions import db as _db
from creditledger.models.transaction import PURCHASE
from creditledger.services import ledger_service

WEBHOOK_SECRET = "whsec_test_fake"


@pytest.fixture(scope="session")
def app():
    """Create the Flask application configured for testing."""
    app = create_app("testing")
    yield app


@pytest.fixture(autouse=True)
def db_session(app):
    """Create all tables before each test, drop after."""
    with app.app_context():
        _db.create_all()
        yield _db.session
        _db.session.rollback()
        _db.drop_all()


@pytest.fixture
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture
def engine(app):
    return app.extensions["credit_engine"]


def _sign(payload, secret=WEBHOOK_SECRET, timestamp=None):
    """Stripe-Signature header for ``payload`` (t=...,v1=HMAC-SHA256)."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def _event(event_type, obj, event_id=None):
    """Serialized Stripe event body."""
    return json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    })


@pytest.fixture
def sign_payload():
    return _sign


@pytest.fixture
def make_event():
    return _event


@pytest.fixture
def seed_data(app, db_session):
    """Seed a funded tradie, an empty client and one completed purchase.

    Returns plain IDs so tests can use them without holding ORM objects.
    """
    # --- Tradie with 20 bonus credits ---
    ledger_service.grant_bonus("tradie-1", 20, description="Seed credits")

    # --- Client with an empty balance ---
    ledger_service.ensure_balance("client-1", role="client")

    # --- Tradie purchase, confirmed ---
    purchase = ledger_service.apply_transaction(
        "tradie-2", PURCHASE, 30,
        description="Standard Pack (30 credits)",
        amount=Decimal("22.57"),
        currency="AUD",
        gateway_reference="pi_seed_purchase",
        metadata={"package_type": "standard"},
    )
    purchase = ledger_service.complete_transaction(purchase.id)

    _db.session.commit()

    return {
        "tradie_id": "tradie-1",
        "client_id": "client-1",
        "buyer_id": "tradie-2",
        "purchase_id": purchase.id,
    }

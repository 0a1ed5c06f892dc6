"""
Shared fixtures: a fresh SQLite database per test, the engine components
wired over it, and a TestClient around the full app with a mocked Stripe
provider.
"""

import hashlib
import hmac
import json
import time
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from blockwatch.db.database import Database
from blockwatch.server.accounts import AccountStore
from blockwatch.server.api import create_app
from blockwatch.server.auth import SessionIssuer
from blockwatch.server.billing import StripeProvider, SubscriptionStateMachine
from blockwatch.server.config import Settings
from blockwatch.server.gate import EntitlementGate
from blockwatch.server.pricing import TIER_PAID
from blockwatch.server.usage import UsageLedger

JWT_SECRET = "test-jwt-secret-0123456789abcdef0123456789"
WEBHOOK_SECRET = "whsec_test_0123456789abcdef"
PASSWORD = "correct-horse-battery"


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "blockwatch.db")
    database.init_schema()
    return database


@pytest.fixture
def store(db):
    return AccountStore(db)


@pytest.fixture
def ledger(db):
    return UsageLedger(db)


@pytest.fixture
def issuer():
    return SessionIssuer(JWT_SECRET)


@pytest.fixture
def gate(store, ledger):
    return EntitlementGate(store, ledger, free_limit=1)


@pytest.fixture
def machine(store):
    return SubscriptionStateMachine(store, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def account(store):
    return store.create("alice@example.com", PASSWORD)


@pytest.fixture
def paid_account(store):
    acct = store.create("paula@example.com", PASSWORD)
    return store.set_tier(acct.id, TIER_PAID, subscription_ref="sub_paid_1", customer_ref="cus_paid_1")


# ---------------------------------------------------------------------------
# Stripe webhooks
# ---------------------------------------------------------------------------

@pytest.fixture
def sign():
    """Build a Stripe-Signature header for a payload string."""

    def _sign(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
        ts = int(time.time()) if timestamp is None else timestamp
        digest = hmac.new(
            secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return f"t={ts},v1={digest}"

    return _sign


@pytest.fixture
def stripe_event():
    """Build a serialized Stripe event."""

    def _event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> str:
        return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}})

    return _event


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

@pytest.fixture
def provider():
    mock = MagicMock(spec=StripeProvider)
    mock.ensure_customer.return_value = "cus_new_1"
    mock.create_checkout.return_value = "https://checkout.stripe.test/session_1"
    return mock


@pytest.fixture
def settings(tmp_path):
    return Settings(
        db_path=str(tmp_path / "api.db"),
        jwt_secret=JWT_SECRET,
        stripe_webhook_secret=WEBHOOK_SECRET,
        stripe_price_paid="price_test_paid",
    )


@pytest.fixture
def app(settings, provider):
    return create_app(settings, provider=provider, rate_limits=False)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def registered(client):
    """Register an account through the API; the client keeps its session cookie."""
    resp = client.post("/api/auth/register", json={"email": "bob@example.com", "password": PASSWORD})
    assert resp.status_code == 200
    return resp.json()

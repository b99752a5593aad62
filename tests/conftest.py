import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

import hashlib
import hmac
import json
import time

import pytest
from app import create_app
from app.errors import UpstreamError
from app.extensions import db
from app.models import Account
from app.services.billing import StripeBilling
from app.services.identity import Identity

WEBHOOK_SECRET = "whsec_test"


class FakeBilling(StripeBilling):
    """Real signature verification; Stripe API calls answered from memory."""

    def __init__(self):
        super().__init__(secret_key="sk_test_x", webhook_secret=WEBHOOK_SECRET, price_id="price_walter", base_url="http://example.test")
        self.subscriptions = {}
        self.retrieve_fails = False
        self.retrieved = []
        self.customers = []
        self.checkouts = []
        self.portals = []

    def retrieve_subscription(self, subscription_id):
        self.retrieved.append(subscription_id)
        if self.retrieve_fails:
            raise UpstreamError(f"Could not retrieve subscription {subscription_id}")
        return self.subscriptions.get(subscription_id, {"id": subscription_id})

    def create_customer(self, *, email, account_id):
        self.customers.append((email, account_id))
        return f"cus_new_{account_id}"

    def create_checkout_session(self, *, customer_id, account_id, trial_days):
        self.checkouts.append({"customer_id": customer_id, "account_id": account_id, "trial_days": trial_days})
        return {"id": "cs_test_1", "url": f"https://checkout.stripe.test/{customer_id}"}

    def create_portal_session(self, *, customer_id):
        self.portals.append(customer_id)
        return {"url": f"https://billing.stripe.test/{customer_id}"}


class FakeIdentity:
    def __init__(self):
        self.tokens = {}

    def verify(self, token):
        return self.tokens.get(token)


class FakeTokenStream:
    """Closable token iterator, like the real model stream."""

    def __init__(self, tokens, fail_after=None):
        self._tokens = iter(enumerate(tokens))
        self.fail_after = fail_after
        self.closed = False

    def __iter__(self):
        return self

    def __next__(self):
        i, tok = next(self._tokens)
        if self.fail_after is not None and i >= self.fail_after:
            raise UpstreamError("OpenAI streaming error: connection reset")
        return tok

    def close(self):
        self.closed = True


class FakeModel:
    """Stands in for ChatModel: records the context it was given and replays tokens."""

    def __init__(self, tokens=("Hello", ", ", "friend", "!")):
        self.tokens = list(tokens)
        self.fail_on_start = False
        self.fail_after = None
        self.calls = []
        self.streams = []

    def stream(self, history):
        self.calls.append(list(history))
        if self.fail_on_start:
            raise UpstreamError("OpenAI API error: boom")
        stream = FakeTokenStream(self.tokens, self.fail_after)
        self.streams.append(stream)
        return stream


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        SQLALCHEMY_DATABASE_URI="sqlite:///:memory:",
        APP_BASE_URL="http://example.test",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()

@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()

@pytest.fixture(autouse=True)
def billing(app):
    fake = FakeBilling()
    app.extensions["billing_provider"] = fake
    return fake

@pytest.fixture(autouse=True)
def identity(app):
    fake = FakeIdentity()
    fake.tokens["tok-alice"] = Identity(id="acc_alice", email="Alice@Example.com", name="Alice")
    fake.tokens["tok-bob"] = Identity(id="acc_bob", email="bob@example.com", name="Bob")
    app.extensions["identity_client"] = fake
    return fake

@pytest.fixture(autouse=True)
def model(app):
    fake = FakeModel()
    app.extensions["chat_model"] = fake
    return fake

@pytest.fixture()
def make_account(app):
    def _make(account_id="acc_1", email="user@example.com", **fields):
        with app.app_context():
            acc = Account(id=account_id, email=email, **fields)
            db.session.add(acc)
            db.session.commit()
            return acc.id
    return _make

def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = timestamp or int(time.time())
    sig = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={sig}"

@pytest.fixture()
def send_event(client):
    """POST a correctly signed Stripe event to /webhooks/stripe."""
    def _send(event: dict):
        body = json.dumps(event)
        return client.post(
            "/webhooks/stripe",
            data=body,
            headers={"Stripe-Signature": sign_payload(body), "Content-Type": "application/json"},
        )
    return _send

def auth(token="tok-alice"):
    return {"Authorization": f"Bearer {token}"}

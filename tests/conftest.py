import hashlib
import hmac
import json
import time

import jwt
import pytest
from fastapi.testclient import TestClient

from parkspot.core.config import Settings
from parkspot.core.errors import ProcessorNotFound
from parkspot.data.profiles import ProfileStore
from parkspot.db import build_engine, init_db
from parkspot.main import create_app
from parkspot.services.plans import PlanCatalog
from parkspot.services.processor import verify_webhook
from parkspot.services.reconciler import SubscriptionReconciler

JWT_SECRET = "super-secret-jwt-token-with-at-least-32-characters"
WEBHOOK_SECRET = "whsec_test_9f8e7d6c5b4a"
PRICES = {"basic": "price_basic", "pro": "price_pro", "enterprise": "price_enterprise"}
PERIOD_END = 1893456000  # 2030-01-01T00:00:00Z


class FakeProcessor:
    """In-memory BillingProcessor; webhook verification uses the real signature check."""

    def __init__(self, webhook_secret=WEBHOOK_SECRET):
        self.webhook_secret = webhook_secret
        self.customers = []
        self.sessions = {}
        self.subscriptions = {}
        self.created_sessions = []
        self.on_create_customer = None
        self.fail_with = None

    def create_customer(self, user_id, email):
        if self.fail_with:
            raise self.fail_with
        cid = f"cus_{len(self.customers) + 1}"
        self.customers.append({"id": cid, "email": email, "metadata": {"user_id": user_id}})
        hook, self.on_create_customer = self.on_create_customer, None
        if hook:
            hook()
        return cid

    def create_checkout_session(self, params):
        if self.fail_with:
            raise self.fail_with
        sid = f"cs_test_{len(self.created_sessions) + 1}"
        session = dict(params, id=sid, url=f"https://checkout.stripe.test/c/pay/{sid}")
        session.setdefault("payment_status", "unpaid")
        self.created_sessions.append(session)
        self.sessions[sid] = session
        return session

    def retrieve_checkout_session(self, session_id):
        if session_id not in self.sessions:
            raise ProcessorNotFound("checkout.retrieve: resource missing")
        return self.sessions[session_id]

    def retrieve_subscription(self, subscription_id):
        if subscription_id not in self.subscriptions:
            raise ProcessorNotFound("subscription.retrieve: resource missing")
        return self.subscriptions[subscription_id]

    def cancel_at_period_end(self, subscription_id):
        sub = dict(self.retrieve_subscription(subscription_id), cancel_at_period_end=True)
        self.subscriptions[subscription_id] = sub
        return sub

    def construct_event(self, payload, signature):
        return verify_webhook(payload, signature, self.webhook_secret)


def make_subscription(
    sub_id="sub_1",
    status="active",
    customer="cus_1",
    user_id="user-1",
    plan_id="pro",
    price_id="price_pro",
    period_end=PERIOD_END,
    cancel_at_period_end=False,
):
    metadata = {}
    if user_id:
        metadata["user_id"] = user_id
    if plan_id:
        metadata["plan_id"] = plan_id
    return {
        "id": sub_id,
        "object": "subscription",
        "status": status,
        "customer": customer,
        "cancel_at_period_end": cancel_at_period_end,
        "metadata": metadata,
        "items": {
            "object": "list",
            "data": [
                {
                    "id": "si_1",
                    "current_period_end": period_end,
                    "price": {"id": price_id, "recurring": {"interval": "month"}},
                }
            ],
        },
    }


def make_event(event_type, obj, event_id="evt_1"):
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode("utf-8")


def sign(payload, secret=WEBHOOK_SECRET, timestamp=None):
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def bearer(user_id="user-1", email="driver@example.com", secret=JWT_SECRET):
    token = jwt.encode(
        {"sub": user_id, "email": email, "aud": "authenticated", "exp": int(time.time()) + 3600},
        secret,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'parkspot.db'}",
        STRIPE_SECRET_KEY="sk_test_dummy",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        PLAN_PRICE_IDS=dict(PRICES),
        PUBLIC_BASE_URL="https://parkspot.test",
        SUPABASE_JWT_SECRET=JWT_SECRET,
        USER_RL_PER_MIN=100,
    )


@pytest.fixture
def store(settings):
    engine = build_engine(settings)
    init_db(engine)
    yield ProfileStore(engine)
    engine.dispose()


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
def catalog(settings):
    return PlanCatalog(settings)


@pytest.fixture
def reconciler(store, catalog):
    return SubscriptionReconciler(store, catalog)


@pytest.fixture
def app(settings, store, processor):
    return create_app(settings=settings, store=store, processor=processor)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def profile(store):
    """A signed-up user with no billing history."""
    store.ensure_profile("user-1", "driver@example.com")
    return store.get_profile("user-1")

import os

# Settings and the engine are built at import time; point them at SQLite before importing app modules.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("ENV", "dev")

import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.auth.cognito import TokenVerificationError
from app.core import config as app_config
from app.core import database
from app.core.base import Base
from app.core.database import get_db
from app.middleware import identity as identity_middleware

# Import models so they register with SQLAlchemy metadata.
from app.models.subscription import Subscription  # noqa: F401
from app.models.user import User

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # The in-memory DB persists across tests through StaticPool; reset schema per test.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests tweak the process-global settings object; restore it after each test.
    """
    keys = [
        "APP_URL",
        "STRIPE_SECRET_KEY",
        "STRIPE_WEBHOOK_SECRET",
        "STRIPE_PRICE_ID",
        "STRIPE_ENFORCE_EVENT_ORDER",
        "COGNITO_REGION",
        "COGNITO_USER_POOL_ID",
        "COGNITO_APP_CLIENT_ID",
        "COGNITO_DOMAIN",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


class _SharedSession:
    """Hands the test session to code that opens its own; close() is a no-op."""

    def __init__(self, session):
        self._session = session

    def __getattr__(self, name):
        return getattr(self._session, name)

    def close(self):
        pass


@pytest.fixture()
def tokens(monkeypatch, db_session):
    """
    Map bearer tokens to verified claims for the identity middleware.

    Usage:
        tokens["token-a"] = {"sub": user.id, "email": user.email}
    """
    claims_by_token: dict[str, dict] = {}

    def _fake_verify(token: str) -> dict:
        claims = claims_by_token.get(token)
        if claims is None:
            raise TokenVerificationError("unknown test token")
        return {"token_use": "access", **claims}

    monkeypatch.setattr(identity_middleware, "verify_token", _fake_verify)
    monkeypatch.setattr(database, "SessionLocal", lambda: _SharedSession(db_session))
    return claims_by_token


@pytest.fixture()
def app(db_session):
    from app.main import app as fastapi_app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def users(db_session):
    """Two distinct accounts keyed by session-store subject."""
    user_a = User(id="u1", email="test@example.com")
    user_b = User(id="u2", email="other@example.com")
    db_session.add_all([user_a, user_b])
    db_session.commit()
    db_session.refresh(user_a)
    db_session.refresh(user_b)
    return user_a, user_b


@pytest.fixture()
def client(app, users, tokens):
    """Client authenticated as user_a."""
    user_a, _ = users
    tokens["token-a"] = {"sub": user_a.id, "email": user_a.email}
    with TestClient(app, headers={"Authorization": "Bearer token-a"}) as c:
        yield c


@pytest.fixture()
def anonymous_client(app, tokens):
    with TestClient(app) as c:
        yield c


class FakeStripe:
    """
    Stand-in for the ``stripe`` module.

    Webhook verification and error classes are the real SDK's so signatures are
    checked byte-for-byte; API calls are recorded and answered locally with
    real SDK objects built from plain dicts.
    """

    Webhook = stripe.Webhook
    SignatureVerificationError = stripe.SignatureVerificationError
    StripeError = stripe.StripeError

    def __init__(self):
        self.api_key = None
        self.subscriptions: dict[str, dict] = {}
        self.retrieved: list[str] = []
        self.checkout_sessions: list[dict] = []
        self.lookup_error: Exception | None = None
        self.lookup_delay = 0.0

        fake = self

        class _SubscriptionAPI:
            def retrieve(self, subscription_id):
                fake.retrieved.append(subscription_id)
                if fake.lookup_delay:
                    time.sleep(fake.lookup_delay)
                if fake.lookup_error is not None:
                    raise fake.lookup_error
                if subscription_id not in fake.subscriptions:
                    raise stripe.InvalidRequestError(f"No such subscription: '{subscription_id}'", "id")
                return stripe.Subscription.construct_from(fake.subscriptions[subscription_id], None)

        class _SessionAPI:
            def create(self, **kwargs):
                sid = f"cs_test_{len(fake.checkout_sessions) + 1}"
                fake.checkout_sessions.append(kwargs | {"id": sid})
                return stripe.checkout.Session.construct_from(
                    {"id": sid, "url": f"https://checkout.stripe.test/{sid}", "metadata": kwargs.get("metadata", {})},
                    None,
                )

        self.Subscription = _SubscriptionAPI()
        self.checkout = SimpleNamespace(Session=_SessionAPI())

    def add_subscription(
        self,
        subscription_id: str,
        *,
        status: str = "active",
        price_id: str = "price_pro",
        current_period_end: int = 1700000000,
    ) -> dict:
        subscription = {
            "id": subscription_id,
            "object": "subscription",
            "status": status,
            "current_period_end": current_period_end,
            "items": {"data": [{"id": f"si_{subscription_id}", "price": {"id": price_id}}]},
        }
        self.subscriptions[subscription_id] = subscription
        return subscription


@pytest.fixture()
def fake_stripe(monkeypatch):
    from app.services import stripe as stripe_service

    fake = FakeStripe()
    monkeypatch.setattr(stripe_service, "stripe", fake)
    app_config.settings.STRIPE_SECRET_KEY = "sk_test_123"
    app_config.settings.STRIPE_WEBHOOK_SECRET = WEBHOOK_SECRET
    app_config.settings.STRIPE_PRICE_ID = "price_pro"
    return fake


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: dict, *, event_id: str = "evt_test", created: int = 1700000100) -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "data": {"object": obj},
    }


def checkout_event(
    *,
    user_id: str | None = "u1",
    subscription_id: str | None = "sub_1",
    event_id: str = "evt_checkout",
    created: int = 1700000100,
) -> dict:
    metadata = {"userId": user_id} if user_id else {}
    return make_event(
        "checkout.session.completed",
        {
            "id": "cs_test_1",
            "object": "checkout.session",
            "mode": "subscription",
            "metadata": metadata,
            "subscription": subscription_id,
        },
        event_id=event_id,
        created=created,
    )


def subscription_event(
    event_type: str,
    *,
    subscription_id: str = "sub_1",
    status: str = "active",
    current_period_end: int = 1702592000,
    event_id: str = "evt_subscription",
    created: int = 1700000200,
) -> dict:
    return make_event(
        event_type,
        {
            "id": subscription_id,
            "object": "subscription",
            "status": status,
            "current_period_end": current_period_end,
            "items": {"data": [{"price": {"id": "price_other"}}]},
        },
        event_id=event_id,
        created=created,
    )


def encode_event(event: dict) -> bytes:
    return json.dumps(event).encode("utf-8")

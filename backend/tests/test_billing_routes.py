from __future__ import annotations

from datetime import datetime, timedelta, timezone

import stripe

from app.core import config as app_config
from app.models.subscription import Subscription


def seed_subscription(db_session, user_id: str, subscription_id: str = "sub_1", **overrides) -> Subscription:
    values = {
        "id": subscription_id,
        "user_id": user_id,
        "status": "active",
        "price_id": "price_pro",
        "current_period_end": datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc),
    }
    values.update(overrides)
    subscription = Subscription(**values)
    db_session.add(subscription)
    db_session.commit()
    return subscription


def test_plans_are_public(anonymous_client):
    app_config.settings.STRIPE_PRICE_ID = "price_pro"

    resp = anonymous_client.get("/billing/plans")

    assert resp.status_code == 200
    plans = {plan["key"]: plan for plan in resp.json()}
    assert list(plans) == ["free", "pro", "enterprise"]
    assert plans["free"]["price"] == "$0"
    assert plans["pro"]["featured"] is True
    assert plans["pro"]["price_id"] == "price_pro"
    assert plans["enterprise"]["price_id"] is None
    assert plans["enterprise"]["contact_email"]


def test_subscription_for_current_user(client, db_session, users):
    user, other = users
    seed_subscription(db_session, user.id)
    seed_subscription(db_session, other.id, subscription_id="sub_other", status="canceled")

    resp = client.get("/billing/subscription")

    assert resp.status_code == 200
    body = resp.json()
    created_at = body.pop("created_at")
    assert body == {
        "id": "sub_1",
        "user_id": "u1",
        "status": "active",
        "price_id": "price_pro",
        "current_period_end": "2023-11-14T22:13:20.000Z",
    }
    assert created_at.endswith("Z")


def test_subscription_prefers_most_recently_updated(client, db_session, users):
    user, _ = users
    now = datetime.now(timezone.utc)
    seed_subscription(db_session, user.id, subscription_id="sub_old", status="canceled", updated_at=now - timedelta(days=3))
    seed_subscription(db_session, user.id, subscription_id="sub_new", status="active", updated_at=now)

    resp = client.get("/billing/subscription")

    assert resp.status_code == 200
    assert resp.json()["id"] == "sub_new"


def test_subscription_null_when_none(client):
    resp = client.get("/billing/subscription")

    assert resp.status_code == 200
    assert resp.json() is None


def test_subscription_requires_auth(anonymous_client):
    resp = anonymous_client.get("/billing/subscription")

    assert resp.status_code == 401
    assert resp.json()["error"] == "UNAUTHORIZED"


def test_checkout_session_tagged_with_user(client, fake_stripe):
    app_config.settings.APP_URL = "https://app.example.com"

    resp = client.post("/billing/stripe/checkout")

    assert resp.status_code == 200
    body = resp.json()
    assert body["session_id"] == "cs_test_1"
    assert body["checkout_url"] == "https://checkout.stripe.test/cs_test_1"

    created = fake_stripe.checkout_sessions[0]
    assert created["mode"] == "subscription"
    assert created["line_items"] == [{"price": "price_pro", "quantity": 1}]
    assert created["metadata"] == {"userId": "u1"}
    assert created["subscription_data"] == {"metadata": {"userId": "u1"}}
    assert created["customer_email"] == "test@example.com"
    assert created["success_url"] == "https://app.example.com/dashboard?success=true"
    assert created["cancel_url"] == "https://app.example.com/pricing?canceled=true"
    assert fake_stripe.api_key == "sk_test_123"


def test_checkout_requires_configured_price(client, fake_stripe):
    app_config.settings.STRIPE_PRICE_ID = ""

    resp = client.post("/billing/stripe/checkout")

    assert resp.status_code == 400
    assert resp.json() == {"error": "VALIDATION_ERROR", "message": "Stripe price is not configured"}
    assert fake_stripe.checkout_sessions == []


def test_checkout_stripe_error_is_400(client, fake_stripe, monkeypatch):
    def _fail(**kwargs):
        raise stripe.InvalidRequestError("No such price: 'price_pro'", "line_items")

    monkeypatch.setattr(fake_stripe.checkout.Session, "create", _fail)

    resp = client.post("/billing/stripe/checkout")

    assert resp.status_code == 400
    assert resp.json()["message"].startswith("Unable to start checkout")


def test_checkout_requires_auth(anonymous_client, fake_stripe):
    resp = anonymous_client.post("/billing/stripe/checkout")

    assert resp.status_code == 401
    assert fake_stripe.checkout_sessions == []

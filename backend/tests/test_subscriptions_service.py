from __future__ import annotations

from datetime import datetime, timedelta, timezone

from app.models.subscription import Subscription
from app.services.subscriptions import (
    UpdateOutcome,
    apply_subscription_state,
    get_subscription,
    get_subscription_for_user,
    upsert_subscription,
)

PERIOD_END = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
EVENT_AT = datetime(2023, 11, 14, 22, 15, 0, tzinfo=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _upsert(db_session, **overrides):
    values = {
        "subscription_id": "sub_1",
        "user_id": "u1",
        "status": "active",
        "price_id": "price_pro",
        "current_period_end": PERIOD_END,
        "event_at": EVENT_AT,
    }
    values.update(overrides)
    upsert_subscription(db_session, **values)
    db_session.commit()


def test_upsert_inserts_then_updates_in_place(db_session, users):
    _upsert(db_session)
    _upsert(db_session, status="past_due", price_id="price_team", user_id="u2")

    assert db_session.query(Subscription).count() == 1
    row = get_subscription(db_session, "sub_1")
    assert row.status == "past_due"
    assert row.price_id == "price_team"
    assert row.user_id == "u1"


def test_upsert_keeps_newest_event_time(db_session, users):
    _upsert(db_session)
    _upsert(db_session, event_at=EVENT_AT - timedelta(minutes=5))

    row = get_subscription(db_session, "sub_1")
    assert _as_utc(row.last_event_at) == EVENT_AT


def test_apply_state_outcomes(db_session, users):
    assert (
        apply_subscription_state(
            db_session, subscription_id="sub_1", status="canceled", current_period_end=PERIOD_END
        )
        is UpdateOutcome.NOT_FOUND
    )

    _upsert(db_session)
    older = EVENT_AT - timedelta(minutes=1)

    assert (
        apply_subscription_state(
            db_session,
            subscription_id="sub_1",
            status="canceled",
            current_period_end=PERIOD_END,
            event_at=older,
            enforce_order=True,
        )
        is UpdateOutcome.STALE
    )
    assert (
        apply_subscription_state(
            db_session,
            subscription_id="sub_1",
            status="canceled",
            current_period_end=PERIOD_END,
            event_at=older,
        )
        is UpdateOutcome.APPLIED
    )
    db_session.commit()
    db_session.expire_all()
    assert get_subscription(db_session, "sub_1").status == "canceled"


def test_subscription_for_user_is_scoped(db_session, users):
    _upsert(db_session)

    assert get_subscription_for_user(db_session, "u1").id == "sub_1"
    assert get_subscription_for_user(db_session, "u2") is None

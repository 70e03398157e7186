# app/services/subscriptions.py
"""
Relational-store operations on the ``subscriptions`` table.

Only two writes exist:
- ``upsert_subscription``: insert-or-update keyed on the Stripe subscription id.
  ``user_id`` is written on insert and never touched on conflict.
- ``apply_subscription_state``: conditional ``UPDATE ... WHERE id = ?`` setting
  ``status`` and ``current_period_end`` only.

Callers own the transaction; nothing here commits.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import case, or_, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from app.models.subscription import Subscription


class UpdateOutcome(str, Enum):
    APPLIED = "applied"
    NOT_FOUND = "not_found"
    STALE = "stale"


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"Upsert not supported for dialect: {dialect}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _newest_event_at(stmt):
    # Keep the newer of the stored and incoming event timestamps.
    current = Subscription.last_event_at
    incoming = stmt.excluded.last_event_at
    return case(
        (current.is_(None), incoming),
        (incoming.is_(None), current),
        (current > incoming, current),
        else_=incoming,
    )


def upsert_subscription(
    db: Session,
    *,
    subscription_id: str,
    user_id: str,
    status: str,
    price_id: str,
    current_period_end: datetime,
    event_at: datetime | None = None,
) -> None:
    insert = _insert_for(db)
    stmt = insert(Subscription).values(
        id=subscription_id,
        user_id=user_id,
        status=status,
        price_id=price_id,
        current_period_end=current_period_end,
        last_event_at=event_at,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Subscription.id],
        set_={
            "status": stmt.excluded.status,
            "price_id": stmt.excluded.price_id,
            "current_period_end": stmt.excluded.current_period_end,
            "last_event_at": _newest_event_at(stmt),
            "updated_at": _utcnow(),
        },
    )
    db.execute(stmt)


def apply_subscription_state(
    db: Session,
    *,
    subscription_id: str,
    status: str,
    current_period_end: datetime,
    event_at: datetime | None = None,
    enforce_order: bool = False,
) -> UpdateOutcome:
    """
    Update status/period for an existing row.

    With ``enforce_order`` the row is only touched when ``event_at`` is not older
    than the stored ``last_event_at``. Without it the last write wins.
    """
    values = {
        "status": status,
        "current_period_end": current_period_end,
        "updated_at": _utcnow(),
    }
    if event_at is not None:
        values["last_event_at"] = event_at

    stmt = update(Subscription).where(Subscription.id == subscription_id)
    if enforce_order and event_at is not None:
        stmt = stmt.where(
            or_(Subscription.last_event_at.is_(None), Subscription.last_event_at <= event_at)
        )
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    if result.rowcount:
        return UpdateOutcome.APPLIED

    exists = db.query(Subscription.id).filter(Subscription.id == subscription_id).first()
    return UpdateOutcome.STALE if exists else UpdateOutcome.NOT_FOUND


def get_subscription(db: Session, subscription_id: str) -> Optional[Subscription]:
    return db.get(Subscription, subscription_id)


def get_subscription_for_user(db: Session, user_id: str) -> Optional[Subscription]:
    """Most recently updated subscription owned by the user, if any."""
    return (
        db.query(Subscription)
        .filter(Subscription.user_id == user_id)
        .order_by(Subscription.updated_at.desc(), Subscription.created_at.desc())
        .first()
    )

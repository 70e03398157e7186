"""
Typed view over the Stripe webhook events this backend reacts to.

Stripe delivers a loosely-typed JSON envelope; the projector only cares about
three event types. ``parse_billing_event`` narrows the envelope into one of the
closed set of variants below so the dispatcher can match exhaustively:

- ``CheckoutCompleted``: ``checkout.session.completed``
- ``SubscriptionUpdated``: ``customer.subscription.updated``
- ``SubscriptionDeleted``: ``customer.subscription.deleted``
- ``OtherEvent``: everything else (acknowledged, never applied)
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from collections.abc import Mapping
from typing import Any, Union

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"

# Checkout metadata key carrying the application user id.
CHECKOUT_USER_ID_KEY = "userId"


@dataclass(frozen=True)
class SubscriptionState:
    """The subset of a Stripe subscription that update/delete events apply."""

    subscription_id: str
    status: str
    current_period_end: datetime


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str | None
    created_at: datetime | None
    user_id: str | None
    subscription_id: str | None

    @property
    def is_actionable(self) -> bool:
        return bool(self.user_id and self.subscription_id)


@dataclass(frozen=True)
class SubscriptionUpdated:
    event_id: str | None
    created_at: datetime | None
    subscription: SubscriptionState


@dataclass(frozen=True)
class SubscriptionDeleted:
    event_id: str | None
    created_at: datetime | None
    subscription: SubscriptionState


@dataclass(frozen=True)
class OtherEvent:
    event_id: str | None
    event_type: str | None


BillingEvent = Union[CheckoutCompleted, SubscriptionUpdated, SubscriptionDeleted, OtherEvent]


class MalformedEventError(ValueError):
    """Raised when a recognized event is missing fields required to apply it."""


def epoch_to_datetime(value: Any) -> datetime:
    """Convert Stripe epoch seconds into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        raise MalformedEventError("timestamp is missing")
    try:
        seconds = int(value)
    except (TypeError, ValueError) as exc:
        raise MalformedEventError(f"timestamp is not an integer: {value!r}") from exc
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    """
    Render a timestamp as ISO-8601 UTC with millisecond precision,
    e.g. ``2023-11-14T22:13:20.000Z``. Naive values are treated as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def to_plain(value: Any) -> Any:
    """
    Convert SDK objects (``StripeObject`` and friends) into plain dicts and lists.

    Older SDKs subclass ``dict`` with a shallow ``to_dict``; newer ones are not
    mappings at all. Recursing here handles both.
    """
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        value = to_dict()
    if isinstance(value, Mapping):
        return {key: to_plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [to_plain(item) for item in value]
    return value


def _get(obj: Any, key: str, default: Any = None) -> Any:
    if obj is None:
        return default
    if not isinstance(obj, Mapping):
        raise MalformedEventError(f"expected an object for {key!r}, got {type(obj).__name__}")
    value = obj.get(key)
    return default if value is None else value


def _optional_created(event: Any) -> datetime | None:
    created = _get(event, "created")
    if created is None:
        return None
    return epoch_to_datetime(created)


def subscription_period_end(subscription: Any) -> datetime:
    """
    Read ``current_period_end`` from a subscription object.

    Newer Stripe API versions moved the period onto subscription items, so fall
    back to the first item when the top-level field is absent.
    """
    period_end = _get(subscription, "current_period_end")
    if period_end is None:
        items = _get(_get(subscription, "items"), "data") or []
        if items:
            period_end = _get(items[0], "current_period_end")
    return epoch_to_datetime(period_end)


def subscription_price_id(subscription: Any) -> str:
    """Price id of the first line item."""
    items = _get(_get(subscription, "items"), "data") or []
    if not items:
        raise MalformedEventError("subscription has no line items")
    price_id = _get(_get(items[0], "price"), "id")
    if not price_id:
        raise MalformedEventError("subscription line item has no price id")
    return price_id


def _subscription_state(obj: Any) -> SubscriptionState:
    subscription_id = _get(obj, "id")
    status = _get(obj, "status")
    if not subscription_id:
        raise MalformedEventError("subscription event missing id")
    if not status:
        raise MalformedEventError(f"subscription {subscription_id} missing status")
    return SubscriptionState(
        subscription_id=subscription_id,
        status=status,
        current_period_end=subscription_period_end(obj),
    )


def parse_billing_event(event: Any) -> BillingEvent:
    """Narrow a verified Stripe event into a ``BillingEvent`` variant."""
    event = to_plain(event)
    event_id = _get(event, "id")
    event_type = _get(event, "type")
    obj = _get(_get(event, "data"), "object") or {}

    if event_type == CHECKOUT_COMPLETED:
        metadata = _get(obj, "metadata") or {}
        subscription = _get(obj, "subscription")
        # Expanded checkout sessions carry the full object instead of the id.
        if subscription is not None and not isinstance(subscription, str):
            subscription = _get(subscription, "id")
        return CheckoutCompleted(
            event_id=event_id,
            created_at=_optional_created(event),
            user_id=_get(metadata, CHECKOUT_USER_ID_KEY) or None,
            subscription_id=subscription or None,
        )

    if event_type == SUBSCRIPTION_UPDATED:
        return SubscriptionUpdated(
            event_id=event_id,
            created_at=_optional_created(event),
            subscription=_subscription_state(obj),
        )

    if event_type == SUBSCRIPTION_DELETED:
        return SubscriptionDeleted(
            event_id=event_id,
            created_at=_optional_created(event),
            subscription=_subscription_state(obj),
        )

    return OtherEvent(event_id=event_id, event_type=event_type)

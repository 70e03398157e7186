from __future__ import annotations

import logging
from enum import Enum
from functools import lru_cache
from typing import Any

try:  # pragma: no cover - dependency presence is validated at runtime
    import stripe  # type: ignore
except ImportError:  # pragma: no cover
    stripe = None  # type: ignore
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.user import User
from app.services.stripe_events import (
    CHECKOUT_USER_ID_KEY,
    CheckoutCompleted,
    MalformedEventError,
    OtherEvent,
    SubscriptionDeleted,
    SubscriptionUpdated,
    parse_billing_event,
    subscription_period_end,
    subscription_price_id,
    to_plain,
)
from app.services.subscriptions import UpdateOutcome, apply_subscription_state, upsert_subscription

logger = logging.getLogger(__name__)


class StripeServiceError(Exception):
    """Base error for Stripe service operations."""


class SignatureVerificationError(StripeServiceError):
    """Raised when a webhook payload cannot be verified. Permanent for that body."""


class DownstreamWriteError(StripeServiceError):
    """Raised when the subscriptions table cannot be written."""


class SubscriptionLookupError(StripeServiceError):
    """Raised when Stripe cannot return a usable subscription."""


class ProjectionResult(str, Enum):
    UPSERTED = "upserted"
    UPDATED = "updated"
    NOT_FOUND = "not_found"
    STALE = "stale"
    IGNORED = "ignored"


@lru_cache(maxsize=None)
def _configure_http_client(sdk: Any) -> None:
    """Install a short-timeout HTTP client once per SDK; failures go to the caller."""
    requests_client = getattr(sdk, "RequestsClient", None)
    if requests_client is None:
        return
    sdk.max_network_retries = 0
    sdk.default_http_client = requests_client(timeout=settings.STRIPE_API_TIMEOUT_SECONDS)


class StripeService:
    """
    Stripe integration facade. All direct Stripe SDK calls live here.

    Responsibilities:
    - Create subscription-mode checkout sessions tagged with the user id
    - Verify webhook signatures over the raw request body
    - Retrieve subscriptions for checkout projection
    """

    def __init__(self, db: Session, stripe_client: Any | None = None):
        self.db = db
        self.stripe = stripe_client or stripe
        if self.stripe is not None and settings.STRIPE_SECRET_KEY:
            self.stripe.api_key = settings.STRIPE_SECRET_KEY
            _configure_http_client(self.stripe)

    # ------------------------------------------------------------------
    # Checkout creation
    # ------------------------------------------------------------------
    def create_checkout_session(
        self,
        user: User,
        *,
        success_url: str,
        cancel_url: str,
    ) -> Any:
        """Create a Checkout Session for the configured subscription price."""
        if not settings.STRIPE_SECRET_KEY:
            raise StripeServiceError("Stripe secret key is not configured")
        if not settings.STRIPE_PRICE_ID:
            raise StripeServiceError("Stripe price is not configured")
        stripe_client = self._require_sdk()

        metadata = {CHECKOUT_USER_ID_KEY: str(user.id)}
        logger.info(
            "Creating Stripe checkout session: user=%s price=%s",
            user.id,
            settings.STRIPE_PRICE_ID,
        )
        try:
            session = stripe_client.checkout.Session.create(
                mode="subscription",
                line_items=[
                    {
                        "price": settings.STRIPE_PRICE_ID,
                        "quantity": 1,
                    }
                ],
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=user.email,
                client_reference_id=str(user.id),
                metadata=metadata,
                subscription_data={"metadata": metadata},
            )
        except stripe_client.StripeError as exc:
            logger.error("Stripe checkout creation failed for user %s: %s", user.id, exc)
            raise StripeServiceError(f"Unable to start checkout: {exc}") from exc
        return to_plain(session)

    # ------------------------------------------------------------------
    # Webhook verification / lookups
    # ------------------------------------------------------------------
    def parse_event(self, payload: bytes, signature: str | None) -> Any:
        """Validate the webhook signature over the raw bytes and deserialize the event."""
        if not settings.STRIPE_WEBHOOK_SECRET:
            raise SignatureVerificationError("Stripe webhook secret is not configured")
        if not signature:
            raise SignatureVerificationError("Missing Stripe-Signature header")
        stripe_client = self._require_sdk()
        try:
            event = stripe_client.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=settings.STRIPE_WEBHOOK_SECRET,
            )
        except stripe_client.SignatureVerificationError as exc:
            raise SignatureVerificationError(f"Invalid Stripe signature: {exc}") from exc
        except ValueError as exc:
            raise SignatureVerificationError(f"Invalid Stripe payload: {exc}") from exc
        # Callers get plain dicts, never SDK objects.
        return to_plain(event)

    def retrieve_subscription(self, subscription_id: str) -> Any:
        stripe_client = self._require_sdk()
        try:
            subscription = stripe_client.Subscription.retrieve(subscription_id)
        except stripe_client.StripeError as exc:
            raise SubscriptionLookupError(
                f"Unable to retrieve subscription {subscription_id}: {exc}"
            ) from exc
        return to_plain(subscription)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _require_sdk(self):
        if self.stripe is None:
            raise StripeServiceError("Stripe SDK is not installed")
        return self.stripe


class WebhookProjector:
    """
    Applies verified Stripe events to the ``subscriptions`` table.

    Each call performs at most one upsert (checkout) or one conditional update
    (subscription updated/deleted) and commits it. Writes are keyed on the
    Stripe subscription id, so redelivery is safe. The projector never retries;
    failures after verification are raised for the caller to map to a 500 so
    Stripe redelivers.

    Ordering: with ``enforce_order`` an update carrying an older event
    ``created`` than the row's ``last_event_at`` is skipped. Without it the row
    reflects whichever write lands last, not the logical event order.
    """

    def __init__(
        self,
        db: Session,
        stripe_client: Any | None = None,
        *,
        enforce_order: bool | None = None,
    ):
        self.db = db
        self.stripe_service = StripeService(db, stripe_client=stripe_client)
        self.enforce_order = (
            settings.STRIPE_ENFORCE_EVENT_ORDER if enforce_order is None else enforce_order
        )

    def handle(self, payload: bytes, signature: str | None) -> ProjectionResult:
        """Verify then project. Verification happens before any parsing of ``payload``."""
        try:
            event = self.stripe_service.parse_event(payload, signature)
        except SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise
        return self.project(event)

    def project(self, event: Any) -> ProjectionResult:
        event = to_plain(event)
        try:
            billing_event = parse_billing_event(event)
        except MalformedEventError as exc:
            logger.error(
                "Stripe event %s (%s) is malformed: %s",
                _event_field(event, "id"),
                _event_field(event, "type"),
                exc,
            )
            raise StripeServiceError(f"Malformed Stripe event: {exc}") from exc

        if isinstance(billing_event, CheckoutCompleted):
            return self._project_checkout(billing_event)
        if isinstance(billing_event, (SubscriptionUpdated, SubscriptionDeleted)):
            return self._project_subscription_state(billing_event)
        if isinstance(billing_event, OtherEvent):
            logger.info(
                "Ignoring unsupported Stripe event %s of type %s",
                billing_event.event_id,
                billing_event.event_type,
            )
            return ProjectionResult.IGNORED
        raise AssertionError(f"Unhandled billing event: {billing_event!r}")

    def _project_checkout(self, event: CheckoutCompleted) -> ProjectionResult:
        if not event.is_actionable:
            logger.info(
                "Checkout event %s lacks user id or subscription (user=%s subscription=%s); skipping",
                event.event_id,
                event.user_id,
                event.subscription_id,
            )
            return ProjectionResult.IGNORED

        subscription = self.stripe_service.retrieve_subscription(event.subscription_id)
        try:
            status = subscription.get("status")
            if not status:
                raise MalformedEventError("subscription missing status")
            price_id = subscription_price_id(subscription)
            period_end = subscription_period_end(subscription)
        except MalformedEventError as exc:
            logger.error(
                "Stripe subscription %s lookup for event %s unusable: %s",
                event.subscription_id,
                event.event_id,
                exc,
            )
            raise SubscriptionLookupError(
                f"Subscription {event.subscription_id} is missing required fields: {exc}"
            ) from exc

        self._write(
            event.event_id,
            event.subscription_id,
            lambda: upsert_subscription(
                self.db,
                subscription_id=event.subscription_id,
                user_id=event.user_id,
                status=status,
                price_id=price_id,
                current_period_end=period_end,
                event_at=event.created_at,
            ),
        )
        logger.info(
            "Upserted subscription %s for user %s (status=%s price=%s) from event %s",
            event.subscription_id,
            event.user_id,
            status,
            price_id,
            event.event_id,
        )
        return ProjectionResult.UPSERTED

    def _project_subscription_state(
        self, event: SubscriptionUpdated | SubscriptionDeleted
    ) -> ProjectionResult:
        state = event.subscription
        outcome = self._write(
            event.event_id,
            state.subscription_id,
            lambda: apply_subscription_state(
                self.db,
                subscription_id=state.subscription_id,
                status=state.status,
                current_period_end=state.current_period_end,
                event_at=event.created_at,
                enforce_order=self.enforce_order,
            ),
        )
        if outcome is UpdateOutcome.NOT_FOUND:
            # Checkout was never projected (missed event or missing metadata).
            logger.info(
                "No subscription row for %s (event %s); nothing to update",
                state.subscription_id,
                event.event_id,
            )
            return ProjectionResult.NOT_FOUND
        if outcome is UpdateOutcome.STALE:
            logger.info(
                "Skipping out-of-order event %s for subscription %s (created=%s)",
                event.event_id,
                state.subscription_id,
                event.created_at,
            )
            return ProjectionResult.STALE

        logger.info(
            "Updated subscription %s to status=%s from event %s",
            state.subscription_id,
            state.status,
            event.event_id,
        )
        return ProjectionResult.UPDATED

    def _write(self, event_id: str | None, subscription_id: str, operation):
        try:
            result = operation()
            self.db.commit()
            return result
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error(
                "Subscription write failed for %s (event %s): %s",
                subscription_id,
                event_id,
                exc,
            )
            raise DownstreamWriteError(f"Unable to write subscription {subscription_id}") from exc


def _event_field(event: Any, key: str) -> Any:
    return event.get(key) if isinstance(event, dict) else None

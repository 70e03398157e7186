from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, field_serializer

from app.services.stripe_events import format_timestamp


class PlanOut(BaseModel):
    key: str
    name: str
    price: str
    period: str
    features: list[str]
    cta: str
    featured: bool = False
    price_id: str | None = None
    contact_email: str | None = None

    model_config = ConfigDict(from_attributes=True)


class StripeCheckoutOut(BaseModel):
    session_id: str
    checkout_url: str | None = None


class SubscriptionOut(BaseModel):
    id: str
    user_id: str
    status: str
    price_id: str
    current_period_end: datetime
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("current_period_end", "created_at")
    def _serialize_timestamp(self, value: datetime) -> str | None:
        return format_timestamp(value)


class WebhookReceipt(BaseModel):
    received: bool = True

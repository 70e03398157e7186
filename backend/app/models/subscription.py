from __future__ import annotations

from sqlalchemy import Column, DateTime, ForeignKey, String, func
from sqlalchemy.orm import relationship

from app.core.base import Base


class Subscription(Base):
    """Projection of a Stripe subscription, written only by the webhook."""

    __tablename__ = "subscriptions"

    # Stripe subscription id (sub_...)
    id = Column(String(255), primary_key=True)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False, index=True)
    # Opaque Stripe status: active, trialing, past_due, canceled, ...
    status = Column(String(50), nullable=False)
    price_id = Column(String(255), nullable=False)
    current_period_end = Column(DateTime(timezone=True), nullable=False)

    # `created` of the last Stripe event applied to this row; null when unknown.
    last_event_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    user = relationship("User", back_populates="subscriptions")

from __future__ import annotations

from dataclasses import dataclass

from app.core.config import settings


@dataclass(frozen=True)
class Plan:
    key: str
    name: str
    price: str
    period: str
    features: tuple[str, ...]
    cta: str
    featured: bool = False
    # Only the paid self-serve plan goes through Stripe Checkout.
    price_id: str | None = None
    contact_email: str | None = None


def list_plans() -> list[Plan]:
    return [
        Plan(
            key="free",
            name="Free",
            price="$0",
            period="forever",
            features=("Basic authentication", "User dashboard", "Email support", "Community access"),
            cta="Get Started",
        ),
        Plan(
            key="pro",
            name="Pro",
            price="$29",
            period="per month",
            features=(
                "Everything in Free",
                "Stripe payments",
                "Priority support",
                "Advanced analytics",
                "Custom branding",
                "API access",
            ),
            cta="Subscribe Now",
            featured=True,
            price_id=settings.STRIPE_PRICE_ID or None,
        ),
        Plan(
            key="enterprise",
            name="Enterprise",
            price="Custom",
            period="contact us",
            features=(
                "Everything in Pro",
                "Dedicated support",
                "Custom integrations",
                "SLA guarantee",
                "Training & onboarding",
            ),
            cta="Contact Sales",
            contact_email=settings.SALES_EMAIL,
        ),
    ]

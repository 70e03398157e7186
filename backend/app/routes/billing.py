from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.dependencies.auth import get_current_user
from app.models.user import User
from app.schemas.billing import PlanOut, SubscriptionOut
from app.services.plans import list_plans
from app.services.subscriptions import get_subscription_for_user

router = APIRouter(prefix="/billing", tags=["billing"])


@router.get("/plans", response_model=list[PlanOut])
def get_plans() -> list[PlanOut]:
    return [PlanOut.model_validate(plan) for plan in list_plans()]


@router.get("/subscription", response_model=SubscriptionOut | None)
def get_my_subscription(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> SubscriptionOut | None:
    subscription = get_subscription_for_user(db, user.id)
    if subscription is None:
        return None
    return SubscriptionOut.model_validate(subscription)

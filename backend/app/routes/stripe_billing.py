from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.dependencies.auth import get_current_user
from app.models.user import User
from app.schemas.billing import StripeCheckoutOut, WebhookReceipt
from app.services.stripe import (
    SignatureVerificationError,
    StripeService,
    StripeServiceError,
    WebhookProjector,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing/stripe", tags=["billing"])


@router.post("/checkout", response_model=StripeCheckoutOut)
def create_checkout_session(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
) -> StripeCheckoutOut:
    service = StripeService(db)
    try:
        session = service.create_checkout_session(
            user,
            success_url=f"{settings.APP_URL}/dashboard?success=true",
            cancel_url=f"{settings.APP_URL}/pricing?canceled=true",
        )
    except StripeServiceError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    return StripeCheckoutOut(session_id=session.get("id"), checkout_url=session.get("url"))


@router.post("/webhook", response_model=WebhookReceipt, status_code=status.HTTP_200_OK)
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
):
    # Signature is computed over these exact bytes; do not parse first.
    payload = await request.body()
    signature = request.headers.get("stripe-signature")
    projector = WebhookProjector(db)
    try:
        # Lookup and commit block; keep them off the event loop.
        await run_in_threadpool(projector.handle, payload, signature)
    except SignatureVerificationError as exc:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})
    except StripeServiceError as exc:
        logger.error("Stripe webhook processing failed: %s", exc)
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content={"error": str(exc)})
    except Exception:
        logger.exception("Unexpected error while processing Stripe webhook")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal error while processing webhook"},
        )

    return WebhookReceipt(received=True)

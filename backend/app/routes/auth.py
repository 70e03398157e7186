from __future__ import annotations

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from app.auth.identity import Identity
from app.core.config import settings
from app.core.database import get_db
from app.dependencies.auth import get_access_token, get_identity
from app.schemas.auth import (
    ConfirmIn,
    LoginIn,
    LoginOut,
    MessageOut,
    SessionOut,
    SessionTokens,
    SignupIn,
    SignupOut,
)
from app.services.cognito_client import (
    CognitoClientError,
    UnknownOAuthProviderError,
    build_oauth_authorize_url,
    cognito_confirm_sign_up,
    cognito_get_user,
    cognito_global_sign_out,
    cognito_initiate_auth,
    cognito_sign_up,
)
from app.services.users import AccountConflictError, ensure_user, normalize_email

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

# Compared against the `state` query parameter on /auth/callback.
OAUTH_STATE_COOKIE = "oauth_state"
OAUTH_STATE_MAX_AGE_SECONDS = 600


def _translate_cognito_error(exc: CognitoClientError) -> HTTPException:
    status_code = 400
    if exc.code in {"NotAuthorizedException", "UserNotFoundException"}:
        status_code = 401
    elif exc.code in {"UsernameExistsException"}:
        status_code = 409
    elif exc.code in {"TooManyRequestsException", "LimitExceededException"}:
        status_code = 429
    elif exc.code in {"InternalErrorException"}:
        status_code = 503
    return HTTPException(status_code=status_code, detail=exc.args[0])


@router.post("/signup", response_model=SignupOut)
def signup(payload: SignupIn) -> SignupOut:
    email = normalize_email(payload.email)
    try:
        result = cognito_sign_up(email, payload.password)
    except CognitoClientError as exc:
        raise _translate_cognito_error(exc)

    confirmed = bool(result.get("UserConfirmed"))
    logger.info("Cognito sign-up for %s (confirmed=%s)", email, confirmed)
    return SignupOut(
        status="OK" if confirmed else "CONFIRMATION_REQUIRED",
        user_id=result.get("UserSub"),
    )


@router.post("/confirm", response_model=MessageOut)
def confirm_signup(payload: ConfirmIn) -> MessageOut:
    try:
        cognito_confirm_sign_up(normalize_email(payload.email), payload.code.strip())
    except CognitoClientError as exc:
        raise _translate_cognito_error(exc)
    return MessageOut(message="Account confirmed. You can now sign in.")


@router.post("/login", response_model=LoginOut)
def login(payload: LoginIn, db: Session = Depends(get_db)) -> LoginOut:
    email = normalize_email(payload.email)
    try:
        result = cognito_initiate_auth(email, payload.password)
    except CognitoClientError as exc:
        raise _translate_cognito_error(exc)

    authentication = result.get("AuthenticationResult")
    if not authentication:
        # MFA / new-password challenges are completed against the session store directly.
        return LoginOut(
            status="CHALLENGE",
            challenge_name=result.get("ChallengeName"),
            session=result.get("Session"),
        )

    access_token = authentication.get("AccessToken")
    if not access_token:
        raise HTTPException(status_code=500, detail="Missing AccessToken in Cognito response")

    try:
        attributes = cognito_get_user(access_token)
    except CognitoClientError as exc:
        raise _translate_cognito_error(exc)

    user_id = attributes.get("sub")
    if not user_id:
        raise HTTPException(status_code=500, detail="Cognito user profile missing subject")
    try:
        ensure_user(db, user_id=user_id, email=attributes.get("email") or email)
    except AccountConflictError as exc:
        raise HTTPException(status_code=409, detail=str(exc))

    return LoginOut(
        status="OK",
        tokens=SessionTokens(
            access_token=access_token,
            id_token=authentication.get("IdToken"),
            refresh_token=authentication.get("RefreshToken"),
            expires_in=int(authentication.get("ExpiresIn") or 0),
            token_type=authentication.get("TokenType") or "Bearer",
        ),
    )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
def logout(access_token: str = Depends(get_access_token)) -> None:
    try:
        cognito_global_sign_out(access_token)
    except CognitoClientError as exc:
        raise _translate_cognito_error(exc)


@router.get("/oauth/{provider}")
def oauth_redirect(provider: str) -> RedirectResponse:
    state = secrets.token_urlsafe(32)
    try:
        url = build_oauth_authorize_url(provider, state=state)
    except UnknownOAuthProviderError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except RuntimeError as exc:
        logger.error("OAuth redirect unavailable: %s", exc)
        raise HTTPException(status_code=503, detail="OAuth sign-in is not configured")
    response = RedirectResponse(url=url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    response.set_cookie(
        OAUTH_STATE_COOKIE,
        state,
        max_age=OAUTH_STATE_MAX_AGE_SECONDS,
        httponly=True,
        secure=settings.is_prod,
        samesite="lax",
    )
    return response


@router.get("/session", response_model=SessionOut)
def current_session(identity: Identity = Depends(get_identity)) -> SessionOut:
    return SessionOut(**identity.to_public_dict())

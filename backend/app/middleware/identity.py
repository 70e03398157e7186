from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.auth.cognito import (
    SessionStoreNotConfiguredError,
    SigningKeysUnavailableError,
    TokenExpiredError,
    TokenVerificationError,
    verify_token,
)
from app.auth.identity import Identity
from app.core import database
from app.services.cognito_client import CognitoClientError, cognito_get_user
from app.services.users import AccountConflictError, ensure_user, get_user

logger = logging.getLogger(__name__)

AUTH_BYPASS_PATHS = frozenset(
    [
        "/health",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/billing/plans",
        # Authenticated by the Stripe-Signature header at the route layer.
        "/billing/stripe/webhook",
    ]
)

AUTH_BYPASS_PREFIXES = (
    "/auth/signup",
    "/auth/confirm",
    "/auth/login",
    "/auth/oauth",
)


def is_public_path(path: str) -> bool:
    path = path.rstrip("/") or "/"
    if path in AUTH_BYPASS_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in AUTH_BYPASS_PREFIXES)


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=401,
        content={"error": "UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def register_identity_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def identity_middleware(request: Request, call_next):
        """
        Require a verified Cognito token on every non-public route.

        The token's subject is mapped to a ``users`` row (created on first
        sight) and stored on ``request.state`` along with the Identity.
        """
        request.state.identity = Identity.anonymous()
        request.state.user = None

        # Let CORS preflight reach CORSMiddleware unchanged
        if request.method.upper() == "OPTIONS" or is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("Authorization", "")
        scheme, _, token = auth_header.partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            return _unauthorized("Authorization header with Bearer token required")

        try:
            claims = verify_token(token)
        except TokenExpiredError:
            logger.info("Rejected expired session token")
            return _unauthorized("Access token has expired")
        except (SessionStoreNotConfiguredError, SigningKeysUnavailableError) as exc:
            logger.error("Session store unavailable for token verification: %s", exc)
            return JSONResponse(
                status_code=503,
                content={"error": "SERVICE_UNAVAILABLE", "message": "Authentication is temporarily unavailable"},
            )
        except TokenVerificationError as exc:
            logger.warning("Rejected session token: %s", exc)
            return _unauthorized("Invalid access token")

        user_id = claims.get("sub")
        if not user_id:
            return _unauthorized("Token missing subject")

        db = database.SessionLocal()
        try:
            email = (claims.get("email") or "").strip().lower()
            user = get_user(db, user_id)
            if user is None and not email:
                # Access tokens carry no email; ask the session store.
                try:
                    attributes = cognito_get_user(token)
                except CognitoClientError as exc:
                    logger.error("Cannot fetch Cognito profile for %s: %s", user_id, exc)
                    return _unauthorized("Unable to resolve account")
                email = (attributes.get("email") or "").strip().lower()

            if email:
                user = ensure_user(db, user_id=user_id, email=email)
            elif user is None:
                logger.error("Subject %s has no email attribute; cannot provision", user_id)
                return JSONResponse(
                    status_code=500,
                    content={"error": "INTERNAL_ERROR", "message": "Account profile missing email"},
                )

            request.state.user = user
            request.state.identity = Identity.from_claims(claims, email=user.email)
        except AccountConflictError as exc:
            logger.error("Account provisioning conflict for %s: %s", user_id, exc)
            return JSONResponse(status_code=409, content={"error": "CONFLICT", "message": str(exc)})
        finally:
            db.close()

        return await call_next(request)

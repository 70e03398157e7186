# app/dependencies/auth.py
from __future__ import annotations

from fastapi import HTTPException, Request, status

from app.auth.identity import Identity
from app.models.user import User


def _unauthorized(detail: str = "Could not validate credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_identity(request: Request) -> Identity:
    """Identity resolved by the identity middleware; anonymous when absent."""
    identity = getattr(request.state, "identity", None)
    if isinstance(identity, Identity):
        return identity
    return Identity.anonymous()


def get_current_user(request: Request) -> User:
    user = getattr(request.state, "user", None)
    if user is None:
        raise _unauthorized("Authentication required")
    return user


def get_access_token(request: Request) -> str:
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise _unauthorized("Missing Authorization header")
    return token.strip()

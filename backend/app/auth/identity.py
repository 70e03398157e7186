# app/auth/identity.py
"""
Caller identity resolved from a session-store token.

The user id is the session store's opaque subject, which is also the primary
key of the ``users`` table. Identity is internal; routes expose
``to_public_dict()`` only.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class Identity:
    user_id: str | None = None
    email: str | None = None
    # "cognito" for password logins; the federated provider name (e.g. "Google") for OAuth.
    provider: str | None = None
    is_authenticated: bool = False
    claims: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def anonymous(cls) -> Identity:
        return cls()

    @classmethod
    def from_claims(cls, claims: dict[str, Any], *, email: str | None = None) -> Identity:
        """Build an identity from verified token claims. ``sub`` is required."""
        sub = claims.get("sub")
        if not sub:
            raise ValueError("token claims missing 'sub'")

        resolved_email = email or claims.get("email")
        return cls(
            user_id=sub,
            email=resolved_email.strip().lower() if resolved_email else None,
            provider=_provider_from_claims(claims),
            is_authenticated=True,
            claims=dict(claims),
        )

    def to_public_dict(self) -> dict[str, Any]:
        """Safe subset for API responses; never includes raw claims."""
        return {
            "user_id": self.user_id,
            "email": self.email,
            "provider": self.provider,
            "is_authenticated": self.is_authenticated,
        }


def _provider_from_claims(claims: dict[str, Any]) -> str:
    # Federated users carry an `identities` claim (ID tokens) or a
    # `<Provider>_<id>` username (access tokens).
    identities = claims.get("identities")
    if isinstance(identities, list) and identities:
        name = identities[0].get("providerName") if isinstance(identities[0], dict) else None
        if name:
            return name

    username = claims.get("username") or claims.get("cognito:username") or ""
    prefix, sep, _ = username.partition("_")
    if sep and prefix in {"Google", "GitHub", "Github", "Facebook", "SignInWithApple", "LoginWithAmazon"}:
        return prefix
    return "cognito"

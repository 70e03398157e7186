# app/auth/cognito.py
"""
Verification of Cognito-issued JWTs (access and ID tokens).

Signing keys come from the user pool JWKS endpoint. They are fetched lazily on
first use, cached for COGNITO_JWKS_CACHE_SECONDS, and refetched once when a
token names an unknown ``kid`` (key rotation).
"""
from __future__ import annotations

import json
import logging
import ssl
import threading
import time
from typing import Any
from urllib.request import urlopen

import certifi
from jose import JWTError, jwk, jwt
from jose.exceptions import JWKError

from app.core.config import settings

logger = logging.getLogger(__name__)

JWKS_FETCH_TIMEOUT_SECONDS = 5


class TokenVerificationError(Exception):
    """Token could not be verified; the caller is unauthenticated."""


class TokenExpiredError(TokenVerificationError):
    pass


class SessionStoreNotConfiguredError(TokenVerificationError):
    """Cognito region/pool/client settings are missing."""


class SigningKeysUnavailableError(TokenVerificationError):
    """The JWKS endpoint could not be reached or returned no keys."""


class SigningKeyCache:
    def __init__(self, fetch=None) -> None:
        self._lock = threading.Lock()
        self._keys: dict[str, Any] | None = None
        self._fetched_at = 0.0
        self._fetch = fetch or _fetch_jwks

    def get(self, kid: str) -> Any:
        with self._lock:
            expired = (time.time() - self._fetched_at) > settings.COGNITO_JWKS_CACHE_SECONDS
            if self._keys is None or expired or kid not in self._keys:
                self._load()
            key = self._keys.get(kid) if self._keys else None
            if key is None:
                raise TokenVerificationError(f"Unknown signing key: {kid}")
            return key

    def _load(self) -> None:
        jwks_url = settings.cognito_jwks_url
        if not jwks_url:
            raise SessionStoreNotConfiguredError("Cognito JWKS URL not configured")

        data = self._fetch(jwks_url)
        keys: dict[str, Any] = {}
        for key_data in data.get("keys", []):
            kid = key_data.get("kid")
            if not kid:
                continue
            try:
                keys[kid] = jwk.construct(key_data)
            except JWKError as exc:
                logger.warning("Skipping unusable JWKS key kid=%s: %s", kid, exc)
        if not keys:
            raise SigningKeysUnavailableError("JWKS response contains no usable keys")

        self._keys = keys
        self._fetched_at = time.time()
        logger.info("Cached %d Cognito signing keys", len(keys))

    def clear(self) -> None:
        with self._lock:
            self._keys = None
            self._fetched_at = 0.0


def _fetch_jwks(url: str) -> dict[str, Any]:
    logger.info("Fetching Cognito JWKS from %s", url)
    context = ssl.create_default_context(cafile=certifi.where())
    try:
        with urlopen(url, timeout=JWKS_FETCH_TIMEOUT_SECONDS, context=context) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except (OSError, ValueError) as exc:
        logger.error("Failed to fetch Cognito JWKS: %s", exc)
        raise SigningKeysUnavailableError(f"Failed to fetch JWKS: {exc}") from exc


signing_keys = SigningKeyCache()


def verify_token(token: str) -> dict[str, Any]:
    """
    Verify signature, expiry, issuer and client of a Cognito JWT.

    ID tokens carry the app client in ``aud``; access tokens carry it in
    ``client_id``. Returns the decoded claims.
    """
    issuer = settings.cognito_issuer
    client_id = settings.COGNITO_APP_CLIENT_ID
    if not issuer or not client_id:
        raise SessionStoreNotConfiguredError(
            "Cognito not configured (COGNITO_REGION, COGNITO_USER_POOL_ID, COGNITO_APP_CLIENT_ID required)"
        )

    try:
        kid = jwt.get_unverified_header(token).get("kid")
    except JWTError as exc:
        raise TokenVerificationError(f"Invalid token header: {exc}") from exc
    if not kid:
        raise TokenVerificationError("Token header missing 'kid'")

    key = signing_keys.get(kid)
    try:
        claims = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            issuer=issuer,
            options={"verify_aud": False},
        )
    except jwt.ExpiredSignatureError as exc:
        raise TokenExpiredError("Token has expired") from exc
    except JWTError as exc:
        raise TokenVerificationError(f"Token rejected: {exc}") from exc

    token_use = claims.get("token_use")
    if token_use == "id":
        audience = claims.get("aud")
    elif token_use == "access":
        audience = claims.get("client_id")
    else:
        raise TokenVerificationError(f"Unsupported token_use: {token_use!r}")
    if audience != client_id:
        raise TokenVerificationError("Token was issued for a different app client")

    return claims

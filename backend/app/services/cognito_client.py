"""
Session-store client: thin wrapper over the boto3 Cognito Identity Provider API.

Routes call these helpers instead of boto3 directly so botocore errors never
leak past this module; every failure surfaces as ``CognitoClientError`` with
the Cognito error code preserved.
"""
from __future__ import annotations

from functools import lru_cache
from urllib.parse import urlencode

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from app.core.config import settings

_BOTO_CONFIG = Config(connect_timeout=5, read_timeout=5, retries={"max_attempts": 2})


class CognitoClientError(Exception):
    """Raised when Cognito returns an error."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class UnknownOAuthProviderError(ValueError):
    pass


@lru_cache(maxsize=1)
def _get_cognito_client():
    if not settings.COGNITO_REGION:
        raise RuntimeError("COGNITO_REGION is not configured")
    if not settings.COGNITO_APP_CLIENT_ID:
        raise RuntimeError("COGNITO_APP_CLIENT_ID is not configured")
    return boto3.client("cognito-idp", region_name=settings.COGNITO_REGION, config=_BOTO_CONFIG)


def _translate_error(exc: ClientError | BotoCoreError) -> CognitoClientError:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        return CognitoClientError(
            code=error.get("Code", "CognitoClientError"),
            message=error.get("Message", str(exc)),
        )
    return CognitoClientError(code="InternalErrorException", message=str(exc))


def cognito_sign_up(email: str, password: str) -> dict:
    """Register a user; Cognito sends the confirmation code."""
    client = _get_cognito_client()
    try:
        return client.sign_up(
            ClientId=settings.COGNITO_APP_CLIENT_ID,
            Username=email,
            Password=password,
            UserAttributes=[{"Name": "email", "Value": email}],
        )
    except (ClientError, BotoCoreError) as exc:
        raise _translate_error(exc) from exc


def cognito_confirm_sign_up(email: str, code: str) -> None:
    client = _get_cognito_client()
    try:
        client.confirm_sign_up(
            ClientId=settings.COGNITO_APP_CLIENT_ID,
            Username=email,
            ConfirmationCode=code,
        )
    except (ClientError, BotoCoreError) as exc:
        raise _translate_error(exc) from exc


def cognito_initiate_auth(email: str, password: str) -> dict:
    """USER_PASSWORD_AUTH sign-in."""
    client = _get_cognito_client()
    try:
        return client.initiate_auth(
            ClientId=settings.COGNITO_APP_CLIENT_ID,
            AuthFlow="USER_PASSWORD_AUTH",
            AuthParameters={
                "USERNAME": email,
                "PASSWORD": password,
            },
        )
    except (ClientError, BotoCoreError) as exc:
        raise _translate_error(exc) from exc


def cognito_global_sign_out(access_token: str) -> None:
    """Revoke every refresh token issued to the user."""
    client = _get_cognito_client()
    try:
        client.global_sign_out(AccessToken=access_token)
    except (ClientError, BotoCoreError) as exc:
        raise _translate_error(exc) from exc


def cognito_get_user(access_token: str) -> dict[str, str]:
    """Fetch user attributes using an access token."""
    client = _get_cognito_client()
    try:
        resp = client.get_user(AccessToken=access_token)
    except (ClientError, BotoCoreError) as exc:
        raise _translate_error(exc) from exc

    attributes = {attr["Name"]: attr["Value"] for attr in resp.get("UserAttributes", [])}
    if "Username" not in attributes and resp.get("Username"):
        attributes["Username"] = resp["Username"]
    return attributes


def build_oauth_authorize_url(provider: str, *, state: str) -> str:
    """
    Hosted-UI authorize URL that sends the browser straight to the federated
    provider (``google`` / ``github``) and back to ``{APP_URL}/auth/callback``.
    ``state`` is echoed back to the callback for CSRF checking.
    """
    identity_provider = settings.OAUTH_PROVIDERS.get((provider or "").strip().lower())
    if not identity_provider:
        raise UnknownOAuthProviderError(f"Unsupported OAuth provider: {provider}")
    if not settings.COGNITO_DOMAIN or not settings.COGNITO_APP_CLIENT_ID:
        raise RuntimeError("COGNITO_DOMAIN and COGNITO_APP_CLIENT_ID must be configured for OAuth")

    domain = settings.COGNITO_DOMAIN
    if not domain.startswith("https://"):
        domain = f"https://{domain}"
    query = urlencode(
        {
            "identity_provider": identity_provider,
            "client_id": settings.COGNITO_APP_CLIENT_ID,
            "response_type": "code",
            "scope": "openid email profile",
            "redirect_uri": settings.oauth_redirect_uri,
            "state": state,
        }
    )
    return f"{domain}/oauth2/authorize?{query}"

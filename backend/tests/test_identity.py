# tests/test_identity.py
"""
Unit tests for the Identity model.

These tests verify:
- Identity mapping from verified Cognito claims
- Federated provider detection
- Anonymous identity handling
- Public output never leaks raw claims

Tests do NOT require real Cognito or database access.
"""
from __future__ import annotations

import pytest

from app.auth.identity import Identity


def test_anonymous_identity():
    identity = Identity.anonymous()

    assert identity.user_id is None
    assert identity.email is None
    assert identity.provider is None
    assert identity.is_authenticated is False
    assert identity.claims == {}


def test_identity_from_access_token_claims():
    claims = {"sub": "abc123-def456", "token_use": "access", "username": "abc123-def456"}

    identity = Identity.from_claims(claims, email="Cognito.User@Example.COM")

    assert identity.user_id == "abc123-def456"
    assert identity.email == "cognito.user@example.com"
    assert identity.provider == "cognito"
    assert identity.is_authenticated is True
    assert identity.claims == claims


def test_identity_email_falls_back_to_claim():
    identity = Identity.from_claims({"sub": "abc", "email": " User@Example.com "})

    assert identity.email == "user@example.com"


def test_federated_provider_from_identities_claim():
    claims = {
        "sub": "abc",
        "token_use": "id",
        "identities": [{"providerName": "Google", "userId": "1234"}],
    }

    assert Identity.from_claims(claims).provider == "Google"


def test_federated_provider_from_username_prefix():
    claims = {"sub": "abc", "token_use": "access", "username": "GitHub_98765"}

    assert Identity.from_claims(claims).provider == "GitHub"


def test_identity_requires_subject():
    with pytest.raises(ValueError):
        Identity.from_claims({"email": "user@example.com"})


def test_public_dict_excludes_claims():
    identity = Identity.from_claims({"sub": "abc", "email": "user@example.com", "secret": "x"})

    assert identity.to_public_dict() == {
        "user_id": "abc",
        "email": "user@example.com",
        "provider": "cognito",
        "is_authenticated": True,
    }

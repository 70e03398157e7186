# app/auth/__init__.py
"""
Authentication against the external session store (Cognito).

- identity.py: the caller identity attached to each request
- cognito.py: access/ID token verification against the user pool JWKS
"""
from app.auth.identity import Identity

__all__ = ["Identity"]

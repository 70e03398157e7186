"""
Pydantic schemas for the session-store (Cognito) auth endpoints.
"""
from __future__ import annotations

from typing import Literal, Optional

from pydantic import BaseModel, EmailStr, constr


class SignupIn(BaseModel):
    email: EmailStr
    password: constr(min_length=8, max_length=256)


class SignupOut(BaseModel):
    status: Literal["OK", "CONFIRMATION_REQUIRED"]
    user_id: Optional[str] = None


class ConfirmIn(BaseModel):
    email: EmailStr
    code: constr(min_length=1, max_length=10)


class LoginIn(BaseModel):
    email: EmailStr
    password: constr(min_length=1, max_length=256)


class SessionTokens(BaseModel):
    access_token: str
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: int
    token_type: str = "Bearer"


class LoginOut(BaseModel):
    status: Literal["OK", "CHALLENGE"]
    tokens: Optional[SessionTokens] = None
    challenge_name: Optional[str] = None
    session: Optional[str] = None


class MessageOut(BaseModel):
    message: str


class SessionOut(BaseModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    provider: Optional[str] = None
    is_authenticated: bool

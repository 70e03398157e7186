# app/services/users.py
"""
User account helpers.

Accounts are provisioned just-in-time: the first authenticated request (or a
successful login) for a session-store subject creates the ``users`` row keyed
on that subject. Rows are never deleted here.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.user import User

logger = logging.getLogger(__name__)


class AccountConflictError(ValueError):
    """The email already belongs to a different session-store subject."""


def get_user(db: Session, user_id: str) -> Optional[User]:
    return db.get(User, user_id)


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == normalize_email(email)).first()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def ensure_user(db: Session, *, user_id: str, email: str) -> User:
    """
    Return the account for ``user_id``, creating it on first sight.

    Idempotent. A changed email at the session store is copied onto the row.
    """
    if not user_id:
        raise ValueError("user_id is required")
    normalized_email = normalize_email(email)
    if not normalized_email:
        raise ValueError("email is required")

    user = get_user(db, user_id)
    if user is not None:
        if user.email != normalized_email:
            _ensure_email_free(db, normalized_email, user_id)
            user.email = normalized_email
            db.commit()
            db.refresh(user)
        return user

    _ensure_email_free(db, normalized_email, user_id)
    user = User(id=user_id, email=normalized_email)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # Concurrent first requests for the same subject.
        db.rollback()
        existing = get_user(db, user_id)
        if existing is None:
            raise
        return existing
    db.refresh(user)

    logger.info("Provisioned user account: id=%s email=%s", user.id, normalized_email)
    return user


def _ensure_email_free(db: Session, email: str, user_id: str) -> None:
    owner = get_user_by_email(db, email)
    if owner is not None and owner.id != user_id:
        raise AccountConflictError(
            f"A user with email {email} already exists. "
            "Please contact support to link your accounts."
        )

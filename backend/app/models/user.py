# app/models/user.py
from sqlalchemy import Column, DateTime, String, func
from sqlalchemy.orm import relationship

from app.core.base import Base


class User(Base):
    __tablename__ = "users"

    # Opaque id issued by the session store (Cognito `sub`).
    id = Column(String(255), primary_key=True)

    email = Column(String(255), unique=True, index=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    subscriptions = relationship("Subscription", back_populates="user")

"""
AuthCentral Database Models
User accounts for local and external identities
"""
from enum import Enum

from sqlalchemy import Column, DateTime, Index, String
from sqlalchemy.orm import validates

from .database import Base
from .utils import generate_secure_id, normalize_email, utcnow


class IdentityProvider(str, Enum):
    LOCAL = "local"
    GOOGLE = "google"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_secure_id)
    email = Column(String(255), unique=True, index=True, nullable=False)
    username = Column(String(64), nullable=False)
    name = Column(String(200), nullable=False)
    business = Column(String(100), nullable=False)

    # Null only for accounts created through an external identity provider
    password_hash = Column(String(128), nullable=True)
    provider = Column(String(20), default=IdentityProvider.LOCAL.value, nullable=False)
    provider_subject = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_user_business", "business"),
    )

    @validates("email")
    def _normalize_email(self, key, value):
        return normalize_email(value)

    def to_public_dict(self):
        """Fields safe to return to clients"""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "name": self.name,
            "business": self.business,
            "provider": self.provider,
        }

    def __repr__(self):
        return f"<User {self.id} {self.email}>"


__all__ = ["User", "IdentityProvider"]

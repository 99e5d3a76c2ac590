"""
AuthCentral Pydantic Schemas
Request/response models and the signed identity claims value
"""
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from .models import IdentityProvider

BCRYPT_MAX_PASSWORD_BYTES = 72
DEFAULT_TOKEN_LIFETIME = timedelta(hours=12)


# ============================================================================
# IDENTITY CLAIMS
# ============================================================================

class IdentityClaims(BaseModel):
    """Signed payload of an identity token; immutable once built"""

    model_config = ConfigDict(frozen=True)

    subject: str = Field(..., min_length=1)
    tenant: str = Field(..., min_length=1)
    issued_at: datetime
    expires_at: datetime
    provider: IdentityProvider = IdentityProvider.LOCAL
    token_id: str = Field(default_factory=lambda: uuid.uuid4().hex)

    @field_validator("issued_at", "expires_at")
    @classmethod
    def whole_seconds_utc(cls, v: datetime) -> datetime:
        # JWT NumericDate carries whole seconds
        if v.tzinfo is None:
            v = v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc).replace(microsecond=0)

    @model_validator(mode="after")
    def expiry_after_issue(self):
        if self.expires_at <= self.issued_at:
            raise ValueError("expires_at must be later than issued_at")
        return self

    @classmethod
    def new(
        cls,
        subject: str,
        tenant: str,
        provider: IdentityProvider = IdentityProvider.LOCAL,
        lifetime: timedelta = DEFAULT_TOKEN_LIFETIME,
        now: Optional[datetime] = None,
    ) -> "IdentityClaims":
        issued_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        return cls(
            subject=subject,
            tenant=tenant,
            issued_at=issued_at,
            expires_at=issued_at + lifetime,
            provider=provider,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


# ============================================================================
# USER SCHEMAS
# ============================================================================

def _check_password(v: str) -> str:
    if len(v.encode("utf-8")) > BCRYPT_MAX_PASSWORD_BYTES:
        raise ValueError(f"Password must be at most {BCRYPT_MAX_PASSWORD_BYTES} bytes")
    return v


class SignupRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    password: str = Field(..., min_length=8)
    username: str = Field(..., min_length=3, max_length=64, pattern=r"^[a-zA-Z0-9_.-]+$")
    business: str = Field(..., min_length=1, max_length=100)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, v: str) -> str:
        return _check_password(v)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)
    business: str = Field(..., min_length=1, max_length=100)

    @field_validator("password")
    @classmethod
    def password_fits_bcrypt(cls, v: str) -> str:
        return _check_password(v)


class UserResponse(BaseModel):
    id: str
    email: str
    username: str
    name: str
    business: str
    provider: str


class AuthResponse(BaseModel):
    user: UserResponse
    token: str
    token_type: str = "bearer"
    expires_at: datetime


# ============================================================================
# TOKEN VERIFICATION
# ============================================================================

class TokenVerificationRequest(BaseModel):
    token: Optional[str] = None


class TokenVerificationResponse(BaseModel):
    valid: bool
    claims: Optional[IdentityClaims] = None


class PublicKeyResponse(BaseModel):
    algorithm: str
    public_key: str


# ============================================================================
# SYSTEM
# ============================================================================

class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    database: Dict[str, Any]
    event_queue_depth: int


class MessageResponse(BaseModel):
    message: str


__all__ = [
    "IdentityClaims",
    "SignupRequest",
    "LoginRequest",
    "UserResponse",
    "AuthResponse",
    "TokenVerificationRequest",
    "TokenVerificationResponse",
    "PublicKeyResponse",
    "HealthResponse",
    "MessageResponse",
]

"""
AuthCentral Credentials, Tokens & Session Cookies
Password hashing, RS256 token signing/verification and cookie attributes
"""
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Container, Dict, Optional

import bcrypt
import jwt
from cryptography.hazmat.primitives import serialization
from fastapi import Request, Response

from .config import Settings
from .errors import (
    AuthenticationError,
    ConfigurationError,
    CorruptCredentialError,
    ExpiredTokenError,
    MalformedTokenError,
    RevokedTokenError,
    SignatureInvalidError,
    ValidationError,
)
from .schemas import IdentityClaims

logger = logging.getLogger(__name__)

REQUIRED_CLAIMS = ["sub", "business", "iat", "exp", "jti"]


class CredentialStore:
    """Salted bcrypt password hashes"""

    def __init__(self, rounds: int = 12):
        self.rounds = rounds
        # Verified against when no user matches, so unknown emails cost the same time
        self._dummy_hash = bcrypt.hashpw(b"authcentral-dummy", bcrypt.gensalt(rounds=rounds))

    def hash(self, password: str) -> str:
        if "\x00" in password:
            raise ValidationError("Invalid password", {"password": "must not contain NUL characters"})
        return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, password: str, stored_hash: str) -> bool:
        """Constant-time check of a password against a stored hash"""
        if "\x00" in password:
            return False
        try:
            return bcrypt.checkpw(password.encode("utf-8"), stored_hash.encode("utf-8"))
        except ValueError as e:
            raise CorruptCredentialError(f"Stored password hash is malformed: {e}") from e

    def verify_dummy(self, password: str) -> bool:
        """Burn the same CPU as a real check; always False"""
        bcrypt.checkpw(password.replace("\x00", "").encode("utf-8"), self._dummy_hash)
        return False


class TokenSigner:
    """Holds the private key; the only component able to mint tokens"""

    def __init__(self, private_key_pem: bytes, issuer: str, algorithm: str = "RS256"):
        self._private_key = serialization.load_pem_private_key(private_key_pem, password=None)
        self.issuer = issuer
        self.algorithm = algorithm

    def sign(self, claims: IdentityClaims) -> str:
        payload = {
            "sub": claims.subject,
            "business": claims.tenant,
            "provider": claims.provider.value,
            "iat": int(claims.issued_at.timestamp()),
            "exp": int(claims.expires_at.timestamp()),
            "jti": claims.token_id,
            "iss": self.issuer,
        }
        return jwt.encode(payload, self._private_key, algorithm=self.algorithm, headers={"typ": "JWT"})


class TokenVerifier:
    """Verify-only capability; needs nothing but the public key"""

    def __init__(
        self,
        public_key_pem: bytes,
        issuer: str,
        algorithm: str = "RS256",
        leeway_seconds: int = 30,
        denylist: Optional[Container[str]] = None,
    ):
        self.public_key_pem = public_key_pem
        self._public_key = serialization.load_pem_public_key(public_key_pem)
        self.issuer = issuer
        self.algorithm = algorithm
        self.leeway = leeway_seconds
        self.denylist = denylist

    def verify(self, token: str) -> IdentityClaims:
        """Check signature, expiry and claim structure

        Raises SignatureInvalidError, ExpiredTokenError or MalformedTokenError.
        """
        if not token:
            raise MalformedTokenError("Token is empty")

        try:
            payload = jwt.decode(
                token,
                self._public_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": REQUIRED_CLAIMS},
            )
        except jwt.ExpiredSignatureError:
            raise ExpiredTokenError()
        except jwt.InvalidSignatureError:
            raise SignatureInvalidError("Token signature is invalid")
        except jwt.InvalidTokenError as e:
            raise MalformedTokenError(f"Malformed token: {e}")

        claims = self._claims_from_payload(payload)

        if self.denylist is not None and claims.token_id in self.denylist:
            raise RevokedTokenError("Token has been revoked")

        return claims

    @staticmethod
    def _claims_from_payload(payload: Dict[str, Any]) -> IdentityClaims:
        try:
            return IdentityClaims(
                subject=payload["sub"],
                tenant=payload["business"],
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
                provider=payload.get("provider", "local"),
                token_id=payload["jti"],
            )
        except (ValueError, TypeError, KeyError, OverflowError, OSError) as e:
            # pydantic's ValidationError is a ValueError
            raise MalformedTokenError(f"Malformed token claims: {e}")


class TokenIssuer:
    """Signs and verifies identity tokens"""

    def __init__(self, signer: Optional[TokenSigner], verifier: TokenVerifier, lifetime: timedelta):
        self.signer = signer
        self.verifier = verifier
        self.lifetime = lifetime

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenIssuer":
        security = settings.security
        token_config = security.token_config
        public_key = security.public_key_pem
        if not public_key:
            raise ConfigurationError("No token verification key configured")

        signer = None
        if security.private_key_pem:
            signer = TokenSigner(security.private_key_pem, token_config["issuer"], token_config["algorithm"])
        else:
            logger.warning("No signing key configured; running in verify-only mode")

        verifier = TokenVerifier(
            public_key,
            token_config["issuer"],
            algorithm=token_config["algorithm"],
            leeway_seconds=token_config["leeway_seconds"],
        )
        return cls(signer, verifier, token_config["lifetime"])

    @property
    def can_sign(self) -> bool:
        return self.signer is not None

    def new_claims(self, subject: str, tenant: str, provider) -> IdentityClaims:
        return IdentityClaims.new(subject, tenant, provider=provider, lifetime=self.lifetime)

    def issue(self, claims: IdentityClaims) -> str:
        if not self.signer:
            raise ConfigurationError("Token signing is not available on this instance")
        return self.signer.sign(claims)

    def verify(self, token: str) -> IdentityClaims:
        return self.verifier.verify(token)


@dataclass(frozen=True)
class CookieAttributes:
    """Everything a response needs to set (or clear) the session cookie"""

    key: str
    value: str
    max_age: int
    expires: Optional[datetime]
    domain: Optional[str]
    secure: bool
    path: str = "/"
    httponly: bool = True
    samesite: str = "lax"

    def apply(self, response: Response) -> None:
        response.set_cookie(
            key=self.key,
            value=self.value,
            max_age=self.max_age,
            expires=self.expires,
            path=self.path,
            domain=self.domain,
            secure=self.secure,
            httponly=self.httponly,
            samesite=self.samesite,
        )


class SessionCookieManager:
    """Turns issued tokens into client-held session cookies"""

    def __init__(self, name: str, domain: Optional[str], max_age: timedelta, secure: bool):
        self.name = name
        self.domain = domain
        self.max_age = max_age
        self.secure = secure

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionCookieManager":
        return cls(**settings.cookies.cookie_config)

    def attach_session(self, token: str) -> CookieAttributes:
        max_age = int(self.max_age.total_seconds())
        return CookieAttributes(
            key=self.name,
            value=token,
            max_age=max_age,
            expires=datetime.now(timezone.utc) + self.max_age,
            domain=self.domain,
            secure=self.secure,
        )

    def clear_session(self) -> CookieAttributes:
        """Same cookie, already expired"""
        return replace(
            self.attach_session(""),
            max_age=0,
            expires=datetime(1970, 1, 1, tzinfo=timezone.utc),
        )


def extract_token(request: Request, cookie_name: str) -> Optional[str]:
    """Bearer header first, then the session cookie"""
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip() or None
    return request.cookies.get(cookie_name)


async def get_current_claims(request: Request) -> IdentityClaims:
    """FastAPI dependency for routes that need a verified identity"""
    cookie_name = request.app.state.cookie_manager.name
    token = extract_token(request, cookie_name)
    if not token:
        raise AuthenticationError("Authentication required", "AUTH_REQUIRED")
    return request.app.state.token_verifier.verify(token)


__all__ = [
    "CredentialStore",
    "TokenSigner",
    "TokenVerifier",
    "TokenIssuer",
    "CookieAttributes",
    "SessionCookieManager",
    "extract_token",
    "get_current_claims",
]

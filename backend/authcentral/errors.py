"""
AuthCentral Error Taxonomy
Every failure the service can surface, with the HTTP status it maps to
"""
from typing import Any, Dict, Optional


class AuthServiceError(Exception):
    """Base error for all service failures"""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.message = message
        self.error_code = error_code or self.default_code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "error_code": self.error_code}


class ValidationError(AuthServiceError):
    """Malformed or missing input"""

    status_code = 400
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, fields: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.fields = fields or {}

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["fields"] = self.fields
        return body


class AuthenticationError(AuthServiceError):
    """Bad credentials; the message never says which field was wrong"""

    status_code = 401
    default_code = "INVALID_CREDENTIALS"

    def __init__(self, message: str = "Invalid credentials", error_code: Optional[str] = None):
        super().__init__(message, error_code)


class ConflictError(AuthServiceError):
    status_code = 409
    default_code = "CONFLICT"


class RateLimitExceeded(AuthServiceError):
    """Too many requests for a client key"""

    status_code = 429
    default_code = "RATE_LIMITED"

    def __init__(self, retry_after: int, message: str = "Too many requests. Please try again later."):
        super().__init__(message)
        self.retry_after = max(int(retry_after), 1)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


class TokenError(AuthenticationError):
    """Token failed verification; `kind` lets clients branch on the cause"""

    kind = "malformed"
    default_code = "TOKEN_INVALID"

    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["token_error"] = self.kind
        body["valid"] = False
        return body


class MalformedTokenError(TokenError):
    kind = "malformed"
    default_code = "TOKEN_MALFORMED"


class SignatureInvalidError(TokenError):
    kind = "signature_invalid"
    default_code = "TOKEN_SIGNATURE_INVALID"


class ExpiredTokenError(TokenError):
    kind = "expired"
    default_code = "TOKEN_EXPIRED"

    def __init__(self, message: str = "Token has expired"):
        super().__init__(message)


class RevokedTokenError(TokenError):
    """Token id found on a configured denylist"""

    kind = "revoked"
    default_code = "TOKEN_REVOKED"


class CorruptCredentialError(AuthServiceError):
    """Stored password hash cannot be parsed"""

    default_code = "CORRUPT_CREDENTIAL"


class ExternalServiceError(AuthServiceError):
    status_code = 502
    default_code = "EXTERNAL_SERVICE_ERROR"


class IdentityProviderError(ExternalServiceError):
    """Identity provider failed or refused the authorization artifact"""

    default_code = "IDENTITY_PROVIDER_ERROR"

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


class BrokerUnavailable(ExternalServiceError):
    """Transient broker failure; retried"""

    default_code = "BROKER_UNAVAILABLE"


class PayloadRejected(ExternalServiceError):
    """Broker refused the message; never retried"""

    default_code = "PAYLOAD_REJECTED"


class ConfigurationError(AuthServiceError):
    status_code = 503
    default_code = "NOT_CONFIGURED"


__all__ = [
    "AuthServiceError",
    "ValidationError",
    "AuthenticationError",
    "ConflictError",
    "RateLimitExceeded",
    "TokenError",
    "MalformedTokenError",
    "SignatureInvalidError",
    "ExpiredTokenError",
    "RevokedTokenError",
    "CorruptCredentialError",
    "ExternalServiceError",
    "IdentityProviderError",
    "BrokerUnavailable",
    "PayloadRejected",
    "ConfigurationError",
]

"""
AuthCentral Configuration
Environment driven settings for signing keys, storage, rate limits, events and cookies
"""
import base64
import ipaddress
import logging
import os
from datetime import timedelta
from functools import lru_cache
from typing import Any, Dict, List, Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)


def _env_list(name: str, default: str = "") -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


class SecurityConfig:
    """Signing key material and token policy"""

    def __init__(self, environment: str):
        self.environment = environment
        self._private_key_pem: Optional[bytes] = None
        self._init_signing_key()

    def _init_signing_key(self):
        """Load the RSA signing key, or generate an ephemeral one outside production"""
        encoded = os.getenv("AUTH_PRIVATE_KEY")
        if encoded:
            self._private_key_pem = base64.b64decode(encoded)
            return

        if self.environment == "production" or os.getenv("AUTH_PUBLIC_KEY"):
            # Verify-only deployments and production never mint their own key
            return

        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        self._private_key_pem = key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
        logger.warning("AUTH_PRIVATE_KEY not set; generated an ephemeral signing key")

    @property
    def private_key_pem(self) -> Optional[bytes]:
        return self._private_key_pem

    @property
    def public_key_pem(self) -> Optional[bytes]:
        """Configured public key, else derived from the private key"""
        encoded = os.getenv("AUTH_PUBLIC_KEY")
        if encoded:
            return base64.b64decode(encoded)
        if not self._private_key_pem:
            return None
        private_key = serialization.load_pem_private_key(self._private_key_pem, password=None)
        return private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    @property
    def token_config(self) -> Dict[str, Any]:
        return {
            "algorithm": "RS256",
            "issuer": os.getenv("TOKEN_ISSUER", "authcentral"),
            "lifetime": timedelta(hours=int(os.getenv("TOKEN_TTL_HOURS", "12"))),
            "leeway_seconds": int(os.getenv("TOKEN_LEEWAY_SECONDS", "30")),
        }

    @property
    def bcrypt_rounds(self) -> int:
        return int(os.getenv("BCRYPT_ROUNDS", "12"))


class DatabaseConfig:
    """Database and cache connection settings"""

    @property
    def url(self) -> str:
        return os.getenv("DATABASE_URL", "sqlite:///./authcentral.db")

    @property
    def pool_settings(self) -> Dict[str, Any]:
        if self.url.startswith("sqlite"):
            return {}
        return {
            "pool_size": int(os.getenv("DB_POOL_SIZE", "10")),
            "max_overflow": int(os.getenv("DB_MAX_OVERFLOW", "20")),
            "pool_recycle": int(os.getenv("DB_POOL_RECYCLE", "3600")),
            "pool_pre_ping": True,
        }

    @property
    def redis_url(self) -> Optional[str]:
        return os.getenv("REDIS_URL") or None


class RateLimitConfig:
    @property
    def limit(self) -> int:
        return int(os.getenv("RATE_LIMIT_REQUESTS", "10"))

    @property
    def window_seconds(self) -> int:
        return int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "300"))

    @property
    def trusted_proxies(self) -> List[str]:
        """Proxy addresses or CIDR ranges whose X-Forwarded-For is believed"""
        return _env_list("TRUSTED_PROXIES")


class IdentityProviderConfig:
    """Google OAuth client settings"""

    @property
    def google_config(self) -> Dict[str, Any]:
        return {
            "client_id": os.getenv("GOOGLE_CLIENT_ID", ""),
            "client_secret": os.getenv("GOOGLE_CLIENT_SECRET", ""),
            "redirect_uri": os.getenv(
                "GOOGLE_REDIRECT_URI", "http://localhost:8000/api/users/auth/google/callback"
            ),
            "timeout": float(os.getenv("GOOGLE_TIMEOUT", "10")),
        }

    @property
    def state_config(self) -> Dict[str, Any]:
        return {
            "secret": os.getenv("OAUTH_STATE_SECRET", ""),
            "ttl_seconds": int(os.getenv("OAUTH_STATE_TTL_SECONDS", "600")),
        }

    @property
    def enabled(self) -> bool:
        config = self.google_config
        return bool(config["client_id"] and config["client_secret"])


class EventBrokerConfig:
    """Outbound event broker target and delivery policy"""

    @property
    def sns_config(self) -> Dict[str, Any]:
        return {
            "topic_arn": os.getenv("EVENT_TOPIC_ARN", ""),
            "region_name": os.getenv("AWS_REGION", "us-east-1"),
            "aws_access_key_id": os.getenv("AWS_ACCESS_KEY_ID") or None,
            "aws_secret_access_key": os.getenv("AWS_SECRET_ACCESS_KEY") or None,
        }

    @property
    def delivery_config(self) -> Dict[str, Any]:
        return {
            "max_attempts": int(os.getenv("EVENT_PUBLISH_MAX_ATTEMPTS", "5")),
            "backoff_seconds": float(os.getenv("EVENT_PUBLISH_BACKOFF_SECONDS", "0.5")),
            "backoff_max_seconds": float(os.getenv("EVENT_PUBLISH_BACKOFF_MAX_SECONDS", "8")),
            "queue_size": int(os.getenv("EVENT_QUEUE_SIZE", "1000")),
            "workers": int(os.getenv("EVENT_WORKERS", "2")),
        }

    @property
    def login_event_tenants(self) -> List[str]:
        """Tenants that receive user_loggedIn events; '*' means all"""
        return _env_list("LOGIN_EVENT_TENANTS")


class SessionCookieConfig:
    def __init__(self, environment: str):
        self.environment = environment

    @property
    def cookie_config(self) -> Dict[str, Any]:
        return {
            "name": os.getenv("SESSION_COOKIE_NAME", "token"),
            "domain": os.getenv("SESSION_COOKIE_DOMAIN") or None,
            "max_age": timedelta(days=int(os.getenv("SESSION_COOKIE_DAYS", "7"))),
            "secure": self.environment == "production",
        }


class Settings:
    """Unified application settings"""

    def __init__(self):
        self.environment = os.getenv("ENV", "development")
        self.debug = self.environment == "development"

        self.security = SecurityConfig(self.environment)
        self.database = DatabaseConfig()
        self.rate_limit = RateLimitConfig()
        self.identity_provider = IdentityProviderConfig()
        self.events = EventBrokerConfig()
        self.cookies = SessionCookieConfig(self.environment)

    @property
    def app_config(self) -> Dict[str, Any]:
        return {
            "name": "AuthCentral",
            "version": os.getenv("APP_VERSION", "1.0.0"),
            "environment": self.environment,
            "debug": self.debug,
            "cors_origins": _env_list("CORS_ORIGINS", "http://localhost:3000"),
            "log_level": os.getenv("LOG_LEVEL", "INFO"),
            "docs_url": "/docs" if self.debug else None,
        }

    def validate_configuration(self) -> List[str]:
        """Collect configuration problems instead of failing on the first"""
        errors = []

        if not self.security.private_key_pem and not self.security.public_key_pem:
            errors.append("Missing signing key: set AUTH_PRIVATE_KEY or AUTH_PUBLIC_KEY")

        if self.environment == "production":
            if not os.getenv("DATABASE_URL"):
                errors.append("Missing required environment variable: DATABASE_URL")
            if not self.events.sns_config["topic_arn"]:
                errors.append("Missing required environment variable: EVENT_TOPIC_ARN")
            if not self.cookies.cookie_config["domain"]:
                errors.append("Missing required environment variable: SESSION_COOKIE_DOMAIN")
            if self.identity_provider.enabled and not self.identity_provider.state_config["secret"]:
                errors.append("Missing required environment variable: OAUTH_STATE_SECRET")

        if self.rate_limit.limit < 1 or self.rate_limit.window_seconds < 1:
            errors.append("Rate limit and window must be positive")

        for entry in self.rate_limit.trusted_proxies:
            try:
                ipaddress.ip_network(entry, strict=False)
            except ValueError:
                errors.append(f"Invalid TRUSTED_PROXIES entry: {entry}")

        return errors


@lru_cache()
def get_settings() -> Settings:
    return Settings()


__all__ = [
    "Settings",
    "get_settings",
    "SecurityConfig",
    "DatabaseConfig",
    "RateLimitConfig",
    "IdentityProviderConfig",
    "EventBrokerConfig",
    "SessionCookieConfig",
]

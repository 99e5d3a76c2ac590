"""
Shared fixtures for AuthCentral tests.
"""

from typing import List, Optional

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient

from authcentral.config import Settings
from authcentral.main import create_app
from authcentral.services.event_publisher import EventBroker, OutboundEvent
from authcentral.services.identity_provider import (
    GOOGLE_TOKEN_URL,
    GOOGLE_USERINFO_URL,
    GoogleIdentityProvider,
)

TEST_ENV = {
    "ENV": "testing",
    "DATABASE_URL": "sqlite://",
    "BCRYPT_ROUNDS": "4",
    "EVENT_PUBLISH_MAX_ATTEMPTS": "3",
    "EVENT_PUBLISH_BACKOFF_SECONDS": "0",
    "EVENT_PUBLISH_BACKOFF_MAX_SECONDS": "0",
    "EVENT_WORKERS": "1",
    "LOGIN_EVENT_TENANTS": "acme",
    "LOG_LEVEL": "WARNING",
}

CLEARED_ENV = [
    "AUTH_PRIVATE_KEY",
    "AUTH_PUBLIC_KEY",
    "REDIS_URL",
    "EVENT_TOPIC_ARN",
    "GOOGLE_CLIENT_ID",
    "GOOGLE_CLIENT_SECRET",
    "SESSION_COOKIE_DOMAIN",
    "RATE_LIMIT_REQUESTS",
    "RATE_LIMIT_WINDOW_SECONDS",
    "TOKEN_ISSUER",
    "TOKEN_TTL_HOURS",
    "TOKEN_LEEWAY_SECONDS",
    "SESSION_COOKIE_NAME",
    "TRUSTED_PROXIES",
    "OAUTH_STATE_SECRET",
    "OAUTH_STATE_TTL_SECONDS",
]


class RecordingBroker(EventBroker):
    """Broker double that records deliveries and can fail on demand."""

    def __init__(self, failures: Optional[List[Exception]] = None, always_fail: Optional[Exception] = None):
        self.sent: List[OutboundEvent] = []
        self.failures = list(failures or [])
        self.always_fail = always_fail
        self.attempts = 0
        self.closed = False

    async def send(self, event: OutboundEvent) -> None:
        self.attempts += 1
        if self.always_fail is not None:
            raise self.always_fail
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(event)

    async def close(self) -> None:
        self.closed = True

    def event_types(self) -> List[str]:
        return [event.event_type.value for event in self.sent]


@pytest.fixture(scope="session")
def rsa_keys():
    """PEM-encoded RSA key pair."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return private_pem, public_pem


@pytest.fixture(scope="session")
def other_rsa_keys():
    """A second, unrelated key pair."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture
def test_env(monkeypatch):
    """Isolated environment for Settings."""
    for name in CLEARED_ENV:
        monkeypatch.delenv(name, raising=False)
    for name, value in TEST_ENV.items():
        monkeypatch.setenv(name, value)
    return monkeypatch


@pytest.fixture
def broker():
    return RecordingBroker()


@pytest.fixture
def app(test_env, broker):
    """Application wired to in-memory storage and a recording broker."""
    return create_app(Settings(), event_broker=broker)


@pytest.fixture
def client(app):
    """Test client with lifespan running."""
    with TestClient(app) as test_client:
        yield test_client


def signup_payload(**overrides):
    payload = {
        "name": "Alice Example",
        "email": "alice@example.com",
        "password": "correct-horse-battery",
        "username": "alice",
        "business": "acme",
    }
    payload.update(overrides)
    return payload


PROFILE = {
    "sub": "google-123",
    "email": "Bob@Example.com",
    "email_verified": True,
    "name": "Bob Builder",
}


def google_transport(token_status=200, profile=None, profile_status=200, token_body=None):
    """MockTransport standing in for Google's token and userinfo endpoints."""
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        url = str(request.url)
        if url == GOOGLE_TOKEN_URL:
            body = token_body if token_body is not None else {"access_token": "ya29.token", "token_type": "Bearer"}
            return httpx.Response(token_status, json=body)
        if url == GOOGLE_USERINFO_URL:
            assert request.headers["Authorization"] == "Bearer ya29.token"
            return httpx.Response(profile_status, json=profile if profile is not None else PROFILE)
        return httpx.Response(404)

    transport = httpx.MockTransport(handler)
    transport.calls = calls
    return transport


def make_google_provider(transport):
    return GoogleIdentityProvider(
        client_id="client-id",
        client_secret="client-secret",
        redirect_uri="http://localhost:8000/api/users/auth/google/callback",
        transport=transport,
    )

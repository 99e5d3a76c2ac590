"""
AuthCentral External Identity Provider
Google OAuth authorization-code exchange returning a verified principal
"""
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx
import jwt

from ..auth import CookieAttributes
from ..config import Settings
from ..errors import AuthenticationError, IdentityProviderError
from ..utils import utcnow

logger = logging.getLogger(__name__)

GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://openidconnect.googleapis.com/v1/userinfo"
OAUTH_STATE_AUDIENCE = "authcentral:oauth-state"


@dataclass(frozen=True)
class ExternalPrincipal:
    provider: str
    subject: str
    email: str
    name: str
    email_verified: bool


class GoogleIdentityProvider:
    """Exchanges an authorization code for the caller's verified Google identity"""

    provider = "google"

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["GoogleIdentityProvider"]:
        if not settings.identity_provider.enabled:
            return None
        return cls(**settings.identity_provider.google_config)

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": "openid email profile",
            "state": state,
            "prompt": "select_account",
        }
        return f"{GOOGLE_AUTHORIZE_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> ExternalPrincipal:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            token_data = await self._request(
                client,
                "POST",
                GOOGLE_TOKEN_URL,
                data={
                    "code": code,
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "redirect_uri": self.redirect_uri,
                    "grant_type": "authorization_code",
                },
            )
            access_token = token_data.get("access_token")
            if not access_token:
                raise IdentityProviderError("Identity provider returned no access token", status_code=401)

            profile = await self._request(
                client,
                "GET",
                GOOGLE_USERINFO_URL,
                headers={"Authorization": f"Bearer {access_token}"},
            )

        return self._principal_from_profile(profile)

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Identity provider unreachable: {e}")
            raise IdentityProviderError("Identity provider unavailable") from e

        if response.status_code >= 500:
            logger.error(f"Identity provider error {response.status_code} from {url}")
            raise IdentityProviderError("Identity provider unavailable")
        if response.status_code >= 400:
            logger.warning(f"Identity provider refused request ({response.status_code}) at {url}")
            raise IdentityProviderError("Authorization was rejected by the identity provider", status_code=401)

        try:
            return response.json()
        except ValueError as e:
            raise IdentityProviderError("Identity provider sent an unreadable response") from e

    def _principal_from_profile(self, profile: Dict[str, Any]) -> ExternalPrincipal:
        subject = profile.get("sub")
        email = profile.get("email")
        if not subject or not email:
            raise IdentityProviderError("Identity provider profile is missing subject or email", status_code=401)
        if not profile.get("email_verified", False):
            raise IdentityProviderError("Identity provider email is not verified", status_code=401)

        return ExternalPrincipal(
            provider=self.provider,
            subject=str(subject),
            email=email,
            name=profile.get("name") or email.split("@")[0],
            email_verified=True,
        )


class OAuthStateCodec:
    """Signed `state` values tied to a nonce cookie held by the browser that started sign-in

    A callback is only accepted from the browser that carries the matching nonce,
    so an authorization code minted for someone else cannot be replayed into it.
    """

    cookie_name = "oauth_nonce"
    cookie_path = "/api/users/auth/google"
    algorithm = "HS256"

    def __init__(self, secret: str, ttl_seconds: int = 600, secure: bool = False):
        self._secret = secret
        self.ttl_seconds = ttl_seconds
        self.secure = secure

    @classmethod
    def from_settings(cls, settings: Settings) -> "OAuthStateCodec":
        state_config = settings.identity_provider.state_config
        secret = state_config["secret"]
        if not secret:
            secret = secrets.token_urlsafe(32)
            logger.warning("OAUTH_STATE_SECRET not set; generated an ephemeral state secret")
        return cls(secret, state_config["ttl_seconds"], secure=settings.cookies.cookie_config["secure"])

    def issue(self, tenant: str) -> Tuple[str, CookieAttributes]:
        nonce = secrets.token_urlsafe(24)
        now = utcnow()
        state = jwt.encode(
            {
                "business": tenant,
                "nonce": nonce,
                "aud": OAUTH_STATE_AUDIENCE,
                "iat": now,
                "exp": now + timedelta(seconds=self.ttl_seconds),
            },
            self._secret,
            algorithm=self.algorithm,
        )
        return state, self._cookie(nonce, self.ttl_seconds)

    def verify(self, state: str, nonce: Optional[str]) -> str:
        """Return the tenant carried in `state`; raise AuthenticationError if it is not ours"""
        try:
            payload = jwt.decode(
                state,
                self._secret,
                algorithms=[self.algorithm],
                audience=OAUTH_STATE_AUDIENCE,
                options={"require": ["business", "nonce", "exp"]},
            )
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected sign-in state: {e}")
            raise AuthenticationError("Invalid sign-in state", "OAUTH_STATE_INVALID") from e

        if not nonce or not hmac.compare_digest(str(payload["nonce"]), nonce):
            raise AuthenticationError("Invalid sign-in state", "OAUTH_STATE_INVALID")
        return str(payload["business"])

    def clear_cookie(self) -> CookieAttributes:
        return self._cookie("", 0)

    def _cookie(self, nonce: str, max_age: int) -> CookieAttributes:
        return CookieAttributes(
            key=self.cookie_name,
            value=nonce,
            max_age=max_age,
            expires=None,
            domain=None,
            secure=self.secure,
            path=self.cookie_path,
        )


__all__ = ["ExternalPrincipal", "GoogleIdentityProvider", "OAuthStateCodec"]

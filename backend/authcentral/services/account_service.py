"""
AuthCentral Account Service
Registration, password login and external-identity login; each success issues
a session and hands a lifecycle event to the publisher without waiting on it
"""
import logging
import re
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..auth import CookieAttributes, CredentialStore, SessionCookieManager, TokenIssuer
from ..errors import AuthenticationError, ConfigurationError, ConflictError, CorruptCredentialError
from ..models import IdentityProvider, User
from ..schemas import AuthResponse, IdentityClaims, LoginRequest, SignupRequest, UserResponse
from ..utils import log_security_event, normalize_email, utcnow
from .event_publisher import EventPublisher, EventType, OutboundEvent, TenantEventPolicy
from .identity_provider import ExternalPrincipal

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthResult:
    user: User
    token: str
    claims: IdentityClaims
    cookie: CookieAttributes

    def to_response(self) -> AuthResponse:
        return AuthResponse(
            user=UserResponse(**self.user.to_public_dict()),
            token=self.token,
            expires_at=self.claims.expires_at,
        )


class AccountService:
    """Main authentication flows"""

    def __init__(
        self,
        credentials: CredentialStore,
        token_issuer: TokenIssuer,
        cookie_manager: SessionCookieManager,
        publisher: EventPublisher,
        event_policy: TenantEventPolicy,
    ):
        self.credentials = credentials
        self.token_issuer = token_issuer
        self.cookie_manager = cookie_manager
        self.publisher = publisher
        self.event_policy = event_policy

    async def register(self, db: Session, data: SignupRequest, client_ip: str) -> AuthResult:
        self._require_signing()
        email = normalize_email(data.email)

        if await run_in_threadpool(self._find_by_email, db, email):
            log_security_event("duplicate_registration_attempt", {"email": email, "ip": client_ip})
            raise ConflictError("An account with this email already exists", "EMAIL_EXISTS")

        password_hash = await run_in_threadpool(self.credentials.hash, data.password)
        user = User(
            email=email,
            username=data.username,
            name=data.name,
            business=data.business,
            password_hash=password_hash,
            provider=IdentityProvider.LOCAL.value,
        )
        await run_in_threadpool(self._insert, db, user, client_ip)

        result = self._issue_session(user)
        log_security_event("user_registered", {"user_id": user.id, "ip": client_ip})
        self._emit(EventType.USER_REGISTERED, user, user.business)
        return result

    async def login(self, db: Session, data: LoginRequest, client_ip: str) -> AuthResult:
        self._require_signing()
        email = normalize_email(data.email)
        user = await run_in_threadpool(self._find_by_email, db, email)

        if user is None or not user.password_hash:
            # Same bcrypt cost whether or not the account exists
            await run_in_threadpool(self.credentials.verify_dummy, data.password)
            log_security_event("login_failed", {"email": email, "ip": client_ip, "reason": "unknown_account"})
            raise AuthenticationError()

        try:
            valid = await run_in_threadpool(self.credentials.verify, data.password, user.password_hash)
        except CorruptCredentialError as e:
            logger.error(f"Corrupt credential for user {user.id}: {e.message}")
            log_security_event(
                "login_failed",
                {"user_id": user.id, "ip": client_ip, "reason": "corrupt_credential"},
                level=logging.ERROR,
            )
            raise AuthenticationError()

        if not valid:
            log_security_event("login_failed", {"user_id": user.id, "ip": client_ip, "reason": "invalid_password"})
            raise AuthenticationError()

        await run_in_threadpool(self._record_login, db, user)

        result = self._issue_session(user)
        log_security_event(
            "login_success",
            {"user_id": user.id, "ip": client_ip, "business": user.business, "requested_business": data.business},
        )
        # Events are routed by the account tenant, whatever the caller named
        self._emit(EventType.USER_LOGGED_IN, user, user.business)
        return result

    async def login_external(
        self, db: Session, principal: ExternalPrincipal, tenant: str, client_ip: str
    ) -> AuthResult:
        """Log in with a verified external identity, creating the account on first use"""
        self._require_signing()
        email = normalize_email(principal.email)
        user = await run_in_threadpool(self._find_by_email, db, email)
        created = False

        if user is None:
            user = User(
                email=email,
                username=self._username_from_email(email),
                name=principal.name,
                business=tenant,
                password_hash=None,
                provider=principal.provider,
                provider_subject=principal.subject,
                last_login_at=utcnow(),
            )
            try:
                await run_in_threadpool(self._insert, db, user, client_ip)
                created = True
            except ConflictError:
                # A concurrent callback created it first
                user = await run_in_threadpool(self._find_by_email, db, email)
                if user is None:
                    raise

        if not created:
            await run_in_threadpool(self._record_login, db, user, principal)

        result = self._issue_session(user, provider=IdentityProvider(principal.provider))
        log_security_event(
            "external_login",
            {"user_id": user.id, "ip": client_ip, "provider": principal.provider, "created": created},
        )
        if created:
            self._emit(EventType.USER_REGISTERED, user, user.business)
        else:
            self._emit(EventType.USER_LOGGED_IN, user, user.business)
        return result

    def _require_signing(self) -> None:
        if not self.token_issuer.can_sign:
            raise ConfigurationError("This instance cannot issue sessions")

    @staticmethod
    def _find_by_email(db: Session, email: str) -> Optional[User]:
        return db.query(User).filter(User.email == email).first()

    @staticmethod
    def _insert(db: Session, user: User, client_ip: str) -> None:
        db.add(user)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            log_security_event("duplicate_registration_attempt", {"email": user.email, "ip": client_ip})
            raise ConflictError("An account with this email already exists", "EMAIL_EXISTS")

    @staticmethod
    def _record_login(db: Session, user: User, principal: Optional[ExternalPrincipal] = None) -> None:
        if principal is not None and user.provider_subject is None and user.provider == principal.provider:
            user.provider_subject = principal.subject
        user.last_login_at = utcnow()
        db.commit()

    @staticmethod
    def _username_from_email(email: str) -> str:
        local_part = re.sub(r"[^a-zA-Z0-9_.-]", "", email.split("@")[0])
        return (local_part or "user")[:64]

    def _issue_session(self, user: User, provider: Optional[IdentityProvider] = None) -> AuthResult:
        claims = self.token_issuer.new_claims(
            subject=user.id,
            tenant=user.business,
            provider=provider or IdentityProvider(user.provider),
        )
        token = self.token_issuer.issue(claims)
        return AuthResult(
            user=user,
            token=token,
            claims=claims,
            cookie=self.cookie_manager.attach_session(token),
        )

    def _emit(self, event_type: EventType, user: User, tenant: str) -> None:
        if not self.event_policy.should_publish(event_type, tenant):
            return
        event = OutboundEvent.create(
            event_type,
            tenant,
            {
                "userId": user.id,
                "email": user.email,
                "name": user.name,
                "username": user.username,
            },
        )
        self.publisher.submit(event)


__all__ = ["AuthResult", "AccountService"]

"""
AuthCentral - User Session API
Signup, login, logout and external-identity login
"""
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.orm import Session

from ..auth import get_current_claims
from ..database import get_db
from ..errors import AuthenticationError, ConfigurationError, ValidationError
from ..models import User
from ..ratelimit import rate_limited
from ..schemas import AuthResponse, IdentityClaims, LoginRequest, MessageResponse, SignupRequest, UserResponse
from ..services.account_service import AccountService
from ..services.identity_provider import GoogleIdentityProvider
from ..utils import get_client_ip

router = APIRouter(prefix="/api/users", tags=["users"])


def get_account_service(request: Request) -> AccountService:
    return request.app.state.account_service


def get_identity_provider(request: Request) -> GoogleIdentityProvider:
    provider = request.app.state.identity_provider
    if provider is None:
        raise ConfigurationError("External identity provider is not configured")
    return provider


@router.post(
    "/signup",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limited("signup"))],
)
async def signup(
    data: SignupRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    accounts: AccountService = Depends(get_account_service),
):
    """Create an account and start a session"""
    result = await accounts.register(db, data, get_client_ip(request, request.app.state.trusted_proxies))
    result.cookie.apply(response)
    return result.to_response()


@router.post("/login", response_model=AuthResponse, dependencies=[Depends(rate_limited("login"))])
async def login(
    data: LoginRequest,
    request: Request,
    response: Response,
    db: Session = Depends(get_db),
    accounts: AccountService = Depends(get_account_service),
):
    result = await accounts.login(db, data, get_client_ip(request, request.app.state.trusted_proxies))
    result.cookie.apply(response)
    return result.to_response()


@router.post("/logout", response_model=MessageResponse)
async def logout(request: Request, response: Response):
    """Clear the session cookie; the token itself stays valid until it expires"""
    request.app.state.cookie_manager.clear_session().apply(response)
    return MessageResponse(message="Successfully logged out")


@router.get("/me", response_model=UserResponse)
async def current_user(
    claims: IdentityClaims = Depends(get_current_claims),
    db: Session = Depends(get_db),
):
    user = await run_in_threadpool(db.get, User, claims.subject)
    if user is None:
        raise AuthenticationError("Account no longer exists", "ACCOUNT_NOT_FOUND")
    return UserResponse(**user.to_public_dict())


@router.get("/auth/google", dependencies=[Depends(rate_limited("oauth"))])
async def google_login(
    business: str,
    request: Request,
    provider: GoogleIdentityProvider = Depends(get_identity_provider),
):
    """Send the browser to the provider consent screen; the tenant rides in a signed `state`"""
    if not business.strip():
        raise ValidationError("Missing tenant", {"business": "must not be empty"})

    state, nonce_cookie = request.app.state.oauth_state.issue(business.strip())
    response = RedirectResponse(provider.authorization_url(state=state))
    nonce_cookie.apply(response)
    return response


@router.get("/auth/google/callback", response_model=AuthResponse, dependencies=[Depends(rate_limited("oauth"))])
async def google_callback(
    request: Request,
    code: str = "",
    state: str = "",
    db: Session = Depends(get_db),
    provider: GoogleIdentityProvider = Depends(get_identity_provider),
    accounts: AccountService = Depends(get_account_service),
):
    fields = {}
    if not code:
        fields["code"] = "authorization code is required"
    if not state.strip():
        fields["state"] = "tenant state is required"
    if fields:
        raise ValidationError("Invalid callback parameters", fields)

    state_codec = request.app.state.oauth_state
    tenant = state_codec.verify(state.strip(), request.cookies.get(state_codec.cookie_name))

    principal = await provider.exchange_code(code)
    client_ip = get_client_ip(request, request.app.state.trusted_proxies)
    result = await accounts.login_external(db, principal, tenant, client_ip)

    response = JSONResponse(content=result.to_response().model_dump(mode="json"))
    result.cookie.apply(response)
    state_codec.clear_cookie().apply(response)
    return response

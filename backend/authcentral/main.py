"""
AuthCentral API
Application factory, lifecycle and error handling for the authentication service
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api import tokens, users
from .auth import CredentialStore, SessionCookieManager, TokenIssuer
from .config import Settings, get_settings
from .database import DatabaseManager
from .errors import AuthServiceError, ConfigurationError, RateLimitExceeded
from .ratelimit import RateLimiter, RateLimitStore, build_rate_limit_store
from .schemas import HealthResponse
from .services.account_service import AccountService
from .services.event_publisher import EventBroker, EventPublisher, TenantEventPolicy
from .services.identity_provider import GoogleIdentityProvider, OAuthStateCodec
from .utils import parse_trusted_proxies, setup_logging, utcnow

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events"""
    name = app.state.settings.app_config["name"]
    logger.info(f"🚀 {name} starting up...")

    try:
        app.state.db_manager.initialize()
        logger.info("✅ Database initialized")

        await app.state.publisher.start()
        logger.info("✅ Event publisher started")
    except Exception as e:
        logger.error(f"❌ Startup failed: {e}")
        raise

    yield

    logger.info(f"🛑 {name} shutting down...")
    try:
        await app.state.publisher.stop()
        logger.info("✅ Event publisher drained")

        await app.state.rate_limiter.store.close()
        app.state.db_manager.close()
        logger.info(f"👋 {name} shutdown completed")
    except Exception as e:
        logger.error(f"❌ Shutdown error: {e}")


def _error_response(
    request: Request,
    status_code: int,
    body: Dict[str, Any],
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    content = dict(body)
    content.update(
        {
            "status_code": status_code,
            "timestamp": utcnow().isoformat(),
            "path": request.url.path,
        }
    )
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(AuthServiceError)
    async def auth_service_error_handler(request: Request, exc: AuthServiceError):
        headers = None
        if isinstance(exc, RateLimitExceeded):
            headers = {"Retry-After": str(exc.retry_after)}
        elif exc.status_code == 401:
            headers = {"WWW-Authenticate": "Bearer"}

        if exc.status_code >= 500:
            logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
        return _error_response(request, exc.status_code, exc.to_dict(), headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        fields = {}
        for error in exc.errors():
            loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
            fields[".".join(loc) or "request"] = error.get("msg", "invalid")
        body = {"error": "Invalid request", "error_code": "VALIDATION_ERROR", "fields": fields}
        return _error_response(request, 422, body)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """Custom HTTP exception handler"""
        body = {"error": exc.detail, "error_code": "HTTP_ERROR"}
        return _error_response(request, exc.status_code, body, getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """General exception handler"""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        body = {"error": "Internal server error", "error_code": "INTERNAL_ERROR"}
        return _error_response(request, 500, body)


def create_app(
    settings: Optional[Settings] = None,
    *,
    rate_limit_store: Optional[RateLimitStore] = None,
    event_broker: Optional[EventBroker] = None,
    identity_provider: Optional[GoogleIdentityProvider] = None,
) -> FastAPI:
    """Build the service; collaborators may be injected in place of configured ones"""
    settings = settings or get_settings()
    app_config = settings.app_config
    setup_logging(app_config["log_level"])

    problems = settings.validate_configuration()
    for problem in problems:
        logger.error(f"Configuration error: {problem}")
    if problems and settings.environment == "production":
        raise ConfigurationError("; ".join(problems))

    app = FastAPI(
        title=f"{app_config['name']} API",
        description="Centralized authentication for multi-tenant applications",
        version=app_config["version"],
        docs_url=app_config["docs_url"],
        redoc_url=None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    token_issuer = TokenIssuer.from_settings(settings)
    cookie_manager = SessionCookieManager.from_settings(settings)
    if event_broker is not None:
        publisher = EventPublisher(event_broker, **settings.events.delivery_config)
    else:
        publisher = EventPublisher.from_settings(settings)

    app.state.settings = settings
    app.state.db_manager = DatabaseManager(settings.database.url, settings.database.pool_settings)
    app.state.token_issuer = token_issuer
    app.state.token_verifier = token_issuer.verifier
    app.state.cookie_manager = cookie_manager
    app.state.trusted_proxies = parse_trusted_proxies(settings.rate_limit.trusted_proxies)
    app.state.rate_limiter = RateLimiter(
        rate_limit_store or build_rate_limit_store(settings.database.redis_url),
        limit=settings.rate_limit.limit,
        window_seconds=settings.rate_limit.window_seconds,
    )
    app.state.publisher = publisher
    app.state.identity_provider = identity_provider or GoogleIdentityProvider.from_settings(settings)
    app.state.oauth_state = OAuthStateCodec.from_settings(settings)
    app.state.account_service = AccountService(
        credentials=CredentialStore(rounds=settings.security.bcrypt_rounds),
        token_issuer=token_issuer,
        cookie_manager=cookie_manager,
        publisher=publisher,
        event_policy=TenantEventPolicy(settings.events.login_event_tenants),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_config["cors_origins"],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
        expose_headers=["Retry-After"],
    )

    @app.middleware("http")
    async def security_headers_middleware(request: Request, call_next):
        """Add security headers and flag slow requests"""
        start_time = time.time()
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        if settings.environment == "production":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        process_time = time.time() - start_time
        if process_time > 1.0:
            logger.warning(f"Slow request: {request.method} {request.url.path} took {process_time:.2f}s")
        return response

    register_exception_handlers(app)

    app.include_router(users.router)
    app.include_router(tokens.router)

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health_check(request: Request):
        database = await run_in_threadpool(request.app.state.db_manager.health_check)
        return HealthResponse(
            status="healthy" if database["status"] == "healthy" else "degraded",
            timestamp=utcnow(),
            database=database,
            event_queue_depth=request.app.state.publisher.queue_depth,
        )

    return app


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "authcentral.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.app_config["log_level"].lower(),
    )


if __name__ == "__main__":
    main()

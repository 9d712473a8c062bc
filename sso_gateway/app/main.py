"""
FastAPI SSO Gateway Application Factory
=======================================

Brokers single sign-on between an OIDC identity provider and a set of
product applications.

Architecture:
    Browser → Gateway (this service) → IdP
    Gateway → Product (cookie / ?token= delivery, or back-channel handoff)

Routers:
    - /auth/*       : Login, IdP callback, logout, session token
    - /handoff/*    : Product-side one-time code redemption
    - /api/*        : Token validation, user info, product catalogue
    - /user/*       : Token-authenticated user endpoints
    - /health       : Health check endpoint

Running the Service:
    Development:
        uvicorn sso_gateway.app.main:create_app --factory --reload --port 3000

    Production:
        uvicorn sso_gateway.app.main:create_app --factory --host 0.0.0.0 --port 3000 --workers 4

    Multiple workers need SESSION_BACKEND=redis so that pending logins and
    handoff tickets are visible to every worker.
"""

import logging
import sys
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes import api_router, user_router
from .auth.cookies import CookieDistributor
from .auth.flows import CallbackProcessor, GlobalLogoutCoordinator, LoginInitiator
from .auth.identity import IdentityProvider, OIDCIdentityProvider
from .auth.routes import auth_router
from .auth.tokens import CredentialMinter, TokenValidator
from .config import Settings, get_settings, validate_configuration
from .dependencies import AppState
from .exceptions import StateError, TokenError, UpstreamError
from .handoff.broker import HandoffBroker
from .handoff.routes import handoff_router
from .handoff.store import HandoffTicketStore
from .models import ErrorResponse, HealthResponse
from .sessions import (
    InMemorySessionStore,
    RedisSessionStore,
    ServerSessionMiddleware,
    SessionStore,
)

SERVICE_NAME = "sso-gateway"
SERVICE_VERSION = "1.0.0"

logger = logging.getLogger("sso_gateway.main")


# Configure structured JSON logging
def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def build_session_store(settings: Settings) -> SessionStore:
    if settings.SESSION_BACKEND == "redis":
        return RedisSessionStore.from_url(settings.REDIS_URL)
    return InMemorySessionStore()


def build_state(
    settings: Settings,
    identity_provider: Optional[IdentityProvider] = None,
    session_store: Optional[SessionStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AppState:
    """
    Wire every component from one explicit Settings object.

    Args:
        settings: Validated settings
        identity_provider: Override the OIDC provider (tests)
        session_store: Override the configured store (tests)
        transport: httpx transport for IdP and product calls (tests)
    """
    state = AppState()
    state.settings = settings
    state.session_store = session_store or build_session_store(settings)
    state.identity_provider = identity_provider or OIDCIdentityProvider(settings, transport=transport)
    state.minter = CredentialMinter(settings)
    state.validator = TokenValidator(settings)
    state.distributor = CookieDistributor(settings)
    state.tickets = HandoffTicketStore(state.session_store, settings.HANDOFF_TICKET_TTL_SECONDS)
    state.handoff_broker = HandoffBroker(
        settings, state.minter, state.tickets, transport=transport
    )
    state.login_initiator = LoginInitiator(settings, state.identity_provider)
    state.callback_processor = CallbackProcessor(
        settings,
        state.identity_provider,
        state.minter,
        state.distributor,
        state.handoff_broker,
    )
    state.logout_coordinator = GlobalLogoutCoordinator(
        settings,
        state.identity_provider,
        state.distributor,
        state.handoff_broker,
    )
    return state


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Startup logs the effective configuration; shutdown closes the session
    store connection.
    """
    state: AppState = app.state.app_state
    settings = state.settings

    logger.info(
        "Starting SSO gateway",
        extra={
            "base_url": settings.base_url_str,
            "environment": settings.ENVIRONMENT,
            "session_backend": settings.SESSION_BACKEND,
            "products": [p.id for p in settings.PRODUCTS],
        }
    )

    yield

    logger.info("Shutting down SSO gateway")
    try:
        await state.session_store.close()
    except Exception as e:
        logger.error(f"Error closing session store: {e}")


def create_app(
    settings: Optional[Settings] = None,
    identity_provider: Optional[IdentityProvider] = None,
    session_store: Optional[SessionStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Application factory function.

    Raises:
        ConfigurationError: If the settings cannot run the broker protocol
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    for warning in validate_configuration(settings):
        logger.warning(warning)

    state = build_state(settings, identity_provider, session_store, transport)

    app = FastAPI(
        title="SSO Gateway",
        description="Single sign-on broker for product applications",
        version=SERVICE_VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.app_state = state

    app.add_middleware(
        ServerSessionMiddleware,
        store=state.session_store,
        cookie_name=settings.SESSION_COOKIE_NAME,
        ttl_seconds=settings.SESSION_TTL_SECONDS,
        secure=settings.is_production or settings.base_url_str.startswith("https://"),
    )

    origins = settings.allowed_origins_list
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info(
            f"{request.method} {request.url.path} {response.status_code}",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started) * 1000, 1),
            }
        )
        return response

    app.include_router(auth_router)
    app.include_router(handoff_router)
    app.include_router(api_router)
    app.include_router(user_router)

    @app.get("/health", tags=["System"], response_model=HealthResponse)
    async def health_check():
        return HealthResponse(status="ok", service=SERVICE_NAME, version=SERVICE_VERSION)

    @app.get("/", tags=["System"])
    async def root() -> Dict[str, Any]:
        """Service metadata and available endpoints."""
        return {
            "service": SERVICE_NAME,
            "version": SERVICE_VERSION,
            "description": "Single sign-on broker for product applications",
            "endpoints": {
                "health": "/health",
                "docs": "/docs",
                "login": "/auth/login",
                "logout": "/auth/logout",
                "validate": "/api/validate-token",
                "products": "/api/products",
            },
        }

    # ------------------------------------------------------------------
    # Exception handlers
    # ------------------------------------------------------------------

    @app.exception_handler(TokenError)
    async def token_error_handler(request: Request, exc: TokenError) -> JSONResponse:
        logger.info(
            f"Token rejected: {exc.kind.value}",
            extra={"path": request.url.path, "kind": exc.kind.value},
        )
        body = ErrorResponse(error="invalid_token", kind=exc.kind.value, message=str(exc))
        return JSONResponse(
            status_code=401,
            content=body.model_dump(),
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(StateError)
    async def state_error_handler(request: Request, exc: StateError) -> JSONResponse:
        logger.warning(f"State error: {exc}", extra={"path": request.url.path})
        body = ErrorResponse(error="invalid_state", message=str(exc))
        return JSONResponse(status_code=400, content=body.model_dump())

    @app.exception_handler(UpstreamError)
    async def upstream_error_handler(request: Request, exc: UpstreamError) -> JSONResponse:
        logger.error(
            f"Upstream failure: {exc}",
            extra={"path": request.url.path, "upstream": exc.upstream},
        )
        body = ErrorResponse(error="upstream_unavailable", message="Please try again")
        return JSONResponse(status_code=502, content=body.model_dump())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "exception_type": type(exc).__name__
            },
            exc_info=True
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL.upper() == "DEBUG" else None
            }
        )

    return app


if __name__ == "__main__":
    """
    Direct execution entry point: python -m sso_gateway.app.main
    """
    settings = get_settings()

    uvicorn.run(
        "sso_gateway.app.main:create_app",
        factory=True,
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower()
    )

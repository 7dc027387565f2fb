"""
api/main.py -- FastAPI application entry point for TenantGate.

Exposes the authorization and token services over HTTP: OAuth login,
session handling, access/refresh tokens, admin invitation management and
stored provider connections.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. SessionMiddleware     -- signed cookie for OAuth state and the session payload

Lifespan opens the AuthStore and builds the services on startup, and
disposes the store on shutdown.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.openapi.docs import get_redoc_html, get_swagger_ui_html
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.admin import router as admin_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.connections import router as connections_router
from auth.admin import AdminService
from auth.authorization import AuthorizationService
from auth.connections import ConnectionService
from auth.dependencies import get_current_user
from auth.errors import (
    AccountExpiredError,
    AuthorizationError,
    ConcurrencyConflictError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidIdentityError,
    InvalidInvitationError,
    NotFoundError,
    TokenExpiredError,
    TokenRevokedError,
    TooManyActiveTokensError,
    UnauthenticatedError,
)
from auth.models import AppUser
from auth.oauth import oauth as oauth_client
from auth.store import AuthStore
from auth.tokens import TokenService
from core.config import get_settings

__version__ = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("tenantgate.api")

settings = get_settings()

# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store, build the services, and close the store on shutdown.

    Services share the one AuthStore; each request joins its own transaction
    through the store's context-local connection, so sharing is safe.
    """
    logger.info("TenantGate API starting up")
    cfg = get_settings()
    store = AuthStore(cfg.database_url)
    app.state.store = store
    app.state.authorization = AuthorizationService(store)
    app.state.tokens = TokenService(
        store,
        cfg.secret_key,
        issuer=cfg.token_issuer,
        audience=cfg.token_audience,
        max_active_refresh_tokens=cfg.max_active_refresh_tokens,
        redeem_access_seconds=cfg.refresh_redeem_access_seconds,
    )
    app.state.admin = AdminService(store)
    app.state.connections = ConnectionService(store)
    app.state.oauth = oauth_client
    logger.info("Auth store initialized (%s)", cfg.database_url.split("?")[0])

    yield

    store.close()
    logger.info("TenantGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="TenantGate API",
    description="Multi-tenant OAuth admission, sessions, and access/refresh tokens.",
    version=__version__,
    lifespan=lifespan,
    # Built-in /docs and /redoc are replaced below by auth-protected routes.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the existing stack, so registration runs innermost
# first: Session, SlowAPI, CORS, then TrustedHost on the outside.
# ---------------------------------------------------------------------------

# authlib keeps the OAuth state between redirect and callback in this session;
# after login it also carries the {"uid", "roles"} payload.
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.secret_key,
    session_cookie="tenantgate_session",
    same_site="lax",
    https_only=settings.secure_cookies,
)

app.add_middleware(SlowAPIMiddleware)
app.state.limiter = limiter

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """One access-log line per request; client errors and failures at WARNING."""
    start = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - start) * 1000
    level = logging.WARNING if response.status_code >= 400 else logging.INFO
    logger.log(
        level,
        "%s %s -> %d in %.1fms (client %s)",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
        request.client.host if request.client else "-",
    )
    return response


# ---------------------------------------------------------------------------
# Routers and auth-protected API documentation
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(admin_router, prefix="/api/v1", tags=["Admin"])
app.include_router(connections_router, prefix="/api/v1", tags=["Connections"])


@app.get("/docs", include_in_schema=False)
async def docs(user: AppUser = Depends(get_current_user)):
    """Swagger UI for signed-in users only."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="TenantGate API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: AppUser = Depends(get_current_user)):
    return get_redoc_html(openapi_url="/openapi.json", title="TenantGate API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves as {"error": {"code", "message", "detail"?}} so clients
# branch on error.code, never on the status line alone.
# ---------------------------------------------------------------------------

# Most specific first; the first isinstance() match wins.
_ERROR_STATUS: tuple[tuple[type[AuthorizationError], int], ...] = (
    (InvalidIdentityError, 400),
    (InvalidArgumentError, 400),
    (InvalidInvitationError, 400),
    (UnauthenticatedError, 401),
    (TokenRevokedError, 401),
    (TokenExpiredError, 401),
    (AccountExpiredError, 403),
    (ForbiddenError, 403),
    (NotFoundError, 404),
    (ConcurrencyConflictError, 409),
    (TooManyActiveTokensError, 409),
)


def status_for(exc: AuthorizationError) -> int:
    """HTTP status for an auth failure; unknown subclasses are a 400."""
    for exc_type, status in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status
    return 400


def _error_response(status: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status, content=body.model_dump(exclude_none=True))


@app.exception_handler(AuthorizationError)
async def authorization_error_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
    """Map every auth-layer failure to its status with a stable error code."""
    status = status_for(exc)
    logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc.message)
    return _error_response(status, exc.code, exc.message)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    response = _error_response(429, "rate_limited", "Too many requests.", detail=str(exc.detail))
    response.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(422, "validation_error", "Request validation failed.", detail=str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Pass structured {"code", "message"} details through; wrap plain strings."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _error_response(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort. The exception text goes to the log, never to the client."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _error_response(500, "internal_error", "An unexpected error occurred.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Registered on the app itself so it answers even if a router fails to load.
# No rate limit: load balancers poll it.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    try:
        db_ok = request.app.state.store.ping()
    except SQLAlchemyError:
        logger.exception("Health check: database unreachable")
        db_ok = False
    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=__version__,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )

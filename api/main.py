"""
api/main.py -- FastAPI application entry point for Keyhold.

Exposes the identity core over HTTP: the JSON API under /api/v1 and the
OAuth 2.0 wire endpoints (/oauth/authorize, /oauth/token,
/oauth/validate_token) at the site root.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (credential store, caches, managers, purge task)
and shutdown (cancel purge task, close DB connection) symmetrically.
"""

from __future__ import annotations

import asyncio
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

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.oauth import router as oauth_router
from api.routes.v1.auth import router as auth_router
from api.routes.v1.oauth_apps import router as oauth_apps_router
from api.routes.v1.projects import router as projects_router
from api.routes.v1.users import router as users_router
from auth.accounts import AccountManager
from auth.dependencies import get_current_user
from auth.models import User
from auth.oauth import OAuthProvider
from auth.projects import ProjectManager
from auth.sessions import SessionManager
from auth.store import CredentialStore
from cache.store import ProjectCache, UserCache
from core.config import get_settings
from core.errors import IdentityError, OAuthError

API_VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("keyhold.api")

_cfg = get_settings()

# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


def init_state(app: FastAPI, store: CredentialStore) -> None:
    """Build the caches and managers around store and attach them to app.state.

    Shared by the real lifespan and the test fixtures so both wire the
    object graph the same way. One UserCache instance is shared by every
    manager; two caches would invalidate independently and drift.
    """
    users: UserCache[User] = UserCache(store.get_user_by_id)
    projects_cache = ProjectCache(store.list_projects)
    app.state.store = store
    app.state.users = users
    app.state.projects_cache = projects_cache
    app.state.sessions = SessionManager(store, users)
    app.state.accounts = AccountManager(store, users)
    app.state.projects = ProjectManager(store, projects_cache)
    app.state.oauth = OAuthProvider(store, users)


# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired authorization codes and access tokens periodically.

    CancelledError from task.cancel() during shutdown propagates out of
    asyncio.sleep and unwinds the coroutine cleanly. A failed sweep is logged
    and retried on the next interval.
    """
    while True:
        await asyncio.sleep(_cfg.purge_interval_seconds)
        try:
            app.state.oauth.purge_expired()
        except SQLAlchemyError:
            logger.exception("Expired-credential purge failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The purge task is started last because it references
    app.state.oauth.
    """
    logger.info("Keyhold API starting up")
    store = CredentialStore(_cfg.database_url) if _cfg.database_url else CredentialStore()
    init_state(app, store)
    logger.info("Credential store and caches initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("Keyhold API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Keyhold API",
    description="Accounts, sessions, permission-tagged projects, and an OAuth 2.0 authorization-code provider.",
    version=API_VERSION,
    lifespan=lifespan,
    # Disable built-in /docs and /redoc so we can add auth protection.
    docs_url=None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Register in the order you want the request to encounter them:
# TrustedHost -> CORS -> SlowAPI.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_cfg.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cfg.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
app.include_router(users_router, prefix="/api/v1", tags=["Users"])
app.include_router(projects_router, prefix="/api/v1", tags=["Projects"])
app.include_router(oauth_apps_router, prefix="/api/v1", tags=["OAuth Applications"])
# The OAuth wire endpoints live at the site root; third-party clients hard-code them.
app.include_router(oauth_router, tags=["OAuth 2.0"])


# ---------------------------------------------------------------------------
# Auth-protected API documentation
# ---------------------------------------------------------------------------


@app.get("/docs", include_in_schema=False)
async def docs(user: User = Depends(get_current_user)):
    """Swagger UI -- requires authentication."""
    return get_swagger_ui_html(openapi_url="/openapi.json", title="Keyhold API")


@app.get("/redoc", include_in_schema=False)
async def redoc(user: User = Depends(get_current_user)):
    """ReDoc UI -- requires authentication."""
    return get_redoc_html(openapi_url="/openapi.json", title="Keyhold API")


# ---------------------------------------------------------------------------
# Exception handlers
#
# Every /api/v1 failure uses the ErrorResponse envelope. OAuthError keeps the
# RFC 6749 {error, error_description} body that third-party clients parse.
# ---------------------------------------------------------------------------


def _envelope(status_code: int, detail: ErrorDetail) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=detail).model_dump())


@app.exception_handler(IdentityError)
async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
    """Map a typed failure from auth/ to its status code and envelope."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", type(exc).__name__, request.method, request.url.path, exc.message)
        return _envelope(exc.status_code, ErrorDetail(code=exc.code, message=exc.default_message))
    return _envelope(exc.status_code, ErrorDetail(code=exc.code, message=exc.message, field=exc.field))


@app.exception_handler(OAuthError)
async def oauth_error_handler(request: Request, exc: OAuthError) -> JSONResponse:
    """RFC 6749 section 5.2 error response. Never cached."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={"Cache-Control": "no-store", "Pragma": "no-cache"},
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = _envelope(
        429,
        ErrorDetail(
            code="rate_limited",
            message="Too many requests, please try again later.",
            detail=str(exc),
        ),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with structured error when request body or query params fail validation.

    Malformed input is the same client error as a field that fails the
    account rules, so both share the validation_error envelope.
    """
    errors = exc.errors()
    field = None
    if errors:
        loc = [str(part) for part in errors[0].get("loc", ()) if part not in ("body", "query", "path")]
        field = loc[-1] if loc else None
    return _envelope(
        400,
        ErrorDetail(
            code="validation_error",
            message="Request validation failed.",
            detail=str(errors),
            field=field,
        ),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return _envelope(exc.status_code, ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail)))


@app.exception_handler(SQLAlchemyError)
async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """A store failure that escaped the managers. Logged in full, reported generically."""
    logger.exception("Store failure on %s %s", request.method, request.url.path)
    return _envelope(500, ErrorDetail(code="internal_error", message="An unexpected error occurred."))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return _envelope(500, ErrorDetail(code="internal_error", message="An unexpected error occurred."))


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return liveness plus a database round-trip check."""
    try:
        database = "ok" if request.app.state.store.ping() else "error"
    except SQLAlchemyError:
        logger.exception("Health check: database ping failed")
        database = "error"
    return HealthResponse(
        status="healthy" if database == "ok" else "degraded",
        version=API_VERSION,
        components={"app": "ok", "database": database},
    )

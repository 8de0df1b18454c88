"""
api/main.py -- FastAPI application entry point for AuthGate.

Exposes the authentication core (captcha challenges, registration, login,
password change, token validation) over HTTP. The transport only maps typed
outcomes from auth/ to JSON responses; all decisions live in auth/.

Run with:      uvicorn asgi:app --reload

Middleware stack (Starlette makes the last registered the outermost):
  1. log_requests          -- one access log line per request
  2. auth_disabled_guard   -- 503 on auth/captcha routes when AUTH_ENABLED=false
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins
  5. TrustedHostMiddleware -- rejects requests with unexpected Host headers

Lifespan opens the StoreClient and builds AuthServices on startup and closes
the client on shutdown. When auth is disabled no store is opened at all.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from api.routes.v1.captcha import router as captcha_router
from auth.errors import (
    AccountLocked,
    AuthError,
    ChallengeFailed,
    InvalidCredentials,
    InvalidInput,
    NotFound,
    RateLimited,
    RegistrationDisabled,
    TokenInvalid,
    UsernameTaken,
    WeakPassword,
)
from auth.service import AuthServices
from auth.store import StoreClient
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
logger = logging.getLogger("authgate.api")

_settings = get_settings()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the auth store on startup and close it on shutdown."""
    logger.info("AuthGate API starting up")
    app.state.settings = _settings
    if _settings.auth_enabled:
        client = StoreClient(_settings.database_url)
        app.state.auth = AuthServices.from_settings(_settings, client)
        logger.info(
            "Auth initialized (registration=%s, lockout=%d/%dmin)",
            _settings.allow_registration,
            _settings.lockout_max_failures,
            _settings.lockout_minutes,
        )
    else:
        logger.warning("Auth disabled -- auth and captcha routes will answer 503")

    yield

    if getattr(app.state, "auth", None) is not None:
        app.state.auth.close()
    logger.info("AuthGate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="AuthGate API",
    description="Username/password authentication with captcha, progressive lockout and revocable tokens.",
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


# ---------------------------------------------------------------------------
# Disabled-auth guard
# ---------------------------------------------------------------------------

_GUARDED_PREFIXES = ("/api/v1/auth/", "/api/v1/captcha/")
_ALWAYS_OPEN = ("/api/v1/auth/config",)


@app.middleware("http")
async def auth_disabled_guard(request: Request, call_next):
    """Answer 503 on auth and captcha routes when AUTH_ENABLED=false.

    /api/v1/auth/config stays reachable so clients can discover that auth is
    off and hide the login form.
    """
    settings = getattr(request.app.state, "settings", None)
    path = request.url.path
    if settings is not None and not settings.auth_enabled:
        if path.startswith(_GUARDED_PREFIXES) and path not in _ALWAYS_OPEN:
            return JSONResponse(
                status_code=503,
                content=ErrorResponse(
                    error=ErrorDetail(code="auth_disabled", message="Authentication is not enabled.")
                ).model_dump(),
            )
    return await call_next(request)


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


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
app.include_router(captcha_router, prefix="/api/v1", tags=["Captcha"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

_AUTH_ERROR_STATUS: dict[type[AuthError], int] = {
    InvalidInput: 400,
    WeakPassword: 400,
    ChallengeFailed: 400,
    InvalidCredentials: 401,
    TokenInvalid: 401,
    RegistrationDisabled: 403,
    NotFound: 404,
    UsernameTaken: 409,
    AccountLocked: 423,
    RateLimited: 429,
}


def auth_error_status(exc: AuthError) -> int:
    for cls in type(exc).__mro__:
        if cls in _AUTH_ERROR_STATUS:
            return _AUTH_ERROR_STATUS[cls]
    return 400


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render a typed auth outcome. Lock and throttle outcomes carry Retry-After."""
    response = JSONResponse(
        status_code=auth_error_status(exc),
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message)).model_dump(),
    )
    if isinstance(exc, AccountLocked):
        response.headers["Retry-After"] = str(exc.remaining_seconds)
    elif isinstance(exc, RateLimited):
        response.headers["Retry-After"] = str(exc.retry_after)
    elif isinstance(exc, TokenInvalid):
        response.headers["WWW-Authenticate"] = "Bearer"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a slowapi limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests.",
                detail=str(exc),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions.

    When detail is already a structured dict, use it directly as the error
    field rather than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors, including store outages.

    The raw exception is logged server-side only; the client receives a
    generic message.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable, never rate limited
# and never blocked by the disabled-auth guard.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", include_in_schema=True, tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version and whether auth is enabled."""
    settings = getattr(request.app.state, "settings", _settings)
    return HealthResponse(version=__version__, auth_enabled=settings.auth_enabled)

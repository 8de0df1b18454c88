"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  GET  /api/v1/auth/config                     -- public auth configuration
  POST /api/v1/auth/register                   -- captcha + register; returns token
  POST /api/v1/auth/login                      -- captcha + login; returns token
  GET  /api/v1/auth/me                         -- current account (requires token)
  POST /api/v1/auth/change-password            -- new password; returns new token
  POST /api/v1/auth/users/{id}/revoke-tokens   -- bump token_version (admin only)
  GET  /api/v1/auth/login-failures             -- failed-login audit log (admin only)

Security:
  [H2] POST /login is rate-limited per IP by slowapi (LOGIN_RATE_LIMIT).
  [C1] CredentialAuthenticator.login() equalizes timing for unknown usernames.
  [M5] Cache-Control: no-store on every response that carries a token.
  Captcha is verified BEFORE the credentials are looked at. verify() consumes
  the challenge whatever the outcome, so a captcha cannot be replayed to
  brute-force a password.

Every expected failure is raised as an auth.errors.AuthError subclass and
rendered by the handler in api/main.py.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from api.limiter import client_ip, limiter
from api.models import (
    AuthConfigResponse,
    AuthResponse,
    ChangePasswordRequest,
    LoginFailureRow,
    LoginRequest,
    RegisterRequest,
    RevokeResponse,
    TokenResponse,
    UserView,
)
from auth.dependencies import get_auth_services, get_current_account, require_admin
from auth.errors import ChallengeFailed
from auth.models import Account
from auth.service import AuthServices
from auth.store import MAX_ROW_ID
from core.config import get_settings

logger = logging.getLogger("authgate.api.auth")

# Auth policy:
# - GET  /auth/config:                      public -- login page reads the policy
# - POST /auth/register, /auth/login:       public, captcha required
# - GET  /auth/me, POST /auth/change-password: requires token (get_current_account)
# - POST /auth/users/{id}/revoke-tokens:    requires admin (require_admin)
# - GET  /auth/login-failures:              requires admin (require_admin)
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _verify_captcha(services: AuthServices, captcha_id: int, captcha_code: str) -> None:
    if not services.challenges.verify(captcha_id, captcha_code):
        raise ChallengeFailed()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/config", response_model=AuthConfigResponse)
def auth_config(request: Request) -> AuthConfigResponse:
    """Return whether auth is enabled and, if so, the registration/password policy."""
    settings = request.app.state.settings
    if not settings.auth_enabled:
        return AuthConfigResponse(enabled=False)
    return AuthConfigResponse(
        enabled=True,
        allow_registration=settings.allow_registration,
        password_min_length=settings.password_min_length,
        password_require_alnum=settings.password_require_alnum,
    )


@router.post("/auth/register", response_model=AuthResponse)
def register(request: Request, response: Response, body: RegisterRequest) -> AuthResponse:
    """Verify the captcha, create the account and return a token for it."""
    services = get_auth_services(request)
    _verify_captcha(services, body.captcha_id, body.captcha_code)
    result = services.authenticator.register(body.username, body.password)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AuthResponse(
        token=result.token,
        expires_in=services.tokens.expire_seconds,
        user=UserView.from_public(result.user),
    )


@router.post("/auth/login", response_model=AuthResponse)
@limiter.limit(_login_rate_limit)  # [H2] must be BELOW @router so the registered endpoint is the limited one
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Verify the captcha, then the credentials, and return a fresh token.

    Unknown username and wrong password produce the same invalid_credentials
    error. A locked account answers account_locked even for the right password.
    """
    services = get_auth_services(request)
    _verify_captcha(services, body.captcha_id, body.captcha_code)
    result = services.authenticator.login(body.username, body.password, client_ip(request))
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return AuthResponse(
        token=result.token,
        expires_in=services.tokens.expire_seconds,
        user=UserView.from_public(result.user),
    )


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserView)
def me(current: Account = Depends(get_current_account)) -> UserView:
    """Return the public view of the account behind the presented token."""
    return UserView.from_public(current.public_view())


@router.post("/auth/change-password", response_model=TokenResponse)
def change_password(
    request: Request,
    response: Response,
    body: ChangePasswordRequest,
    current: Account = Depends(get_current_account),
) -> TokenResponse:
    """Change the caller's password. Every previously issued token stops working."""
    services = get_auth_services(request)
    token = services.authenticator.change_password(current.id, body.old_password, body.new_password)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokenResponse(token=token, expires_in=services.tokens.expire_seconds)


# ---------------------------------------------------------------------------
# Administration (admin only)
# ---------------------------------------------------------------------------


@router.post("/auth/users/{user_id}/revoke-tokens", response_model=RevokeResponse)
def revoke_tokens(
    request: Request,
    user_id: int = Path(ge=1, le=MAX_ROW_ID),
    current: Account = Depends(require_admin),
) -> RevokeResponse:
    """Invalidate every outstanding token of the target account."""
    services = get_auth_services(request)
    version = services.authenticator.revoke_tokens(user_id)
    logger.info("Admin %d revoked tokens of account %d", current.id, user_id)
    return RevokeResponse(user_id=user_id, token_version=version)


@router.get("/auth/login-failures", response_model=list[LoginFailureRow])
def login_failures(
    request: Request,
    limit: int = Query(default=50, ge=1, le=500),
    username: str | None = Query(default=None, max_length=191),
    current: Account = Depends(require_admin),
) -> list[LoginFailureRow]:
    """Return recent failed login attempts, newest first."""
    services = get_auth_services(request)
    return [LoginFailureRow.from_record(r) for r in services.failures.recent(limit=limit, username=username)]

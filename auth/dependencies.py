"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Tokens arrive as `Authorization: Bearer <token>` (scheme matched
case-insensitively). TokenCodec.validate() does the signature, expiry and
token_version checks; this module only extracts the token and converts a
None result into TokenInvalid, which api/main.py renders as 401.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises TokenInvalid.
require_admin() wraps get_current_account() and raises HTTP 403 if not admin.

Layer rule: may import from fastapi (Depends/HTTPException/Request) because
this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import TokenInvalid
from auth.models import Account
from auth.service import AuthServices


def get_auth_services(request: Request) -> AuthServices:
    return request.app.state.auth


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def try_get_current_account(request: Request) -> Account | None:
    """Validate the bearer token. Returns the current Account or None. Never raises."""
    token = bearer_token(request)
    if token is None:
        return None
    return get_auth_services(request).tokens.validate(token)


def get_current_account(request: Request) -> Account:
    """Require a valid token. Use as a FastAPI dependency:

    @router.get("/protected")
    def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise TokenInvalid()
    return account


def require_admin(request: Request) -> Account:
    """Require an admin account. TokenInvalid if unauthenticated, HTTP 403 if not admin."""
    account = get_current_account(request)
    if not account.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return account

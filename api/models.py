"""
API request and response models for AuthGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import FailureRecord, PublicUser
from auth.store import MAX_ROW_ID

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CredentialsWithCaptcha(BaseModel):
    """Shared body for POST /auth/register and POST /auth/login.

    Username whitespace is trimmed by the authenticator, not here, so an
    all-blank username reaches it and fails with invalid_input.
    """

    username: str = Field(min_length=1, max_length=191)
    password: str = Field(min_length=1, max_length=255)
    captcha_id: int = Field(ge=1, le=MAX_ROW_ID)
    captcha_code: str = Field(min_length=1, max_length=16)


class RegisterRequest(CredentialsWithCaptcha):
    """Request body for POST /api/v1/auth/register."""


class LoginRequest(CredentialsWithCaptcha):
    """Request body for POST /api/v1/auth/login."""


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    old_password: str = Field(min_length=1, max_length=255)
    new_password: str = Field(min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserView(BaseModel):
    """Public account view. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    is_admin: bool
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_public(cls, user: PublicUser) -> "UserView":
        return cls(
            id=user.id,
            username=user.username,
            is_admin=user.is_admin,
            last_login_at=user.last_login_at,
        )


class AuthResponse(BaseModel):
    """Response for successful register and login."""

    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserView


class TokenResponse(BaseModel):
    """Response for POST /auth/change-password."""

    model_config = ConfigDict(frozen=True)

    token: str
    token_type: str = "bearer"
    expires_in: int


class CaptchaResponse(BaseModel):
    """Response for GET /api/v1/captcha/image."""

    model_config = ConfigDict(frozen=True)

    captcha_id: int
    image: str = Field(description="Data URI of the rendered puzzle.")
    expires_in: int


class AuthConfigResponse(BaseModel):
    """Public auth configuration so clients can render forms and hints."""

    model_config = ConfigDict(frozen=True)

    enabled: bool
    allow_registration: Optional[bool] = None
    password_min_length: Optional[int] = None
    password_require_alnum: Optional[bool] = None


class RevokeResponse(BaseModel):
    """Response for POST /auth/users/{id}/revoke-tokens."""

    model_config = ConfigDict(frozen=True)

    user_id: int
    token_version: int


class LoginFailureRow(BaseModel):
    """One row of the failed-login audit log."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: Optional[str]
    ip_address: Optional[str]
    created_at: datetime

    @classmethod
    def from_record(cls, record: FailureRecord) -> "LoginFailureRow":
        return cls(
            id=record.id,
            username=record.username,
            ip_address=record.ip_address,
            created_at=record.created_at,
        )


# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    auth_enabled: bool

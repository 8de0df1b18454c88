"""
auth/errors.py -- Typed outcomes for the authentication core.

Every expected failure is one AuthError subclass with a stable `code` and a
human-readable message. Subclasses carry only the fields relevant to them
(WeakPassword.reason, AccountLocked.remaining_seconds, RateLimited.retry_after).

These are expected outcomes, not process faults. api/main.py maps them to HTTP
responses in a single exception handler. Store connectivity errors are NOT
wrapped -- SQLAlchemy exceptions propagate unchanged.

Anti-enumeration / anti-oracle variants:
  InvalidCredentials -- same message for unknown username and wrong password.
  ChallengeFailed    -- same message for wrong, expired, used and unknown ids.
  TokenInvalid       -- same message for bad signature, expiry, corruption
                        and version mismatch.

Layer rule: stdlib only.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all expected authentication outcomes."""

    code: str = "auth_error"
    default_message: str = "Authentication error."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(AuthError):
    code = "invalid_input"
    default_message = "Invalid input."


class WeakPassword(AuthError):
    code = "weak_password"
    default_message = "Password does not meet the policy."

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class UsernameTaken(AuthError):
    code = "username_taken"
    default_message = "Username already exists."


class RegistrationDisabled(AuthError):
    code = "registration_disabled"
    default_message = "Registration is disabled."


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    default_message = "Invalid username or password."


class AccountLocked(AuthError):
    code = "account_locked"

    def __init__(self, remaining_seconds: int) -> None:
        self.remaining_seconds = remaining_seconds
        minutes = max(1, -(-remaining_seconds // 60))
        super().__init__(f"Too many failed attempts. Try again in {minutes} minute(s).")


class ChallengeFailed(AuthError):
    code = "challenge_failed"
    default_message = "Captcha is incorrect or has expired."


class RateLimited(AuthError):
    code = "rate_limited"
    default_message = "Too many requests. Please try again later."

    def __init__(self, retry_after: int) -> None:
        self.retry_after = retry_after
        super().__init__()


class TokenInvalid(AuthError):
    code = "token_invalid"
    default_message = "Session is invalid or has expired. Please log in again."


class NotFound(AuthError):
    code = "not_found"
    default_message = "Account not found."

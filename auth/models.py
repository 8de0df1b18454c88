"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container). Stores map rows into these;
services and routes do the work. The only behaviour kept here is derived
state that every caller would otherwise recompute (lock status, public view).

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime


@dataclass
class Account:
    """A local username/password identity.

    token_version is stamped into every issued token. Bumping it (password
    change, admin revocation) invalidates all outstanding tokens without a
    server-side blacklist.

    failed_attempts / lock_until drive the lockout state machine in
    auth/service.py. lock_until is None while the account is unlocked.
    """

    username: str
    password_hash: str
    id: int | None = None
    is_admin: bool = False
    token_version: int = 0
    failed_attempts: int = 0
    lock_until: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login_at: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def lock_remaining_seconds(self, now: datetime) -> int:
        """Whole seconds until the lock lifts, rounded up. 0 when unlocked."""
        if not self.is_locked(now):
            return 0
        return math.ceil((self.lock_until - now).total_seconds())

    def public_view(self) -> PublicUser:
        return PublicUser(
            id=self.id,
            username=self.username,
            is_admin=self.is_admin,
            last_login_at=self.last_login_at,
        )


@dataclass(frozen=True)
class PublicUser:
    """Sanitized account view returned to callers. Never carries the hash."""

    id: int
    username: str
    is_admin: bool
    last_login_at: datetime | None = None


@dataclass
class Challenge:
    """A one-time captcha challenge.

    code_hash is a bcrypt hash of the upper-cased answer. consumed flips to
    True on the first verification attempt, successful or not, and never
    flips back.
    """

    code_hash: str
    expires_at: datetime
    id: int | None = None
    ip_address: str | None = None
    created_at: datetime | None = None
    consumed: bool = False


@dataclass(frozen=True)
class FailureRecord:
    """Immutable audit entry for a failed login. Records are never updated or deleted."""

    created_at: datetime
    id: int | None = None
    username: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True)
class IssuedChallenge:
    """What the caller receives for a new challenge: id, rendered puzzle, lifetime."""

    id: int
    image: str  # data URI
    ttl_seconds: int


@dataclass(frozen=True)
class AuthResult:
    """Successful register/login outcome."""

    token: str
    user: PublicUser

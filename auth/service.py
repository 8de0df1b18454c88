"""
auth/service.py -- Credential authenticator and component wiring.

CredentialAuthenticator owns registration, login, password change and token
revocation, plus the lockout state machine:

    Unlocked --(failed_attempts >= max_failures)--> Locked(until)
    Locked(until) --(now passes until)--> Unlocked

  failed login   -> failed_attempts += 1; lock_until = now + lockout if the
                    threshold is reached, else NULL
  successful login / password change -> failed_attempts = 0, lock_until = NULL

The counter update is read-then-write with no lock held across store calls.
Two concurrent failures can both read N and both write N+1, so the threshold
may be crossed with slight slack under a race.

Anti-enumeration [C1]:
  Unknown username and wrong password raise the same InvalidCredentials. The
  unknown-username path still runs bcrypt against a dummy hash so response
  time does not reveal whether the account exists, and still writes a
  FailureRecord, but it does NOT touch any lockout counter -- there is no
  account to lock.

Layer rule: no imports from api/. core/ is imported only by
AuthServices.from_settings().
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from auth.captcha import ChallengeIssuer
from auth.errors import (
    AccountLocked,
    InvalidCredentials,
    InvalidInput,
    NotFound,
    RegistrationDisabled,
    UsernameTaken,
)
from auth.models import Account, AuthResult
from auth.passwords import check_password_strength, hash_password, verify_password
from auth.store import AccountStore, ChallengeStore, FailureLog, StoreClient
from auth.tokens import TokenCodec

if TYPE_CHECKING:
    from core.config import Settings

logger = logging.getLogger("authgate.auth")


class CredentialAuthenticator:
    """Register, log in and manage credentials against the account store."""

    def __init__(
        self,
        accounts: AccountStore,
        failures: FailureLog,
        tokens: TokenCodec,
        *,
        allow_registration: bool = True,
        password_min_length: int = 8,
        password_require_alnum: bool = True,
        max_failures: int = 5,
        lock_minutes: int = 10,
        bcrypt_rounds: int = 12,
    ) -> None:
        self._accounts = accounts
        self._failures = failures
        self._tokens = tokens
        self.allow_registration = allow_registration
        self.password_min_length = password_min_length
        self.password_require_alnum = password_require_alnum
        self.max_failures = max_failures
        self.lock_minutes = lock_minutes
        self._bcrypt_rounds = bcrypt_rounds
        # Same cost factor as real hashes so the unknown-user path takes as long [C1].
        self._dummy_hash = hash_password("authgate_timing_dummy", bcrypt_rounds)

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, username: str, password: str) -> AuthResult:
        """Create a regular account and return a token for it."""
        if not self.allow_registration:
            raise RegistrationDisabled()
        account = self.create_account(username, password)
        logger.info("Registered account %d (%s)", account.id, account.username)
        return AuthResult(token=self._tokens.mint(account), user=account.public_view())

    def create_account(self, username: str, password: str, is_admin: bool = False) -> Account:
        """Validate and insert an account. Ignores the registration switch (used by the CLI)."""
        normalized = (username or "").strip()
        if not normalized:
            raise InvalidInput("Username must not be empty.")
        self._check_strength(password)
        if self._accounts.get_by_username(normalized) is not None:
            raise UsernameTaken()

        try:
            account_id = self._accounts.create(
                Account(
                    username=normalized,
                    password_hash=hash_password(password, self._bcrypt_rounds),
                    is_admin=is_admin,
                )
            )
        except IntegrityError as exc:
            # A concurrent registration inserted the same username first.
            raise UsernameTaken() from exc
        return self._accounts.get_by_id(account_id)

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, username: str, password: str, ip: str | None = None) -> AuthResult:
        """Verify credentials and return a fresh token.

        The lock check happens before the password comparison, so a locked
        account rejects even the correct password until the window elapses.
        """
        normalized = (username or "").strip()
        account = self._accounts.get_by_username(normalized) if normalized else None
        if account is None:
            verify_password(password or "", self._dummy_hash)
            self._failures.record(normalized, ip)
            logger.warning("Failed login for unknown username from %s", ip or "unknown")
            raise InvalidCredentials()

        now = self._accounts.now()
        if account.is_locked(now):
            raise AccountLocked(account.lock_remaining_seconds(now))

        if not verify_password(password or "", account.password_hash):
            self._failures.record(normalized, ip)
            self._register_failure(account)
            raise InvalidCredentials()

        self._accounts.reset_failures(account.id)
        self._accounts.mark_login(account.id)
        fresh = self._accounts.get_by_id(account.id)
        logger.info("Account %d logged in from %s", fresh.id, ip or "unknown")
        return AuthResult(token=self._tokens.mint(fresh), user=fresh.public_view())

    def _register_failure(self, account: Account) -> None:
        attempts = account.failed_attempts + 1
        lock_until = None
        if attempts >= self.max_failures:
            lock_until = self._accounts.now() + timedelta(minutes=self.lock_minutes)
        self._accounts.record_failed_attempt(account.id, attempts, lock_until)
        if lock_until is not None:
            logger.warning("Account %d locked until %s after %d failures", account.id, lock_until.isoformat(), attempts)
        else:
            logger.warning("Failed login for account %d (%d/%d)", account.id, attempts, self.max_failures)

    # ------------------------------------------------------------------
    # Credential changes
    # ------------------------------------------------------------------

    def change_password(self, account_id: int, old_password: str, new_password: str) -> str:
        """Replace the password, bump token_version and return a new token.

        Every token minted before this call stops validating.
        """
        account = self._accounts.get_by_id(account_id)
        if account is None:
            raise NotFound()
        if not verify_password(old_password or "", account.password_hash):
            raise InvalidCredentials("Current password is incorrect.")
        self._check_strength(new_password)

        if not self._accounts.set_password(account_id, hash_password(new_password, self._bcrypt_rounds)):
            raise NotFound()
        updated = self._accounts.get_by_id(account_id)
        logger.info("Account %d changed password (token_version=%d)", account_id, updated.token_version)
        return self._tokens.mint(updated)

    def revoke_tokens(self, account_id: int) -> int:
        """Invalidate all outstanding tokens for an account. Returns the new version."""
        if not self._accounts.bump_token_version(account_id):
            raise NotFound()
        updated = self._accounts.get_by_id(account_id)
        logger.info("Revoked tokens for account %d (token_version=%d)", account_id, updated.token_version)
        return updated.token_version

    def _check_strength(self, password: str) -> None:
        check_password_strength(password, self.password_min_length, self.password_require_alnum)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class AuthServices:
    """The assembled auth core, built once per StoreClient."""

    client: StoreClient
    accounts: AccountStore
    failures: FailureLog
    challenges: ChallengeIssuer
    tokens: TokenCodec
    authenticator: CredentialAuthenticator

    @classmethod
    def from_settings(cls, settings: Settings, client: StoreClient) -> AuthServices:
        accounts = AccountStore(client)
        failures = FailureLog(client)
        tokens = TokenCodec(accounts, settings.secret_key, settings.token_expire_seconds)
        challenges = ChallengeIssuer(
            ChallengeStore(client),
            ttl_seconds=settings.captcha_ttl_seconds,
            cooldown_seconds=settings.captcha_cooldown_seconds,
            cooldown_max_requests=settings.captcha_cooldown_max_requests,
        )
        authenticator = CredentialAuthenticator(
            accounts,
            failures,
            tokens,
            allow_registration=settings.allow_registration,
            password_min_length=settings.password_min_length,
            password_require_alnum=settings.password_require_alnum,
            max_failures=settings.lockout_max_failures,
            lock_minutes=settings.lockout_minutes,
            bcrypt_rounds=settings.bcrypt_rounds,
        )
        return cls(
            client=client,
            accounts=accounts,
            failures=failures,
            challenges=challenges,
            tokens=tokens,
            authenticator=authenticator,
        )

    def close(self) -> None:
        self.client.close()

"""
auth/tokens.py -- Session token codec (JWT via python-jose, HS256).

Tokens are stateless bearer proof carrying:
    sub            -- username
    user_id        -- account primary key
    token_version  -- the account's version at mint time
    exp            -- absolute expiry

validate() is the revocation point. After the signature and expiry checks it
loads the account and compares token_version against the stored value, so a
password change or an admin revocation invalidates every earlier token
without a blacklist. That costs exactly one store read per validation and
there is deliberately no cache in front of it.

validate() never raises for a bad token. Bad signature, expiry, structural
corruption, missing claims, deleted account and version mismatch all return
None -- the transport turns None into TokenInvalid / 401.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from jose import JWTError, jwt

from auth.models import Account
from auth.store import AccountStore

logger = logging.getLogger("authgate.tokens")

_ALGORITHM = "HS256"


class TokenCodec:
    """Mint and validate signed, expiring, version-stamped session tokens."""

    def __init__(self, accounts: AccountStore, secret_key: str, expire_seconds: int) -> None:
        self._accounts = accounts
        self._secret_key = secret_key
        self.expire_seconds = expire_seconds

    def mint(self, account: Account) -> str:
        """Encode a signed JWT for the account's current token_version."""
        expire = self._accounts.now() + timedelta(seconds=self.expire_seconds)
        payload = {
            "sub": account.username,
            "user_id": account.id,
            "token_version": account.token_version,
            "exp": expire,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def decode(self, token: str) -> dict | None:
        """Verify signature and expiry. Returns the claims or None on any failure.

        Expiry is checked against the store clock rather than by jose, so
        minting and validation read the same "now".
        """
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError:
            return None
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or exp <= self._accounts.now().timestamp():
            return None
        if not isinstance(payload.get("user_id"), int) or not isinstance(payload.get("token_version"), int):
            return None
        return payload

    def validate(self, token: str) -> Account | None:
        """Return the current Account for a valid token, or None."""
        if not token:
            return None
        payload = self.decode(token)
        if payload is None:
            return None
        account = self._accounts.get_by_id(payload["user_id"])
        if account is None:
            return None
        if payload["token_version"] != account.token_version:
            logger.info(
                "Rejected stale token for account %d (version %d, current %d)",
                account.id,
                payload["token_version"],
                account.token_version,
            )
            return None
        return account

"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
StoreClient owns the engine, the schema and the clock. AccountStore,
ChallengeStore and FailureLog are thin repositories over one shared client;
_row_to_* functions are the mappers. Services never touch SQL directly.

The client is constructed explicitly and injected into each repository --
there is no module-level engine. Callers own its lifetime and call close().

Clock:
  StoreClient.now() is the only source of "now" for the auth core. Every
  timestamp written and every expiry/lock comparison goes through it, so the
  authenticator and the store can never disagree about time. Tests inject a
  controllable clock here.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision, so string comparison in SQL orders them chronologically.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  No locks are held across calls. Read-then-write sequences in the services
  may interleave; the only increment done in SQL is token_version, which must
  stay strictly monotonic.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.models import Account, Challenge, FailureRecord

Clock = Callable[[], datetime]

# Largest value a SQLite INTEGER primary key can hold.
MAX_ROW_ID = 2**63 - 1

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "auth_accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(191), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("is_admin", Integer, nullable=False, server_default="0"),
    Column("token_version", Integer, nullable=False, server_default="0"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
    Column("lock_until", String(32)),  # NULL while unlocked
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login_at", String(32)),
)

_challenges = Table(
    "auth_challenges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code_hash", Text, nullable=False),
    Column("ip_address", String(45)),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("consumed", Integer, nullable=False, server_default="0"),
    Index("idx_challenge_ip_created", "ip_address", "created_at"),
)

_failures = Table(
    "auth_login_failures",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(191)),
    Column("ip_address", String(45)),
    Column("created_at", String(32), nullable=False),
    Index("idx_login_fail_username", "username"),
    Index("idx_login_fail_ip", "ip_address"),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class StoreClient:
    """Shared handle to the auth database.

    Usage:
        client = StoreClient("sqlite:///auth.db")
        accounts = AccountStore(client)
        ...
        client.close()
    """

    def __init__(self, db_url: str, clock: Clock | None = None) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        self._clock: Clock = clock or utcnow
        _metadata.create_all(self.engine)

    def now(self) -> datetime:
        return self._clock()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account rows."""

    def __init__(self, client: StoreClient) -> None:
        self.client = client

    def now(self) -> datetime:
        return self.client.now()

    def create(self, account: Account) -> int:
        """Insert a new account with counters zeroed and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        The authenticator catches it as the signal that a concurrent
        registration won the race.
        """
        now = _to_iso(self.now())
        with self.client.engine.connect() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    username=account.username,
                    password_hash=account.password_hash,
                    is_admin=1 if account.is_admin else 0,
                    token_version=0,
                    failed_attempts=0,
                    lock_until=None,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, account_id: int) -> Account | None:
        if not 1 <= account_id <= MAX_ROW_ID:
            return None
        with self.client.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def get_by_username(self, username: str) -> Account | None:
        """Look up an account by exact username (case-sensitive)."""
        with self.client.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def record_failed_attempt(self, account_id: int, failed_attempts: int, lock_until: datetime | None) -> None:
        """Persist the outcome of the failed-login transition computed by the caller."""
        self._update(account_id, failed_attempts=failed_attempts, lock_until=_to_iso(lock_until))

    def reset_failures(self, account_id: int) -> None:
        self._update(account_id, failed_attempts=0, lock_until=None)

    def mark_login(self, account_id: int) -> None:
        """Stamp last_login_at with the current store time."""
        self._update(account_id, last_login_at=_to_iso(self.now()))

    def set_password(self, account_id: int, password_hash: str) -> bool:
        """Store a new hash, bump token_version and clear lockout state.

        Returns True if a row was updated, False if account_id was not found.
        """
        return self._update(
            account_id,
            password_hash=password_hash,
            token_version=_accounts.c.token_version + 1,
            failed_attempts=0,
            lock_until=None,
        )

    def bump_token_version(self, account_id: int) -> bool:
        """Invalidate every outstanding token for the account."""
        return self._update(account_id, token_version=_accounts.c.token_version + 1)

    def _update(self, account_id: int, **fields) -> bool:
        if not 1 <= account_id <= MAX_ROW_ID:
            return False
        fields["updated_at"] = _to_iso(self.now())
        with self.client.engine.connect() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
            conn.commit()
        return result.rowcount > 0


class ChallengeStore:
    """Repository for captcha Challenge rows. Expired rows are never deleted here."""

    def __init__(self, client: StoreClient) -> None:
        self.client = client

    def now(self) -> datetime:
        return self.client.now()

    def create(self, challenge: Challenge) -> int:
        with self.client.engine.connect() as conn:
            result = conn.execute(
                _challenges.insert().values(
                    code_hash=challenge.code_hash,
                    ip_address=challenge.ip_address,
                    created_at=_to_iso(self.now()),
                    expires_at=_to_iso(challenge.expires_at),
                    consumed=0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get(self, challenge_id: int) -> Challenge | None:
        """Return the challenge, or None for an unknown or out-of-range id."""
        if not 1 <= challenge_id <= MAX_ROW_ID:
            return None
        with self.client.engine.connect() as conn:
            row = conn.execute(_challenges.select().where(_challenges.c.id == challenge_id)).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def mark_consumed(self, challenge_id: int) -> None:
        """Flip consumed to 1. Idempotent."""
        with self.client.engine.connect() as conn:
            conn.execute(_challenges.update().where(_challenges.c.id == challenge_id).values(consumed=1))
            conn.commit()

    def count_since(self, ip_address: str, since: datetime) -> int:
        """Count challenges issued to ip_address strictly after `since`."""
        with self.client.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_challenges)
                .where((_challenges.c.ip_address == ip_address) & (_challenges.c.created_at > _to_iso(since)))
            ).scalar()
        return result or 0


class FailureLog:
    """Append-only log of failed login attempts."""

    def __init__(self, client: StoreClient) -> None:
        self.client = client

    def record(self, username: str | None, ip_address: str | None) -> None:
        with self.client.engine.connect() as conn:
            conn.execute(
                _failures.insert().values(
                    username=username or None,
                    ip_address=ip_address or None,
                    created_at=_to_iso(self.client.now()),
                )
            )
            conn.commit()

    def recent(self, limit: int = 50, username: str | None = None) -> list[FailureRecord]:
        """Return the newest failure records first, optionally for one username."""
        query = _failures.select()
        if username is not None:
            query = query.where(_failures.c.username == username)
        query = query.order_by(_failures.c.id.desc()).limit(limit)
        with self.client.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_failure(r) for r in rows]


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        password_hash=row.password_hash,
        is_admin=bool(row.is_admin),
        token_version=row.token_version,
        failed_attempts=row.failed_attempts,
        lock_until=_from_iso(row.lock_until),
        created_at=_from_iso(row.created_at),
        updated_at=_from_iso(row.updated_at),
        last_login_at=_from_iso(row.last_login_at),
    )


def _row_to_challenge(row) -> Challenge:
    return Challenge(
        id=row.id,
        code_hash=row.code_hash,
        ip_address=row.ip_address,
        created_at=_from_iso(row.created_at),
        expires_at=_from_iso(row.expires_at),
        consumed=bool(row.consumed),
    )


def _row_to_failure(row) -> FailureRecord:
    return FailureRecord(
        id=row.id,
        username=row.username,
        ip_address=row.ip_address,
        created_at=_from_iso(row.created_at),
    )

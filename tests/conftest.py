"""
tests/conftest.py -- Shared test fixtures for AuthGate.

This module provides:
  - FakeClock: a controllable clock injected into StoreClient so tests can
    move time across captcha TTLs, cooldown windows, lockouts and token expiry
  - unit fixtures: in-memory store, repositories, codec, issuer, authenticator
  - api_client: TestClient over the real app with an isolated store
  - disabled_client: TestClient with AUTH_ENABLED=false semantics

Design: the API fixtures use named shared-memory SQLite URIs (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

DEBUG, BCRYPT_ROUNDS and LOGIN_RATE_LIMIT must be set before any api/ import
so get_settings() auto-generates SECRET_KEY and the login limit does not trip
during the suite.
"""

from __future__ import annotations

import dataclasses
import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any api/ or core/ import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.captcha import ChallengeIssuer
from auth.service import AuthServices, CredentialAuthenticator
from auth.store import AccountStore, ChallengeStore, FailureLog, StoreClient
from auth.tokens import TokenCodec
from core.config import Settings

TEST_SECRET = "test-secret-key-with-at-least-32-characters"
CAPTCHA_CODE = "ABCD"

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store_client(clock: FakeClock) -> Generator[StoreClient, None, None]:
    client = StoreClient("sqlite:///:memory:", clock=clock)
    yield client
    client.close()


@pytest.fixture
def accounts(store_client: StoreClient) -> AccountStore:
    return AccountStore(store_client)


@pytest.fixture
def failures(store_client: StoreClient) -> FailureLog:
    return FailureLog(store_client)


@pytest.fixture
def challenge_store(store_client: StoreClient) -> ChallengeStore:
    return ChallengeStore(store_client)


@pytest.fixture
def tokens(accounts: AccountStore) -> TokenCodec:
    return TokenCodec(accounts, TEST_SECRET, expire_seconds=3600)


@pytest.fixture
def issuer(challenge_store: ChallengeStore) -> ChallengeIssuer:
    """Issuer with a fixed code so tests know the answer; 300s TTL, 3 per 5s."""
    return ChallengeIssuer(
        challenge_store,
        ttl_seconds=300,
        cooldown_seconds=5,
        cooldown_max_requests=3,
        code_factory=lambda: CAPTCHA_CODE,
    )


@pytest.fixture
def authenticator(accounts: AccountStore, failures: FailureLog, tokens: TokenCodec) -> CredentialAuthenticator:
    return CredentialAuthenticator(
        accounts,
        failures,
        tokens,
        allow_registration=True,
        password_min_length=8,
        password_require_alnum=True,
        max_failures=5,
        lock_minutes=10,
        bcrypt_rounds=4,
    )


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------

_ip_counter = itertools.count(1)


def next_ip() -> str:
    """A fresh requester IP so captcha cooldowns never leak between tests."""
    n = next(_ip_counter)
    return f"10.0.{n // 250}.{n % 250 + 1}"


def _test_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "bcrypt_rounds": 4,
        "captcha_cooldown_seconds": 5,
        "captcha_cooldown_max_requests": 3,
        "lockout_max_failures": 5,
        "lockout_minutes": 10,
    }
    values.update(overrides)
    return Settings(**values)


def _build_services(settings: Settings, db_suffix: str, clock: FakeClock) -> AuthServices:
    url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    services = AuthServices.from_settings(settings, StoreClient(url, clock=clock))
    issuer = ChallengeIssuer(
        ChallengeStore(services.client),
        ttl_seconds=settings.captcha_ttl_seconds,
        cooldown_seconds=settings.captcha_cooldown_seconds,
        cooldown_max_requests=settings.captcha_cooldown_max_requests,
        code_factory=lambda: CAPTCHA_CODE,
    )
    return dataclasses.replace(services, challenges=issuer)


def _patch_lifespan(settings: Settings, services: AuthServices | None):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.auth = services
        yield
        app.state.auth = None

    return test_lifespan


@dataclasses.dataclass
class ApiHarness:
    client: TestClient
    services: AuthServices
    clock: FakeClock


@pytest.fixture(scope="module")
def api(request) -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness over the real app with an isolated store.

    The database name includes the test module name so modules never share
    accounts or captcha rows.
    """
    clock = FakeClock(datetime.now(timezone.utc))
    settings = _test_settings()
    services = _build_services(settings, request.module.__name__.replace(".", "_"), clock)
    app.router.lifespan_context = _patch_lifespan(settings, services)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, services=services, clock=clock)

    services.close()


@pytest.fixture(scope="module")
def disabled_client() -> Generator[TestClient, None, None]:
    """TestClient for an app whose auth is switched off (no store at all)."""
    settings = _test_settings(auth_enabled=False)
    app.router.lifespan_context = _patch_lifespan(settings, None)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

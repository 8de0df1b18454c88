"""
tests/test_api_auth.py -- Integration tests for the auth and captcha endpoints.

Runs the real FastAPI app through TestClient against an isolated
shared-memory store (see conftest.api). The captcha issuer always produces
CAPTCHA_CODE so tests can answer it; each request uses a fresh
X-Forwarded-For address so the per-IP cooldown only fires where a test
asks for it.
"""

from __future__ import annotations

import pytest

from api.limiter import limiter
from core.config import get_settings
from tests.conftest import CAPTCHA_CODE, next_ip

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _captcha_id(client, ip: str | None = None) -> int:
    resp = client.get("/api/v1/captcha/image", headers={"X-Forwarded-For": ip or next_ip()})
    assert resp.status_code == 200, resp.text
    return resp.json()["captcha_id"]


def _post_credentials(client, path: str, username: str, password: str, code: str = CAPTCHA_CODE):
    ip = next_ip()
    body = {
        "username": username,
        "password": password,
        "captcha_id": _captcha_id(client, ip),
        "captcha_code": code,
    }
    return client.post(path, json=body, headers={"X-Forwarded-For": ip})


def _register(client, username: str, password: str = "Passw0rd", **kw):
    return _post_credentials(client, "/api/v1/auth/register", username, password, **kw)


def _login(client, username: str, password: str = "Passw0rd", **kw):
    return _post_credentials(client, "/api/v1/auth/login", username, password, **kw)


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _error_code(resp) -> str:
    return resp.json()["error"]["code"]


# ---------------------------------------------------------------------------
# Captcha
# ---------------------------------------------------------------------------


class TestCaptchaEndpoint:
    def test_issue_returns_image_and_ttl(self, api) -> None:
        resp = api.client.get("/api/v1/captcha/image", headers={"X-Forwarded-For": next_ip()})
        assert resp.status_code == 200
        data = resp.json()
        assert data["captcha_id"] > 0
        assert data["image"].startswith("data:image/svg+xml;base64,")
        assert data["expires_in"] == 300
        assert set(data) == {"captcha_id", "image", "expires_in"}
        assert resp.headers["cache-control"] == "no-store"

    def test_fourth_request_within_cooldown_is_429(self, api) -> None:
        ip = next_ip()
        for _ in range(3):
            _captcha_id(api.client, ip)
        resp = api.client.get("/api/v1/captcha/image", headers={"X-Forwarded-For": ip})
        assert resp.status_code == 429
        assert _error_code(resp) == "rate_limited"
        assert resp.headers["retry-after"] == "5"

    def test_cooldown_uses_first_forwarded_hop(self, api) -> None:
        ip = next_ip()
        for _ in range(3):
            _captcha_id(api.client, f"{ip}, 10.255.255.1")
        resp = api.client.get("/api/v1/captcha/image", headers={"X-Forwarded-For": ip})
        assert resp.status_code == 429


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_returns_token_and_user(self, api) -> None:
        resp = _register(api.client, "reg_alice")
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 7 * 24 * 3600
        assert data["user"]["username"] == "reg_alice"
        assert data["user"]["is_admin"] is False
        assert "password_hash" not in data["user"]
        assert resp.headers["cache-control"] == "no-store"

    def test_duplicate_username_is_409(self, api) -> None:
        assert _register(api.client, "reg_dup").status_code == 200
        resp = _register(api.client, "reg_dup", "Another123")
        assert resp.status_code == 409
        assert _error_code(resp) == "username_taken"

    def test_weak_password_is_400(self, api) -> None:
        resp = _register(api.client, "reg_weak", "password")
        assert resp.status_code == 400
        assert _error_code(resp) == "weak_password"

    def test_blank_username_is_400(self, api) -> None:
        resp = _register(api.client, "   ")
        assert resp.status_code == 400
        assert _error_code(resp) == "invalid_input"

    def test_wrong_captcha_blocks_registration(self, api) -> None:
        resp = _register(api.client, "reg_nocaptcha", code="ZZZZ")
        assert resp.status_code == 400
        assert _error_code(resp) == "challenge_failed"
        assert api.services.accounts.get_by_username("reg_nocaptcha") is None

    def test_captcha_cannot_be_replayed(self, api) -> None:
        ip = next_ip()
        captcha_id = _captcha_id(api.client, ip)
        body = {"username": "reg_replay", "password": "Passw0rd", "captcha_id": captcha_id, "captcha_code": CAPTCHA_CODE}
        assert api.client.post("/api/v1/auth/register", json=body).status_code == 200
        body["username"] = "reg_replay2"
        resp = api.client.post("/api/v1/auth/register", json=body)
        assert resp.status_code == 400
        assert _error_code(resp) == "challenge_failed"

    def test_missing_captcha_fields_is_422(self, api) -> None:
        resp = api.client.post("/api/v1/auth/register", json={"username": "x", "password": "Passw0rd"})
        assert resp.status_code == 422
        assert _error_code(resp) == "validation_error"

    def test_registration_disabled_is_403(self, api, monkeypatch) -> None:
        monkeypatch.setattr(api.services.authenticator, "allow_registration", False)
        resp = _register(api.client, "reg_closed")
        assert resp.status_code == 403
        assert _error_code(resp) == "registration_disabled"


# ---------------------------------------------------------------------------
# Login and lockout
# ---------------------------------------------------------------------------


class TestLogin:
    def test_login_success(self, api) -> None:
        _register(api.client, "login_ok")
        resp = _login(api.client, "login_ok")
        assert resp.status_code == 200
        assert resp.json()["user"]["last_login_at"] is not None
        assert resp.headers["cache-control"] == "no-store"

    def test_unknown_user_and_wrong_password_look_the_same(self, api) -> None:
        _register(api.client, "login_same")
        unknown = _login(api.client, "login_nobody")
        wrong = _login(api.client, "login_same", "Wrong1234")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()

    def test_wrong_captcha_does_not_touch_the_counter(self, api) -> None:
        _register(api.client, "login_captcha")
        resp = _login(api.client, "login_captcha", "Wrong1234", code="ZZZZ")
        assert resp.status_code == 400
        assert api.services.accounts.get_by_username("login_captcha").failed_attempts == 0

    def test_lockout_after_five_failures(self, api) -> None:
        _register(api.client, "login_lock")
        for _ in range(4):
            assert _login(api.client, "login_lock", "Wrong1234").status_code == 401
        assert api.services.accounts.get_by_username("login_lock").lock_until is None

        assert _login(api.client, "login_lock", "Wrong1234").status_code == 401
        resp = _login(api.client, "login_lock")
        assert resp.status_code == 423
        assert _error_code(resp) == "account_locked"
        assert resp.headers["retry-after"] == "600"
        assert "10 minute" in resp.json()["error"]["message"]

    def test_lock_lifts_after_window(self, api) -> None:
        _register(api.client, "login_unlock")
        for _ in range(5):
            _login(api.client, "login_unlock", "Wrong1234")
        assert _login(api.client, "login_unlock").status_code == 423

        api.clock.advance(minutes=10, seconds=1)
        resp = _login(api.client, "login_unlock")
        assert resp.status_code == 200
        assert api.services.accounts.get_by_username("login_unlock").failed_attempts == 0

    @pytest.mark.parametrize("captcha_id", [0, 2**70])
    def test_out_of_range_captcha_id_is_422(self, api, captcha_id: int) -> None:
        body = {"username": "login_bigid", "password": "Passw0rd", "captcha_id": captcha_id, "captcha_code": CAPTCHA_CODE}
        for path in ("/api/v1/auth/login", "/api/v1/auth/register"):
            resp = api.client.post(path, json=body, headers={"X-Forwarded-For": next_ip()})
            assert resp.status_code == 422
            assert _error_code(resp) == "validation_error"

    def test_failure_records_client_ip(self, api) -> None:
        ip = next_ip()
        body = {
            "username": "login_iplog",
            "password": "whatever1",
            "captcha_id": _captcha_id(api.client, ip),
            "captcha_code": CAPTCHA_CODE,
        }
        api.client.post("/api/v1/auth/login", json=body, headers={"X-Forwarded-For": ip})
        (record,) = api.services.failures.recent(username="login_iplog")
        assert record.ip_address == ip


# ---------------------------------------------------------------------------
# Token-protected endpoints
# ---------------------------------------------------------------------------


class TestMe:
    def test_me_with_valid_token(self, api) -> None:
        token = _register(api.client, "me_user").json()["token"]
        resp = api.client.get("/api/v1/auth/me", headers=_bearer(token))
        assert resp.status_code == 200
        assert resp.json()["username"] == "me_user"

    def test_scheme_is_case_insensitive(self, api) -> None:
        token = _register(api.client, "me_scheme").json()["token"]
        resp = api.client.get("/api/v1/auth/me", headers={"Authorization": f"bearer {token}"})
        assert resp.status_code == 200

    @pytest.mark.parametrize(
        "headers",
        [{}, {"Authorization": "Bearer"}, {"Authorization": "Basic abc"}, {"Authorization": "Bearer garbage"}],
        ids=["none", "empty", "basic", "garbage"],
    )
    def test_missing_or_bad_token_is_401(self, api, headers) -> None:
        resp = api.client.get("/api/v1/auth/me", headers=headers)
        assert resp.status_code == 401
        assert _error_code(resp) == "token_invalid"
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_token_expires(self, api) -> None:
        token = _register(api.client, "me_expiry").json()["token"]
        api.clock.advance(seconds=7 * 24 * 3600 + 1)
        assert api.client.get("/api/v1/auth/me", headers=_bearer(token)).status_code == 401


class TestChangePassword:
    def test_change_password_rotates_tokens(self, api) -> None:
        old_token = _register(api.client, "cp_user").json()["token"]
        resp = api.client.post(
            "/api/v1/auth/change-password",
            json={"old_password": "Passw0rd", "new_password": "NewPassw0rd"},
            headers=_bearer(old_token),
        )
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        new_token = resp.json()["token"]

        assert api.client.get("/api/v1/auth/me", headers=_bearer(old_token)).status_code == 401
        assert api.client.get("/api/v1/auth/me", headers=_bearer(new_token)).status_code == 200
        assert _login(api.client, "cp_user", "NewPassw0rd").status_code == 200

    def test_wrong_old_password_is_401(self, api) -> None:
        token = _register(api.client, "cp_wrong").json()["token"]
        resp = api.client.post(
            "/api/v1/auth/change-password",
            json={"old_password": "nope", "new_password": "NewPassw0rd"},
            headers=_bearer(token),
        )
        assert resp.status_code == 401
        assert _error_code(resp) == "invalid_credentials"
        assert api.client.get("/api/v1/auth/me", headers=_bearer(token)).status_code == 200

    def test_weak_new_password_is_400(self, api) -> None:
        token = _register(api.client, "cp_weak").json()["token"]
        resp = api.client.post(
            "/api/v1/auth/change-password",
            json={"old_password": "Passw0rd", "new_password": "short"},
            headers=_bearer(token),
        )
        assert resp.status_code == 400
        assert _error_code(resp) == "weak_password"

    def test_requires_token(self, api) -> None:
        resp = api.client.post(
            "/api/v1/auth/change-password",
            json={"old_password": "Passw0rd", "new_password": "NewPassw0rd"},
        )
        assert resp.status_code == 401


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def admin_token(api) -> str:
    api.services.authenticator.create_account("adm_root", "Adm1nPassword", is_admin=True)
    resp = _login(api.client, "adm_root", "Adm1nPassword")
    assert resp.status_code == 200, resp.text
    return resp.json()["token"]


class TestAdmin:
    def test_revoke_tokens(self, api, admin_token) -> None:
        victim = _register(api.client, "adm_victim").json()
        resp = api.client.post(
            f"/api/v1/auth/users/{victim['user']['id']}/revoke-tokens",
            headers=_bearer(admin_token),
        )
        assert resp.status_code == 200
        assert resp.json() == {"user_id": victim["user"]["id"], "token_version": 1}
        assert api.client.get("/api/v1/auth/me", headers=_bearer(victim["token"])).status_code == 401

    def test_revoke_out_of_range_id_is_422(self, api, admin_token) -> None:
        resp = api.client.post(f"/api/v1/auth/users/{2**70}/revoke-tokens", headers=_bearer(admin_token))
        assert resp.status_code == 422
        assert _error_code(resp) == "validation_error"

    def test_revoke_unknown_account_is_404(self, api, admin_token) -> None:
        resp = api.client.post("/api/v1/auth/users/999999/revoke-tokens", headers=_bearer(admin_token))
        assert resp.status_code == 404
        assert _error_code(resp) == "not_found"

    def test_non_admin_is_403(self, api) -> None:
        token = _register(api.client, "adm_plain").json()["token"]
        resp = api.client.post("/api/v1/auth/users/1/revoke-tokens", headers=_bearer(token))
        assert resp.status_code == 403
        assert _error_code(resp) == "forbidden"

    def test_login_failures_listing(self, api, admin_token) -> None:
        _login(api.client, "adm_ghost", "Wrong1234")
        resp = api.client.get(
            "/api/v1/auth/login-failures",
            params={"username": "adm_ghost", "limit": 10},
            headers=_bearer(admin_token),
        )
        assert resp.status_code == 200
        rows = resp.json()
        assert len(rows) == 1
        assert rows[0]["username"] == "adm_ghost"
        assert rows[0]["ip_address"]

    def test_login_failures_limit_is_bounded(self, api, admin_token) -> None:
        resp = api.client.get("/api/v1/auth/login-failures", params={"limit": 0}, headers=_bearer(admin_token))
        assert resp.status_code == 422

    def test_login_failures_requires_token(self, api) -> None:
        assert api.client.get("/api/v1/auth/login-failures").status_code == 401


# ---------------------------------------------------------------------------
# Login rate limit (slowapi)
# ---------------------------------------------------------------------------


@pytest.fixture
def strict_login_limit(monkeypatch):
    """Lower LOGIN_RATE_LIMIT to 3/minute with fresh limiter counters."""
    monkeypatch.setenv("LOGIN_RATE_LIMIT", "3/minute")
    get_settings.cache_clear()
    limiter.reset()
    yield
    get_settings.cache_clear()
    limiter.reset()


class TestLoginRateLimit:
    def test_fourth_login_in_a_minute_is_429(self, api, strict_login_limit) -> None:
        body = {"username": "rl_user", "password": "Passw0rd", "captcha_id": 999999, "captcha_code": CAPTCHA_CODE}
        for _ in range(3):
            resp = api.client.post("/api/v1/auth/login", json=body)
            assert resp.status_code == 400
            assert _error_code(resp) == "challenge_failed"

        resp = api.client.post("/api/v1/auth/login", json=body)
        assert resp.status_code == 429
        assert _error_code(resp) == "rate_limited"
        assert "retry-after" in resp.headers

    def test_limit_does_not_apply_to_other_routes(self, api, strict_login_limit) -> None:
        for _ in range(5):
            assert api.client.get("/api/v1/auth/config").status_code == 200


class TestConfig:
    def test_config_reports_policy(self, api) -> None:
        resp = api.client.get("/api/v1/auth/config")
        assert resp.status_code == 200
        assert resp.json() == {
            "enabled": True,
            "allow_registration": True,
            "password_min_length": 8,
            "password_require_alnum": True,
        }

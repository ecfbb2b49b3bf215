"""HTTP surface: login, refresh, logout, session and the error envelope."""

import pytest
from fastapi.testclient import TestClient

from bureauguard.app import app
from bureauguard.service.runtime import get_runtime, reset_runtime_for_tests
from bureauguard.storage.errors import StorageError

EMAIL = "alice@example.com"
PASSWORD = "correct horse battery"


@pytest.fixture
def client():
    get_runtime().login.register_user(EMAIL, PASSWORD)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def strict_limits(monkeypatch):
    monkeypatch.setenv("ACCOUNT_FAILURE_THRESHOLD", "3")
    reset_runtime_for_tests()


def _login(client, email=EMAIL, password=PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": email, "password": password, **extra})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestLogin:
    def test_login_returns_token_envelope(self, client):
        resp = _login(client)

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["data"]["type"] == "session"
        assert body["data"]["token"]
        assert body["data"]["expires_at"]
        assert body["request_id"]
        assert resp.headers["Cache-Control"] == "no-store"

    def test_remember_me(self, client):
        resp = _login(client, remember_me=True)
        assert resp.json()["data"]["type"] == "remember_me"

    def test_bad_password_is_generic_401(self, client):
        wrong = _login(client, password="nope")
        unknown = _login(client, email="nobody@example.com", password="nope")

        for resp in (wrong, unknown):
            assert resp.status_code == 401
            assert resp.headers["WWW-Authenticate"] == "Bearer"
            error = resp.json()["error"]
            assert error == {"code": "unauthorized", "message": "invalid credentials", "details": None}

    def test_malformed_body_is_validation_error(self, client):
        resp = client.post("/v1/auth/login", json={"email": "not-an-email", "password": "x"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_blocked_account_looks_like_bad_credentials(self, strict_limits, client):
        for _ in range(3):
            assert _login(client, password="nope").status_code == 401

        resp = _login(client)

        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "invalid credentials"

    def test_revealed_block_is_429_with_retry_after(self, monkeypatch, client):
        monkeypatch.setenv("ACCOUNT_FAILURE_THRESHOLD", "2")
        monkeypatch.setenv("REVEAL_LOGIN_BLOCKS", "true")
        reset_runtime_for_tests()
        get_runtime().login.register_user(EMAIL, PASSWORD)
        for _ in range(2):
            _login(client, password="nope")

        resp = _login(client)

        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert 0 < int(resp.headers["Retry-After"]) <= 600


class TestTokenLifecycle:
    def test_session_reports_claims(self, client):
        token = _login(client).json()["data"]["token"]

        resp = client.get("/v1/auth/session", headers=_bearer(token))

        assert resp.status_code == 200
        assert resp.json()["data"]["type"] == "session"
        assert resp.json()["data"]["user_id"]

    def test_refresh_replaces_token(self, client):
        old = _login(client).json()["data"]["token"]

        resp = client.post("/v1/auth/token-refresh", headers=_bearer(old))

        assert resp.status_code == 200
        new = resp.json()["data"]["token"]
        assert new != old
        assert client.get("/v1/auth/session", headers=_bearer(new)).status_code == 200
        assert client.get("/v1/auth/session", headers=_bearer(old)).status_code == 401
        assert client.post("/v1/auth/token-refresh", headers=_bearer(old)).status_code == 401

    def test_logout_revokes_only_that_token(self, client):
        laptop = _login(client).json()["data"]["token"]
        phone = _login(client).json()["data"]["token"]

        resp = client.post("/v1/auth/logout", headers=_bearer(laptop))

        assert resp.json()["data"] == {"revoked": True}
        assert client.get("/v1/auth/session", headers=_bearer(laptop)).status_code == 401
        assert client.get("/v1/auth/session", headers=_bearer(phone)).status_code == 200
        again = client.post("/v1/auth/logout", headers=_bearer(laptop))
        assert again.json()["data"] == {"revoked": False}

    def test_missing_bearer_is_401(self, client):
        resp = client.get("/v1/auth/session")
        assert resp.status_code == 401
        assert resp.json()["error"]["message"] == "missing bearer token"

    def test_whitelist_outage_is_503(self, client, monkeypatch):
        token = _login(client).json()["data"]["token"]

        def broken(jti):
            raise StorageError("connection refused")

        monkeypatch.setattr(get_runtime().tokens.replay_guard, "get", broken)
        resp = client.get("/v1/auth/session", headers=_bearer(token))

        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "unavailable"


class TestEnvelope:
    def test_request_id_is_echoed(self, client):
        resp = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"
        assert resp.json()["data"] == {"status": "ok"}

    def test_unknown_route_uses_envelope(self, client):
        resp = client.get("/v1/nope")
        assert resp.status_code == 404
        assert resp.json()["status"] == "error"
        assert resp.json()["error"]["code"] == "not_found"


@pytest.fixture
def ip_whitelist(monkeypatch):
    monkeypatch.setenv("ALLOWED_IP_RANGES", "10.0.0.0/8, 2001:db8::/32")
    monkeypatch.setenv("TRUST_PROXY_HEADERS", "true")
    reset_runtime_for_tests()


def _from(ip, **headers):
    return {"X-Forwarded-For": ip, **headers}


class TestIpWhitelist:
    def test_outside_origin_is_forbidden(self, ip_whitelist, client):
        token = _login(client).json()["data"]["token"]

        resp = client.get("/v1/auth/session", headers=_from("203.0.113.9", **_bearer(token)))

        assert resp.status_code == 403
        assert resp.json()["status"] == "error"
        assert resp.json()["error"]["code"] == "forbidden"

    def test_inside_origin_passes(self, ip_whitelist, client):
        token = _login(client).json()["data"]["token"]

        v4 = client.get("/v1/auth/session", headers=_from("10.4.5.6", **_bearer(token)))
        v6 = client.get("/v1/auth/session", headers=_from("2001:db8::7", **_bearer(token)))

        assert v4.status_code == 200
        assert v6.status_code == 200

    def test_login_and_health_stay_open(self, ip_whitelist, client):
        login = client.post(
            "/v1/auth/login",
            json={"email": EMAIL, "password": PASSWORD},
            headers=_from("203.0.113.9"),
        )
        health = client.get("/healthz", headers=_from("203.0.113.9"))

        assert login.status_code == 200
        assert health.status_code == 200

    def test_unresolvable_origin_is_forbidden(self, ip_whitelist, client):
        resp = client.post("/v1/auth/logout")
        assert resp.status_code == 403

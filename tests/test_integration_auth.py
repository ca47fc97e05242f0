"""Integration tests for the user authentication flow.

Tests the complete auth flow including:
- Registration and login
- Token validation and profile access
- Token refresh and logout
- Password change
- Middleware rejections and rate limiting
"""

import time

import pytest
from fastapi.testclient import TestClient

from portfolio_auth import app as app_module
from portfolio_auth.service.runtime import get_runtime


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, password, email="alice@example.com", username="alice"):
    return client.post(
        "/api/auth/register",
        json={
            "email": email,
            "username": username,
            "password": password,
            "confirm_password": password,
            "full_name": "Alice Example",
        },
    )


def _login(client, identifier, password, ip=None):
    headers = {"X-Forwarded-For": ip} if ip else {}
    return client.post(
        "/api/auth/login",
        json={"email_or_username": identifier, "password": password},
        headers=headers,
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_returns_user_and_tokens(self, client, strong_password):
        response = _register(client, strong_password)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["email"] == "alice@example.com"
        assert body["data"]["user"]["role"] == "user"
        assert body["data"]["tokens"]["token_type"] == "Bearer"
        assert body["data"]["tokens"]["expires_in"] > 0

    def test_duplicate_email(self, client, strong_password):
        _register(client, strong_password)
        response = _register(client, strong_password, username="alice2")
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "already_exists"

    def test_password_confirmation_mismatch(self, client, strong_password):
        response = client.post(
            "/api/auth/register",
            json={
                "email": "bob@example.com",
                "username": "bob",
                "password": strong_password,
                "confirm_password": strong_password + "x",
            },
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_weak_password(self, client):
        response = _register(client, "weakpass")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "weak_password"

    def test_invalid_email(self, client, strong_password):
        response = _register(client, strong_password, email="not-an-email")
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"


class TestLoginAndSession:
    def test_login_validate_profile(self, client, strong_password):
        _register(client, strong_password)

        response = _login(client, "alice@example.com", strong_password)
        assert response.status_code == 200
        tokens = response.json()["data"]["tokens"]
        assert tokens["expires_in"] > 0

        validate = client.get("/api/auth/validate", headers=_bearer(tokens["access_token"]))
        assert validate.status_code == 200
        data = validate.json()["data"]
        assert data["valid"] is True
        assert data["claims"]["username"] == "alice"
        assert data["user"]["last_login"] is not None

        profile = client.get("/api/auth/profile", headers=_bearer(tokens["access_token"]))
        assert profile.json()["data"]["user"]["full_name"] == "Alice Example"

    def test_wrong_password(self, client, strong_password):
        _register(client, strong_password)
        response = _login(client, "alice", "Wr0ng!Pass")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_refresh_rotates_and_logout_revokes(self, client, strong_password):
        tokens = _register(client, strong_password).json()["data"]["tokens"]

        refreshed = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refreshed.status_code == 200
        new_tokens = refreshed.json()["data"]["tokens"]
        assert new_tokens["refresh_token"] != tokens["refresh_token"]

        replay = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_invalid"

        logout = client.post("/api/auth/logout", json={"refresh_token": new_tokens["refresh_token"]})
        assert logout.status_code == 200
        after = client.post("/api/auth/refresh", json={"refresh_token": new_tokens["refresh_token"]})
        assert after.status_code == 401

    def test_change_password(self, client, strong_password):
        tokens = _register(client, strong_password).json()["data"]["tokens"]

        response = client.put(
            "/api/auth/password",
            json={
                "current_password": strong_password,
                "new_password": "N3w!Password",
                "confirm_password": "N3w!Password",
            },
            headers=_bearer(tokens["access_token"]),
        )

        assert response.status_code == 200
        refresh = client.post("/api/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert refresh.status_code == 401
        assert _login(client, "alice", "N3w!Password").status_code == 200


class TestAuthGate:
    def test_missing_token(self, client):
        response = client.get("/api/auth/profile")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "missing_token"

    def test_garbage_token(self, client):
        response = client.get("/api/auth/profile", headers=_bearer("not.a.token"))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_non_ascii_signature_counts_as_failure(self, client):
        # Header bytes are decoded as latin-1, so the signature arrives as "\u00e9"
        header = "Bearer eyJhbGciOiJIUzI1NiJ9.e30.\u00e9".encode("latin-1")
        response = client.get(
            "/api/auth/profile",
            headers={"Authorization": header, "X-Forwarded-For": "10.0.0.11"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"
        assert get_runtime().general_limiter.entry("10.0.0.11").attempts == 1

    def test_unknown_protected_path(self, client):
        assert client.get("/api/secret-stuff").status_code == 401

    def test_temp_token_is_refused(self, client, strong_password):
        user = _register(client, strong_password).json()["data"]["user"]
        temp = get_runtime().codec.issue_temp_token(user["id"], "alice", user["email"], "user")
        response = client.get("/api/auth/validate", headers=_bearer(temp))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "mfa_required"

    def test_request_id_and_security_headers(self, client):
        response = client.get("/api/auth/profile", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

    def test_cors_preflight(self, client):
        response = client.options(
            "/api/auth/login",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "http://localhost:3000"

    def test_general_limiter_blocks_repeated_bad_tokens(self, client):
        headers = {**_bearer("bad"), "X-Forwarded-For": "10.0.0.9"}
        limit = get_runtime().settings.rate_limit_max_attempts
        for _ in range(limit):
            assert client.get("/api/auth/profile", headers=headers).status_code == 401
        blocked = client.get("/api/auth/profile", headers=headers)
        assert blocked.status_code == 429
        assert int(blocked.headers["Retry-After"]) > 0


class TestLoginRateLimit:
    def test_lockout_after_five_failures(self, client, strong_password):
        _register(client, strong_password)

        for _ in range(5):
            assert _login(client, "alice", "Wr0ng!Pass", ip="10.0.0.5").status_code == 401

        blocked = _login(client, "alice", strong_password, ip="10.0.0.5")
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "rate_limited"
        assert int(blocked.headers["Retry-After"]) > 0

        # Other addresses are unaffected
        assert _login(client, "alice", strong_password, ip="10.0.0.6").status_code == 200

        limiter = get_runtime().auth_limiter
        later = time.monotonic() + limiter.config.block_seconds + 1
        limiter._clock = lambda: later
        assert _login(client, "alice", strong_password, ip="10.0.0.5").status_code == 200

    def test_success_clears_failures(self, client, strong_password):
        _register(client, strong_password)
        for _ in range(4):
            _login(client, "alice", "Wr0ng!Pass", ip="10.0.0.7")
        assert _login(client, "alice", strong_password, ip="10.0.0.7").status_code == 200
        for _ in range(4):
            _login(client, "alice", "Wr0ng!Pass", ip="10.0.0.7")
        assert _login(client, "alice", strong_password, ip="10.0.0.7").status_code == 200


class TestHealth:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["cache"]["status"] == "healthy"

"""Integration tests for the authentication flow.

Tests the complete auth flow including:
- Registration and duplicate detection
- Login, lockout and the auth rate limit
- Refresh token rotation through the cookie
- Logout
- The current-user endpoint
"""

import pytest
from fastapi.testclient import TestClient

from issuetrack import app as app_module
from issuetrack.service.runtime import get_runtime

PASSWORD = "TestPassword123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, email="testuser@example.com", password=PASSWORD, **headers):
    return client.post(
        "/api/auth/register",
        json={"email": email, "password": password, "firstName": "Test", "lastName": "User"},
        headers=headers or None,
    )


def _login(client, email="testuser@example.com", password=PASSWORD, ip="198.51.100.1"):
    return client.post(
        "/api/auth/login",
        json={"email": email, "password": password},
        headers={"X-Forwarded-For": ip},
    )


class TestRegister:
    def test_register_creates_user_and_sets_cookie(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Registration successful"
        user = body["data"]["user"]
        assert user["email"] == "testuser@example.com"
        assert user["role"] == "USER"
        assert user["isActive"] is True
        assert user["isVerified"] is False
        assert "password" not in user
        assert body["data"]["accessToken"]

        set_cookie = response.headers["set-cookie"]
        assert "refreshToken=" in set_cookie
        assert "HttpOnly" in set_cookie
        assert "samesite=strict" in set_cookie.lower()

    def test_duplicate_email_is_conflict(self, client):
        _register(client, **{"X-Forwarded-For": "10.0.0.1"})
        response = _register(
            client, email="TestUser@Example.com", **{"X-Forwarded-For": "10.0.0.2"}
        )

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "CONFLICT"

    def test_weak_password_lists_failed_rules(self, client):
        response = _register(client, password="weakpassword")

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert "Password must contain at least one uppercase letter" in error["details"]["password"]


class TestLogin:
    def test_login_returns_token(self, client):
        _register(client, **{"X-Forwarded-For": "10.0.0.1"})
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Login successful"
        assert body["data"]["user"]["email"] == "testuser@example.com"
        assert response.headers["X-RateLimit-Limit"] == "5"

    def test_unknown_email_and_wrong_password_look_the_same(self, client):
        _register(client, **{"X-Forwarded-For": "10.0.0.1"})
        unknown = _login(client, email="ghost@example.com", ip="10.0.0.2")
        wrong = _login(client, password="WrongPassword1!", ip="10.0.0.3")

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"]["message"] == wrong.json()["error"]["message"]

    def test_lockout_after_five_failures(self, client):
        _register(client, **{"X-Forwarded-For": "10.0.0.1"})
        # distinct client addresses keep the auth rate limit out of the way
        for attempt in range(5):
            response = _login(client, password="WrongPassword1!", ip=f"10.1.0.{attempt}")
            assert response.status_code == 401

        locked = _login(client, ip="10.2.0.1")

        assert locked.status_code == 423
        error = locked.json()["error"]
        assert error["code"] == "ACCOUNT_LOCKED"
        assert "Try again in 15 minutes" in error["message"]

    def test_sixth_auth_request_is_rate_limited(self, client):
        _register(client, **{"X-Forwarded-For": "10.0.0.1"})
        for _ in range(5):
            assert _login(client, ip="203.0.113.5").status_code == 200

        limited = _login(client, ip="203.0.113.5")

        assert limited.status_code == 429
        assert int(limited.headers["Retry-After"]) > 0
        assert limited.headers["X-RateLimit-Remaining"] == "0"
        error = limited.json()["error"]
        assert error["code"] == "RATE_LIMIT_EXCEEDED"
        assert error["details"]["retryAfter"] == int(limited.headers["Retry-After"])


class TestRefreshAndLogout:
    def test_refresh_rotates_cookie(self, client):
        registered = _register(client)
        old_cookie = registered.cookies["refreshToken"]

        response = client.post("/api/auth/refresh")

        assert response.status_code == 200
        assert response.json()["message"] == "Token refreshed successfully"
        assert response.json()["data"]["accessToken"]
        new_cookie = response.cookies["refreshToken"]
        assert new_cookie != old_cookie

        # the rotated-out token is dead
        client.cookies.clear()
        client.cookies.set("refreshToken", old_cookie)
        replay = client.post("/api/auth/refresh")
        assert replay.status_code == 401

    def test_refresh_without_cookie(self, client):
        response = client.post("/api/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Refresh token not found"

    def test_logout_revokes_refresh_token(self, client):
        registered = _register(client)
        token = registered.cookies["refreshToken"]

        response = client.post("/api/auth/logout")
        assert response.status_code == 200
        body = response.json()
        assert body["message"] == "Logged out successfully"
        assert body["data"] is None

        client.cookies.clear()
        client.cookies.set("refreshToken", token)
        assert client.post("/api/auth/refresh").status_code == 401

    def test_logout_without_cookie_still_succeeds(self, client):
        assert client.post("/api/auth/logout").status_code == 200


class TestCurrentUser:
    def test_me_returns_profile(self, client):
        token = _register(client).json()["data"]["accessToken"]

        response = client.get("/api/users/me", headers={"Authorization": f"Bearer {token}"})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["email"] == "testuser@example.com"
        assert data["firstName"] == "Test"
        assert "updatedAt" in data

    @pytest.mark.parametrize(
        "header", [None, "Bearer", "Token abc", "Bearer not.a.jwt"]
    )
    def test_bad_credentials_are_uniform(self, client, header):
        headers = {"Authorization": header} if header else {}
        response = client.get("/api/users/me", headers=headers)

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid or expired token"

    def test_deleted_principal_is_404(self, client):
        registered = _register(client).json()["data"]
        get_runtime().store.users.pop(registered["user"]["id"])

        response = client.get(
            "/api/users/me",
            headers={"Authorization": f"Bearer {registered['accessToken']}"},
        )

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "User not found"

"""Integration tests for the auth HTTP surface.

Covers registration, login, logout, /me, refresh token rotation, two-factor
enrollment, email verification, password reset and error envelopes.
"""

import time

import pytest
from conftest import RecordingMailer
from fastapi.testclient import TestClient

from gatehouse.app import create_app
from gatehouse.service.runtime import get_runtime
from gatehouse.service.two_factor import generate_totp
from gatehouse.storage.models import utcnow

PASSWORD = "TestPassword123!"
REFRESH_COOKIE = "___refresh__token"
SESSION_COOKIE = "gatehouse.sid"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(create_app())


@pytest.fixture
def token_client(configure):
    """Client for a deployment that returns tokens instead of setting cookies."""
    configure(AUTH_DISABLE_COOKIES=True)
    return TestClient(create_app())


def _register(client, email="user@example.com", password=PASSWORD):
    return client.post("/auth/register", json={"email": email, "password": password})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegistration:
    def test_register_creates_user_and_sets_cookies(self, client):
        response = _register(client)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["email"] == "user@example.com"
        assert "access_token" not in body["data"]
        assert response.cookies.get(SESSION_COOKIE)
        assert response.cookies.get(REFRESH_COOKIE)
        set_cookie = response.headers.get_list("set-cookie")
        assert all("httponly" in c.lower() for c in set_cookie)

    def test_register_validation_envelope(self, client):
        response = client.post("/auth/register", json={"email": "bad", "password": "short"})

        assert response.status_code == 422
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["message"] == "Validation failed."
        assert {e["field"] for e in error["details"]["errors"]} == {"email", "password"}

    def test_duplicate_registration(self, client):
        _register(client)

        response = _register(client)

        assert response.status_code == 422
        assert response.json()["error"]["details"]["errors"] == [
            {"field": "email", "message": "This email has already been taken."}
        ]

    def test_roles_enabled_without_authenticated_role(self, configure):
        configure(AUTH_ROLES_AND_PERMISSIONS=True)
        client = TestClient(create_app())

        response = _register(client)

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "configuration_error"

    def test_token_mode_returns_tokens(self, token_client):
        response = _register(token_client)

        data = response.json()["data"]
        assert data["access_token"] and data["refresh_token"]
        assert data["expires_in"] == 3600
        assert not response.cookies.get(REFRESH_COOKIE)


class TestLogin:
    def test_login_then_me(self, client):
        _register(client)
        client.cookies.clear()

        response = client.post("/auth/login", json={"email": "user@example.com", "password": PASSWORD})
        me = client.get("/auth/me")

        assert response.status_code == 200
        assert me.status_code == 200
        assert me.json()["data"]["user"]["email"] == "user@example.com"

    def test_login_errors_are_indistinguishable(self, client):
        _register(client)

        unknown = client.post("/auth/login", json={"email": "nobody@example.com", "password": PASSWORD})
        wrong = client.post("/auth/login", json={"email": "user@example.com", "password": "nope-nope"})

        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]
        assert wrong.json()["error"]["message"] == "Invalid credentials."

    def test_login_is_rate_limited(self, configure):
        configure(LOGIN_RATE_LIMIT_PER_MINUTE=2)
        client = TestClient(create_app())
        payload = {"email": "user@example.com", "password": "wrong-password"}

        statuses = [client.post("/auth/login", json=payload).status_code for _ in range(3)]

        assert statuses == [401, 401, 429]

    def test_me_requires_authentication(self, client):
        response = client.get("/auth/me")

        assert response.status_code == 403
        assert response.json()["error"]["message"] == "Unauthorized."

    def test_bearer_token_authenticates(self, token_client):
        token = _register(token_client).json()["data"]["access_token"]

        response = token_client.get("/auth/me", headers=_bearer(token))

        assert response.status_code == 200

    def test_blocked_user_is_refused_everywhere(self, client):
        user_id = _register(client).json()["data"]["user"]["id"]
        get_runtime().store.update_user(user_id, blocked_at=utcnow())

        me = client.get("/auth/me")
        login = client.post("/auth/login", json={"email": "user@example.com", "password": PASSWORD})

        assert me.status_code == login.status_code == 403
        assert me.json()["error"]["message"] == "Your account is temporarily disabled."


class TestLogout:
    def test_logout_destroys_session(self, client):
        _register(client)

        first = client.post("/auth/logout")
        me = client.get("/auth/me")

        assert first.json()["data"] == {"success": True}
        assert me.status_code == 403

    def test_logout_without_session(self, client):
        response = client.post("/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"] == {"success": False}


class TestRefreshToken:
    def test_cookie_rotation_sets_new_cookie(self, client):
        original = _register(client).cookies.get(REFRESH_COOKIE)

        response = client.post("/auth/refresh-token")

        assert response.status_code == 200
        rotated = response.cookies.get(REFRESH_COOKIE)
        assert rotated and rotated != original

    def test_body_rotation_and_reuse_detection(self, token_client):
        data = _register(token_client).json()["data"]
        headers = _bearer(data["access_token"])

        rotated = token_client.post(
            "/auth/refresh-token", json={"refresh_token": data["refresh_token"]}, headers=headers
        )
        replay = token_client.post(
            "/auth/refresh-token", json={"refresh_token": data["refresh_token"]}, headers=headers
        )
        me = token_client.get("/auth/me", headers=headers)

        assert rotated.status_code == 200
        assert rotated.json()["data"]["refresh_token"] != data["refresh_token"]
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "Invalid refresh token."
        assert me.status_code == 403
        assert me.json()["error"]["message"] == "Your account is temporarily disabled."

    def test_refresh_requires_a_signed_in_principal(self, token_client):
        refresh_token = _register(token_client).json()["data"]["refresh_token"]

        response = token_client.post("/auth/refresh-token", json={"refresh_token": refresh_token})

        assert response.status_code == 403

    def test_delete_clears_cookie(self, client):
        _register(client)

        response = client.delete("/auth/refresh-token")

        assert response.json()["data"] == {"success": True}
        cleared = [c for c in response.headers.get_list("set-cookie") if c.startswith(REFRESH_COOKIE)]
        assert cleared and "max-age=0" in cleared[0].lower()


class TestTwoFactorRoutes:
    def test_routes_hidden_when_disabled(self, client):
        _register(client)

        assert client.post("/auth/two-factor/enable").status_code == 404

    def test_enrollment_then_login_requires_code(self, configure):
        configure(AUTH_TWO_FACTOR=True)
        client = TestClient(create_app())
        user_id = _register(client).json()["data"]["user"]["id"]

        enabled = client.post("/auth/two-factor/enable")
        secret = get_runtime().store.get_user(user_id).two_factor_secret
        confirmed = client.post(
            "/auth/two-factor/enable/confirm", json={"token": generate_totp(secret, time.time())}
        )
        client.cookies.clear()
        without_code = client.post("/auth/login", json={"email": "user@example.com", "password": PASSWORD})
        with_code = client.post(
            "/auth/login",
            json={"email": "user@example.com", "password": PASSWORD, "token": generate_totp(secret, time.time())},
        )

        assert enabled.json()["data"]["data_url"].startswith("data:image/png;base64,")
        assert confirmed.json()["data"]["user"]["two_factor_enabled"] is True
        assert without_code.status_code == 422
        assert with_code.status_code == 200

    def test_disable_before_confirm_is_rejected(self, configure):
        configure(AUTH_TWO_FACTOR=True)
        client = TestClient(create_app())
        _register(client)
        client.post("/auth/two-factor/enable")

        response = client.post("/auth/two-factor/disable", json={"token": "123456"})

        assert response.status_code == 422
        assert response.json()["error"]["message"] == (
            "You do not have two factor authentication enabled."
        )


class TestEmailVerificationRoutes:
    def test_confirm_and_resend(self, configure):
        configure(AUTH_VERIFY_EMAILS=True)
        mailer = RecordingMailer()
        get_runtime().flows.mailer = mailer
        client = TestClient(create_app())
        user_id = _register(client).json()["data"]["user"]["id"]

        resent = client.post("/auth/verification/resend")
        token = get_runtime().store.get_user(user_id).email_verification_token
        wrong = client.post("/auth/verification/confirm", json={"token": "nope"})
        confirmed = client.post("/auth/verification/confirm", json={"token": token})

        assert resent.json()["data"] == {"success": True}
        assert len(mailer.sent) == 2
        assert wrong.status_code == 422
        assert confirmed.json()["data"]["user"]["email_verified_at"]

    def test_routes_hidden_when_disabled(self, client):
        _register(client)

        assert client.post("/auth/verification/resend").status_code == 404


class TestPasswordRoutes:
    def test_forgot_and_reset(self, client, mailer):
        _register(client)

        forgot = client.post("/auth/passwords/email", json={"email": "user@example.com"})
        token = mailer.last_body_for("user@example.com").rsplit(" ", 1)[-1]
        reset = client.post("/auth/passwords/reset", json={"token": token, "password": "Another-Pass-1"})
        reuse = client.post("/auth/passwords/reset", json={"token": token, "password": "Another-Pass-2"})
        login = client.post("/auth/login", json={"email": "user@example.com", "password": "Another-Pass-1"})

        assert forgot.json()["data"] == {"success": True}
        assert reset.json()["data"] == {"success": True}
        assert reuse.status_code == 422
        assert login.status_code == 200

    def test_unknown_email(self, client):
        response = client.post("/auth/passwords/email", json={"email": "nobody@example.com"})

        assert response.status_code == 422
        assert response.json()["error"]["details"]["errors"][0]["field"] == "email"


class TestAppSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["checks"]["redis"] == {"status": "not_configured"}

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_is_generated(self, client):
        assert client.get("/healthz").headers.get("X-Request-ID")

    def test_api_path_is_configurable(self, configure):
        configure(AUTH_API_PATH="identity")
        client = TestClient(create_app())

        assert client.post("/identity/register", json={"email": "a@example.com", "password": PASSWORD}).status_code == 201
        assert client.post("/auth/register", json={"email": "b@example.com", "password": PASSWORD}).status_code == 404

    def test_malformed_body_uses_envelope(self, client):
        response = client.post("/auth/login", json={"email": 42, "password": ["x"]})

        assert response.status_code == 422
        assert response.json()["status"] == "error"

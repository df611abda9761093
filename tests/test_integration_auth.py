"""Integration tests for the HTTP authentication flow.

Covers registration, login and lockout, logout, refresh, session
inspection, profile and password changes, and account deletion through the
public /v1 routes.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from throttlecove import app as app_module
from throttlecove.service.runtime import get_runtime
from throttlecove.storage.models import Role, utcnow

PASSWORD = "Secret123!"


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _register(client, username="alice", email="alice@example.com", password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={
            "username": username,
            "email": email,
            "password": password,
            "full_name": "Alice Example",
        },
    )


def _login(client, username="alice", password=PASSWORD):
    return client.post("/v1/auth/login", json={"username": username, "password": password})


def _bearer(response):
    return {"Authorization": f"Bearer {response.json()['data']['tokens']['access_token']}"}


class TestRegister:
    def test_register_returns_user_and_tokens(self, client):
        response = _register(client)
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["user"]["username"] == "alice"
        assert body["data"]["user"]["role"] == "user"
        assert body["data"]["user"]["email_verified"] is False
        assert "password" not in str(body["data"]["user"])
        assert body["data"]["tokens"]["token_type"] == "bearer"
        assert body["data"]["session_id"]

    def test_duplicate_username(self, client):
        _register(client)
        response = _register(client, email="other@example.com")
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "duplicate_user"
        assert error["details"] == {"field": "username"}

    def test_duplicate_email(self, client):
        _register(client)
        response = _register(client, username="alice2", email="ALICE@example.com")
        assert response.status_code == 400
        assert response.json()["error"]["details"] == {"field": "email"}

    @pytest.mark.parametrize(
        "override",
        [
            {"email": "not-an-email"},
            {"password": "short"},
            {"username": "a"},
            {"username": "has spaces"},
            {"full_name": "   "},
        ],
    )
    def test_invalid_body(self, client, override):
        payload = {
            "username": "alice",
            "email": "alice@example.com",
            "password": PASSWORD,
            "full_name": "Alice",
            **override,
        }
        response = client.post("/v1/auth/register", json=payload)
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"
        assert PASSWORD not in response.text


class TestLoginLockout:
    def test_alice_lockout_scenario(self, client):
        assert _register(client).status_code == 201
        runtime = get_runtime()
        max_attempts = runtime.settings.max_login_attempts

        for attempt in range(max_attempts):
            response = _login(client, password="wrongpass")
            assert response.status_code == 401, attempt
            assert response.json()["error"]["code"] == "invalid_credentials"

        locked = _login(client)
        assert locked.status_code == 423
        assert locked.json()["error"]["code"] == "account_locked"
        assert "locked_until" not in locked.text

        # Move the lock into the past instead of waiting it out
        user = runtime.store.get_user_by_username("alice")
        runtime.store.users[user.id].locked_until = utcnow() - timedelta(seconds=1)

        response = _login(client)
        assert response.status_code == 200
        assert runtime.store.get_user(user.id).login_attempts == 0

    def test_unknown_user_matches_wrong_password(self, client):
        _register(client)
        unknown = _login(client, username="mallory")
        wrong = _login(client, password="wrongpass")
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json()["error"] == wrong.json()["error"]

    def test_login_by_email(self, client):
        _register(client)
        response = _login(client, username="alice@example.com")
        assert response.status_code == 200
        assert response.json()["data"]["user"]["username"] == "alice"

    def test_rate_limit(self, client):
        runtime = get_runtime()
        runtime.settings.auth_rate_limit_attempts = 2
        _login(client, username="nobody")
        _login(client, username="nobody")
        response = _login(client, username="nobody")
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"


class TestSessionLifecycle:
    def test_session_endpoint(self, client):
        registered = _register(client)
        response = client.get("/v1/auth/session", headers=_bearer(registered))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["user"]["username"] == "alice"
        assert data["session"]["id"] == registered.json()["data"]["session_id"]
        assert data["session"]["current"] is True

    def test_missing_token_is_401(self, client):
        response = client.get("/v1/auth/session")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_invalid_token_is_403(self, client):
        response = client.get("/v1/auth/session", headers={"Authorization": "Bearer junk.junk.junk"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "invalid_token"

    def test_logout_revokes_session_and_is_idempotent(self, client):
        registered = _register(client)
        headers = _bearer(registered)
        assert client.post("/v1/auth/logout", headers=headers).status_code == 200
        assert client.get("/v1/auth/session", headers=headers).status_code == 401
        assert client.post("/v1/auth/logout", headers=headers).status_code == 200

    def test_refresh_rotates(self, client):
        registered = _register(client)
        refresh_token = registered.json()["data"]["tokens"]["refresh_token"]
        response = client.post("/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert response.status_code == 200
        rotated = response.json()["data"]
        assert rotated["session_id"] == registered.json()["data"]["session_id"]
        replay = client.post("/v1/auth/refresh", json={"refresh_token": refresh_token})
        assert replay.status_code == 401
        new_headers = {"Authorization": f"Bearer {rotated['tokens']['access_token']}"}
        assert client.get("/v1/auth/session", headers=new_headers).status_code == 200

    def test_malformed_tokens_never_500(self, client):
        registered = _register(client)
        tokens = registered.json()["data"]["tokens"]
        header, payload, _ = tokens["refresh_token"].split(".")
        mangled = f"{header}.{payload}.\u00e9"
        refresh = client.post("/v1/auth/refresh", json={"refresh_token": mangled})
        assert refresh.status_code == 401
        header, payload, _ = tokens["access_token"].split(".")
        bad = {"Authorization": f"Bearer {header}.{payload}.\u00e9".encode()}
        assert client.get("/v1/auth/session", headers=bad).status_code == 403
        whoami = client.get("/v1/auth/whoami", headers=bad)
        assert whoami.status_code == 200
        assert whoami.json()["data"]["authenticated"] is False

    def test_whoami(self, client):
        assert client.get("/v1/auth/whoami").json()["data"] == {
            "authenticated": False,
            "user_id": None,
            "username": None,
            "role": None,
            "session_id": None,
        }
        bad = client.get("/v1/auth/whoami", headers={"Authorization": "Bearer nope"})
        assert bad.status_code == 200
        assert bad.json()["data"]["authenticated"] is False
        registered = _register(client)
        data = client.get("/v1/auth/whoami", headers=_bearer(registered)).json()["data"]
        assert data["authenticated"] is True
        assert data["username"] == "alice"

    def test_list_and_revoke_sessions(self, client):
        registered = _register(client)
        headers = _bearer(registered)
        second = _login(client)
        sessions = client.get("/v1/auth/sessions", headers=headers).json()["data"]["items"]
        assert len(sessions) == 2
        second_id = second.json()["data"]["session_id"]
        response = client.delete(f"/v1/auth/sessions/{second_id}", headers=headers)
        assert response.status_code == 200
        assert client.get("/v1/auth/session", headers=_bearer(second)).status_code == 401

    def test_cannot_revoke_someone_elses_session(self, client):
        alice = _register(client)
        bob = _register(client, username="bob", email="bob@example.com")
        response = client.delete(
            f"/v1/auth/sessions/{alice.json()['data']['session_id']}", headers=_bearer(bob)
        )
        assert response.status_code == 404


class TestAccount:
    def test_profile_update(self, client):
        registered = _register(client)
        response = client.patch(
            "/v1/auth/profile",
            json={"full_name": "Alice Cooper", "avatar_url": "https://example.com/a.png"},
            headers=_bearer(registered),
        )
        assert response.status_code == 200
        assert response.json()["data"]["full_name"] == "Alice Cooper"

    def test_profile_update_rejects_role(self, client):
        registered = _register(client)
        response = client.patch(
            "/v1/auth/profile", json={"role": "admin"}, headers=_bearer(registered)
        )
        assert response.status_code == 422

    def test_profile_email_collision(self, client):
        registered = _register(client)
        _register(client, username="bob", email="bob@example.com")
        response = client.patch(
            "/v1/auth/profile", json={"email": "bob@example.com"}, headers=_bearer(registered)
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "duplicate_user"

    def test_password_change(self, client):
        registered = _register(client)
        other = _login(client)
        headers = _bearer(registered)
        wrong = client.post(
            "/v1/auth/password",
            json={"current_password": "wrongpass", "new_password": "NewSecret456!"},
            headers=headers,
        )
        assert wrong.status_code == 401
        assert wrong.json()["error"]["code"] == "invalid_credentials"

        response = client.post(
            "/v1/auth/password",
            json={"current_password": PASSWORD, "new_password": "NewSecret456!"},
            headers=headers,
        )
        assert response.status_code == 200
        assert response.json()["data"]["revoked_sessions"] == 1
        assert client.get("/v1/auth/session", headers=headers).status_code == 200
        assert client.get("/v1/auth/session", headers=_bearer(other)).status_code == 401
        assert _login(client, password="NewSecret456!").status_code == 200

    def test_delete_account(self, client):
        registered = _register(client)
        headers = _bearer(registered)
        assert client.delete("/v1/auth/account", headers=headers).status_code == 200
        assert client.get("/v1/auth/session", headers=headers).status_code == 401
        assert _login(client).status_code == 401


class TestAdmin:
    def test_admin_routes_require_admin_role(self, client):
        registered = _register(client)
        headers = _bearer(registered)
        assert client.get("/v1/admin/users").status_code == 401
        assert client.get("/v1/admin/users", headers=headers).status_code == 403

        runtime = get_runtime()
        user_id = registered.json()["data"]["user"]["id"]
        runtime.store.update_user_role(user_id, Role.ADMIN)
        admin_headers = _bearer(_login(client))
        listing = client.get("/v1/admin/users", headers=admin_headers)
        assert listing.status_code == 200
        assert [u["username"] for u in listing.json()["data"]["items"]] == ["alice"]

        cleanup = client.post("/v1/admin/sessions/cleanup", headers=admin_headers)
        assert cleanup.status_code == 200
        assert cleanup.json()["data"] == {"purged": 0}


class TestAppSurface:
    def test_health(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"] == {"status": "not_configured"}

    def test_health_failure_is_503(self, client, monkeypatch):
        def _down():
            raise ConnectionError("database unreachable")

        monkeypatch.setattr(get_runtime().store, "verify_connection", _down)
        response = client.get("/healthz")
        assert response.status_code == 503
        body = response.json()
        assert body["status"] == "unhealthy"
        assert body["checks"]["database"]["status"] == "unhealthy"

    def test_request_id_and_security_headers(self, client):
        response = client.get("/v1/auth/whoami", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]

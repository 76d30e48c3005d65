"""
Tests for the HTTP API.
"""

import time

import jwt
import pytest

from bucket_auth.errors import StorageError

from .conftest import TEST_SECRET


def _bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def alice(api_directory):
    return api_directory.register("alice", "alice@x.com", "password1")


@pytest.fixture
def alice_token(alice, login):
    return login("alice", "password1")


class TestHealth:
    """Tests for GET /health."""

    def test_connected(self, api_client):
        resp = api_client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["storage"] == "connected"
        assert body["version"]

    def test_disconnected_storage_still_answers(self, api_client, api_directory, monkeypatch):
        def _down():
            raise StorageError("endpoint unreachable")

        monkeypatch.setattr(api_directory.index, "load", _down)

        resp = api_client.get("/health")

        assert resp.status_code == 200
        assert resp.json()["storage"] == "disconnected"

    def test_misconfigured_store_still_starts(self, monkeypatch):
        from dataclasses import replace

        from fastapi.testclient import TestClient

        from bucket_auth.api import server

        broken = replace(server.cfg, STORE_DSN="s3://", COS_BUCKET_NAME="")
        monkeypatch.setattr(server, "cfg", broken)

        with TestClient(server.app) as client:
            resp = client.get("/health")
            login = client.post("/api/auth/login", json={"username": "alice", "password": "password1"})

        assert resp.status_code == 200
        assert resp.json()["storage"] == "disconnected"
        assert login.status_code == 500
        assert login.json()["message"] == "Storage backend error"


class TestRegister:
    """Tests for POST /api/auth/register."""

    def test_created(self, api_client):
        resp = api_client.post(
            "/api/auth/register",
            json={"username": "bob", "email": "Bob@X.com", "password": "password1"},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["success"] is True
        assert body["message"] == "User registered successfully"
        assert body["user"]["username"] == "bob"
        assert body["user"]["email"] == "bob@x.com"
        assert set(body["user"]) == {"id", "username", "email"}

    def test_duplicate_is_conflict(self, api_client, alice):
        resp = api_client.post(
            "/api/auth/register",
            json={"username": "ALICE", "email": "other@x.com", "password": "password1"},
        )
        assert resp.status_code == 409
        assert resp.json()["detail"] == "user_exists"

    def test_missing_fields(self, api_client):
        resp = api_client.post("/api/auth/register", json={"username": "bob"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "missing_fields"

    def test_short_password(self, api_client):
        resp = api_client.post(
            "/api/auth/register",
            json={"username": "bob", "email": "bob@x.com", "password": "short"},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "password_too_short"

    def test_storage_failure_is_masked(self, api_client, api_directory, monkeypatch):
        def _boom(*args, **kwargs):
            raise StorageError("s3 said no: AccessDenied on api-users")

        monkeypatch.setattr(api_directory, "register", _boom)

        resp = api_client.post(
            "/api/auth/register",
            json={"username": "bob", "email": "bob@x.com", "password": "password1"},
        )

        assert resp.status_code == 500
        assert resp.json() == {"detail": "storage_error", "message": "Storage backend error"}


class TestLogin:
    """Tests for POST /api/auth/login."""

    def test_success(self, api_client, alice):
        resp = api_client.post("/api/auth/login", json={"username": "alice", "password": "password1"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["tokenType"] == "Bearer"
        assert body["expiresIn"] == 3600
        assert body["user"] == {"id": alice["id"], "username": "alice", "role": "user"}
        claims = jwt.decode(body["token"], TEST_SECRET, algorithms=["HS256"])
        assert claims["sub"] == alice["id"]

    def test_login_with_email_any_case(self, api_client, alice):
        resp = api_client.post("/api/auth/login", json={"username": "ALICE@x.com", "password": "password1"})
        assert resp.status_code == 200

    @pytest.mark.parametrize("username,password", [("alice", "wrong-pass"), ("nobody", "password1")])
    def test_bad_credentials(self, api_client, alice, username, password):
        resp = api_client.post("/api/auth/login", json={"username": username, "password": password})

        assert resp.status_code == 401
        assert resp.json()["message"] == "Invalid credentials"
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_disabled_account(self, api_client, api_directory, alice):
        api_directory.update(alice["id"], {"active": False})
        resp = api_client.post("/api/auth/login", json={"username": "alice", "password": "password1"})
        assert resp.status_code == 401
        assert resp.json()["message"] == "Account is disabled"

    def test_missing_credentials(self, api_client):
        resp = api_client.post("/api/auth/login", json={"username": "alice"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "missing_credentials"


class TestProfile:
    """Tests for GET /api/auth/profile."""

    def test_profile(self, api_client, alice, alice_token):
        resp = api_client.get("/api/auth/profile", headers=_bearer(alice_token))

        assert resp.status_code == 200
        body = resp.json()
        assert body["id"] == alice["id"]
        assert body["email"] == "alice@x.com"
        assert "password_hash" not in body

    def test_requires_token(self, api_client):
        resp = api_client.get("/api/auth/profile")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "missing_token"

    def test_expired_token(self, api_client, alice):
        past = int(time.time()) - 120
        token = jwt.encode({"sub": alice["id"], "iat": past - 60, "exp": past}, TEST_SECRET, algorithm="HS256")

        resp = api_client.get("/api/auth/profile", headers=_bearer(token))

        assert resp.status_code == 401
        assert resp.json()["detail"] == "token_expired"

    def test_garbage_token(self, api_client):
        resp = api_client.get("/api/auth/profile", headers=_bearer("not.a.token"))
        assert resp.status_code == 401
        assert resp.json()["detail"] == "token_invalid"

    def test_deleted_user_with_live_token(self, api_client, api_directory, alice, alice_token):
        api_directory.delete(alice["id"])

        resp = api_client.get("/api/auth/profile", headers=_bearer(alice_token))

        assert resp.status_code == 404
        assert resp.json()["message"] == "User no longer exists"


class TestChangePassword:
    """Tests for POST /api/auth/change-password."""

    def test_success(self, api_client, alice_token):
        resp = api_client.post(
            "/api/auth/change-password",
            headers=_bearer(alice_token),
            json={"currentPassword": "password1", "newPassword": "password2"},
        )
        assert resp.status_code == 200
        assert resp.json() == {"success": True, "message": "Password changed successfully"}

        old = api_client.post("/api/auth/login", json={"username": "alice", "password": "password1"})
        new = api_client.post("/api/auth/login", json={"username": "alice", "password": "password2"})
        assert old.status_code == 401
        assert new.status_code == 200

    def test_wrong_current_password(self, api_client, alice_token):
        resp = api_client.post(
            "/api/auth/change-password",
            headers=_bearer(alice_token),
            json={"currentPassword": "nope-nope", "newPassword": "password2"},
        )
        assert resp.status_code == 401
        assert resp.json()["message"] == "Current password is incorrect"

    def test_missing_fields(self, api_client, alice_token):
        resp = api_client.post(
            "/api/auth/change-password",
            headers=_bearer(alice_token),
            json={"currentPassword": "password1"},
        )
        assert resp.status_code == 400


class TestProtectedRoutes:
    """Tests for /api/protected and /api/admin."""

    def test_bearer(self, api_client, alice_token):
        resp = api_client.get("/api/protected", headers=_bearer(alice_token))
        assert resp.status_code == 200
        assert resp.json()["user"]["username"] == "alice"

    def test_basic_auth(self, api_client, alice):
        resp = api_client.get("/api/protected", auth=("alice@x.com", "password1"))
        assert resp.status_code == 200
        assert resp.json()["user"]["id"] == alice["id"]

    def test_basic_auth_wrong_password(self, api_client, alice):
        resp = api_client.get("/api/protected", auth=("alice", "wrong-pass"))
        assert resp.status_code == 401

    def test_no_header(self, api_client):
        resp = api_client.get("/api/protected")
        assert resp.status_code == 401
        assert resp.json()["detail"] == "authorization_required"

    def test_unsupported_scheme(self, api_client):
        resp = api_client.get("/api/protected", headers={"Authorization": "Token abc"})
        assert resp.status_code == 401
        assert resp.json()["detail"] == "unsupported_authorization"

    def test_admin_route_forbidden_for_users(self, api_client, alice_token):
        resp = api_client.get("/api/admin", headers=_bearer(alice_token))
        assert resp.status_code == 403
        assert resp.json()["message"] == "Forbidden: Insufficient permissions"

    def test_admin_route(self, api_client, admin_token):
        resp = api_client.get("/api/admin", headers=_bearer(admin_token))
        assert resp.status_code == 200
        assert resp.json()["user"]["role"] == "admin"


class TestUserManagement:
    """Tests for the admin /api/users endpoints."""

    def test_list_paginates(self, api_client, api_directory, admin_token):
        for i in range(4):
            api_directory.register(f"user{i}", f"user{i}@x.com", "password1")

        first = api_client.get("/api/users", params={"limit": 2}, headers=_bearer(admin_token))
        assert first.status_code == 200
        assert len(first.json()["users"]) == 2
        marker = first.json()["nextMarker"]
        assert marker

        rest = api_client.get("/api/users", params={"marker": marker}, headers=_bearer(admin_token))
        assert len(rest.json()["users"]) == 3
        assert rest.json()["nextMarker"] is None
        assert all("password_hash" not in u for u in rest.json()["users"])

    @pytest.mark.parametrize("limit", ["0", "-3", "ten"])
    def test_list_rejects_bad_limit(self, api_client, admin_token, limit):
        resp = api_client.get("/api/users", params={"limit": limit}, headers=_bearer(admin_token))
        assert resp.status_code == 400
        assert resp.json()["detail"] == "invalid_limit"

    def test_list_caps_large_limit(self, api_client, admin_token):
        resp = api_client.get("/api/users", params={"limit": 5000}, headers=_bearer(admin_token))
        assert resp.status_code == 200
        assert len(resp.json()["users"]) == 1

    def test_padded_id_does_not_reach_record(self, api_client, api_directory, alice, admin_token):
        patch = api_client.patch(
            f"/api/users/%20{alice['id']}",
            headers=_bearer(admin_token),
            json={"role": "admin"},
        )
        delete = api_client.delete(f"/api/users/%20{alice['id']}", headers=_bearer(admin_token))

        assert patch.status_code == 404
        assert delete.status_code == 404
        assert api_directory.get_by_id(alice["id"])["role"] == "user"
        assert api_directory.find_by_identifier("alice")["id"] == alice["id"]

    def test_list_forbidden_for_users(self, api_client, alice_token):
        resp = api_client.get("/api/users", headers=_bearer(alice_token))
        assert resp.status_code == 403
        assert resp.json()["detail"] == "insufficient_role"

    def test_create_admin(self, api_client, admin_token):
        resp = api_client.post(
            "/api/users",
            headers=_bearer(admin_token),
            json={"username": "ops", "email": "ops@x.com", "password": "password1", "role": "admin"},
        )
        assert resp.status_code == 201
        user = resp.json()["user"]
        assert user["role"] == "admin"
        assert "password_hash" not in user

    def test_create_invalid_role(self, api_client, admin_token):
        resp = api_client.post(
            "/api/users",
            headers=_bearer(admin_token),
            json={"username": "ops", "email": "ops@x.com", "password": "password1", "role": "superuser"},
        )
        assert resp.status_code == 400
        assert resp.json()["detail"] == "invalid_role"

    def test_update_email(self, api_client, alice, admin_token):
        resp = api_client.patch(
            f"/api/users/{alice['id']}",
            headers=_bearer(admin_token),
            json={"email": "alice@new.com"},
        )
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "alice@new.com"

        login = api_client.post("/api/auth/login", json={"username": "alice@new.com", "password": "password1"})
        assert login.status_code == 200
        stale = api_client.post("/api/auth/login", json={"username": "alice@x.com", "password": "password1"})
        assert stale.status_code == 401

    def test_update_conflict(self, api_client, alice, admin_token):
        resp = api_client.patch(
            f"/api/users/{alice['id']}",
            headers=_bearer(admin_token),
            json={"username": "ROOT"},
        )
        assert resp.status_code == 409

    def test_empty_update(self, api_client, alice, admin_token):
        resp = api_client.patch(f"/api/users/{alice['id']}", headers=_bearer(admin_token), json={})
        assert resp.status_code == 400
        assert resp.json()["detail"] == "empty_update"

    def test_update_unknown_user(self, api_client, admin_token):
        resp = api_client.patch("/api/users/ghost", headers=_bearer(admin_token), json={"active": False})
        assert resp.status_code == 404

    def test_delete(self, api_client, alice, admin_token):
        resp = api_client.delete(f"/api/users/{alice['id']}", headers=_bearer(admin_token))
        assert resp.status_code == 200
        assert resp.json() == {"success": True}

        login = api_client.post("/api/auth/login", json={"username": "alice", "password": "password1"})
        assert login.status_code == 401

        again = api_client.delete(f"/api/users/{alice['id']}", headers=_bearer(admin_token))
        assert again.status_code == 404

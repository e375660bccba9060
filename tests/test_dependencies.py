"""Integration tests for auth/dependencies.py -- FastAPI guards.

A small app mounts one route per guard so each can be exercised through a
real request. The AuthService lives on app.state exactly as the production
lifespan puts it there.

Covers:
- Bearer token from the Authorization header or the access_token cookie
- 401 for missing, malformed, revoked tokens and deactivated users
- require_roles(): legacy role, assigned role, admin bypass, 403 message
- require_permissions(): 403 lists missing permissions; admin bypass
- Permissions are re-resolved per request, not read from the token
"""

from __future__ import annotations

import pytest
from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from auth.dependencies import get_current_user, require_admin, require_permissions, require_roles
from auth.models import READ_USERS, UPDATE_OWN, LegacyRole, User


def _guarded_app(service) -> FastAPI:
    app = FastAPI()
    app.state.auth_service = service

    @app.get("/whoami")
    def whoami(user: User = Depends(get_current_user)):
        return {"id": user.id, "email": user.email}

    @app.get("/editors", dependencies=[Depends(require_roles("editor"))])
    def editors():
        return {"ok": True}

    @app.get("/admin", dependencies=[Depends(require_admin)])
    def admin_only():
        return {"ok": True}

    @app.get("/users", dependencies=[Depends(require_permissions(READ_USERS, UPDATE_OWN))])
    def list_users():
        return {"ok": True}

    return app


@pytest.fixture
def client(api_service):
    with TestClient(_guarded_app(api_service)) as c:
        yield c


@pytest.fixture
def bearer(api_service, password):
    def _make(email: str, **kwargs) -> str:
        user = api_service.create_user(email=email, password=password, **kwargs)
        return api_service.issue_session(user).access_token

    return _make


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestCurrentUser:
    def test_header_token(self, client, bearer):
        resp = client.get("/whoami", headers=_auth(bearer("a@x.com")))
        assert resp.status_code == 200
        assert resp.json()["email"] == "a@x.com"

    def test_cookie_token(self, client, bearer):
        client.cookies.set("access_token", bearer("a@x.com"))
        resp = client.get("/whoami")
        assert resp.status_code == 200

    def test_missing_token(self, client):
        resp = client.get("/whoami")
        assert resp.status_code == 401
        assert resp.json()["detail"]["code"] == "unauthorized"

    def test_malformed_header(self, client, bearer):
        resp = client.get("/whoami", headers={"Authorization": f"Token {bearer('a@x.com')}"})
        assert resp.status_code == 401

    def test_revoked_token(self, client, api_service, bearer):
        token = bearer("a@x.com")
        user = api_service.users.get_by_email("a@x.com")
        api_service.end_session(user.id, bearer=token)
        assert client.get("/whoami", headers=_auth(token)).status_code == 401

    def test_deactivated_user(self, client, api_service, bearer):
        token = bearer("a@x.com")
        user = api_service.users.get_by_email("a@x.com")
        api_service.users.update_user(user.id, is_active=False)
        assert client.get("/whoami", headers=_auth(token)).status_code == 401


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class TestRequireRoles:
    def test_default_user_forbidden(self, client, bearer):
        resp = client.get("/editors", headers=_auth(bearer("a@x.com")))
        assert resp.status_code == 403
        assert resp.json()["detail"] == {"code": "forbidden", "message": "Requires one of these roles: editor"}

    def test_legacy_role(self, client, bearer):
        token = bearer("ed@x.com", role=LegacyRole.EDITOR)
        assert client.get("/editors", headers=_auth(token)).status_code == 200

    def test_assigned_role(self, client, api_service, bearer):
        editor = api_service.roles.get_by_key("editor")
        token = bearer("ed@x.com", role_ids={editor.id})
        assert client.get("/editors", headers=_auth(token)).status_code == 200

    def test_admin_passes_every_role_guard(self, client, admin_token):
        assert client.get("/editors", headers=_auth(admin_token)).status_code == 200
        assert client.get("/admin", headers=_auth(admin_token)).status_code == 200

    def test_unauthenticated_is_401_not_403(self, client):
        assert client.get("/editors").status_code == 401


class TestRequirePermissions:
    def test_missing_listed(self, client, bearer):
        resp = client.get("/users", headers=_auth(bearer("a@x.com")))
        assert resp.status_code == 403
        assert resp.json()["detail"]["message"] == "Missing required permissions: read:users"

    def test_direct_grant(self, client, bearer):
        token = bearer("a@x.com", permissions={READ_USERS})
        assert client.get("/users", headers=_auth(token)).status_code == 200

    def test_admin_bypass(self, client, admin_token):
        assert client.get("/users", headers=_auth(admin_token)).status_code == 200

    def test_grant_after_issue_is_honoured(self, client, api_service, bearer):
        token = bearer("a@x.com")
        user = api_service.users.get_by_email("a@x.com")
        api_service.users.add_permissions(user.id, [READ_USERS])
        # the token's permission snapshot predates the grant
        assert client.get("/users", headers=_auth(token)).status_code == 200

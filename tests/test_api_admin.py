"""
tests/test_api_admin.py -- Integration tests for /api/v1/admin/* and /api/v1/audit*.

Covers:
  - 401 without a session, 403 for non-admin callers
  - identity create: policy errors (400), duplicates (409), whitespace-stripped usernames
  - identity patch: no_changes, self_lockout, unknown id, deactivation revokes sessions
  - unlock of a locked identity; not_locked conflict
  - force-reset ends sessions and requires a password change at next login
  - audit listing with filters and paging; chain verification
"""

from __future__ import annotations

import uuid

import pytest
from conftest import ADMIN_PASSWORD, USER_PASSWORD, bearer, login


@pytest.fixture(scope="module")
def admin_auth(api_client) -> dict:
    client, _, _ = api_client
    return bearer(login(client, "testadmin", ADMIN_PASSWORD)["access_token"])


def _create(client, admin_auth, **overrides):
    body = {"username": f"user_{uuid.uuid4().hex[:8]}", "password": USER_PASSWORD, "must_change_password": False}
    body.update(overrides)
    return client.post("/api/v1/admin/identities", json=body, headers=admin_auth)


class TestAccessControl:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("get", "/api/v1/admin/identities"),
            ("get", "/api/v1/audit"),
            ("get", "/api/v1/audit/verify"),
        ],
    )
    def test_unauthenticated(self, api_client, method, path):
        client, _, _ = api_client
        assert getattr(client, method)(path).status_code == 401

    def test_non_admin_forbidden(self, api_client, admin_auth):
        client, _, _ = api_client
        username = _create(client, admin_auth).json()["username"]
        user_auth = bearer(login(client, username, USER_PASSWORD)["access_token"])
        resp = client.get("/api/v1/admin/identities", headers=user_auth)
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert client.get("/api/v1/audit", headers=user_auth).status_code == 403


class TestIdentities:
    def test_list_includes_admin(self, api_client, admin_auth):
        client, _, _ = api_client
        resp = client.get("/api/v1/admin/identities", headers=admin_auth)
        assert resp.status_code == 200
        assert "testadmin" in {i["username"] for i in resp.json()}
        assert all("hashed_password" not in i for i in resp.json())

    def test_create(self, api_client, admin_auth):
        client, _, _ = api_client
        name = f"carol_{uuid.uuid4().hex[:6]}"
        resp = _create(client, admin_auth, username=f"  {name} ", role="admin", must_change_password=True)
        assert resp.status_code == 201
        data = resp.json()
        assert data["username"] == name
        assert data["role"] == "admin"
        assert data["status"] == "active"
        assert data["must_change_password"] is True
        assert login(client, name, USER_PASSWORD)["require_password_change"] is True

    def test_create_rejects_weak_password(self, api_client, admin_auth):
        client, _, _ = api_client
        resp = _create(client, admin_auth, password="weak")
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "password_rejected"

    def test_create_duplicate(self, api_client, admin_auth):
        client, _, _ = api_client
        resp = _create(client, admin_auth, username="testadmin")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_create_with_origin_allow_list(self, api_client, admin_auth):
        """TestClient connects from host 'testclient', which is not in 10.0.0.0/8."""
        client, _, _ = api_client
        username = _create(client, admin_auth, allowed_origins=["10.0.0.0/8"]).json()["username"]
        resp = client.post("/api/v1/auth/login", json={"username": username, "password": USER_PASSWORD})
        assert resp.status_code == 401

    def test_patch_requires_fields(self, api_client, admin_auth):
        client, _, _ = api_client
        identity_id = _create(client, admin_auth).json()["id"]
        resp = client.patch(f"/api/v1/admin/identities/{identity_id}", json={}, headers=admin_auth)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_changes"

    def test_patch_unknown(self, api_client, admin_auth):
        client, _, _ = api_client
        resp = client.patch("/api/v1/admin/identities/999999", json={"role": "admin"}, headers=admin_auth)
        assert resp.status_code == 404

    def test_cannot_demote_self(self, api_client, admin_auth):
        client, _, admin_id = api_client
        for change in ({"role": "user"}, {"status": "inactive"}):
            resp = client.patch(f"/api/v1/admin/identities/{admin_id}", json=change, headers=admin_auth)
            assert resp.status_code == 400
            assert resp.json()["error"]["code"] == "self_lockout"

    def test_deactivation_revokes_sessions(self, api_client, admin_auth):
        client, _, _ = api_client
        created = _create(client, admin_auth).json()
        user_auth = bearer(login(client, created["username"], USER_PASSWORD)["access_token"])
        resp = client.patch(
            f"/api/v1/admin/identities/{created['id']}", json={"status": "inactive"}, headers=admin_auth
        )
        assert resp.status_code == 200
        assert resp.json()["status"] == "inactive"
        assert client.get("/api/v1/auth/me", headers=user_auth).status_code == 401

    def test_promote_and_set_origins(self, api_client, admin_auth):
        client, _, _ = api_client
        identity_id = _create(client, admin_auth).json()["id"]
        resp = client.patch(
            f"/api/v1/admin/identities/{identity_id}",
            json={"role": "admin", "allowed_origins": ["192.0.2.0/24"]},
            headers=admin_auth,
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "admin"
        assert resp.json()["allowed_origins"] == ["192.0.2.0/24"]


class TestLockAdministration:
    def test_unlock(self, api_client, admin_auth):
        client, _, _ = api_client
        created = _create(client, admin_auth).json()
        for _ in range(5):
            client.post("/api/v1/auth/login", json={"username": created["username"], "password": "nope"})

        listed = {i["id"]: i for i in client.get("/api/v1/admin/identities", headers=admin_auth).json()}
        assert listed[created["id"]]["status"] == "locked"
        assert listed[created["id"]]["locked_until"]

        resp = client.post(f"/api/v1/admin/identities/{created['id']}/unlock", headers=admin_auth)
        assert resp.status_code == 200
        login(client, created["username"], USER_PASSWORD)

        again = client.post(f"/api/v1/admin/identities/{created['id']}/unlock", headers=admin_auth)
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "not_locked"

    def test_unlock_unknown(self, api_client, admin_auth):
        client, _, _ = api_client
        assert client.post("/api/v1/admin/identities/999999/unlock", headers=admin_auth).status_code == 404

    def test_force_reset(self, api_client, admin_auth):
        client, _, _ = api_client
        created = _create(client, admin_auth).json()
        user_auth = bearer(login(client, created["username"], USER_PASSWORD)["access_token"])
        resp = client.post(f"/api/v1/admin/identities/{created['id']}/force-reset", headers=admin_auth)
        assert resp.status_code == 200
        assert client.get("/api/v1/auth/me", headers=user_auth).status_code == 401
        assert login(client, created["username"], USER_PASSWORD)["require_password_change"] is True


class TestAudit:
    def test_list_filters_and_pages(self, api_client, admin_auth):
        client, _, _ = api_client
        client.post("/api/v1/auth/login", json={"username": "ghost", "password": "nope"})
        resp = client.get("/api/v1/audit", params={"action": "LOGIN_FAILURE", "limit": 1}, headers=admin_auth)
        assert resp.status_code == 200
        page = resp.json()
        assert page["total"] >= 1
        assert page["limit"] == 1
        assert len(page["entries"]) == 1
        entry = page["entries"][0]
        assert entry["action"] == "LOGIN_FAILURE"
        assert entry["self_hash"]
        assert "password" not in entry["details"]

    def test_category_filter(self, api_client, admin_auth):
        client, _, _ = api_client
        resp = client.get("/api/v1/audit", params={"category": "ADMIN"}, headers=admin_auth)
        assert resp.status_code == 200
        assert all(e["category"] == "ADMIN" for e in resp.json()["entries"])

    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 501}, {"offset": -1}, {"category": "NOPE"}])
    def test_bad_query(self, api_client, admin_auth, params):
        client, _, _ = api_client
        assert client.get("/api/v1/audit", params=params, headers=admin_auth).status_code == 422

    def test_verify_chain(self, api_client, admin_auth):
        client, _, _ = api_client
        resp = client.get("/api/v1/audit/verify", headers=admin_auth)
        assert resp.status_code == 200
        data = resp.json()
        assert data["valid"] is True
        assert data["checked"] > 0
        assert data["first_invalid"] is None

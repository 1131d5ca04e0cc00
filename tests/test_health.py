"""
tests/test_health.py -- Integration tests for GET /api/v1/health and the docs routes.

Covers:
  - 200 response with status and version fields
  - No authentication required
  - /docs and /redoc require an authenticated session
"""

from __future__ import annotations

from conftest import ADMIN_PASSWORD, bearer, login

from api.main import API_VERSION


def test_health_returns_status_and_version(api_client):
    """Health endpoint returns 200 with status and version."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "version": API_VERSION}


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    client, _, _ = api_client
    resp = client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_docs_require_auth(api_client):
    client, _, _ = api_client
    assert client.get("/docs").status_code == 401
    assert client.get("/redoc").status_code == 401


def test_docs_with_session(api_client):
    client, _, _ = api_client
    token = login(client, "testadmin", ADMIN_PASSWORD)["access_token"]
    resp = client.get("/docs", headers=bearer(token))
    assert resp.status_code == 200
    assert "swagger" in resp.text.lower()

"""
tests/conftest.py -- Shared test fixtures for ComplianceAuth.

This module provides:
  - FakeClock / clock: injectable wall clock that tests can move forward
  - settings: explicit Settings with cheap bcrypt and no latency padding
  - store / trail / service: isolated stores and the AuthService over them
  - make_identity: helper that creates an identity through the real policy path
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
Every fixture gets its own uuid-named database so tests never share state.

The clock starts at the real current time and only moves forward:
python-jose checks `exp` against the real wall clock, so tokens minted by a
clock in the past would be rejected before our own expiry logic runs.

DEBUG, ALLOWED_HOSTS and LOGIN_RATE_LIMIT must be set before any api/ import:
api/main.py reads get_settings() at import time to build its middleware.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import timedelta

# CRITICAL: set before any core/auth/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from audit.store import AuditTrail
from auth.orchestrator import AuthService
from auth.store import IdentityStore
from core.config import Settings
from core.db import utcnow

ADMIN_PASSWORD = "Admin-Passw0rd!"
USER_PASSWORD = "Correct-H0rse!"

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock. advance() moves it forward; it never goes back."""

    def __init__(self) -> None:
        self.now = utcnow()

    def __call__(self):
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Settings and stores
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": "test-secret-key-" + "x" * 32,
        "encryption_keys": Fernet.generate_key().decode(),
        "bcrypt_rounds": 4,
        "auth_failure_min_seconds": 0,
        "lockout_threshold": 5,
        "lockout_window_minutes": 15,
        "lockout_minutes": 15,
        "password_history_size": 3,
    }
    values.update(overrides)
    return Settings(**values)


def memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> Generator[IdentityStore, None, None]:
    s = IdentityStore(db_url=memory_url("auth"))
    yield s
    s.close()


@pytest.fixture
def trail(clock) -> Generator[AuditTrail, None, None]:
    t = AuditTrail(db_url=memory_url("audit"), clock=clock)
    yield t
    t.close()


@pytest.fixture
def service(store, trail, settings, clock) -> AuthService:
    return AuthService(store, trail, settings, clock=clock)


@pytest.fixture
def make_identity(service):
    """Create an identity through AccountProtection (policy + hashing + audit)."""

    def _make(username: str = "alice", password: str = USER_PASSWORD, **attributes):
        return service.create_identity(username, password, **attributes)

    return _make


# ---------------------------------------------------------------------------
# API
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test service into app.state so TestClient routes see
    isolated in-memory stores rather than the production databases.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.identity_store = service.store
        app.state.audit_trail = service.trail
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, AuthService, int], None, None]:
    """Yield (client, service, admin_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so tests
    hit real route handlers but use isolated in-memory stores and the real
    wall clock. An admin identity exists before the client starts.
    """
    store = IdentityStore(db_url=memory_url("api_auth"))
    trail = AuditTrail(db_url=memory_url("api_audit"))
    service = AuthService(store, trail, make_settings())
    admin = service.create_identity("testadmin", ADMIN_PASSWORD, role="admin")

    app.router.lifespan_context = _patch_lifespan(service)
    limiter.reset()

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, service, admin.id

    store.close()
    trail.close()


def login(client: TestClient, username: str, password: str) -> dict:
    """POST /auth/login and return the JSON body, leaving the client cookie jar empty.

    Tests authenticate explicitly with Bearer headers so one test's cookies
    never leak into the next.
    """
    resp = client.post("/api/v1/auth/login", json={"username": username, "password": password})
    client.cookies.clear()
    assert resp.status_code == 200, resp.text
    return resp.json()


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}

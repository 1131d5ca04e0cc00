"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token carriers are checked in priority order:
  1. JWT cookie ("access_token") -- set by the browser login flow.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on a Principal (identity + session id) after
TokenIssuer.validate_access_token() accepts the token, which means the token
is not blacklisted, is validly signed, unexpired, and is the current access
token of a live, fully authenticated session. An MFA-pending session never
resolves to a Principal.

try_get_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_principal() and raises HTTP 403 if not admin.

Layer rule: may import from fastapi (Depends/HTTPException/Request) because
this module is part of the FastAPI dependency injection system. No imports
from api/.
"""

from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request

from auth.models import DeviceContext, Identity
from auth.orchestrator import AuthService
from auth.tokens import ACCESS_COOKIE


@dataclass
class Principal:
    identity: Identity
    session_id: str

    @property
    def id(self) -> int:
        return self.identity.id

    @property
    def role(self) -> str:
        return self.identity.role


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def device_context(request: Request) -> DeviceContext:
    """Origin details recorded on sessions and audit entries."""
    return DeviceContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
        fingerprint=request.headers.get("X-Device-Fingerprint"),
    )


def _extract_token(request: Request) -> str | None:
    token = request.cookies.get(ACCESS_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def try_get_principal(request: Request) -> Principal | None:
    """Authenticate the request via cookie or Bearer header. Never raises for bad tokens."""
    token = _extract_token(request)
    if token is None:
        return None
    service = get_auth_service(request)
    claims = service.issuer.validate_access_token(token)
    if claims is None:
        return None
    identity = service.store.get_by_id(claims.identity_id)
    if identity is None or not identity.is_active:
        return None
    return Principal(identity=identity, session_id=claims.session_id)


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(principal: Principal = Depends(get_current_principal)): ...
    """
    principal = try_get_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def require_admin(request: Request) -> Principal:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    principal = get_current_principal(request)
    if principal.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return principal

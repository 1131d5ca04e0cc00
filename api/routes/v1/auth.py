"""
api/routes/v1/auth.py -- Login, MFA, refresh, logout and self-service endpoints.

Routes:
  POST   /api/v1/auth/login              -- password login; 200 tokens, 202 MFA challenge
  POST   /api/v1/auth/mfa/verify         -- complete an MFA challenge
  POST   /api/v1/auth/refresh            -- rotate the refresh token (body or cookie)
  POST   /api/v1/auth/logout             -- end the current session; clears cookies
  POST   /api/v1/auth/logout-all         -- end every session of the caller
  GET    /api/v1/auth/sessions           -- caller's live sessions
  DELETE /api/v1/auth/sessions/{id}      -- revoke one of the caller's sessions
  GET    /api/v1/auth/me                 -- current identity
  POST   /api/v1/auth/password           -- change own password
  POST   /api/v1/auth/mfa/enroll         -- start TOTP enrollment (secret shown once)
  POST   /api/v1/auth/mfa/confirm        -- activate TOTP; backup codes shown once
  POST   /api/v1/auth/mfa/disable        -- turn MFA off (needs a fresh code)
  POST   /api/v1/auth/mfa/backup-codes   -- regenerate backup codes (needs a fresh code)

Security:
  [H2] POST /login, /mfa/verify, /mfa/disable and /mfa/backup-codes are
       rate-limited per IP (LOGIN_RATE_LIMIT).
  [C1] AuthService.authenticate() owns timing equalization -- never inline a
       username lookup + hash comparison here.
  [M5] Cache-Control: no-store on every response that carries a token,
       secret or backup code.
  Every login failure is the same 401 "bad_credentials" body; the reason is
  only in the audit trail.
  IDOR guard: DELETE /sessions/{id} passes the caller's id to the service,
  which refuses sessions belonging to anyone else.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    BackupCodesResponse,
    LoginRequest,
    LogoutAllResponse,
    MeResponse,
    MessageResponse,
    MfaChallengeResponse,
    MfaCodeRequest,
    MfaEnrollResponse,
    MfaVerifyRequest,
    PasswordChangeRequest,
    RefreshRequest,
    SessionResponse,
    TokenResponse,
)
from auth.dependencies import Principal, device_context, get_auth_service, get_current_principal, try_get_principal
from auth.models import AuthFailure, MfaChallenge, SessionBundle
from auth.tokens import REFRESH_COOKIE, clear_session_cookies, set_session_cookies

# Auth policy:
# - POST   /auth/login, /auth/mfa/verify, /auth/refresh: public (they establish auth)
# - POST   /auth/logout: public -- clears cookies; revokes the session named by a valid
#   access token or, failing that, a refresh token in the body
# - everything else: requires auth (get_current_principal)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse, responses={202: {"model": MfaChallengeResponse}})
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password.

    200 with tokens (also set as httpOnly cookies) when no second factor is
    configured; 202 with a challenge when MFA is enabled. Wrong username,
    wrong password, locked, inactive and disallowed origin all return the
    same 401 body.
    """
    service = get_auth_service(request)
    result = service.authenticate(body.username, body.password, device_context(request))
    if isinstance(result, AuthFailure):
        return _error(401, "bad_credentials", result.message)
    if isinstance(result, MfaChallenge):
        resp = JSONResponse(
            status_code=202,
            content=MfaChallengeResponse(
                session_id=result.session_id,
                expires_at=result.expires_at,
                methods=result.methods,
            ).model_dump(),
        )
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    return _token_response(result)


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/mfa/verify", response_model=TokenResponse)
def verify_mfa(request: Request, body: MfaVerifyRequest) -> JSONResponse:
    """Complete a login challenge with a 6-digit TOTP code or a backup code."""
    service = get_auth_service(request)
    result = service.verify_mfa(body.session_id, body.code, device_context(request))
    if isinstance(result, AuthFailure):
        return _error(401, "mfa_invalid", result.message)
    return _token_response(result)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Exchange a refresh token for a new pair. The presented token is spent.

    The token comes from the JSON body when given, otherwise from the
    path-scoped refresh cookie. Presenting an already-used token revokes the
    whole session.
    """
    token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
    if not token:
        return _error(401, "refresh_invalid", "Refresh token is invalid or expired.")
    service = get_auth_service(request)
    result = service.refresh(token, device_context(request))
    if isinstance(result, AuthFailure):
        resp = _error(401, "refresh_invalid", result.message)
        clear_session_cookies(resp)
        return resp
    return _token_response(result)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Revoke the presented session (if any) and clear both cookies.

    The session is taken from the access token when it is still valid,
    otherwise from a refresh token in the body, so a client whose access
    token already expired can still end its session.
    """
    service = get_auth_service(request)
    principal = try_get_principal(request)
    session_id = principal.session_id if principal is not None else None
    if session_id is None:
        token = (body.refresh_token if body else None) or request.cookies.get(REFRESH_COOKIE)
        if token:
            session_id = service.issuer.session_for_refresh_token(token)
    if session_id is not None:
        service.logout(session_id, device_context(request))
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_session_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    """Revoke every session of the caller, including this one."""
    count = get_auth_service(request).logout_all(principal.id, device_context(request))
    resp = JSONResponse(content=LogoutAllResponse(revoked=count).model_dump())
    clear_session_cookies(resp)
    return resp


@router.get("/auth/sessions", response_model=list[SessionResponse])
def list_sessions(request: Request, principal: Principal = Depends(get_current_principal)) -> list[SessionResponse]:
    sessions = get_auth_service(request).list_sessions(principal.id)
    return [
        SessionResponse(
            id=s.id,
            created_at=s.created_at,
            last_seen_at=s.last_seen_at,
            ip_address=s.ip_address,
            user_agent=s.user_agent,
            mfa_pending=s.mfa_pending,
            current=s.id == principal.session_id,
        )
        for s in sessions
    ]


@router.delete("/auth/sessions/{session_id}", status_code=204)
def revoke_session(
    request: Request,
    session_id: str,
    principal: Principal = Depends(get_current_principal),
) -> Response:
    """Revoke one of the caller's sessions [IDOR guard]."""
    revoked = get_auth_service(request).revoke_session(
        principal.id, session_id, actor_id=principal.id, context=device_context(request)
    )
    if not revoked:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Session not found."},
        )
    return Response(status_code=204)


@router.get("/auth/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_current_principal)) -> MeResponse:
    """Return identity information for the currently authenticated caller."""
    identity = principal.identity
    return MeResponse(
        identity_id=identity.id,
        username=identity.username,
        role=identity.role,
        session_id=principal.session_id,
        mfa_enabled=identity.mfa_enabled,
        must_change_password=identity.must_change_password,
        password_expires_at=identity.password_expires_at,
    )


@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    """Change own password. Every other session is revoked on success."""
    problems = get_auth_service(request).change_password(
        principal.id, body.current_password, body.new_password, keep_session_id=principal.session_id
    )
    if problems:
        raise HTTPException(
            status_code=400,
            detail={"code": "password_rejected", "message": "Password change rejected.", "detail": " ".join(problems)},
        )
    return MessageResponse(message="Password changed.")


# ---------------------------------------------------------------------------
# MFA management (authenticated)
# ---------------------------------------------------------------------------


@router.post("/auth/mfa/enroll", response_model=MfaEnrollResponse)
def mfa_enroll(request: Request, principal: Principal = Depends(get_current_principal)) -> JSONResponse:
    """Generate a TOTP secret. It is returned once and must be confirmed."""
    if principal.identity.mfa_enabled:
        raise HTTPException(
            status_code=409,
            detail={"code": "mfa_already_enabled", "message": "MFA is already enabled."},
        )
    enrollment = get_auth_service(request).mfa.begin_enrollment(principal.identity)
    resp = JSONResponse(
        content=MfaEnrollResponse(
            secret=enrollment.secret,
            provisioning_uri=enrollment.provisioning_uri,
        ).model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/mfa/confirm", response_model=BackupCodesResponse)
def mfa_confirm(
    request: Request,
    body: MfaCodeRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Activate the pending secret. Returns the backup codes once."""
    codes = get_auth_service(request).mfa.confirm_enrollment(principal.identity, body.code)
    if codes is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "mfa_invalid", "message": "Invalid verification code or no pending enrollment."},
        )
    return _codes_response(codes)


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/mfa/disable", response_model=MessageResponse)
def mfa_disable(
    request: Request,
    body: MfaCodeRequest,
    principal: Principal = Depends(get_current_principal),
) -> MessageResponse:
    """Turn MFA off. A wrong code counts toward the account lockout."""
    disabled = get_auth_service(request).disable_mfa(
        principal.identity, body.code, session_id=principal.session_id, context=device_context(request)
    )
    if not disabled:
        raise HTTPException(
            status_code=400,
            detail={"code": "mfa_invalid", "message": "Invalid verification code."},
        )
    return MessageResponse(message="MFA disabled.")


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/mfa/backup-codes", response_model=BackupCodesResponse)
def mfa_backup_codes(
    request: Request,
    body: MfaCodeRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    codes = get_auth_service(request).regenerate_backup_codes(
        principal.identity, body.code, session_id=principal.session_id, context=device_context(request)
    )
    if codes is None:
        raise HTTPException(
            status_code=400,
            detail={"code": "mfa_invalid", "message": "Invalid verification code."},
        )
    return _codes_response(codes)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _token_response(bundle: SessionBundle) -> JSONResponse:
    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=bundle.access_token,
            refresh_token=bundle.refresh_token,
            token_type=bundle.token_type,
            expires_in=bundle.access_expires_in,
            refresh_expires_in=bundle.refresh_expires_in,
            session_id=bundle.session_id,
            identity_id=bundle.identity_id,
            role=bundle.role,
            require_password_change=bundle.require_password_change,
        ).model_dump(),
    )
    set_session_cookies(resp, bundle)
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _codes_response(codes: list[str]) -> JSONResponse:
    resp = JSONResponse(content=BackupCodesResponse(backup_codes=codes).model_dump())
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _error(status_code: int, code: str, message: str) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp

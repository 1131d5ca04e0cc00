"""
api/routes/v1/admin.py -- Identity administration endpoints (admin only).

Routes:
  GET   /api/v1/admin/identities                    -- list identities
  POST  /api/v1/admin/identities                    -- create identity
  PATCH /api/v1/admin/identities/{id}               -- role/status/origins/must-change
  POST  /api/v1/admin/identities/{id}/unlock        -- clear a lockout
  POST  /api/v1/admin/identities/{id}/force-reset   -- require a new password, end sessions

Security:
  [M4] PATCH blocks self-deactivation/demotion and removing the last active admin.
  Moving an identity out of `active` revokes its sessions in the service layer.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.exc import IntegrityError

from api.models import IdentityCreate, IdentityPatch, IdentityResponse, MessageResponse
from auth.dependencies import Principal, get_auth_service, require_admin
from auth.models import AccountStatus, Identity
from auth.protection import PasswordPolicyError

router = APIRouter()


@router.get("/admin/identities", response_model=list[IdentityResponse])
def list_identities(request: Request, admin: Principal = Depends(require_admin)) -> list[IdentityResponse]:
    return [_identity_to_response(i) for i in get_auth_service(request).store.list_identities()]


@router.post("/admin/identities", response_model=IdentityResponse, status_code=201)
def create_identity(
    request: Request,
    body: IdentityCreate,
    admin: Principal = Depends(require_admin),
) -> IdentityResponse:
    """Create a local account. The password must satisfy the password policy."""
    service = get_auth_service(request)
    try:
        created = service.create_identity(
            body.username,
            body.password,
            actor_id=admin.id,
            role=body.role.value,
            status=body.status.value,
            allowed_origins=body.allowed_origins,
            must_change_password=body.must_change_password,
        )
    except PasswordPolicyError as exc:
        raise HTTPException(
            status_code=400,
            detail={"code": "password_rejected", "message": "Password rejected.", "detail": " ".join(exc.problems)},
        ) from exc
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An identity with that username already exists."},
        ) from exc
    return _identity_to_response(created)


@router.patch("/admin/identities/{identity_id}", response_model=IdentityResponse)
def update_identity(
    request: Request,
    identity_id: int,
    body: IdentityPatch,
    admin: Principal = Depends(require_admin),
) -> IdentityResponse:
    service = get_auth_service(request)
    target = _get_or_404(service.store.get_by_id(identity_id))

    updates = body.model_dump(exclude_none=True, mode="json")
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    leaves_admin = updates.get("role", target.role) != "admin"
    leaves_active = updates.get("status", target.status) != AccountStatus.active.value
    if target.id == admin.id and (leaves_admin or leaves_active):
        raise HTTPException(
            status_code=400,
            detail={"code": "self_lockout", "message": "You cannot demote or deactivate your own account."},
        )
    if target.role == "admin" and target.is_active and (leaves_admin or leaves_active):
        active_admins = [i for i in service.store.list_identities() if i.role == "admin" and i.is_active]
        if len(active_admins) <= 1:
            raise HTTPException(
                status_code=400,
                detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
            )

    return _identity_to_response(_get_or_404(service.update_identity(identity_id, admin.id, **updates)))


@router.post("/admin/identities/{identity_id}/unlock", response_model=MessageResponse)
def unlock_identity(
    request: Request,
    identity_id: int,
    admin: Principal = Depends(require_admin),
) -> MessageResponse:
    service = get_auth_service(request)
    _get_or_404(service.store.get_by_id(identity_id))
    if not service.unlock(identity_id, admin.id):
        raise HTTPException(
            status_code=409,
            detail={"code": "not_locked", "message": "Identity is not locked."},
        )
    return MessageResponse(message="Identity unlocked.")


@router.post("/admin/identities/{identity_id}/force-reset", response_model=MessageResponse)
def force_reset(
    request: Request,
    identity_id: int,
    admin: Principal = Depends(require_admin),
) -> MessageResponse:
    """Require a password change at next login and revoke every session."""
    service = get_auth_service(request)
    _get_or_404(service.store.get_by_id(identity_id))
    service.force_password_reset(identity_id, admin.id)
    return MessageResponse(message="Password reset required; sessions revoked.")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_or_404(identity: Identity | None) -> Identity:
    if identity is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Identity not found."},
        )
    return identity


def _identity_to_response(identity: Identity) -> IdentityResponse:
    return IdentityResponse(
        id=identity.id,
        username=identity.username,
        role=identity.role,
        status=identity.status,
        failed_attempts=identity.failed_attempts,
        locked_until=identity.locked_until,
        mfa_enabled=identity.mfa_enabled,
        must_change_password=identity.must_change_password,
        password_expires_at=identity.password_expires_at,
        allowed_origins=identity.allowed_origins,
        created_at=identity.created_at or "",
        last_login=identity.last_login,
    )

"""
api/routes/v1/audit.py -- Read-only audit trail endpoints (admin only).

Routes:
  GET /api/v1/audit          -- entries newest first, filterable, paginated
  GET /api/v1/audit/verify   -- replay the hash chain and report the first break

There is no write, update or delete route: entries are appended only by the
authentication core (AuthService / AuditTrail.append).
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEntryResponse, AuditPageResponse, CategoryEnum, ChainVerificationResponse
from auth.dependencies import Principal, get_auth_service, require_admin

router = APIRouter()


@router.get("/audit", response_model=AuditPageResponse)
def list_audit(
    request: Request,
    actor_id: Optional[int] = None,
    action: Optional[str] = Query(default=None, max_length=64),
    category: Optional[CategoryEnum] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    admin: Principal = Depends(require_admin),
) -> AuditPageResponse:
    trail = get_auth_service(request).trail
    category_value = category.value if category else None
    entries = trail.list_entries(actor_id=actor_id, action=action, category=category_value, limit=limit, offset=offset)
    return AuditPageResponse(
        total=trail.count(actor_id=actor_id, action=action, category=category_value),
        limit=limit,
        offset=offset,
        entries=[
            AuditEntryResponse(
                seq=e.seq,
                action=e.action,
                category=e.category,
                created_at=e.created_at,
                actor_id=e.actor_id,
                entity_type=e.entity_type,
                entity_id=e.entity_id,
                details=e.details,
                ip_address=e.ip_address,
                user_agent=e.user_agent,
                prev_hash=e.prev_hash,
                self_hash=e.self_hash,
            )
            for e in entries
        ],
    )


@router.get("/audit/verify", response_model=ChainVerificationResponse)
def verify_audit(request: Request, admin: Principal = Depends(require_admin)) -> ChainVerificationResponse:
    result = get_auth_service(request).trail.verify()
    return ChainVerificationResponse(
        valid=result.valid,
        checked=result.checked,
        first_invalid=result.first_invalid,
        first_invalid_seq=result.first_invalid_seq,
        reason=result.reason,
    )

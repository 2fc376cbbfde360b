"""
api/routes/v1/audit.py -- Read access to the security audit trail.

Routes:
  GET /api/v1/audit   -- newest entries first, filterable (audit:read)

The trail is append-only; there is no write or delete endpoint.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEntryResponse
from auth.dependencies import get_auth_service, require_permission
from auth.models import AccessClaims, Permission

router = APIRouter()


@router.get("/audit", response_model=list[AuditEntryResponse])
def list_audit(
    request: Request,
    user_id: Optional[str] = Query(None, max_length=36),
    action: Optional[str] = Query(None, max_length=100),
    success: Optional[bool] = None,
    severity: Optional[str] = Query(None, pattern="^(info|warning|critical)$"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    claims: AccessClaims = Depends(require_permission(Permission.AUDIT_READ)),
) -> list[AuditEntryResponse]:
    entries = get_auth_service(request).list_audit(
        claims,
        user_id=user_id,
        action=action,
        success=success,
        severity=severity,
        limit=limit,
        offset=offset,
    )
    return [AuditEntryResponse.from_event(e) for e in entries]

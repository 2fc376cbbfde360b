"""
api/routes/v1/roles.py -- Role catalogue and role assignment endpoints.

Routes:
  GET  /api/v1/roles          -- list roles with permissions (roles:read)
  GET  /api/v1/roles/{name}   -- one role (roles:read)
  POST /api/v1/roles/assign   -- grant a role to a user (roles:assign)

Security:
  Reads are gated on the token's permission snapshot.
  [S3] Assignment re-checks roles:assign against the database (slow path) so
       a caller whose role was just revoked cannot keep granting roles with a
       still-valid token. A caller can only grant roles whose permissions they
       hold themselves.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import RoleAssignmentResponse, RoleAssignRequest, RoleResponse
from auth.dependencies import get_auth_service, get_current_claims, request_context, require_permission
from auth.models import AccessClaims, Permission

# Auth policy:
# - GET  /api/v1/roles:         roles:read (token snapshot)
# - GET  /api/v1/roles/{name}:  roles:read (token snapshot)
# - POST /api/v1/roles/assign:  roles:assign (fresh lookup in AuthService)
router = APIRouter()


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(
    request: Request,
    claims: AccessClaims = Depends(require_permission(Permission.ROLES_READ)),
) -> list[RoleResponse]:
    """System roles first, then custom roles alphabetically."""
    return [RoleResponse.from_role(r) for r in get_auth_service(request).list_roles(claims)]


@router.get("/roles/{name}", response_model=RoleResponse)
def role_details(
    request: Request,
    name: str,
    claims: AccessClaims = Depends(require_permission(Permission.ROLES_READ)),
) -> RoleResponse:
    """Return one role with its permissions and current holder count. 404 if unknown."""
    return RoleResponse.from_role(get_auth_service(request).role_details(claims, name))


@router.post("/roles/assign", response_model=RoleAssignmentResponse, status_code=201)
def assign_role(
    request: Request,
    body: RoleAssignRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> RoleAssignmentResponse:
    """Grant a role, optionally until expires_at. Re-granting replaces the expiry.

    The new permissions appear in the target's next access token, not in
    tokens already issued.
    """
    assignment = get_auth_service(request).assign_role(
        claims, body.user_id, body.role, body.expires_at, request_context(request)
    )
    return RoleAssignmentResponse.from_assignment(assignment)

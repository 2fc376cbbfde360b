"""
api/routes/v1/users.py -- User administration endpoints.

Routes:
  GET    /api/v1/users                      -- list users with roles (users:read)
  GET    /api/v1/users/{id}/roles           -- role assignments incl. expiry (users:read)
  PATCH  /api/v1/users/{id}                 -- enable / disable an account (users:write)
  POST   /api/v1/users/{id}/unlock          -- clear a lockout (users:write)
  DELETE /api/v1/users/{id}/roles/{name}    -- revoke a role (roles:assign)

Security:
  [M4] PATCH /users/{id} blocks self-deactivation.
  Disabling an account revokes all of its refresh tokens; outstanding access
  tokens stay valid until they expire (at most ACCESS_TOKEN_EXPIRE_SECONDS).
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Query, Request

from api.models import MessageResponse, RoleAssignmentResponse, UserPatch, UserResponse
from auth.dependencies import get_auth_service, get_current_claims, request_context, require_permission
from auth.errors import UnknownUser
from auth.models import AccessClaims, Permission

# Auth policy:
# - GET    /api/v1/users:                    users:read
# - GET    /api/v1/users/{id}/roles:         users:read
# - PATCH  /api/v1/users/{id}:               users:write
# - POST   /api/v1/users/{id}/unlock:        users:write
# - DELETE /api/v1/users/{id}/roles/{name}:  roles:assign (fresh lookup in AuthService)
router = APIRouter()


@router.get("/users", response_model=list[UserResponse])
def list_users(
    request: Request,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    claims: AccessClaims = Depends(require_permission(Permission.USERS_READ)),
) -> list[UserResponse]:
    """Newest accounts first."""
    now = datetime.now(timezone.utc)
    rows = get_auth_service(request).list_users(claims, limit, offset)
    return [UserResponse.from_user(user, roles, now) for user, roles in rows]


@router.get("/users/{user_id}/roles", response_model=list[RoleAssignmentResponse])
def user_roles(
    request: Request,
    user_id: str,
    claims: AccessClaims = Depends(require_permission(Permission.USERS_READ)),
) -> list[RoleAssignmentResponse]:
    """Every assignment of the user, including expired ones."""
    service = get_auth_service(request)
    if service.store.get_by_id(user_id) is None:
        raise UnknownUser()
    return [RoleAssignmentResponse.from_assignment(a) for a in service.user_roles(user_id)]


@router.patch("/users/{user_id}", response_model=UserResponse)
def patch_user(
    request: Request,
    user_id: str,
    body: UserPatch,
    claims: AccessClaims = Depends(require_permission(Permission.USERS_WRITE)),
) -> UserResponse:
    """Enable or disable an account [M4]."""
    service = get_auth_service(request)
    user = service.set_active(claims, user_id, body.is_active, request_context(request))
    return UserResponse.from_user(user, service.store.roles_for_user(user_id), datetime.now(timezone.utc))


@router.post("/users/{user_id}/unlock", response_model=MessageResponse)
def unlock_user(
    request: Request,
    user_id: str,
    claims: AccessClaims = Depends(require_permission(Permission.USERS_WRITE)),
) -> MessageResponse:
    """Clear the lockout and the failed-attempt counter."""
    get_auth_service(request).unlock(claims, user_id, request_context(request))
    return MessageResponse(message="Account unlocked.")


@router.delete("/users/{user_id}/roles/{role_name}", response_model=MessageResponse)
def revoke_role(
    request: Request,
    user_id: str,
    role_name: str,
    claims: AccessClaims = Depends(get_current_claims),
) -> MessageResponse:
    """Remove a role assignment. Removing a role the user does not hold is a no-op."""
    removed = get_auth_service(request).revoke_role(claims, user_id, role_name, request_context(request))
    return MessageResponse(message="Role revoked." if removed else "Role was not assigned.")

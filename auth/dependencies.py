"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as "Authorization: Bearer <jwt>". Verification is the
fast path: signature, expiry, issuer, audience and key id are checked and the
embedded permission snapshot is trusted for the token's lifetime. No database
round trip happens here.

get_current_claims() raises InvalidToken (rendered as 401 by the AuthError
handler in api/main.py). require_permission() builds a dependency that also
checks one permission against the snapshot and raises InsufficientPermission
(403). AuthService re-checks administrative operations on the slow path.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Request/Depends) because
  this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.errors import InvalidToken
from auth.models import AccessClaims, Permission, RequestContext
from auth.service import AuthService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def bearer_token(request: Request) -> str | None:
    """Return the raw token from the Authorization header, or None."""
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_current_claims(request: Request) -> AccessClaims:
    """Require a valid bearer access token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(claims: AccessClaims = Depends(get_current_claims)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise InvalidToken(detail="missing bearer token")
    return get_auth_service(request).authenticate(token)


def require_permission(permission: Permission) -> Callable[..., AccessClaims]:
    """Build a dependency that requires permission in the caller's token snapshot.

    Use as a FastAPI dependency:
        @router.get("/roles")
        async def route(claims: AccessClaims = Depends(require_permission(Permission.ROLES_READ))): ...
    """

    def dependency(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> AccessClaims:
        get_auth_service(request).rbac.require(claims, permission)
        return claims

    return dependency


def request_context(request: Request) -> RequestContext:
    """Origin address and user agent for audit records."""
    return RequestContext(
        origin=request.client.host if request.client else None,
        user_agent=request.headers.get("User-Agent"),
    )

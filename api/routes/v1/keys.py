"""
api/routes/v1/keys.py -- Signing-key publication and rotation.

Routes:
  GET  /api/v1/.well-known/jwks.json  -- public keys of the active and in-grace keys (public)
  POST /api/v1/keys/rotate            -- retire the active key, activate a new one (system:admin)

Rotation never invalidates issued tokens: the retired key keeps verifying for
KEY_GRACE_SECONDS, which is validated at startup to cover the longest access
token lifetime plus clock skew.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response

from api.models import KeyRotationResponse
from auth.dependencies import get_auth_service, request_context, require_permission
from auth.models import AccessClaims, Permission

router = APIRouter()


@router.get("/.well-known/jwks.json")
def jwks(request: Request, response: Response) -> dict:
    """JWK Set for verifying TokenWarden access tokens outside this process."""
    response.headers["Cache-Control"] = "public, max-age=60"
    return get_auth_service(request).jwks()


@router.post("/keys/rotate", response_model=KeyRotationResponse)
def rotate_keys(
    request: Request,
    claims: AccessClaims = Depends(require_permission(Permission.SYSTEM_ADMIN)),
) -> KeyRotationResponse:
    new_key = get_auth_service(request).rotate_keys(claims, request_context(request))
    return KeyRotationResponse(kid=new_key.kid, algorithm=new_key.algorithm, created_at=new_key.created_at)

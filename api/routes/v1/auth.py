"""
api/routes/v1/auth.py -- Session endpoints: login, refresh, logout, identity.

Routes:
  POST /api/v1/auth/login            -- email + password -> access/refresh pair
  POST /api/v1/auth/refresh          -- rotate a refresh token
  POST /api/v1/auth/logout           -- revoke one refresh token (requires auth)
  POST /api/v1/auth/logout-all       -- revoke every refresh token of the caller (requires auth)
  GET  /api/v1/auth/me               -- identity and permission snapshot (requires auth)
  POST /api/v1/auth/register         -- self-registration, only when enabled
  POST /api/v1/auth/change-password  -- change password, revokes all sessions (requires auth)

Security:
  [H2] POST /login and /refresh are rate-limited per IP (LOGIN_RATE_LIMIT).
  [S1] Unknown email, wrong password, disabled and locked accounts all return
       401 "Authentication failed."; only the error code differs for lockout.
  [M5] Cache-Control: no-store on every response that carries tokens.
  Reuse of a rotated refresh token returns 401 with code "reuse_detected";
  clients must drop every stored token for the user when they see it.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import limiter, login_limit
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    LogoutAllResponse,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_auth_service, get_current_claims, request_context
from auth.models import AccessClaims, TokenPair

# Auth policy:
# - POST /api/v1/auth/login:            public, rate-limited
# - POST /api/v1/auth/refresh:          public, rate-limited (the refresh token is the credential)
# - POST /api/v1/auth/register:         public, disabled unless SELF_REGISTRATION_ENABLED
# - POST /api/v1/auth/logout:           requires auth (get_current_claims)
# - POST /api/v1/auth/logout-all:       requires auth (get_current_claims)
# - GET  /api/v1/auth/me:               requires auth (get_current_claims)
# - POST /api/v1/auth/change-password:  requires auth (get_current_claims)
router = APIRouter()


def _token_response(pair: TokenPair, response: Response) -> TokenResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=TokenResponse)
@limiter.limit(login_limit)  # [H2]
def login(request: Request, response: Response, body: LoginRequest) -> TokenResponse:
    """Authenticate with email and password; return an access/refresh pair.

    Timing equalization and failure accounting live in AuthService.login [S1].
    Do NOT inline find_by_email() + verify_password() here.
    """
    pair = get_auth_service(request).login(body.email, body.password, request_context(request))
    return _token_response(pair, response)


@router.post("/auth/refresh", response_model=TokenResponse)
@limiter.limit(login_limit)  # [H2]
def refresh(request: Request, response: Response, body: RefreshRequest) -> TokenResponse:
    """Exchange a refresh token for a new pair. The presented token is spent."""
    pair = get_auth_service(request).refresh(body.refresh_token, request_context(request))
    return _token_response(pair, response)


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> UserResponse:
    """Create an account with the default role. 403 unless self-registration is enabled."""
    service = get_auth_service(request)
    user = service.register(body.email, body.password, request_context(request))
    roles = service.store.roles_for_user(user.id)
    return UserResponse.from_user(user, roles, datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
def logout(
    request: Request,
    body: RefreshRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> MessageResponse:
    """Revoke the given refresh token. Idempotent: repeating it is a no-op."""
    get_auth_service(request).logout(claims, body.refresh_token, request_context(request))
    return MessageResponse(message="Logged out.")


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(request: Request, claims: AccessClaims = Depends(get_current_claims)) -> LogoutAllResponse:
    """Revoke every refresh token of the caller on every device."""
    revoked = get_auth_service(request).logout_all(claims, request_context(request))
    return LogoutAllResponse(message="All sessions revoked.", revoked=revoked)


@router.get("/auth/me", response_model=MeResponse)
def me(claims: AccessClaims = Depends(get_current_claims)) -> MeResponse:
    """Return identity, roles and permissions from the caller's access token.

    The snapshot reflects role grants at token issue time; a new grant shows
    up after the next refresh.
    """
    return MeResponse.from_claims(claims)


@router.post("/auth/change-password", response_model=LogoutAllResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    claims: AccessClaims = Depends(get_current_claims),
) -> LogoutAllResponse:
    """Change the caller's password. Every refresh token of the caller is revoked."""
    revoked = get_auth_service(request).change_password(
        claims, body.current_password, body.new_password, request_context(request)
    )
    return LogoutAllResponse(message="Password changed. Please log in again.", revoked=revoked)

"""
API request and response models for TokenWarden REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import AccessClaims, AuditEvent, Role, User, UserRole

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", something on both sides, a dot in the domain.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=3, max_length=255)
    # Passwords are never stripped: they are compared exactly as sent.
    password: str = Field(min_length=1, max_length=1024)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value):
        return value.strip() if isinstance(value, str) else value


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh and /auth/logout."""

    model_config = ConfigDict(str_strip_whitespace=True)

    refresh_token: str = Field(min_length=1, max_length=512)


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=1, max_length=1024)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value):
        return value.strip() if isinstance(value, str) else value


class ChangePasswordRequest(BaseModel):
    """Request body for POST /api/v1/auth/change-password."""

    current_password: str = Field(min_length=1, max_length=1024)
    new_password: str = Field(min_length=1, max_length=1024)


class RoleAssignRequest(BaseModel):
    """Request body for POST /api/v1/roles/assign.

    expires_at is optional; when given it must carry a timezone.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: str = Field(min_length=1, max_length=36)
    role: str = Field(min_length=1, max_length=50)
    expires_at: Optional[datetime] = None

    @field_validator("expires_at")
    @classmethod
    def require_timezone(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            raise ValueError("expires_at must include a timezone offset")
        return value


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/users/{id}."""

    is_active: bool


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Response for login and refresh."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int


class MeResponse(BaseModel):
    """Response for GET /api/v1/auth/me -- taken from the token's claims."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    roles: list[str]
    permissions: list[str]
    expires_at: datetime

    @classmethod
    def from_claims(cls, claims: AccessClaims) -> "MeResponse":
        return cls(
            user_id=claims.subject,
            email=claims.email,
            roles=list(claims.roles),
            permissions=sorted(p.value for p in claims.permissions),
            expires_at=claims.expires_at,
        )


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class LogoutAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str
    revoked: int


class PermissionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    description: str


class RoleResponse(BaseModel):
    """One role with its permission set and the number of current holders."""

    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    description: str
    is_system: bool
    permissions: list[PermissionInfo]
    user_count: int

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            name=role.name,
            display_name=role.display_name,
            description=role.description,
            is_system=role.is_system,
            permissions=[PermissionInfo(name=p.value, description=p.description) for p in role.permissions],
            user_count=role.user_count,
        )


class RoleAssignmentResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    role: str
    assigned_at: datetime
    expires_at: Optional[datetime] = None
    assigned_by: Optional[str] = None

    @classmethod
    def from_assignment(cls, assignment: UserRole) -> "RoleAssignmentResponse":
        return cls(
            user_id=assignment.user_id,
            role=assignment.role_name,
            assigned_at=assignment.assigned_at,
            expires_at=assignment.expires_at,
            assigned_by=assignment.assigned_by,
        )


class UserResponse(BaseModel):
    """A user account as seen by administrators. Never includes the password hash."""

    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    is_active: bool
    is_verified: bool
    is_locked: bool
    failed_login_attempts: int
    roles: list[str]
    created_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User, roles: list[Role], now: datetime) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            is_active=user.is_active,
            is_verified=user.is_verified,
            is_locked=user.locked_until is not None and user.locked_until > now,
            failed_login_attempts=user.failed_login_attempts,
            roles=[r.name for r in roles],
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class AuditEntryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Optional[int]
    action: str
    success: bool
    severity: str
    user_id: Optional[str]
    resource: Optional[str]
    resource_id: Optional[str]
    details: dict
    origin: Optional[str]
    user_agent: Optional[str]
    created_at: Optional[datetime]

    @classmethod
    def from_event(cls, event: AuditEvent) -> "AuditEntryResponse":
        return cls(
            id=event.id,
            action=event.action,
            success=event.success,
            severity=event.severity,
            user_id=event.user_id,
            resource=event.resource,
            resource_id=event.resource_id,
            details=event.details,
            origin=event.origin,
            user_agent=event.user_agent,
            created_at=event.created_at,
        )


class KeyRotationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    kid: str
    algorithm: str
    created_at: datetime


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthComponents(BaseModel):
    model_config = ConfigDict(frozen=True)

    database: str
    token_store: str
    token_store_reachable: bool
    audit_write_failures: int
    active_key_id: str


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health.

    status is "ok" when every component is healthy and "degraded" otherwise.
    """

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: HealthComponents

"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Stores and
services do the work; these types only own the shape.

Access-token claims and permission sets are closed types: Permission is an
enumeration, AccessClaims has fixed fields. Nothing in the subsystem passes
open dicts of claims around.

Layer rule: no imports from api/, tokenstore/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Permission(str, Enum):
    """Every permission a role can grant. Additive only -- there are no denies."""

    USERS_READ = "users:read"
    USERS_WRITE = "users:write"
    ROLES_READ = "roles:read"
    ROLES_WRITE = "roles:write"
    ROLES_ASSIGN = "roles:assign"
    DATA_READ = "data:read"
    DATA_WRITE = "data:write"
    DATA_DELETE = "data:delete"
    AUDIT_READ = "audit:read"
    SYSTEM_ADMIN = "system:admin"

    @property
    def description(self) -> str:
        return PERMISSION_DESCRIPTIONS[self]

    @classmethod
    def parse(cls, value: str) -> Permission | None:
        """Return the member for value, or None for identifiers this build does not know."""
        try:
            return cls(value)
        except ValueError:
            return None


PERMISSION_DESCRIPTIONS: dict[Permission, str] = {
    Permission.USERS_READ: "View user accounts",
    Permission.USERS_WRITE: "Unlock, enable and disable user accounts",
    Permission.ROLES_READ: "View roles and their permissions",
    Permission.ROLES_WRITE: "Create and edit roles",
    Permission.ROLES_ASSIGN: "Grant and revoke roles on user accounts",
    Permission.DATA_READ: "Read application data",
    Permission.DATA_WRITE: "Create and modify application data",
    Permission.DATA_DELETE: "Delete application data",
    Permission.AUDIT_READ: "Read the security audit log",
    Permission.SYSTEM_ADMIN: "Operate the platform (key rotation, maintenance)",
}


@dataclass
class User:
    """An account that can authenticate with email + password.

    email is always stored lower-cased; uniqueness is case-insensitive.
    password_salt is kept alongside the hash for schema compatibility with
    the legacy store -- argon2id embeds the same salt in its PHC string.
    """

    id: str
    email: str
    password_hash: str
    password_salt: str
    is_active: bool = True
    is_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    created_at: datetime | None = None
    last_login_at: datetime | None = None


@dataclass(frozen=True)
class Role:
    name: str
    display_name: str
    description: str = ""
    is_system: bool = False
    permissions: tuple[Permission, ...] = ()
    user_count: int = 0


@dataclass(frozen=True)
class UserRole:
    """Join row between a user and a role. expires_at=None means permanent."""

    user_id: str
    role_name: str
    assigned_at: datetime
    expires_at: datetime | None = None
    assigned_by: str | None = None

    def is_current(self, now: datetime) -> bool:
        return self.expires_at is None or self.expires_at > now


@dataclass(frozen=True)
class SigningKey:
    """Asymmetric JWT signing key.

    private_pem is None for keys loaded for verification only. retired_at is
    set when the key stops signing; it stays usable for verification until
    the grace window elapses.
    """

    kid: str
    algorithm: str
    public_pem: str
    private_pem: str | None
    active: bool
    created_at: datetime
    retired_at: datetime | None = None


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token.

    roles and permissions are a snapshot taken at issue time. A role granted
    after issuance shows up only in the next token.
    """

    subject: str
    email: str
    roles: tuple[str, ...]
    permissions: frozenset[Permission]
    issued_at: datetime
    expires_at: datetime
    key_id: str
    token_id: str


@dataclass(frozen=True)
class RefreshToken:
    """Persisted refresh-token record.

    State machine: active -> used (successor_id set) or revoked. A record
    with used=True and successor_id=None is never visible outside a store's
    atomic rotate.
    """

    token_id: str
    user_id: str
    chain_root_id: str
    issued_at: datetime
    expires_at: datetime
    used: bool = False
    revoked: bool = False
    successor_id: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

    @property
    def is_active(self) -> bool:
        return not self.used and not self.revoked


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


@dataclass
class AuditEvent:
    """One append-only security event. user_id is None for anonymous failures."""

    action: str
    success: bool
    user_id: str | None = None
    resource: str | None = None
    resource_id: str | None = None
    details: dict = field(default_factory=dict)
    origin: str | None = None
    user_agent: str | None = None
    severity: str = "info"  # "info", "warning", "critical"
    id: int | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class RequestContext:
    """Where a request came from, carried into audit records."""

    origin: str | None = None
    user_agent: str | None = None

"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. CredentialStore owns users, roles,
permissions and role assignments; SigningKeyStore owns persisted JWT keys.
The _row_to_* functions are the mappers. Services never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  [A1] Failed-login counters are incremented with a single
       "SET failed_login_attempts = failed_login_attempts + 1" statement, and
       the new value is read back inside the same transaction. Concurrent
       failures against one account serialize on the row write lock and can
       never lose an increment.

  Email is stored lower-cased and looked up lower-cased, which makes the
  UNIQUE constraint case-insensitive without relying on DB collation.

Timestamps are stored as fixed-width ISO 8601 UTC strings
(timespec=microseconds) so lexicographic comparison in SQL matches
chronological order on every backend.

Layer rule: no imports from api/ or tokenstore/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import EmailAlreadyRegistered, UnknownRole, UnknownUser
from auth.models import Permission, Role, SigningKey, User, UserRole

logger = logging.getLogger("tokenwarden.auth")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # always lower-case
    Column("password_hash", Text, nullable=False),
    Column("password_salt", String(64), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("is_verified", Integer, nullable=False, server_default="0"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(40)),
    Column("created_at", String(40), nullable=False),
    Column("last_login_at", String(40)),
)

permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
)

roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("display_name", String(100), nullable=False),
    Column("description", Text, nullable=False, server_default=""),
    Column("is_system", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
)

role_permissions = Table(
    "role_permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("permission_id", Integer, ForeignKey("permissions.id", ondelete="CASCADE"), nullable=False),
    # position keeps the role's permission set ordered as it was defined
    Column("position", Integer, nullable=False, server_default="0"),
    UniqueConstraint("role_id", "permission_id", name="uk_role_permission"),
)

user_roles = Table(
    "user_roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("role_id", Integer, ForeignKey("roles.id", ondelete="CASCADE"), nullable=False),
    Column("assigned_by", String(36)),
    Column("assigned_at", String(40), nullable=False),
    Column("expires_at", String(40)),  # NULL = permanent
    UniqueConstraint("user_id", "role_id", name="uk_user_role"),
)

signing_keys = Table(
    "signing_keys",
    metadata,
    Column("kid", String(64), primary_key=True),
    Column("algorithm", String(10), nullable=False),
    Column("public_pem", Text, nullable=False),
    Column("private_pem_encrypted", Text),  # NULL once the key is retired and scrubbed
    Column("active", Integer, nullable=False, server_default="0"),
    Column("created_at", String(40), nullable=False),
    Column("retired_at", String(40)),
)

audit_logs = Table(
    "audit_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(36)),
    Column("action", String(100), nullable=False),
    Column("resource", String(100)),
    Column("resource_id", String(100)),
    Column("details", Text, nullable=False, server_default="{}"),  # JSON object
    Column("origin", String(45)),
    Column("user_agent", Text),
    Column("severity", String(10), nullable=False, server_default="info"),
    Column("success", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
)

# ---------------------------------------------------------------------------
# Seed data -- system roles cannot be deleted
# ---------------------------------------------------------------------------

SYSTEM_ROLES: dict[str, tuple[str, str, tuple[Permission, ...]]] = {
    "admin": ("Administrator", "Full access to every permission", tuple(Permission)),
    "manager": (
        "Manager",
        "Manages users and data with limited administration rights",
        (
            Permission.USERS_READ,
            Permission.USERS_WRITE,
            Permission.ROLES_READ,
            Permission.DATA_READ,
            Permission.DATA_WRITE,
            Permission.AUDIT_READ,
        ),
    ),
    "user": ("Standard user", "Basic access to application data", (Permission.DATA_READ, Permission.DATA_WRITE)),
}


# ---------------------------------------------------------------------------
# Engine + helpers
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL and foreign keys per connection.

    SQLite PRAGMAs are not inherited by new connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def make_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Create an Engine with a bounded lock/connect timeout.

    For SQLite, timeout is the busy timeout: a writer waiting on another
    writer gives up after this many seconds instead of blocking forever.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    else:
        connect_args["connect_timeout"] = max(1, int(timeout))
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Credential repository
# ---------------------------------------------------------------------------


class CredentialStore:
    """Repository for users, roles, permissions and role assignments.

    Usage:
        store = CredentialStore("sqlite:///:memory:")
        user = store.create_user("a@x.com", password_hash, salt)
        store.assign_role(user.id, "user")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///:memory:", *, engine: Engine | None = None, timeout: float = 5.0):
        self.engine: Engine = engine if engine is not None else make_engine(db_url, timeout)
        metadata.create_all(self.engine)
        self.seed_defaults()

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    def seed_defaults(self) -> None:
        """Insert every known permission and the system roles if missing.

        Idempotent -- safe to call on every startup. Existing role grants are
        left alone; missing grants on system roles are added.
        """
        with self.engine.begin() as conn:
            existing = set(conn.execute(select(permissions.c.name)).scalars())
            for perm in Permission:
                if perm.value not in existing:
                    conn.execute(permissions.insert().values(name=perm.value, description=perm.description))
        for name, (display_name, description, perms) in SYSTEM_ROLES.items():
            self.create_role(name, display_name, description, perms, is_system=True)

    def create_role(
        self,
        name: str,
        display_name: str,
        description: str = "",
        perms: tuple[Permission, ...] | list[Permission] = (),
        *,
        is_system: bool = False,
    ) -> Role:
        """Create a role, or add missing permissions to an existing one. Returns the stored role."""
        with self.engine.begin() as conn:
            role_id = conn.execute(select(roles.c.id).where(roles.c.name == name)).scalar()
            if role_id is None:
                role_id = conn.execute(
                    roles.insert().values(
                        name=name,
                        display_name=display_name,
                        description=description,
                        is_system=1 if is_system else 0,
                        created_at=to_iso(_now()),
                    )
                ).inserted_primary_key[0]
            granted = set(
                conn.execute(select(role_permissions.c.permission_id).where(role_permissions.c.role_id == role_id))
                .scalars()
                .all()
            )
            perm_ids = dict(conn.execute(select(permissions.c.name, permissions.c.id)).all())
            for position, perm in enumerate(perms):
                perm_id = perm_ids[perm.value]
                if perm_id not in granted:
                    conn.execute(
                        role_permissions.insert().values(role_id=role_id, permission_id=perm_id, position=position)
                    )
        role = self.get_role(name)
        assert role is not None
        return role

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(users)).scalar()
        return (result or 0) > 0

    def create_user(
        self,
        email: str,
        password_hash: str,
        password_salt: str,
        *,
        is_active: bool = True,
        is_verified: bool = False,
    ) -> User:
        """Insert a new user with a fresh UUID.

        Raises EmailAlreadyRegistered if the (lower-cased) email exists,
        including when a concurrent request inserted it first.
        """
        user_id = str(uuid.uuid4())
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    users.insert().values(
                        id=user_id,
                        email=normalize_email(email),
                        password_hash=password_hash,
                        password_salt=password_salt,
                        is_active=1 if is_active else 0,
                        is_verified=1 if is_verified else 0,
                        failed_login_attempts=0,
                        created_at=to_iso(_now()),
                    )
                )
        except IntegrityError as exc:
            raise EmailAlreadyRegistered() from exc
        user = self.get_by_id(user_id)
        assert user is not None
        return user

    def find_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self, limit: int = 50, offset: int = 0) -> list[User]:
        """Return users newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                users.select().order_by(users.c.created_at.desc(), users.c.email).limit(limit).offset(offset)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    def record_login_success(self, user_id: str, now: datetime | None = None) -> None:
        """Reset the failed-attempt counter and lock, and stamp last_login_at."""
        with self.engine.begin() as conn:
            conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(failed_login_attempts=0, locked_until=None, last_login_at=to_iso(now or _now()))
            )

    def record_login_failure(self, user_id: str) -> int:
        """Atomically increment the failed-attempt counter and return the new value [A1].

        Raises UnknownUser if user_id does not exist.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(failed_login_attempts=users.c.failed_login_attempts + 1)
            )
            if result.rowcount == 0:
                raise UnknownUser()
            count = conn.execute(select(users.c.failed_login_attempts).where(users.c.id == user_id)).scalar_one()
        return int(count)

    def set_lock(self, user_id: str, until: datetime) -> None:
        """Lock the account until the given instant.

        Never shortens an existing lock: concurrent lockers racing on the
        same account end with the latest deadline.
        """
        until_iso = to_iso(until)
        with self.engine.begin() as conn:
            conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .where(or_(users.c.locked_until.is_(None), users.c.locked_until < until_iso))
                .values(locked_until=until_iso)
            )

    def clear_lock(self, user_id: str) -> bool:
        """Remove any lock and reset the counter. Returns False if user_id is unknown."""
        with self.engine.begin() as conn:
            result = conn.execute(
                users.update().where(users.c.id == user_id).values(locked_until=None, failed_login_attempts=0)
            )
        return result.rowcount > 0

    def update_password(self, user_id: str, password_hash: str, password_salt: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(
                users.update()
                .where(users.c.id == user_id)
                .values(password_hash=password_hash, password_salt=password_salt)
            )
        return result.rowcount > 0

    def set_active(self, user_id: str, is_active: bool) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(is_active=1 if is_active else 0))
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Roles and permissions
    # ------------------------------------------------------------------

    def get_role(self, name: str, now: datetime | None = None) -> Role | None:
        """Return a role with its ordered permissions and count of current holders."""
        with self.engine.connect() as conn:
            row = conn.execute(roles.select().where(roles.c.name == name)).fetchone()
            if row is None:
                return None
            return self._hydrate_role(conn, row, now or _now())

    def list_roles(self, now: datetime | None = None) -> list[Role]:
        """System roles first, then alphabetical."""
        now = now or _now()
        with self.engine.connect() as conn:
            rows = conn.execute(roles.select().order_by(roles.c.is_system.desc(), roles.c.name)).fetchall()
            return [self._hydrate_role(conn, r, now) for r in rows]

    def permissions_for_role(self, role_name: str) -> set[Permission]:
        """Return the permissions a role grants. Unknown identifiers are skipped with a warning."""
        with self.engine.connect() as conn:
            names = (
                conn.execute(
                    select(permissions.c.name)
                    .select_from(
                        role_permissions.join(roles, roles.c.id == role_permissions.c.role_id).join(
                            permissions, permissions.c.id == role_permissions.c.permission_id
                        )
                    )
                    .where(roles.c.name == role_name)
                )
                .scalars()
                .all()
            )
        return {p for p in (_parse_permission(n) for n in names) if p is not None}

    def roles_for_user(self, user_id: str, now: datetime | None = None) -> list[Role]:
        """Return the user's currently valid roles, excluding expired assignments."""
        now_iso = to_iso(now or _now())
        with self.engine.connect() as conn:
            rows = conn.execute(
                roles.select()
                .select_from(roles.join(user_roles, user_roles.c.role_id == roles.c.id))
                .where(user_roles.c.user_id == user_id)
                .where(or_(user_roles.c.expires_at.is_(None), user_roles.c.expires_at > now_iso))
                .order_by(roles.c.is_system.desc(), roles.c.name)
            ).fetchall()
            return [self._hydrate_role(conn, r, now or _now()) for r in rows]

    def assignments_for_user(self, user_id: str) -> list[UserRole]:
        """All assignment rows for a user, including expired ones (admin views)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(
                    user_roles.c.user_id,
                    roles.c.name.label("role_name"),
                    user_roles.c.assigned_at,
                    user_roles.c.expires_at,
                    user_roles.c.assigned_by,
                )
                .select_from(user_roles.join(roles, roles.c.id == user_roles.c.role_id))
                .where(user_roles.c.user_id == user_id)
                .order_by(roles.c.name)
            ).fetchall()
        return [
            UserRole(
                user_id=r.user_id,
                role_name=r.role_name,
                assigned_at=from_iso(r.assigned_at),
                expires_at=from_iso(r.expires_at),
                assigned_by=r.assigned_by,
            )
            for r in rows
        ]

    def assign_role(
        self,
        user_id: str,
        role_name: str,
        *,
        expires_at: datetime | None = None,
        assigned_by: str | None = None,
    ) -> UserRole:
        """Grant role_name to user_id.

        Re-granting an existing role replaces its expiry, so an expired
        assignment can be renewed. Raises UnknownUser / UnknownRole.
        """
        now_iso = to_iso(_now())
        with self.engine.begin() as conn:
            if conn.execute(select(users.c.id).where(users.c.id == user_id)).scalar() is None:
                raise UnknownUser()
            role_id = conn.execute(select(roles.c.id).where(roles.c.name == role_name)).scalar()
            if role_id is None:
                raise UnknownRole()
            updated = conn.execute(
                user_roles.update()
                .where((user_roles.c.user_id == user_id) & (user_roles.c.role_id == role_id))
                .values(expires_at=to_iso(expires_at), assigned_by=assigned_by, assigned_at=now_iso)
            )
            if updated.rowcount == 0:
                conn.execute(
                    user_roles.insert().values(
                        user_id=user_id,
                        role_id=role_id,
                        assigned_by=assigned_by,
                        assigned_at=now_iso,
                        expires_at=to_iso(expires_at),
                    )
                )
        return UserRole(
            user_id=user_id,
            role_name=role_name,
            assigned_at=from_iso(now_iso),
            expires_at=expires_at,
            assigned_by=assigned_by,
        )

    def revoke_role(self, user_id: str, role_name: str) -> bool:
        """Remove an assignment. Returns False if the user did not hold the role."""
        with self.engine.begin() as conn:
            role_id = conn.execute(select(roles.c.id).where(roles.c.name == role_name)).scalar()
            if role_id is None:
                raise UnknownRole()
            result = conn.execute(
                user_roles.delete().where((user_roles.c.user_id == user_id) & (user_roles.c.role_id == role_id))
            )
        return result.rowcount > 0

    def ping(self) -> bool:
        """Cheap connectivity probe for the health endpoint."""
        try:
            with self.engine.connect() as conn:
                conn.execute(select(1))
        except Exception:
            logger.exception("Database health probe failed")
            return False
        return True

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _hydrate_role(conn, row, now: datetime) -> Role:
        perm_names = (
            conn.execute(
                select(permissions.c.name)
                .select_from(role_permissions.join(permissions, permissions.c.id == role_permissions.c.permission_id))
                .where(role_permissions.c.role_id == row.id)
                .order_by(role_permissions.c.position, permissions.c.name)
            )
            .scalars()
            .all()
        )
        user_count = conn.execute(
            select(func.count())
            .select_from(user_roles)
            .where(user_roles.c.role_id == row.id)
            .where(or_(user_roles.c.expires_at.is_(None), user_roles.c.expires_at > to_iso(now)))
        ).scalar()
        return Role(
            name=row.name,
            display_name=row.display_name,
            description=row.description or "",
            is_system=bool(row.is_system),
            permissions=tuple(p for p in (_parse_permission(n) for n in perm_names) if p is not None),
            user_count=int(user_count or 0),
        )


# ---------------------------------------------------------------------------
# Signing-key repository
# ---------------------------------------------------------------------------


class SigningKeyStore:
    """Persists JWT signing keys so every process verifies with the same key ring.

    Private keys are stored encrypted (PKCS#8 with the SECRET_KEY-derived
    passphrase, handled by the caller); this class only moves strings.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        metadata.create_all(self.engine)

    def load_all(self) -> list[tuple[SigningKey, str | None]]:
        """Return (key with private_pem=None, encrypted private PEM) for every stored key."""
        with self.engine.connect() as conn:
            rows = conn.execute(signing_keys.select().order_by(signing_keys.c.created_at)).fetchall()
        return [
            (
                SigningKey(
                    kid=r.kid,
                    algorithm=r.algorithm,
                    public_pem=r.public_pem,
                    private_pem=None,
                    active=bool(r.active),
                    created_at=from_iso(r.created_at),
                    retired_at=from_iso(r.retired_at),
                ),
                r.private_pem_encrypted,
            )
            for r in rows
        ]

    def active_kid(self) -> str | None:
        with self.engine.connect() as conn:
            return conn.execute(select(signing_keys.c.kid).where(signing_keys.c.active == 1)).scalar()

    def swap_active(self, new_key: SigningKey, encrypted_private_pem: str, retired_at: datetime) -> None:
        """Retire every active key and insert new_key as the sole active key, in one transaction."""
        with self.engine.begin() as conn:
            conn.execute(
                signing_keys.update()
                .where(signing_keys.c.active == 1)
                .values(active=0, retired_at=to_iso(retired_at), private_pem_encrypted=None)
            )
            conn.execute(
                signing_keys.insert().values(
                    kid=new_key.kid,
                    algorithm=new_key.algorithm,
                    public_pem=new_key.public_pem,
                    private_pem_encrypted=encrypted_private_pem,
                    active=1,
                    created_at=to_iso(new_key.created_at),
                    retired_at=None,
                )
            )

    def delete(self, kids: list[str]) -> int:
        if not kids:
            return 0
        with self.engine.begin() as conn:
            result = conn.execute(signing_keys.delete().where(signing_keys.c.kid.in_(kids)))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _parse_permission(name: str) -> Permission | None:
    perm = Permission.parse(name)
    if perm is None:
        logger.warning("Ignoring unknown permission identifier %r", name)
    return perm


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        password_salt=row.password_salt,
        is_active=bool(row.is_active),
        is_verified=bool(row.is_verified),
        failed_login_attempts=int(row.failed_login_attempts or 0),
        locked_until=from_iso(row.locked_until),
        created_at=from_iso(row.created_at),
        last_login_at=from_iso(row.last_login_at),
    )

"""
auth/service.py -- AuthService: the login, refresh, logout and RBAC flows.

AuthService is the only object the HTTP layer and the CLI talk to. It wires
the components together and owns two cross-cutting rules:

  [S1] Outward uniformity: unknown email, wrong password, disabled account and
       locked account all surface as "Authentication failed." The precise
       reason goes into the audit trail only. An unknown email still runs one
       password verification against a dummy hash so response time does not
       reveal whether the account exists.

  [S2] Every security decision is audited, including failures. An audit write
       failure never changes the outcome of the operation (AuditLogger).

  [S3] Permission checks on administrative operations run through the slow
       path (fresh role lookup) so a revoked role takes effect immediately.
       Plain reads use the token's permission snapshot.

caller=None on unlock / rotate_keys / create_admin means the local operator
(CLI); no permission check is made. HTTP routes always pass claims.

Layer rule: may import tokenstore/ and core/; never api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from auth.audit import AuditLogger
from auth.crypto import CryptoService, validate_password_strength
from auth.errors import (
    AccountLocked,
    InsufficientPermission,
    InvalidCredentials,
    InvalidToken,
    RegistrationDisabled,
    ReuseDetected,
    UnknownRole,
    UnknownUser,
    WeakPassword,
)
from auth.keys import KeyManager
from auth.lockout import LockoutPolicy
from auth.models import (
    AccessClaims,
    AuditEvent,
    Permission,
    RequestContext,
    Role,
    SigningKey,
    TokenPair,
    User,
    UserRole,
)
from auth.rbac import RBACEngine
from auth.refresh import RefreshTokenStore
from auth.store import CredentialStore, SigningKeyStore, normalize_email
from auth.tokens import TokenService
from core.config import Settings
from tokenstore.failover import FailoverTokenRecordStore
from tokenstore.redis_store import RedisTokenRecordStore

logger = logging.getLogger("tokenwarden.auth")

_NO_CONTEXT = RequestContext()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Facade over the security components.

    Usage:
        service = AuthService.from_settings(get_settings())
        pair = service.login("a@x.com", "Secret1!")
        claims = service.authenticate(pair.access_token)
        pair = service.refresh(pair.refresh_token)
    """

    def __init__(
        self,
        *,
        store: CredentialStore,
        crypto: CryptoService,
        keys: KeyManager,
        tokens: TokenService,
        refresh_tokens: RefreshTokenStore,
        rbac: RBACEngine,
        lockout: LockoutPolicy,
        audit: AuditLogger,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.crypto = crypto
        self.keys = keys
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self.rbac = rbac
        self.lockout = lockout
        self.audit = audit
        self.settings = settings
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        crypto: CryptoService | None = None,
        token_records: FailoverTokenRecordStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> AuthService:
        """Build the full component graph from Settings.

        Startup failures (bad SECRET_KEY for stored keys, unreachable database)
        raise here so the process refuses to start.
        """
        store = CredentialStore(settings.database_url, timeout=settings.database_timeout_seconds)
        keys = KeyManager(
            settings.jwt_algorithm,
            settings.key_grace_seconds,
            store=SigningKeyStore(store.engine),
            passphrase=settings.secret_key,
            refresh_seconds=settings.key_refresh_seconds,
            clock=clock,
        )
        tokens = TokenService(
            keys,
            expire_seconds=settings.access_token_expire_seconds,
            issuer=settings.token_issuer,
            audience=settings.token_audience,
            leeway_seconds=settings.clock_skew_seconds,
            clock=clock,
        )
        if token_records is None:
            primary = None
            if settings.redis_url:
                primary = RedisTokenRecordStore(settings.redis_url, timeout=settings.redis_timeout_seconds)
            token_records = FailoverTokenRecordStore(primary, redis_url=settings.redis_url)
        return cls(
            store=store,
            crypto=crypto or CryptoService(),
            keys=keys,
            tokens=tokens,
            refresh_tokens=RefreshTokenStore(
                token_records, expire_seconds=settings.refresh_token_expire_seconds, clock=clock
            ),
            rbac=RBACEngine(store, clock=clock),
            lockout=LockoutPolicy(
                store,
                max_attempts=settings.max_failed_attempts,
                duration_seconds=settings.lockout_duration_seconds,
                clock=clock,
            ),
            audit=AuditLogger(store.engine, clock=clock),
            settings=settings,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Session flows
    # ------------------------------------------------------------------

    def login(self, email: str, password: str, ctx: RequestContext = _NO_CONTEXT) -> TokenPair:
        """Verify credentials and issue an access/refresh token pair [S1].

        Raises InvalidCredentials or AccountLocked.
        """
        normalized = normalize_email(email)
        user = self.store.find_by_email(normalized)

        if user is None:
            self.crypto.verify_password(password, self.crypto.dummy_hash, self.crypto.dummy_salt)
            self._audit("user.login_failed", False, None, ctx, {"email": normalized, "reason": "user_not_found"})
            raise InvalidCredentials()

        if self.lockout.is_locked(user):
            self._audit(
                "user.login_blocked",
                False,
                user.id,
                ctx,
                {"email": normalized, "locked_until": user.locked_until.isoformat()},
                severity="warning",
            )
            raise AccountLocked()

        if not user.is_active:
            self.crypto.verify_password(password, self.crypto.dummy_hash, self.crypto.dummy_salt)
            self._audit("user.login_failed", False, user.id, ctx, {"email": normalized, "reason": "account_disabled"})
            raise InvalidCredentials()

        if not self.crypto.verify_password(password, user.password_hash, user.password_salt):
            attempts = self.lockout.on_failed_attempt(user.id)
            locked = attempts >= self.lockout.max_attempts
            self._audit(
                "user.login_failed",
                False,
                user.id,
                ctx,
                {"email": normalized, "reason": "invalid_password", "failed_attempts": attempts, "locked": locked},
                severity="warning" if locked else "info",
            )
            raise InvalidCredentials()

        self.lockout.on_successful_attempt(user.id)
        if self.crypto.needs_rehash(user.password_hash):
            new_hash, new_salt = self.crypto.hash_password(password)
            self.store.update_password(user.id, new_hash, new_salt)
            logger.info("Re-hashed password for user %s with the current algorithm", user.id)

        pair, chain_root = self._issue_pair(user)
        self._audit(
            "user.login_success",
            True,
            user.id,
            ctx,
            {"email": normalized, "chain": CryptoService.fingerprint(chain_root)},
        )
        return pair

    def refresh(self, refresh_token: str, ctx: RequestContext = _NO_CONTEXT) -> TokenPair:
        """Rotate refresh_token and issue a fresh access token.

        The owning account is checked before rotating: a disabled or deleted
        account has its chain revoked; a locked account is refused but keeps
        its chain so the lock cannot be used to log its owner out.

        Raises InvalidToken, RefreshTokenExpired or ReuseDetected.
        """
        presented = self.refresh_tokens.get(refresh_token)
        if presented is not None and presented.is_active:
            owner = self.store.get_by_id(presented.user_id)
            if owner is None or not owner.is_active or self.lockout.is_locked(owner):
                reason = "account_locked" if owner is not None and owner.is_active else "account_unavailable"
                if reason == "account_unavailable":
                    self.refresh_tokens.revoke_chain(presented.chain_root_id)
                self._audit(
                    "token.refresh", False, presented.user_id, ctx, {"reason": reason}, resource="refresh_tokens"
                )
                raise InvalidToken()

        try:
            record = self.refresh_tokens.rotate(refresh_token)
        except ReuseDetected as exc:
            self._audit(
                "token.reuse_detected",
                False,
                exc.user_id,
                ctx,
                {"chain": CryptoService.fingerprint(exc.chain_root_id), "action": "chain_revoked"},
                severity="critical",
                resource="refresh_tokens",
            )
            raise
        except InvalidToken as exc:
            self._audit("token.refresh", False, None, ctx, {"reason": exc.code}, resource="refresh_tokens")
            raise

        user = self.store.get_by_id(record.user_id)
        if user is None:
            self.refresh_tokens.revoke_chain(record.chain_root_id)
            raise InvalidToken()

        roles, perms = self.rbac.resolve(user.id)
        access = self.tokens.issue_access_token(user, [r.name for r in roles], perms)
        self._audit(
            "token.refresh",
            True,
            user.id,
            ctx,
            {"chain": CryptoService.fingerprint(record.chain_root_id)},
            resource="refresh_tokens",
        )
        return TokenPair(
            access_token=access,
            refresh_token=record.token_id,
            expires_in=self.tokens.expire_seconds,
        )

    def logout(self, caller: AccessClaims, refresh_token: str, ctx: RequestContext = _NO_CONTEXT) -> None:
        """Revoke one refresh token of the caller. Idempotent; foreign or unknown tokens are ignored."""
        record = self.refresh_tokens.get(refresh_token)
        revoked = False
        if record is not None and record.user_id == caller.subject:
            revoked = self.refresh_tokens.revoke(refresh_token)
        self._audit("user.logout", True, caller.subject, ctx, {"revoked": revoked})

    def logout_all(self, caller: AccessClaims, ctx: RequestContext = _NO_CONTEXT) -> int:
        """Revoke every refresh token of the caller. Returns the number revoked."""
        count = self.refresh_tokens.revoke_user(caller.subject)
        self._audit("user.logout_all", True, caller.subject, ctx, {"revoked": count})
        return count

    def authenticate(self, access_token: str) -> AccessClaims:
        """Verify a bearer access token. Raises InvalidToken."""
        return self.tokens.verify_access_token(access_token)

    def me(self, access_token: str) -> AccessClaims:
        return self.authenticate(access_token)

    # ------------------------------------------------------------------
    # Account management
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, ctx: RequestContext = _NO_CONTEXT) -> User:
        """Self-registration. Raises RegistrationDisabled, WeakPassword or EmailAlreadyRegistered."""
        if not self.settings.self_registration_enabled:
            raise RegistrationDisabled()
        user = self._create_user(email, password, self.settings.default_role)
        self._audit("user.register", True, user.id, ctx, {"email": user.email, "role": self.settings.default_role})
        return user

    def create_admin(self, email: str, password: str | None = None) -> tuple[User, str]:
        """Create an administrator account. Returns (user, password).

        A policy-compliant temporary password is generated when password is None.
        """
        password = password or self.crypto.temporary_password(max(16, self.settings.password_min_length))
        user = self._create_user(email, password, "admin", assigned_by=None)
        self._audit("user.register", True, user.id, _NO_CONTEXT, {"email": user.email, "role": "admin", "via": "cli"})
        return user, password

    def change_password(
        self,
        caller: AccessClaims,
        current_password: str,
        new_password: str,
        ctx: RequestContext = _NO_CONTEXT,
    ) -> int:
        """Change the caller's password and revoke all their refresh tokens. Returns the count revoked."""
        user = self.store.get_by_id(caller.subject)
        if user is None:
            raise InvalidToken()
        if not self.crypto.verify_password(current_password, user.password_hash, user.password_salt):
            self._audit("user.password_change", False, user.id, ctx, {"reason": "invalid_current_password"})
            raise InvalidCredentials()
        violations = self._password_violations(new_password)
        if new_password == current_password:
            violations.append("must differ from the current password")
        if violations:
            raise WeakPassword(violations)
        password_hash, salt = self.crypto.hash_password(new_password)
        self.store.update_password(user.id, password_hash, salt)
        revoked = self.refresh_tokens.revoke_user(user.id)
        self._audit("user.password_change", True, user.id, ctx, {"sessions_revoked": revoked})
        return revoked

    def unlock(self, caller: AccessClaims | None, user_id: str, ctx: RequestContext = _NO_CONTEXT) -> None:
        self._require(caller, Permission.USERS_WRITE)
        if not self.lockout.unlock(user_id):
            raise UnknownUser()
        self._audit("user.unlock", True, _actor(caller), ctx, {}, resource="users", resource_id=user_id)

    def set_active(
        self,
        caller: AccessClaims,
        user_id: str,
        is_active: bool,
        ctx: RequestContext = _NO_CONTEXT,
    ) -> User:
        """Enable or disable an account. Disabling revokes every refresh token of the user."""
        self._require(caller, Permission.USERS_WRITE)
        if not is_active and caller.subject == user_id:
            raise InsufficientPermission(detail="cannot deactivate your own account")
        if not self.store.set_active(user_id, is_active):
            raise UnknownUser()
        revoked = 0 if is_active else self.refresh_tokens.revoke_user(user_id)
        self._audit(
            "user.set_active",
            True,
            caller.subject,
            ctx,
            {"is_active": is_active, "sessions_revoked": revoked},
            resource="users",
            resource_id=user_id,
        )
        return self.store.get_by_id(user_id)

    def list_users(self, caller: AccessClaims, limit: int = 50, offset: int = 0) -> list[tuple[User, list[Role]]]:
        self.rbac.require(caller, Permission.USERS_READ)
        now = self._clock()
        return [(u, self.store.roles_for_user(u.id, now)) for u in self.store.list_users(limit, offset)]

    def list_audit(self, caller: AccessClaims, **filters) -> list[AuditEvent]:
        self.rbac.require(caller, Permission.AUDIT_READ)
        return self.audit.list_entries(**filters)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def assign_role(
        self,
        caller: AccessClaims,
        user_id: str,
        role_name: str,
        expires_at: datetime | None = None,
        ctx: RequestContext = _NO_CONTEXT,
    ) -> UserRole:
        """Grant role_name to user_id [S3].

        The caller must hold roles:assign right now and every permission the
        role grants; nobody can hand out more than they hold.
        Raises InsufficientPermission, UnknownRole or UnknownUser.
        """
        self._require_fresh(caller, Permission.ROLES_ASSIGN)
        self._require_superset(caller, role_name)
        try:
            assignment = self.store.assign_role(user_id, role_name, expires_at=expires_at, assigned_by=caller.subject)
        except (UnknownRole, UnknownUser) as exc:
            self._audit(
                "role.assign",
                False,
                caller.subject,
                ctx,
                {"role": role_name, "target": user_id, "reason": exc.code},
                resource="user_roles",
            )
            raise
        self._audit(
            "role.assign",
            True,
            caller.subject,
            ctx,
            {"role": role_name, "expires_at": expires_at.isoformat() if expires_at else None},
            resource="user_roles",
            resource_id=f"{user_id}:{role_name}",
        )
        return assignment

    def revoke_role(
        self,
        caller: AccessClaims,
        user_id: str,
        role_name: str,
        ctx: RequestContext = _NO_CONTEXT,
    ) -> bool:
        self._require_fresh(caller, Permission.ROLES_ASSIGN)
        if self.store.get_by_id(user_id) is None:
            raise UnknownUser()
        removed = self.store.revoke_role(user_id, role_name)
        self._audit(
            "role.revoke",
            True,
            caller.subject,
            ctx,
            {"role": role_name, "removed": removed},
            resource="user_roles",
            resource_id=f"{user_id}:{role_name}",
        )
        return removed

    def list_roles(self, caller: AccessClaims) -> list[Role]:
        self.rbac.require(caller, Permission.ROLES_READ)
        return self.store.list_roles(self._clock())

    def role_details(self, caller: AccessClaims, role_name: str) -> Role:
        self.rbac.require(caller, Permission.ROLES_READ)
        role = self.store.get_role(role_name, self._clock())
        if role is None:
            raise UnknownRole()
        return role

    def user_roles(self, user_id: str) -> list[UserRole]:
        return self.store.assignments_for_user(user_id)

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def rotate_keys(self, caller: AccessClaims | None, ctx: RequestContext = _NO_CONTEXT) -> SigningKey:
        self._require(caller, Permission.SYSTEM_ADMIN)
        new_key = self.keys.rotate()
        self._audit(
            "key.rotate",
            True,
            _actor(caller),
            ctx,
            {"algorithm": new_key.algorithm},
            resource="signing_keys",
            resource_id=new_key.kid,
        )
        return new_key

    def jwks(self) -> dict:
        return self.tokens.jwks()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health(self) -> dict:
        records = self.refresh_tokens.records
        return {
            "database": "ok" if self.store.ping() else "unavailable",
            "token_store": getattr(records, "mode", getattr(records, "name", "unknown")),
            "token_store_reachable": records.ping(),
            "audit_write_failures": self.audit.write_failures,
            "active_key_id": self.keys.active_key().kid,
        }

    def purge_expired(self) -> dict:
        """Drop signing keys past their grace window and expired in-process refresh records."""
        kids = self.keys.purge_expired()
        tokens = self.refresh_tokens.purge_expired()
        if kids or tokens:
            logger.info("Purged %d signing key(s) and %d refresh record(s)", len(kids), tokens)
        return {"keys": kids, "refresh_tokens": tokens}

    def close(self) -> None:
        self.store.close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _issue_pair(self, user: User) -> tuple[TokenPair, str]:
        roles, perms = self.rbac.resolve(user.id)
        access = self.tokens.issue_access_token(user, [r.name for r in roles], perms)
        refresh = self.refresh_tokens.issue(user.id)
        pair = TokenPair(access_token=access, refresh_token=refresh.token_id, expires_in=self.tokens.expire_seconds)
        return pair, refresh.chain_root_id

    def _create_user(self, email: str, password: str, role_name: str, assigned_by: str | None = None) -> User:
        violations = self._password_violations(password)
        if violations:
            raise WeakPassword(violations)
        password_hash, salt = self.crypto.hash_password(password)
        user = self.store.create_user(normalize_email(email), password_hash, salt)
        self.store.assign_role(user.id, role_name, assigned_by=assigned_by)
        return user

    def _password_violations(self, password: str) -> list[str]:
        s = self.settings
        return validate_password_strength(
            password,
            min_length=s.password_min_length,
            require_uppercase=s.password_require_uppercase,
            require_lowercase=s.password_require_lowercase,
            require_digit=s.password_require_digit,
            require_special=s.password_require_special,
        )

    def _require(self, caller: AccessClaims | None, permission: Permission) -> None:
        if caller is not None:
            self.rbac.require(caller, permission)

    def _require_fresh(self, caller: AccessClaims, permission: Permission) -> None:
        """Slow-path check: the caller's roles are re-read from the database."""
        try:
            self.rbac.require(caller.subject, permission)
        except InsufficientPermission:
            self._audit(
                "permission.denied",
                False,
                caller.subject,
                _NO_CONTEXT,
                {"required": permission.value},
                severity="warning",
            )
            raise

    def _require_superset(self, caller: AccessClaims, role_name: str) -> None:
        granted = self.store.permissions_for_role(role_name)
        if not granted and self.store.get_role(role_name) is None:
            raise UnknownRole()
        _, held = self.rbac.resolve(caller.subject)
        if not granted <= held:
            logger.info("User %s may not grant role %s: it exceeds their own permissions", caller.subject, role_name)
            raise InsufficientPermission()

    def _audit(
        self,
        action: str,
        success: bool,
        user_id: str | None,
        ctx: RequestContext,
        details: dict,
        *,
        severity: str = "info",
        resource: str = "users",
        resource_id: str | None = None,
    ) -> None:
        self.audit.record(
            AuditEvent(
                action=action,
                success=success,
                user_id=user_id,
                resource=resource,
                resource_id=resource_id if resource_id is not None else user_id,
                details=details,
                origin=ctx.origin,
                user_agent=ctx.user_agent,
                severity=severity,
            )
        )


def _actor(caller: AccessClaims | None) -> str | None:
    return caller.subject if caller is not None else None

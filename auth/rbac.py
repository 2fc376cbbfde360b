"""
auth/rbac.py -- Role-based access control.

Additive model: a user's effective permissions are the union of the
permission sets of their currently valid roles. There are no deny rules.

Two ways to check:
  fast path  -- AccessClaims from a verified token. The permission snapshot
                taken at issue time is read directly; no I/O.
  slow path  -- a user id. Roles are resolved through CredentialStore right
                now, so a grant or revocation is visible immediately. Used for
                role assignment and anywhere a stale snapshot is unacceptable.

Role assignments with expires_at in the past are excluded from resolution.

Layer rule: no imports from api/ or tokenstore/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from auth.errors import InsufficientPermission
from auth.models import AccessClaims, Permission, Role
from auth.store import CredentialStore

logger = logging.getLogger("tokenwarden.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RBACEngine:
    def __init__(self, store: CredentialStore, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.store = store
        self._clock = clock

    def resolve(self, user_id: str) -> tuple[list[Role], frozenset[Permission]]:
        """Current roles of user_id and the union of their permissions."""
        roles = self.store.roles_for_user(user_id, self._clock())
        perms: set[Permission] = set()
        for role in roles:
            perms.update(role.permissions)
        return roles, frozenset(perms)

    def check_permission(self, subject: AccessClaims | str, required: Permission) -> bool:
        """True if subject holds required.

        subject is either verified AccessClaims (fast path) or a user id
        (slow path, fresh lookup).
        """
        if isinstance(subject, AccessClaims):
            return required in subject.permissions
        _, perms = self.resolve(subject)
        return required in perms

    def require(self, subject: AccessClaims | str, required: Permission) -> None:
        """Raise InsufficientPermission unless subject holds required."""
        if not self.check_permission(subject, required):
            who = subject.subject if isinstance(subject, AccessClaims) else subject
            logger.info("Permission denied: user=%s required=%s", who, required.value)
            raise InsufficientPermission()

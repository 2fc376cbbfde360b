"""
auth/lockout.py -- Failed-login lockout policy.

After max_failed_attempts consecutive failures the account is locked for
lockout_duration_seconds. A locked account never authenticates, even with the
correct password. Only a successful login (after the lock has passed) or an
administrative unlock resets the counter.

The counter increment is a single atomic UPDATE in CredentialStore [A1], so
concurrent failures against one account cannot lose a count. set_lock() never
shortens an existing lock, so racing lockers settle on the latest deadline.

Layer rule: no imports from api/ or tokenstore/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.models import User
from auth.store import CredentialStore

logger = logging.getLogger("tokenwarden.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LockoutPolicy:
    def __init__(
        self,
        store: CredentialStore,
        *,
        max_attempts: int = 5,
        duration_seconds: int = 1800,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.duration = timedelta(seconds=duration_seconds)
        self._clock = clock

    def on_failed_attempt(self, user_id: str) -> int:
        """Count a failure; lock the account once the threshold is reached. Returns the count."""
        count = self.store.record_login_failure(user_id)
        if count >= self.max_attempts:
            until = self._clock() + self.duration
            self.store.set_lock(user_id, until)
            logger.warning("Account %s locked until %s after %d failed attempts", user_id, until.isoformat(), count)
        return count

    def on_successful_attempt(self, user_id: str) -> None:
        self.store.record_login_success(user_id, self._clock())

    def is_locked(self, user: User) -> bool:
        return user.locked_until is not None and user.locked_until > self._clock()

    def unlock(self, user_id: str) -> bool:
        """Administrative unlock: clear the lock and the counter."""
        return self.store.clear_lock(user_id)

"""
auth/refresh.py -- Refresh-token lifecycle: issue, rotate, revoke.

Security design decisions:
  [R1] Token ids are CryptoService.random_token(32): 256 bits from the OS
       CSPRNG, URL-safe. The id IS the opaque refresh token handed to the
       client; nothing else about the record leaves the server.

  [R2] Rotation is delegated to TokenRecordStore.rotate(), a single
       conditional write. Of two concurrent rotations of one token exactly
       one returns ROTATED; the other sees used=True and gets REUSE_DETECTED.

  [R3] Reuse of a used token revokes every token in its chain (including
       descendants already issued) and is logged at CRITICAL. The caller is
       expected to record a critical audit event and treat every session of
       the user as compromised.

  Expiry is checked on read. Redis ages records out by TTL; the in-process
  store keeps them until purge_expired() runs.

Layer rule: may import tokenstore/ but not api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.crypto import CryptoService
from auth.errors import InvalidToken, RefreshTokenExpired, ReuseDetected
from auth.models import RefreshToken
from tokenstore.base import RotationOutcome, TokenRecordStore

logger = logging.getLogger("tokenwarden.auth")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshTokenStore:
    """Issues and rotates refresh tokens on top of a TokenRecordStore.

    Usage:
        refresh = RefreshTokenStore(FailoverTokenRecordStore(None), expire_seconds=2592000)
        t0 = refresh.issue(user.id)
        t1 = refresh.rotate(t0.token_id)
        refresh.rotate(t0.token_id)   # raises ReuseDetected, chain revoked
    """

    def __init__(
        self,
        records: TokenRecordStore,
        *,
        expire_seconds: int = 2592000,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.records = records
        self.expire_seconds = expire_seconds
        self._clock = clock

    def issue(self, user_id: str, chain_root_id: str | None = None) -> RefreshToken:
        """Create and persist a new active token. A new login starts its own chain."""
        record = self._new_record(user_id, chain_root_id)
        self.records.put(record)
        return record

    def get(self, token_id: str) -> RefreshToken | None:
        return self.records.get(token_id)

    def rotate(self, presented_id: str) -> RefreshToken:
        """Exchange presented_id for its successor.

        Raises:
            InvalidToken: unknown or revoked token.
            RefreshTokenExpired: the token is past its expiry.
            ReuseDetected: the token was already rotated; its chain is now revoked.
        """
        now = self._clock()
        # chain_root_id and user_id are inherited from the presented record inside the store.
        successor = self._new_record(user_id="", chain_root_id=None, now=now)
        outcome = self.records.rotate(presented_id, successor, now)

        if outcome is RotationOutcome.ROTATED:
            rotated = self.records.get(successor.token_id)
            if rotated is None:
                # Fallback switch between the write and the read-back.
                raise InvalidToken()
            return rotated
        if outcome is RotationOutcome.REUSE_DETECTED:
            presented = self.records.get(presented_id)
            exc = ReuseDetected()
            exc.user_id = presented.user_id if presented else None
            exc.chain_root_id = presented.chain_root_id if presented else None
            logger.critical(
                "Refresh token reuse detected: chain=%s user=%s revoked",
                CryptoService.fingerprint(exc.chain_root_id),
                exc.user_id,
            )
            raise exc
        if outcome is RotationOutcome.EXPIRED:
            raise RefreshTokenExpired()
        logger.info("Refresh rejected: %s", outcome.value)
        raise InvalidToken()

    def revoke(self, token_id: str) -> bool:
        """Revoke one token. Idempotent: unknown or already revoked ids return False."""
        return self.records.revoke(token_id)

    def revoke_chain(self, chain_root_id: str) -> int:
        return self.records.revoke_chain(chain_root_id)

    def revoke_user(self, user_id: str) -> int:
        """Revoke every chain of the user ("log out everywhere")."""
        count = self.records.revoke_user(user_id)
        logger.info("Revoked %d refresh token(s) for user %s", count, user_id)
        return count

    def chain(self, chain_root_id: str) -> list[RefreshToken]:
        return self.records.chain(chain_root_id)

    def purge_expired(self) -> int:
        purge = getattr(self.records, "purge_expired", None)
        return purge(self._clock()) if purge is not None else 0

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _new_record(self, user_id: str, chain_root_id: str | None, now: datetime | None = None) -> RefreshToken:
        now = now or self._clock()
        token_id = CryptoService.random_token(32)
        return RefreshToken(
            token_id=token_id,
            user_id=user_id,
            chain_root_id=chain_root_id or token_id,
            issued_at=now,
            expires_at=now + timedelta(seconds=self.expire_seconds),
        )

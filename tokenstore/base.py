"""
tokenstore/base.py -- The TokenRecordStore capability and its outcomes.

Every backend implements the same conditional-write semantics:

  rotate(presented_id, successor, now) is one atomic step. It re-reads the
  presented record and, in the same critical section, either
    - marks it used, links successor_id, and inserts the successor, or
    - returns REUSE_DETECTED after revoking the whole chain (the presented
      record was already used), or
    - returns NOT_FOUND / EXPIRED / REVOKED without writing anything.
  Two concurrent rotations of one token therefore produce exactly one
  ROTATED; the other sees used=True and gets REUSE_DETECTED.

  revoke() and revoke_chain() are idempotent and never create records.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Protocol, runtime_checkable

from auth.models import RefreshToken


class RotationOutcome(str, Enum):
    ROTATED = "rotated"
    REUSE_DETECTED = "reuse_detected"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    REVOKED = "revoked"


@runtime_checkable
class TokenRecordStore(Protocol):
    """Storage contract for refresh-token records.

    Implementations raise auth.errors.StoreUnavailable for transient backend
    failures (connection refused, timeout). Any other exception is a bug.
    """

    name: str

    def put(self, record: RefreshToken) -> None: ...

    def get(self, token_id: str) -> RefreshToken | None: ...

    def rotate(self, presented_id: str, successor: RefreshToken, now: datetime) -> RotationOutcome: ...

    def revoke(self, token_id: str) -> bool: ...

    def revoke_chain(self, chain_root_id: str) -> int: ...

    def revoke_user(self, user_id: str) -> int: ...

    def chain(self, chain_root_id: str) -> list[RefreshToken]: ...

    def ping(self) -> bool: ...

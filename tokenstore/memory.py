"""
tokenstore/memory.py -- In-process TokenRecordStore.

Used when no Redis URL is configured and as the degraded-mode fallback when
Redis is unreachable. Semantics are identical to the Redis store; durability
is limited to the lifetime of the process.

The conditional writes run under one lock per store instance. The lock is
held only for dict operations, never across I/O.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime

from auth.models import RefreshToken
from tokenstore.base import RotationOutcome


class MemoryTokenRecordStore:
    name = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, RefreshToken] = {}
        self._chains: dict[str, set[str]] = {}
        self._user_chains: dict[str, set[str]] = {}

    def put(self, record: RefreshToken) -> None:
        with self._lock:
            self._insert(record)

    def get(self, token_id: str) -> RefreshToken | None:
        with self._lock:
            return self._records.get(token_id)

    def rotate(self, presented_id: str, successor: RefreshToken, now: datetime) -> RotationOutcome:
        with self._lock:
            presented = self._records.get(presented_id)
            if presented is None:
                return RotationOutcome.NOT_FOUND
            if presented.is_expired(now):
                return RotationOutcome.EXPIRED
            if presented.used:
                self._revoke_chain(presented.chain_root_id)
                return RotationOutcome.REUSE_DETECTED
            if presented.revoked:
                return RotationOutcome.REVOKED
            self._records[presented_id] = replace(presented, used=True, successor_id=successor.token_id)
            self._insert(replace(successor, chain_root_id=presented.chain_root_id, user_id=presented.user_id))
            return RotationOutcome.ROTATED

    def revoke(self, token_id: str) -> bool:
        with self._lock:
            record = self._records.get(token_id)
            if record is None or record.revoked:
                return False
            self._records[token_id] = replace(record, revoked=True)
            return True

    def revoke_chain(self, chain_root_id: str) -> int:
        with self._lock:
            return self._revoke_chain(chain_root_id)

    def revoke_user(self, user_id: str) -> int:
        with self._lock:
            return sum(self._revoke_chain(root) for root in list(self._user_chains.get(user_id, ())))

    def chain(self, chain_root_id: str) -> list[RefreshToken]:
        with self._lock:
            members = [self._records[t] for t in self._chains.get(chain_root_id, ()) if t in self._records]
        return sorted(members, key=lambda r: r.issued_at)

    def purge_expired(self, now: datetime) -> int:
        """Drop expired records. Optional sweeper hook; reads already treat them as expired."""
        with self._lock:
            expired = [tid for tid, r in self._records.items() if r.is_expired(now)]
            for tid in expired:
                record = self._records.pop(tid)
                members = self._chains.get(record.chain_root_id)
                if members is not None:
                    members.discard(tid)
                    if not members:
                        del self._chains[record.chain_root_id]
                        roots = self._user_chains.get(record.user_id)
                        if roots is not None:
                            roots.discard(record.chain_root_id)
            return len(expired)

    def ping(self) -> bool:
        return True

    # ------------------------------------------------------------------
    # Internal -- callers hold self._lock
    # ------------------------------------------------------------------

    def _insert(self, record: RefreshToken) -> None:
        self._records[record.token_id] = record
        self._chains.setdefault(record.chain_root_id, set()).add(record.token_id)
        self._user_chains.setdefault(record.user_id, set()).add(record.chain_root_id)

    def _revoke_chain(self, chain_root_id: str) -> int:
        count = 0
        for token_id in self._chains.get(chain_root_id, ()):
            record = self._records.get(token_id)
            if record is not None and not record.revoked:
                self._records[token_id] = replace(record, revoked=True)
                count += 1
        return count

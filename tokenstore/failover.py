"""
tokenstore/failover.py -- Runtime selection between Redis and in-process storage.

Selection happens twice:
  1. At startup: when a Redis URL is configured, a health probe (PING) picks
     Redis if it answers and the in-process store otherwise.
  2. At runtime: the first StoreUnavailable raised by Redis switches this
     process to the in-process store for the rest of its lifetime. The
     failed operation is retried once against the fallback.

The switch is one-way. Records written to Redis before the switch are not
visible afterwards; affected clients see "token not found" and log in again.
Every switch is logged at WARNING with the masked Redis URL.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from urllib.parse import urlparse, urlunparse

from auth.errors import StoreUnavailable
from auth.models import RefreshToken
from tokenstore.base import RotationOutcome, TokenRecordStore
from tokenstore.memory import MemoryTokenRecordStore

logger = logging.getLogger("tokenwarden.tokenstore")


def mask_url_password(url: str) -> str:
    """redis://:secret@host:6379/0 -> redis://:***@host:6379/0"""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class FailoverTokenRecordStore:
    """TokenRecordStore that delegates to a primary store until it fails.

    Usage:
        store = FailoverTokenRecordStore(RedisTokenRecordStore(url), redis_url=url)
        store = FailoverTokenRecordStore(None)   # in-process only
        store.mode   # "redis", "memory" or "memory-fallback"
    """

    name = "failover"

    def __init__(
        self,
        primary: TokenRecordStore | None,
        *,
        fallback: MemoryTokenRecordStore | None = None,
        redis_url: str = "",
    ) -> None:
        self._fallback = fallback or MemoryTokenRecordStore()
        self._redis_url = mask_url_password(redis_url)
        self._switch_lock = threading.Lock()
        self._degraded = False
        self._active: TokenRecordStore = self._fallback
        if primary is not None:
            if self._probe(primary):
                self._active = primary
            else:
                self._degraded = True
                logger.warning(
                    "Refresh-token store %s unreachable at startup; using in-process store. "
                    "Refresh tokens will not survive a restart or be shared across workers.",
                    self._redis_url or primary.name,
                )

    @property
    def mode(self) -> str:
        if self._degraded:
            return "memory-fallback"
        return self._active.name

    @property
    def degraded(self) -> bool:
        return self._degraded

    # ------------------------------------------------------------------
    # TokenRecordStore
    # ------------------------------------------------------------------

    def put(self, record: RefreshToken) -> None:
        self._run("put", record)

    def get(self, token_id: str) -> RefreshToken | None:
        return self._run("get", token_id)

    def rotate(self, presented_id: str, successor: RefreshToken, now: datetime) -> RotationOutcome:
        return self._run("rotate", presented_id, successor, now)

    def revoke(self, token_id: str) -> bool:
        return self._run("revoke", token_id)

    def revoke_chain(self, chain_root_id: str) -> int:
        return self._run("revoke_chain", chain_root_id)

    def revoke_user(self, user_id: str) -> int:
        return self._run("revoke_user", user_id)

    def chain(self, chain_root_id: str) -> list[RefreshToken]:
        return self._run("chain", chain_root_id)

    def purge_expired(self, now: datetime) -> int:
        """Sweep expired records from the in-process store. Redis expires keys by TTL."""
        return self._fallback.purge_expired(now)

    def ping(self) -> bool:
        try:
            return self._active.ping()
        except StoreUnavailable:
            return False

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(self, operation: str, *args):
        store = self._active
        try:
            return getattr(store, operation)(*args)
        except StoreUnavailable as exc:
            if store is self._fallback:
                raise
            self._switch_to_fallback(store, operation, exc)
            return getattr(self._fallback, operation)(*args)

    def _switch_to_fallback(self, failed: TokenRecordStore, operation: str, exc: Exception) -> None:
        with self._switch_lock:
            if self._active is not failed:
                return
            self._active = self._fallback
            self._degraded = True
        logger.warning(
            "Refresh-token store %s failed during %s (%s); switched to in-process store "
            "for the rest of this process. Existing refresh tokens must be re-issued.",
            self._redis_url or failed.name,
            operation,
            exc.__cause__ or exc,
        )

    @staticmethod
    def _probe(store: TokenRecordStore) -> bool:
        try:
            return store.ping()
        except StoreUnavailable:
            return False

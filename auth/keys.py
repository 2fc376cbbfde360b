"""
auth/keys.py -- Asymmetric JWT signing keys with rotation and a grace window.

Security design decisions:
  Ownership: a KeyManager is an explicit object injected into TokenService.
       There is no module-level key state, so tests build isolated instances.

  Atomic swap: the whole key ring (active kid + all keys) is one immutable
       _KeyRing value. rotate() builds the next ring and replaces the single
       reference under a writer lock. Readers never take the lock; they read
       one reference and always see either the old ring or the new one --
       never a ring with zero active keys.

  Grace window: a retired key keeps verifying for key_grace_seconds after
       retired_at, then key_by_id() stops returning it and purge_expired()
       drops it. Settings guarantees the window covers the longest access
       token lifetime plus clock skew [K1].

  Shared ring: with a SigningKeyStore attached, readers compare the stored
       active kid with their own at most every refresh_seconds, and at once
       on an unknown kid. A rotation made by another process (the CLI or
       another worker) is picked up by reloading the stored ring.

  At rest: when a SigningKeyStore is attached, private keys are written as
       encrypted PKCS#8 (BestAvailableEncryption with SECRET_KEY). Retired
       keys have their private half scrubbed -- they only ever verify.

Layer rule: no imports from api/ or tokenstore/.
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import NamedTuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa

from auth.errors import CryptoError
from auth.models import SigningKey
from auth.store import SigningKeyStore

logger = logging.getLogger("tokenwarden.keys")

RSA_KEY_SIZE = 2048


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _KeyRing(NamedTuple):
    active_kid: str
    keys: dict[str, SigningKey]


def generate_key(algorithm: str, now: datetime) -> SigningKey:
    """Generate a fresh active key pair for algorithm ("RS256" or "ES256")."""
    try:
        if algorithm == "RS256":
            private_key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
        elif algorithm == "ES256":
            private_key = ec.generate_private_key(ec.SECP256R1())
        else:
            raise CryptoError(f"unsupported signing algorithm {algorithm!r}")
        private_pem = private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ).decode("ascii")
        public_pem = (
            private_key.public_key()
            .public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
            .decode("ascii")
        )
    except (UnsupportedAlgorithm, ValueError) as exc:
        raise CryptoError("signing key generation failed") from exc
    return SigningKey(
        kid=secrets.token_hex(8),
        algorithm=algorithm,
        public_pem=public_pem,
        private_pem=private_pem,
        active=True,
        created_at=now,
    )


def _encrypt_private_pem(private_pem: str, passphrase: str) -> str:
    key = serialization.load_pem_private_key(private_pem.encode("ascii"), password=None)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.BestAvailableEncryption(passphrase.encode("utf-8")),
    ).decode("ascii")


def _decrypt_private_pem(encrypted_pem: str, passphrase: str) -> str:
    try:
        key = serialization.load_pem_private_key(encrypted_pem.encode("ascii"), password=passphrase.encode("utf-8"))
    except (ValueError, TypeError) as exc:
        # Wrong SECRET_KEY or corrupted row -- configuration error, fatal at startup.
        raise CryptoError("stored signing key could not be decrypted; check SECRET_KEY") from exc
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")


class KeyManager:
    """Holds the active signing key and recently retired keys.

    Usage:
        keys = KeyManager("RS256", grace_seconds=1800)
        signer = keys.active_key()
        keys.rotate()
        keys.key_by_id(signer.kid)   # still returned until the grace window ends
    """

    def __init__(
        self,
        algorithm: str = "RS256",
        grace_seconds: int = 1800,
        *,
        store: SigningKeyStore | None = None,
        passphrase: str | None = None,
        refresh_seconds: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if store is not None and not passphrase:
            raise CryptoError("a passphrase is required to persist signing keys")
        self.algorithm = algorithm
        self.grace = timedelta(seconds=grace_seconds)
        self.refresh = timedelta(seconds=refresh_seconds)
        self._store = store
        self._passphrase = passphrase
        self._clock = clock
        self._write_lock = threading.Lock()
        self._ring = self._load_or_create()
        self._checked_at = self._clock()

    # ------------------------------------------------------------------
    # Reads (lock-free unless the stored ring moved)
    # ------------------------------------------------------------------

    def active_key(self) -> SigningKey:
        ring = self._current_ring()
        return ring.keys[ring.active_kid]

    def key_by_id(self, kid: str) -> SigningKey | None:
        """Return the key for kid if it is active or still inside its grace window."""
        key = self._current_ring().keys.get(kid)
        if key is None and self._store is not None:
            # Possibly signed by a key another process just rotated in.
            key = self._sync().keys.get(kid)
        if key is None:
            return None
        if key.retired_at is not None and self._clock() - key.retired_at > self.grace:
            return None
        return key

    def verification_keys(self) -> list[SigningKey]:
        """Active key first, then retired keys still inside the grace window."""
        ring = self._current_ring()
        now = self._clock()
        retired = [
            k for k in ring.keys.values() if k.retired_at is not None and now - k.retired_at <= self.grace
        ]
        retired.sort(key=lambda k: k.retired_at, reverse=True)
        return [ring.keys[ring.active_kid], *retired]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def rotate(self) -> SigningKey:
        """Retire the active key and activate a newly generated one in one swap."""
        with self._write_lock:
            now = self._clock()
            new_key = generate_key(self.algorithm, now)
            current = self._reload_locked() if self._store is not None else self._ring
            keys = {kid: k for kid, k in current.keys.items()}
            old = keys[current.active_kid]
            keys[old.kid] = replace(old, active=False, retired_at=now, private_pem=None)
            keys[new_key.kid] = new_key
            if self._store is not None:
                self._store.swap_active(new_key, _encrypt_private_pem(new_key.private_pem, self._passphrase), now)
            self._ring = _KeyRing(active_kid=new_key.kid, keys=keys)
            self._purge_locked(now)
        logger.info("Signing key rotated: retired kid=%s, active kid=%s", old.kid, new_key.kid)
        return new_key

    def purge_expired(self) -> list[str]:
        """Drop retired keys whose grace window has elapsed. Returns the purged kids."""
        with self._write_lock:
            return self._purge_locked(self._clock())

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _current_ring(self) -> _KeyRing:
        if self._store is not None and self._clock() - self._checked_at >= self.refresh:
            return self._sync()
        return self._ring

    def _sync(self) -> _KeyRing:
        """Reload the ring when the stored active kid differs from ours."""
        self._checked_at = self._clock()
        stored_kid = self._store.active_kid()
        if stored_kid is None or stored_kid == self._ring.active_kid:
            return self._ring
        with self._write_lock:
            return self._reload_locked()

    def _reload_locked(self) -> _KeyRing:
        current = self._ring
        keys, active_kid = self._read_store()
        if active_kid is None or active_kid == current.active_kid:
            return current
        self._ring = _KeyRing(active_kid=active_kid, keys=keys)
        logger.info("Signing key ring reloaded: active kid %s -> %s", current.active_kid, active_kid)
        return self._ring

    def _read_store(self) -> tuple[dict[str, SigningKey], str | None]:
        keys: dict[str, SigningKey] = {}
        active_kid: str | None = None
        for key, encrypted in self._store.load_all():
            if key.active:
                if encrypted is None:
                    raise CryptoError(f"active signing key {key.kid} has no private key material")
                key = replace(key, private_pem=_decrypt_private_pem(encrypted, self._passphrase))
                active_kid = key.kid
            keys[key.kid] = key
        return keys, active_kid

    def _purge_locked(self, now: datetime) -> list[str]:
        current = self._ring
        expired = [
            kid for kid, k in current.keys.items() if k.retired_at is not None and now - k.retired_at > self.grace
        ]
        if not expired:
            return []
        self._ring = _KeyRing(
            active_kid=current.active_kid,
            keys={kid: k for kid, k in current.keys.items() if kid not in expired},
        )
        if self._store is not None:
            self._store.delete(expired)
        logger.info("Purged %d signing key(s) past the grace window", len(expired))
        return expired

    def _load_or_create(self) -> _KeyRing:
        """Load the persisted ring, or generate a first key when none is active."""
        now = self._clock()
        keys: dict[str, SigningKey] = {}
        active_kid: str | None = None
        if self._store is not None:
            keys, active_kid = self._read_store()
        if active_kid is not None and keys[active_kid].algorithm != self.algorithm:
            logger.warning(
                "Configured algorithm %s differs from stored active key (%s); rotating",
                self.algorithm,
                keys[active_kid].algorithm,
            )
            active_kid = None
        if active_kid is None:
            new_key = generate_key(self.algorithm, now)
            for kid, k in list(keys.items()):
                if k.active or k.retired_at is None:
                    keys[kid] = replace(k, active=False, retired_at=now, private_pem=None)
            keys[new_key.kid] = new_key
            if self._store is not None:
                self._store.swap_active(new_key, _encrypt_private_pem(new_key.private_pem, self._passphrase), now)
            active_kid = new_key.kid
            logger.info("Generated signing key kid=%s (%s)", new_key.kid, self.algorithm)
        return _KeyRing(active_kid=active_kid, keys=keys)

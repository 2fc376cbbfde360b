"""
auth/crypto.py -- Password hashing, password policy, and secure random values.

Security design decisions:
  Passwords: argon2id via argon2-cffi's PasswordHasher. Argon2id is memory-hard,
       so GPU/ASIC brute force is expensive even for low-entropy secrets. The
       work factor below is a floor -- hashes created with weaker parameters
       report needs_rehash() and are upgraded on the next successful login.

  Salt: 16 bytes from the OS CSPRNG per call. The salt is returned alongside
       the hash (users.password_salt) and is also embedded in the PHC string
       that argon2 verifies against.

  Legacy hashes: accounts migrated from the previous platform may still carry
       bcrypt hashes ("$2a$"/"$2b$"). They verify through bcrypt directly and
       are always flagged for rehash.

  Wrong password is a normal outcome and returns False. CryptoError is raised
       only when the RNG or the hashing primitive itself fails.

  Timing: DUMMY_HASH lets callers run a full argon2 verify when the email is
       unknown, so response time does not reveal whether an account exists [C1].

Layer rule: no imports from api/ or tokenstore/.
"""

from __future__ import annotations

import hashlib
import logging
import re
import secrets
import string

import bcrypt
from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHashError, VerificationError, VerifyMismatchError

from auth.errors import CryptoError

logger = logging.getLogger("tokenwarden.auth")

# Minimum argon2id work factor: 64 MiB, 3 passes, 1 lane.
ARGON2_MEMORY_COST = 64 * 1024
ARGON2_TIME_COST = 3
ARGON2_PARALLELISM = 1
SALT_BYTES = 16

_BCRYPT_PREFIXES = ("$2a$", "$2b$", "$2y$")
_SPECIAL_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>\-_=+\[\]\\/;'`~]")
_COMMON_PATTERNS = ("password", "123456", "qwerty", "admin", "letmein")


class CryptoService:
    """Stateless crypto helpers behind one object so tests can swap work factors.

    Usage:
        crypto = CryptoService()
        password_hash, salt = crypto.hash_password("Secret1!")
        crypto.verify_password("Secret1!", password_hash, salt)   # True
    """

    def __init__(
        self,
        memory_cost: int = ARGON2_MEMORY_COST,
        time_cost: int = ARGON2_TIME_COST,
        parallelism: int = ARGON2_PARALLELISM,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=32,
            salt_len=SALT_BYTES,
            type=Type.ID,
        )
        # Computed once so the first unknown-email login is not measurably
        # slower than later ones [C1].
        self.dummy_hash, self.dummy_salt = self.hash_password("tokenwarden_timing_dummy")

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def hash_password(self, plaintext: str) -> tuple[str, str]:
        """Return (argon2id PHC hash, hex salt) for plaintext."""
        try:
            salt = secrets.token_bytes(SALT_BYTES)
            digest = self._hasher.hash(plaintext, salt=salt)
        except (HashingError, OSError, NotImplementedError) as exc:
            logger.error("Password hashing failed: %s", type(exc).__name__)
            raise CryptoError("password hashing failed") from exc
        return digest, salt.hex()

    def verify_password(self, plaintext: str, password_hash: str, salt: str = "") -> bool:
        """Return True if plaintext matches password_hash.

        The comparison is constant-time inside argon2/bcrypt. salt is accepted
        for interface symmetry with hash_password(); argon2 reads the salt
        from the PHC string, bcrypt from its own encoding.
        """
        if password_hash.startswith(_BCRYPT_PREFIXES):
            try:
                return bcrypt.checkpw(plaintext.encode("utf-8"), password_hash.encode("utf-8"))
            except ValueError:
                logger.warning("Stored bcrypt hash is malformed")
                return False
        try:
            return self._hasher.verify(password_hash, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHashError:
            logger.warning("Stored password hash is not a valid argon2 hash")
            return False
        except VerificationError:
            return False

    def needs_rehash(self, password_hash: str) -> bool:
        """True for legacy bcrypt hashes and argon2 hashes below the current work factor."""
        if password_hash.startswith(_BCRYPT_PREFIXES):
            return True
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return True

    # ------------------------------------------------------------------
    # Random values
    # ------------------------------------------------------------------

    @staticmethod
    def random_token(byte_length: int = 32) -> str:
        """URL-safe random string with byte_length bytes of entropy."""
        if byte_length < 16:
            raise ValueError("byte_length must be at least 16")
        try:
            return secrets.token_urlsafe(byte_length)
        except (OSError, NotImplementedError) as exc:
            raise CryptoError("secure random source unavailable") from exc

    @staticmethod
    def fingerprint(token: str | None) -> str | None:
        """Stable short identifier for an opaque token that reveals nothing about it. Safe to log."""
        if not token:
            return None
        return hashlib.sha256(token.encode("ascii")).hexdigest()[:16]

    @staticmethod
    def temporary_password(length: int = 16) -> str:
        """Random password that satisfies the default policy (one of each class)."""
        if length < 8:
            raise ValueError("length must be at least 8")
        pools = [string.ascii_uppercase, string.ascii_lowercase, string.digits, "!@#$%^&*"]
        alphabet = "".join(pools)
        try:
            chars = [secrets.choice(pool) for pool in pools]
            chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
            secrets.SystemRandom().shuffle(chars)
        except (OSError, NotImplementedError) as exc:
            raise CryptoError("secure random source unavailable") from exc
        return "".join(chars)


# ---------------------------------------------------------------------------
# Password policy
# ---------------------------------------------------------------------------


def validate_password_strength(
    password: str,
    min_length: int = 8,
    require_uppercase: bool = True,
    require_lowercase: bool = True,
    require_digit: bool = True,
    require_special: bool = True,
) -> list[str]:
    """Return the list of policy violations for password. Empty list means acceptable."""
    violations: list[str] = []
    if len(password) < min_length:
        violations.append(f"must be at least {min_length} characters long")
    if require_uppercase and not any(c.isupper() for c in password):
        violations.append("must contain an uppercase letter")
    if require_lowercase and not any(c.islower() for c in password):
        violations.append("must contain a lowercase letter")
    if require_digit and not any(c.isdigit() for c in password):
        violations.append("must contain a digit")
    if require_special and not _SPECIAL_RE.search(password):
        violations.append("must contain a special character")
    lowered = password.lower()
    if any(pattern in lowered for pattern in _COMMON_PATTERNS):
        violations.append("must not contain a common password pattern")
    return violations

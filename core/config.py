"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for TokenWarden happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead,
or better, accept a Settings instance as a constructor argument.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. max_failed_attempts -> MAX_FAILED_ATTEMPTS).

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved. Misconfiguration is fatal at startup, never per-request.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. It is the
       passphrase that encrypts private signing keys at rest.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [K1] key_grace_seconds must cover the longest access-token lifetime plus
       clock skew, so no token can outlive the key that verifies it.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, or tokenstore/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokenwarden.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'tokenwarden.db'}"

SUPPORTED_ALGORITHMS = ("RS256", "ES256")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Tests usually construct
    Settings(debug=True, ...) directly with the overrides they need.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = _DEFAULT_DB_URL
    database_timeout_seconds: float = 5.0
    # Empty string disables Redis; refresh tokens then live in process memory.
    redis_url: str = ""
    redis_timeout_seconds: float = 0.5

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    password_min_length: int = 8
    password_require_uppercase: bool = True
    password_require_lowercase: bool = True
    password_require_digit: bool = True
    password_require_special: bool = True

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    max_failed_attempts: int = 5
    lockout_duration_seconds: int = 30 * 60

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    access_token_expire_seconds: int = 15 * 60
    refresh_token_expire_seconds: int = 30 * 24 * 3600
    jwt_algorithm: str = "RS256"
    key_grace_seconds: int = 30 * 60
    key_refresh_seconds: int = 5
    clock_skew_seconds: int = 5
    token_issuer: str = "tokenwarden"
    token_audience: str = "tokenwarden-api"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    self_registration_enabled: bool = False
    default_role: str = "user"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Persisted signing keys become unreadable after restart.

        Production mode: refuse to start if SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Stored signing keys will not survive a restart."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_token_policy(self) -> "Settings":
        """Reject lifetimes and lockout values that would break the security invariants [K1]."""
        if self.jwt_algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"JWT_ALGORITHM must be one of {SUPPORTED_ALGORITHMS}, got {self.jwt_algorithm!r}.")
        if self.access_token_expire_seconds <= 0 or self.refresh_token_expire_seconds <= 0:
            raise ValueError("Token lifetimes must be positive.")
        if self.refresh_token_expire_seconds < self.access_token_expire_seconds:
            raise ValueError("REFRESH_TOKEN_EXPIRE_SECONDS must not be shorter than the access-token lifetime.")
        if self.key_grace_seconds < self.access_token_expire_seconds + self.clock_skew_seconds:
            raise ValueError("KEY_GRACE_SECONDS must be at least ACCESS_TOKEN_EXPIRE_SECONDS + CLOCK_SKEW_SECONDS.")
        if self.max_failed_attempts < 1:
            raise ValueError("MAX_FAILED_ATTEMPTS must be at least 1.")
        if self.lockout_duration_seconds <= 0:
            raise ValueError("LOCKOUT_DURATION_SECONDS must be positive.")
        if self.password_min_length < 1:
            raise ValueError("PASSWORD_MIN_LENGTH must be at least 1.")
        if self.key_refresh_seconds < 0:
            raise ValueError("KEY_REFRESH_SECONDS must not be negative.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()

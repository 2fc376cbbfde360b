"""
auth/errors.py -- Exception taxonomy for the security subsystem.

Every error carries a stable machine code, the HTTP status the API maps it
to, and the message that is safe to show an external caller. The precise
internal reason never goes into public_message -- it goes into the audit log.

Credential and lockout failures share one outward message so a caller cannot
tell "unknown email" from "wrong password".

Layer rule: no imports from api/, tokenstore/, or core/.
"""

from __future__ import annotations

GENERIC_AUTH_FAILURE = "Authentication failed."


class AuthError(Exception):
    code = "auth_error"
    status_code = 400
    public_message = "Request could not be completed."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        super().__init__(message or self.public_message)
        self.detail = detail


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    status_code = 401
    public_message = GENERIC_AUTH_FAILURE


class AccountLocked(AuthError):
    code = "account_locked"
    status_code = 401
    public_message = GENERIC_AUTH_FAILURE


class InvalidToken(AuthError):
    """Malformed, badly signed, expired, unknown-key or revoked token."""

    code = "invalid_token"
    status_code = 401
    public_message = "Invalid or expired token."


class RefreshTokenExpired(InvalidToken):
    code = "token_expired"
    public_message = "Refresh token has expired."


class ReuseDetected(InvalidToken):
    """A rotated refresh token was presented again. The whole chain is revoked.

    Callers should treat every session of the user as compromised.
    """

    code = "reuse_detected"
    public_message = "Refresh token reuse detected. All sessions in this chain were revoked."

    # Filled in by RefreshTokenStore for the audit trail; never rendered to the caller.
    user_id: str | None = None
    chain_root_id: str | None = None


class InsufficientPermission(AuthError):
    code = "insufficient_permission"
    status_code = 403
    public_message = "You do not have permission to perform this action."


class UnknownUser(AuthError):
    code = "unknown_user"
    status_code = 404
    public_message = "User not found."


class UnknownRole(AuthError):
    code = "unknown_role"
    status_code = 404
    public_message = "Role not found."


class EmailAlreadyRegistered(AuthError):
    code = "email_taken"
    status_code = 409
    public_message = "An account with that email already exists."


class RegistrationDisabled(AuthError):
    code = "registration_disabled"
    status_code = 403
    public_message = "Self-registration is disabled."


class WeakPassword(AuthError):
    code = "weak_password"
    status_code = 422
    public_message = "Password does not meet the password policy."

    def __init__(self, violations: list[str]) -> None:
        super().__init__(detail="; ".join(violations))
        self.violations = violations


class StoreUnavailable(AuthError):
    """Transient storage failure. Retried against a fallback where one exists."""

    code = "store_unavailable"
    status_code = 503
    public_message = "Service temporarily unavailable. Please retry."


class CryptoError(AuthError):
    """RNG or algorithm failure. Indicates misconfiguration, never bad user input."""

    code = "crypto_error"
    status_code = 500
    public_message = "An unexpected error occurred."

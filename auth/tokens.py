"""
auth/tokens.py -- Access-token issuance and verification.

Security design decisions:
  JWT: python-jose with an asymmetric algorithm (RS256 by default, ES256
       optional). Every token carries its signing key id in the "kid" header.
       Verification looks the key up through KeyManager by that id, so a key
       rotation is transparent to tokens signed just before it.

  Claims: sub, email, roles, permissions, iat, exp, jti, iss, aud. roles and
       permissions are a snapshot taken at issue time. Authorization checks
       read the snapshot with no database round trip; a permission change is
       therefore visible only in the next issued token.

  Rejection: signature mismatch, expiry (with clock_skew leeway), wrong
       issuer/audience, malformed payload, unknown permission identifiers and
       unknown or purged key ids all raise InvalidToken. The reason is logged
       at DEBUG level; the caller only learns that the token was rejected.

  The algorithm allow-list for decode is taken from the key record, never
       from the token header, so "alg": "none" or HS256 confusion attacks fail.

Layer rule: no imports from api/ or tokenstore/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwk, jwt

from auth.errors import CryptoError, InvalidToken
from auth.keys import KeyManager
from auth.models import AccessClaims, Permission, User

logger = logging.getLogger("tokenwarden.auth")

_REQUIRED_CLAIMS = ("sub", "iat", "exp", "jti", "roles", "permissions")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Signs and verifies short-lived access tokens.

    Usage:
        tokens = TokenService(KeyManager("RS256"), expire_seconds=900)
        jwt_str = tokens.issue_access_token(user, ["user"], {Permission.DATA_READ})
        claims = tokens.verify_access_token(jwt_str)
    """

    def __init__(
        self,
        keys: KeyManager,
        *,
        expire_seconds: int = 900,
        issuer: str = "tokenwarden",
        audience: str = "tokenwarden-api",
        leeway_seconds: int = 5,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.keys = keys
        self.expire_seconds = expire_seconds
        self.issuer = issuer
        self.audience = audience
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    def issue_access_token(
        self,
        user: User,
        roles: Iterable[str],
        permissions: Iterable[Permission],
        expire_seconds: int = 0,
    ) -> str:
        """Encode a signed JWT for user with a role/permission snapshot.

        expire_seconds=0 uses the configured lifetime.
        """
        signer = self.keys.active_key()
        now = self._clock()
        lifetime = expire_seconds if expire_seconds > 0 else self.expire_seconds
        payload = {
            "sub": user.id,
            "email": user.email,
            "roles": list(roles),
            "permissions": sorted(p.value for p in permissions),
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=lifetime)).timestamp()),
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        try:
            return jwt.encode(payload, signer.private_pem, algorithm=signer.algorithm, headers={"kid": signer.kid})
        except JWTError as exc:
            raise CryptoError("access token signing failed") from exc

    def verify_access_token(self, token: str) -> AccessClaims:
        """Verify token and return its claims. Raises InvalidToken on any failure."""
        try:
            header = jwt.get_unverified_header(token)
        except JWTError as exc:
            logger.debug("Rejected token: malformed header")
            raise InvalidToken() from exc

        kid = header.get("kid")
        key = self.keys.key_by_id(kid) if isinstance(kid, str) else None
        if key is None:
            logger.debug("Rejected token: unknown or purged kid %r", kid)
            raise InvalidToken()

        try:
            payload = jwt.decode(
                token,
                key.public_pem,
                algorithms=[key.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": False, "leeway": self.leeway_seconds},
            )
        except JWTError as exc:
            logger.debug("Rejected token: %s", type(exc).__name__)
            raise InvalidToken() from exc

        claims = self._claims_from_payload(payload, key.kid)
        # exp is checked against the injected clock, with leeway.
        if self._clock() > claims.expires_at + timedelta(seconds=self.leeway_seconds):
            logger.debug("Rejected token: expired at %s", claims.expires_at.isoformat())
            raise InvalidToken()
        return claims

    def jwks(self) -> dict:
        """Public keys of the active and in-grace signing keys as a JWK Set."""
        entries = []
        for key in self.keys.verification_keys():
            entry = jwk.construct(key.public_pem, key.algorithm).to_dict()
            entry.update({"kid": key.kid, "use": "sig", "alg": key.algorithm})
            entries.append(entry)
        return {"keys": entries}

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _claims_from_payload(payload: dict, kid: str) -> AccessClaims:
        if any(name not in payload for name in _REQUIRED_CLAIMS):
            logger.debug("Rejected token: missing required claims")
            raise InvalidToken()
        roles = payload["roles"]
        perm_names = payload["permissions"]
        if not isinstance(roles, list) or not isinstance(perm_names, list):
            raise InvalidToken()
        perms = [Permission.parse(p) if isinstance(p, str) else None for p in perm_names]
        if any(p is None for p in perms):
            # A token asserting a permission this build does not know is not trusted.
            logger.debug("Rejected token: unknown permission identifier")
            raise InvalidToken()
        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError) as exc:
            raise InvalidToken() from exc
        return AccessClaims(
            subject=str(payload["sub"]),
            email=str(payload.get("email", "")),
            roles=tuple(str(r) for r in roles),
            permissions=frozenset(perms),
            issued_at=issued_at,
            expires_at=expires_at,
            key_id=kid,
            token_id=str(payload["jti"]),
        )

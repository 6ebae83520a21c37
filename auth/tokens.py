"""
auth/tokens.py -- Signed token codecs (python-jose, HS256).

Two codecs share one implementation and differ in signing key and `typ`:

  AccessTokenCodec:  short-lived, self-contained identity assertion carrying
       sub (user id), roles, jti, iat, exp. Verification is purely local --
       signature and expiry only, no storage lookup -- so it never blocks on
       the database and is safe to call on every protected request.

  RefreshEnvelopeCodec: the raw refresh secret handed to clients. Carries sub
       and a 256-bit random jti under a separate signing key. The envelope
       only narrows the rotation scan to the claimed user; a refresh token is
       valid solely when a stored, un-revoked digest matches it.

Verification failures are typed (auth.errors):
  Malformed         -- not a JWT, missing claims, or wrong typ
  InvalidSignature  -- signed with another key or tampered
  Expired           -- signature fine, exp in the past

jose checks the signature before exp, so a tampered expired token reports
InvalidSignature, never Expired.

Layer rule: no imports from api/ or notify/. core.config is allowed.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import Expired, InvalidSignature, Malformed
from auth.models import AccessClaims, IssuedAccessToken
from core.config import Settings

logger = logging.getLogger("credgate.auth")

_ALGORITHM = "HS256"


class _SignedCodec:
    typ = ""

    def __init__(self, secret: str) -> None:
        self._secret = secret

    def _encode(self, claims: dict, ttl: timedelta, jti: str) -> tuple[str, datetime]:
        now = datetime.now(timezone.utc)
        expires_at = now + ttl
        payload = {
            **claims,
            "typ": self.typ,
            "jti": jti,
            "iat": now,
            "exp": expires_at,
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM), expires_at

    def _decode(self, token: str) -> dict:
        if not isinstance(token, str) or token.count(".") != 2:
            raise Malformed()
        try:
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise Malformed() from exc
        try:
            payload = jwt.decode(token, self._secret, algorithms=[_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise Expired() from exc
        except JWTError as exc:
            logger.debug("%s token rejected: %s", self.typ, exc)
            raise InvalidSignature() from exc
        if payload.get("typ") != self.typ or not payload.get("sub") or not payload.get("jti"):
            raise Malformed()
        return payload


class AccessTokenCodec(_SignedCodec):
    """Issue and verify access tokens.

    Usage:
        codec = AccessTokenCodec(settings)
        issued = codec.issue(user.id, user.roles)
        claims = codec.verify(issued.token)  # AccessClaims
    """

    typ = "access"

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings.access_token_secret.get_secret_value())
        self.ttl = timedelta(seconds=settings.access_token_ttl_seconds)

    def issue(self, user_id: str, roles: list[str], ttl: timedelta | None = None) -> IssuedAccessToken:
        """Sign a token for user_id with the given roles.

        ttl overrides the configured lifetime (tests use a negative ttl to
        mint already-expired tokens).
        """
        duration = ttl if ttl is not None else self.ttl
        token_id = secrets.token_hex(16)
        token, _ = self._encode({"sub": user_id, "roles": list(roles)}, duration, token_id)
        return IssuedAccessToken(
            token=token,
            token_id=token_id,
            expires_in=max(int(duration.total_seconds()), 0),
        )

    def verify(self, token: str) -> AccessClaims:
        """Return the verified claims or raise an AccessTokenError subclass."""
        payload = self._decode(token)
        roles = payload.get("roles")
        if not isinstance(roles, list):
            raise Malformed()
        return AccessClaims(
            user_id=str(payload["sub"]),
            roles=[str(r) for r in roles],
            token_id=str(payload["jti"]),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )


class RefreshEnvelopeCodec(_SignedCodec):
    """Mint and open the signed envelope that carries a refresh secret."""

    typ = "refresh"

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings.refresh_token_secret.get_secret_value())

    def seal(self, user_id: str, ttl: timedelta) -> str:
        # 32 random bytes: the envelope's entropy does not depend on the key.
        token, _ = self._encode({"sub": user_id}, ttl, secrets.token_hex(32))
        return token

    def subject(self, token: str) -> str:
        """Return the user id claimed by the envelope. Raises AccessTokenError subclasses."""
        return str(self._decode(token)["sub"])

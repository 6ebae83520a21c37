"""
auth/opaque.py -- Issuance and single-use consumption of opaque secrets.

Refresh tokens, email-verification tokens and password-reset tokens are one
pattern: a 256-bit random secret is generated, only its salted digest is
persisted (with owner, purpose, expiry and a single-use marker), and the raw
value is returned to the caller exactly once.

Lookup is a linear scan. Digests are salted, so there is no index to query
by secret; consume() lists the outstanding rows of the relevant scope and
runs bcrypt against each until one matches. The cost is bounded by the
number of outstanding, unconsumed tokens in that scope:

  refresh -- the un-revoked rows of the user named in the signed envelope
  verify  -- every unused verification token (all users)
  reset   -- every unused reset token (all users)

Expired rows are purged periodically (CredentialStore.purge_expired) to keep
those sets small. If two digests ever matched the same secret the oldest
row wins; the probability is cryptographically negligible.

The single-use flip is always a conditional update in the store, so of two
concurrent consumers presenting the same secret exactly one succeeds.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum

from auth.errors import AccessTokenError, InvalidRefreshToken, NotFound, TokenExpired
from auth.hashing import SecretHasher
from auth.models import EmailToken, EmailTokenKind, RefreshToken
from auth.store import CredentialStore
from auth.tokens import RefreshEnvelopeCodec
from core.config import Settings

logger = logging.getLogger("credgate.auth")

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenPurpose(str, Enum):
    """What an opaque secret is for. Each purpose carries its own TTL policy."""

    REFRESH = "refresh"
    VERIFY = "verify"
    RESET = "reset"

    def default_ttl(self, settings: Settings) -> timedelta:
        seconds = {
            TokenPurpose.REFRESH: settings.refresh_token_ttl_seconds,
            TokenPurpose.VERIFY: settings.email_verify_ttl_seconds,
            TokenPurpose.RESET: settings.password_reset_ttl_seconds,
        }[self]
        return timedelta(seconds=seconds)

    @property
    def email_kind(self) -> EmailTokenKind:
        if self is TokenPurpose.REFRESH:
            raise ValueError("refresh tokens are not email tokens")
        return EmailTokenKind(self.value)


class OpaqueTokenStore:
    """Issue, consume, rotate and revoke opaque secrets.

    Usage:
        tokens = OpaqueTokenStore(store, hasher, RefreshEnvelopeCodec(settings), settings)
        raw = tokens.issue(user_id, TokenPurpose.VERIFY)
        owner = tokens.consume(raw, TokenPurpose.VERIFY, email_verified=True)
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        envelopes: RefreshEnvelopeCodec,
        settings: Settings,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.envelopes = envelopes
        self.settings = settings
        self.clock = clock

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, owner_id: str, purpose: TokenPurpose, ttl: timedelta | None = None) -> str:
        """Persist the digest of a fresh secret and return the raw secret."""
        duration = ttl if ttl is not None else purpose.default_ttl(self.settings)
        expires_at = self.clock() + duration
        if purpose is TokenPurpose.REFRESH:
            raw = self.envelopes.seal(owner_id, duration)
            self.store.create_refresh_token(
                RefreshToken(user_id=owner_id, token_hash=self.hasher.hash_secret(raw), expires_at=expires_at)
            )
        else:
            raw = secrets.token_hex(32)
            self.store.create_email_token(
                EmailToken(
                    user_id=owner_id,
                    kind=purpose.email_kind,
                    token_hash=self.hasher.hash_secret(raw),
                    expires_at=expires_at,
                )
            )
        return raw

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    def consume(self, raw: str, purpose: TokenPurpose, **owner_updates) -> str:
        """Consume a secret once and return its owner id.

        Email purposes: raises TokenExpired if the secret matched a row past
        its expiry, NotFound if nothing matched or the row was consumed by a
        concurrent caller. owner_updates are written to the owning user in
        the same transaction that marks the token used.

        Refresh: revokes the matched row; every failure is
        InvalidRefreshToken.
        """
        if purpose is TokenPurpose.REFRESH:
            if owner_updates:
                raise ValueError("refresh consumption does not update the owner")
            row = self._active_refresh_match(raw)
            if not self.store.revoke_refresh_token(row.id):
                raise InvalidRefreshToken()
            return row.user_id

        for row in self.store.list_unused_email_tokens(purpose.email_kind):
            if not self.hasher.verify_secret(raw, row.token_hash):
                continue
            if row.expires_at <= self.clock():
                raise TokenExpired()
            if not self.store.consume_email_token(row.id, row.user_id, **owner_updates):
                raise NotFound()
            return row.user_id
        raise NotFound()

    # ------------------------------------------------------------------
    # Refresh-specific
    # ------------------------------------------------------------------

    def rotate(self, raw: str, ttl: timedelta | None = None) -> tuple[str, str]:
        """Exchange an active refresh secret for a new one.

        Returns (owner_id, new_raw). The old row is revoked and the new row
        inserted in one transaction; a caller that loses the race to revoke
        the old row gets InvalidRefreshToken and nothing is written.
        """
        row = self._active_refresh_match(raw)
        duration = ttl if ttl is not None else TokenPurpose.REFRESH.default_ttl(self.settings)
        new_raw = self.envelopes.seal(row.user_id, duration)
        replacement = RefreshToken(
            user_id=row.user_id,
            token_hash=self.hasher.hash_secret(new_raw),
            expires_at=self.clock() + duration,
        )
        if self.store.replace_refresh_token(row.id, replacement) is None:
            logger.info("Refresh rotation lost race for token row %s", row.id)
            raise InvalidRefreshToken()
        return row.user_id, new_raw

    def revoke(self, raw: str) -> bool:
        """Revoke the active row matching raw. Returns False when nothing matched."""
        try:
            row = self._active_refresh_match(raw)
        except InvalidRefreshToken:
            return False
        return self.store.revoke_refresh_token(row.id)

    def find_rotated(self, raw: str) -> str | None:
        """Return the owner id if raw matches a row already consumed by rotation."""
        owner_id = self._refresh_subject(raw)
        if owner_id is None:
            return None
        for row in self.store.list_rotated_refresh_tokens(owner_id, self.clock()):
            if self.hasher.verify_secret(raw, row.token_hash):
                return owner_id
        return None

    def _refresh_subject(self, raw: str) -> str | None:
        try:
            return self.envelopes.subject(raw)
        except AccessTokenError:
            return None

    def _active_refresh_match(self, raw: str) -> RefreshToken:
        owner_id = self._refresh_subject(raw)
        if owner_id is None:
            raise InvalidRefreshToken()
        for row in self.store.list_active_refresh_tokens(owner_id):
            if not self.hasher.verify_secret(raw, row.token_hash):
                continue
            if row.expires_at <= self.clock():
                raise InvalidRefreshToken()
            return row
        raise InvalidRefreshToken()

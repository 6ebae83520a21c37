"""
auth/engine.py -- Credential & rotation engine.

The only component with business rules. It composes the SecretHasher, the
AccessTokenCodec and the OpaqueTokenStore and exposes the operations the
transport layer calls:

  register_user           -- create user, issue email-verification secret
  validate_credentials    -- email + password -> User (uniform failure)
  issue_session           -- mint access token + refresh secret
  rotate_refresh_token    -- single-use exchange of a refresh secret
  revoke_refresh_token    -- best-effort logout
  verify_email_token      -- consume a verify secret, flag email verified
  request_password_reset  -- issue a reset secret (silent for unknown email)
  reset_password          -- consume a reset secret, store a new hash

Refresh-token lifecycle per row: Active -> Rotated (consumed by rotation,
replaced_by set) or Active -> Revoked (logout). Both are terminal; only an
Active row can mint a new access token.

Reuse of a Rotated row is treated as a theft signal: when the
refresh_reuse_revokes_all setting is on, every active refresh token of that
user is revoked and the caller still gets InvalidRefreshToken.

The engine keeps no mutable state of its own. All shared state lives in the
CredentialStore, so any number of request handlers and processes can call it
concurrently.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from auth.errors import (
    AccessTokenError,
    DuplicateEmail,
    InvalidCredentials,
    InvalidRefreshToken,
    NotFound,
    ValidationError,
)
from auth.hashing import SecretHasher
from auth.models import ROLE_USER, Registration, Session, User
from auth.opaque import Clock, OpaqueTokenStore, TokenPurpose, utcnow
from auth.store import CredentialStore
from auth.tokens import AccessTokenCodec, RefreshEnvelopeCodec
from auth.validation import normalize_email, validate_email, validate_name, validate_password
from core.config import Settings

logger = logging.getLogger("credgate.auth")


@dataclass(frozen=True)
class PasswordReset:
    """A reset secret ready for out-of-band delivery to user.email."""

    user: User
    reset_token: str


class CredentialEngine:
    """Orchestrates registration, login, rotation, revocation and email flows.

    Usage:
        settings = get_settings()
        engine = CredentialEngine(settings, CredentialStore(settings.database_url))
        registration = engine.register_user("Ann", "ann@x.com", "Secret123")
        user = engine.validate_credentials("ann@x.com", "Secret123")
        session = engine.issue_session(user.id, user.roles)
        session = engine.rotate_refresh_token(session.refresh_token)
    """

    def __init__(
        self,
        settings: Settings,
        store: CredentialStore,
        *,
        hasher: SecretHasher | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.hasher = hasher or SecretHasher(rounds=settings.bcrypt_rounds)
        self.codec = AccessTokenCodec(settings)
        self.tokens = OpaqueTokenStore(store, self.hasher, RefreshEnvelopeCodec(settings), settings, clock=clock)

    # ------------------------------------------------------------------
    # Registration and login
    # ------------------------------------------------------------------

    def register_user(self, name: str | None, email: str, password: str) -> Registration:
        """Create an unverified USER account and issue its verification secret.

        Raises ValidationError on bad input and DuplicateEmail if the address
        is taken. The returned secret is for out-of-band delivery only.
        """
        name = validate_name(name)
        email = validate_email(email)
        validate_password(password)
        if self.store.get_user_by_email(email) is not None:
            raise DuplicateEmail()

        user = User(
            email=email,
            name=name,
            password_hash=self.hasher.hash_password(password),
            roles=[ROLE_USER],
        )
        user.id = self.store.create_user(user)
        raw = self.tokens.issue(user.id, TokenPurpose.VERIFY)
        logger.info("Registered user %s", user.id)
        return Registration(user=user, verification_token=raw)

    def validate_credentials(self, email: str, password: str) -> User:
        """Return the user whose email and password match.

        Unknown email and wrong password both raise the same
        InvalidCredentials, and both run one bcrypt comparison, so neither
        the error nor the response time reveals whether the account exists.
        """
        user = self.store.get_user_by_email(normalize_email(email)) if email else None
        if user is None:
            self.hasher.burn(password or "")
            logger.info("Login failed: unknown account")
            raise InvalidCredentials()
        if not password or not self.hasher.verify_password(password, user.password_hash):
            logger.info("Login failed for user %s", user.id)
            raise InvalidCredentials()
        return user

    def issue_session(self, user_id: str, roles: list[str]) -> Session:
        """Mint one access token and one refresh secret bound to user_id."""
        access = self.codec.issue(user_id, roles)
        refresh = self.tokens.issue(user_id, TokenPurpose.REFRESH)
        return Session(
            access_token=access.token,
            refresh_token=refresh,
            expires_in=access.expires_in,
            user_id=user_id,
        )

    def login(self, email: str, password: str) -> tuple[User, Session]:
        user = self.validate_credentials(email, password)
        session = self.issue_session(user.id, user.roles)
        logger.info("User %s logged in", user.id)
        return user, session

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def rotate_refresh_token(self, raw_refresh: str) -> Session:
        """Consume an Active refresh secret and return a fresh session.

        Roles in the new access token are re-read from storage, so role
        changes apply at the next rotation. Not idempotent: a second call
        with the same secret raises InvalidRefreshToken.
        """
        if not raw_refresh:
            raise InvalidRefreshToken()
        try:
            user_id, new_raw = self.tokens.rotate(raw_refresh)
        except InvalidRefreshToken:
            self._check_reuse(raw_refresh)
            raise
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise InvalidRefreshToken()
        access = self.codec.issue(user.id, user.roles)
        logger.info("Rotated refresh token for user %s", user.id)
        return Session(
            access_token=access.token,
            refresh_token=new_raw,
            expires_in=access.expires_in,
            user_id=user.id,
        )

    def _check_reuse(self, raw_refresh: str) -> None:
        if not self.settings.refresh_reuse_revokes_all:
            return
        owner_id = self.tokens.find_rotated(raw_refresh)
        if owner_id is None:
            return
        revoked = self.store.revoke_all_refresh_tokens(owner_id)
        logger.warning(
            "Rotated refresh token reused for user %s; revoked %d active session(s)",
            owner_id,
            revoked,
        )

    def revoke_refresh_token(self, raw_refresh: str) -> bool:
        """Revoke the matching Active row. Returns False if none matched; never raises for that."""
        if not raw_refresh:
            return False
        revoked = self.tokens.revoke(raw_refresh)
        if revoked:
            logger.info("Refresh token revoked")
        return revoked

    def revoke_all_sessions(self, user_id: str) -> int:
        return self.store.revoke_all_refresh_tokens(user_id)

    # ------------------------------------------------------------------
    # Email flows
    # ------------------------------------------------------------------

    def verify_email_token(self, raw_token: str) -> str:
        """Consume a verification secret and mark its owner's email verified.

        Returns the user id. Raises TokenExpired or NotFound.
        """
        if not raw_token:
            raise ValidationError("Token is required")
        user_id = self.tokens.consume(raw_token, TokenPurpose.VERIFY, email_verified=True)
        logger.info("Email verified for user %s", user_id)
        return user_id

    def request_password_reset(self, email: str) -> PasswordReset | None:
        """Issue a reset secret for email, or do nothing if no such user.

        The transport layer must answer both cases identically. An unknown
        email still costs one bcrypt hash so timing matches the real path.
        """
        user = self.store.get_user_by_email(normalize_email(email)) if email else None
        if user is None:
            self.hasher.burn(email or "")
            return None
        raw = self.tokens.issue(user.id, TokenPurpose.RESET)
        logger.info("Password reset requested for user %s", user.id)
        return PasswordReset(user=user, reset_token=raw)

    def reset_password(self, raw_token: str, new_password: str) -> str:
        """Consume a reset secret and store a new password hash for its owner.

        Every refresh token of the user is revoked afterwards, so sessions
        opened with the old password end at their next rotation. Returns the
        user id. Raises ValidationError, TokenExpired or NotFound.
        """
        if not raw_token:
            raise ValidationError("Token is required")
        validate_password(new_password)
        new_hash = self.hasher.hash_password(new_password)
        user_id = self.tokens.consume(raw_token, TokenPurpose.RESET, password_hash=new_hash)
        revoked = self.store.revoke_all_refresh_tokens(user_id)
        logger.info("Password reset for user %s (%d session(s) revoked)", user_id, revoked)
        return user_id

    # ------------------------------------------------------------------
    # Lookups for the transport layer
    # ------------------------------------------------------------------

    def authenticate(self, access_token: str) -> User:
        """Verify an access token and load its user. Raises AccessTokenError subclasses."""
        claims = self.codec.verify(access_token)
        user = self.store.get_user_by_id(claims.user_id)
        if user is None:
            raise AccessTokenError("Unknown token subject.")
        return user

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

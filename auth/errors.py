"""
auth/errors.py -- Typed failures raised by the credential core.

Every failure a caller can observe is an AuthError subclass with a stable
machine-readable `code` and a safe default `message`. The HTTP layer maps
classes to status codes (see api/main.py); nothing here knows about HTTP.

Messages are deliberately generic. InvalidCredentials never says whether
the email or the password was wrong, and NotFound never says whether a
token was unknown or already used.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all caller-facing credential failures."""

    code = "auth_error"
    message = "Authentication failed."

    def __init__(self, message: str | None = None, *, detail: str | None = None) -> None:
        self.message = message or self.message
        self.detail = detail
        super().__init__(self.message)


class ValidationError(AuthError):
    """Missing or malformed input. No state was changed."""

    code = "validation_error"
    message = "Invalid input."

    def __init__(self, errors: list[str] | str) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))


class InvalidCredentials(AuthError):
    code = "invalid_credentials"
    message = "Invalid email or password."


class InvalidRefreshToken(AuthError):
    code = "invalid_refresh_token"
    message = "Invalid refresh token."


class NotFound(AuthError):
    code = "not_found"
    message = "Token not found."


class TokenExpired(AuthError):
    code = "token_expired"
    message = "Token expired."


class DuplicateEmail(AuthError):
    code = "duplicate_email"
    message = "A user with that email already exists."


class PersistenceError(AuthError):
    """Opaque storage failure. The original exception is chained as __cause__."""

    code = "persistence_error"
    message = "Storage failure."


# ---------------------------------------------------------------------------
# Access token verification failures
# ---------------------------------------------------------------------------


class AccessTokenError(AuthError):
    code = "invalid_token"
    message = "Invalid access token."


class InvalidSignature(AccessTokenError):
    code = "invalid_signature"


class Expired(AccessTokenError):
    code = "access_token_expired"
    message = "Access token expired."


class Malformed(AccessTokenError):
    code = "malformed_token"

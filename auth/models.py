"""
auth/models.py -- Domain dataclasses for credential entities.

Pattern: Data class (pure data container, zero logic). Stores and the engine
do the work; these classes only own the shape.

Ownership: User is the root. RefreshToken and EmailToken rows belong to
exactly one user and are never reassigned.

Layer rule: no imports from api/, notify/, or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

ROLE_USER = "USER"
ROLE_ADMIN = "ADMIN"


class EmailTokenKind(str, Enum):
    """Single-use action a mailed token grants."""

    VERIFY = "verify"
    RESET = "reset"


@dataclass
class User:
    """An identity record.

    email is stored lower-cased and stripped; the store enforces uniqueness.
    password_hash changes on reset, email_verified flips once on verification.
    Users are never deleted by this package.
    """

    email: str
    password_hash: str
    name: str | None = None
    roles: list[str] = field(default_factory=lambda: [ROLE_USER])
    email_verified: bool = False
    id: str | None = None
    created_at: str | None = None


@dataclass
class RefreshToken:
    """One outstanding long-lived session credential.

    token_hash is bcrypt(sha256(raw)); the raw secret is never persisted.
    revoked flips to True exactly once. replaced_by is set when the flip came
    from a rotation (Rotated) and stays None for logout (Revoked).
    """

    user_id: str
    token_hash: str
    expires_at: datetime
    id: str | None = None
    revoked: bool = False
    replaced_by: str | None = None
    created_at: datetime | None = None


@dataclass
class EmailToken:
    """One outstanding single-use action credential (verify or reset)."""

    user_id: str
    kind: EmailTokenKind
    token_hash: str
    expires_at: datetime
    id: str | None = None
    used: bool = False
    created_at: datetime | None = None


@dataclass(frozen=True)
class AccessClaims:
    """Verified contents of an access token."""

    user_id: str
    roles: list[str]
    token_id: str
    expires_at: datetime


@dataclass(frozen=True)
class IssuedAccessToken:
    token: str
    token_id: str
    expires_in: int


@dataclass(frozen=True)
class Session:
    """Raw values handed to the caller after login or rotation.

    Neither value is stored anywhere in this form.
    """

    access_token: str
    refresh_token: str
    expires_in: int
    user_id: str


@dataclass(frozen=True)
class Registration:
    user: User
    verification_token: str

"""
auth/validation.py -- Input checks applied before any state change.

Every validator collects all problems and raises one ValidationError listing
them, so a client can fix a form in a single round trip.
"""

from __future__ import annotations

import re

from auth.errors import ValidationError

EMAIL_MAX_LENGTH = 255
NAME_MAX_LENGTH = 100
PASSWORD_MIN_LENGTH = 8
# bcrypt only reads the first 72 bytes of its input.
PASSWORD_MAX_BYTES = 72

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def normalize_email(email: str | None) -> str:
    """Strip surrounding whitespace and lower-case the address."""
    return (email or "").strip().lower()


def validate_email(email: str) -> str:
    """Return the normalized email or raise ValidationError."""
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationError("Email is required")
    if len(normalized) > EMAIL_MAX_LENGTH or not _EMAIL_RE.match(normalized):
        raise ValidationError("Email address is not valid")
    return normalized


def validate_password(password: str | None) -> str:
    if not password:
        raise ValidationError("Password is required")
    errors: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if len(password.encode("utf-8")) > PASSWORD_MAX_BYTES:
        errors.append(f"Password must be at most {PASSWORD_MAX_BYTES} bytes long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if errors:
        raise ValidationError(errors)
    return password


def validate_name(name: str | None) -> str | None:
    """Names are optional; when given they must be non-blank."""
    if name is None:
        return None
    stripped = name.strip()
    if not stripped:
        raise ValidationError("Name must not be blank")
    if len(stripped) > NAME_MAX_LENGTH:
        raise ValidationError(f"Name must be at most {NAME_MAX_LENGTH} characters long")
    return stripped

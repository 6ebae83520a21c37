"""
API request and response models for credgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Field constraints here are shape checks only (lengths, presence). Password
strength and email format are enforced by auth.validation inside the engine,
so every caller gets the same rules and the same error listing.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """name and email are trimmed by auth.validation; password is taken verbatim."""

    name: Optional[str] = Field(default=None, max_length=100)
    email: str = Field(min_length=1, max_length=255)
    # No strip: whitespace is part of a password.
    password: str = Field(min_length=1, max_length=255, json_schema_extra={"format": "password"})


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    """Body for /refresh-token and /logout. The cookie is used when the field is absent."""

    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ForgotPasswordRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=255)


class RolesPatch(BaseModel):
    roles: list[str] = Field(min_length=1, max_length=20)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    name: Optional[str] = None
    roles: list[str]
    email_verified: bool


class RegisterResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str


class TokenResponse(BaseModel):
    """Returned by /login and /refresh-token.

    refresh_token is also set as an httpOnly cookie; clients that cannot
    store cookies read it from here.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: Optional[UserResponse] = None


class OkResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool = True


class LogoutResponse(OkResponse):
    revoked: bool


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]

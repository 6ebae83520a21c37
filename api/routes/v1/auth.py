"""
api/routes/v1/auth.py -- Credential lifecycle REST endpoints.

Routes:
  POST  /api/v1/auth/register               -- create account; mails verify link; 201
  POST  /api/v1/auth/login                  -- email + password -> access + refresh
  POST  /api/v1/auth/refresh-token          -- rotate refresh token (body or cookie)
  POST  /api/v1/auth/logout                 -- best-effort refresh revocation; clears cookie
  GET   /api/v1/auth/verify-email?token=    -- consume verification token
  POST  /api/v1/auth/forgot-password        -- mails reset link; always {"ok": true}
  POST  /api/v1/auth/reset-password         -- consume reset token, set new password
  GET   /api/v1/auth/me                     -- current user (Bearer)
  PATCH /api/v1/auth/users/{user_id}/roles  -- replace roles (ADMIN)

Engine failures (AuthError subclasses) are not caught here; the handlers in
api/main.py turn them into the uniform error envelope.

Security:
  Login returns one error for unknown email and wrong password.
  Forgot-password answers identically whether or not the email exists.
  Cache-Control: no-store on every response that carries a secret.
  The refresh cookie is httpOnly, samesite=lax, scoped to /api/v1/auth.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    LogoutResponse,
    OkResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    RolesPatch,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_current_user, require_role
from auth.engine import CredentialEngine
from auth.errors import ValidationError
from auth.models import ROLE_ADMIN, Session, User
from core.config import Settings
from notify.delivery import KIND_RESET, KIND_VERIFY, Message, Notifier, reset_link, verification_link

REFRESH_COOKIE = "refresh_token"
_COOKIE_PATH = "/api/v1/auth"

router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> RegisterResponse:
    """Create an unverified account and send the verification link."""
    engine: CredentialEngine = request.app.state.engine
    settings: Settings = request.app.state.settings
    notifier: Notifier = request.app.state.notifier

    registration = engine.register_user(body.name, body.email, body.password)
    user = registration.user
    notifier.send(
        Message(
            kind=KIND_VERIFY,
            to=user.email,
            link=verification_link(settings, registration.verification_token),
            name=user.name,
        )
    )
    return RegisterResponse(id=user.id, email=user.email)


@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same 401 body.
    """
    engine: CredentialEngine = request.app.state.engine
    user, session = engine.login(body.email, body.password)
    return _session_response(request, session, user)


@router.post("/auth/refresh-token", response_model=TokenResponse)
def refresh_token(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh token for a new access + refresh pair.

    The presented token is consumed; presenting it again fails.
    """
    engine: CredentialEngine = request.app.state.engine
    incoming = _incoming_refresh(request, body)
    if not incoming:
        raise ValidationError("Missing refresh token")
    session = engine.rotate_refresh_token(incoming)
    return _session_response(request, session)


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Revoke the presented refresh token if it is active, and clear the cookie.

    Always 200: logout is best-effort.
    """
    engine: CredentialEngine = request.app.state.engine
    incoming = _incoming_refresh(request, body)
    revoked = engine.revoke_refresh_token(incoming) if incoming else False
    resp = JSONResponse(content=LogoutResponse(revoked=revoked).model_dump())
    resp.delete_cookie(REFRESH_COOKIE, path=_COOKIE_PATH)
    return resp


@router.get("/auth/verify-email", response_model=OkResponse)
def verify_email(request: Request, token: str = Query(min_length=1, max_length=256)) -> OkResponse:
    engine: CredentialEngine = request.app.state.engine
    engine.verify_email_token(token)
    return OkResponse()


@router.post("/auth/forgot-password", response_model=OkResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> OkResponse:
    """Send a reset link if the account exists. The response never says which."""
    engine: CredentialEngine = request.app.state.engine
    settings: Settings = request.app.state.settings
    notifier: Notifier = request.app.state.notifier

    reset = engine.request_password_reset(body.email)
    if reset is not None:
        notifier.send(
            Message(
                kind=KIND_RESET,
                to=reset.user.email,
                link=reset_link(settings, reset.reset_token),
                name=reset.user.name,
            )
        )
    return OkResponse()


@router.post("/auth/reset-password", response_model=OkResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> OkResponse:
    engine: CredentialEngine = request.app.state.engine
    engine.reset_password(body.token, body.new_password)
    return OkResponse()


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
async def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the profile of the currently authenticated user."""
    return _user_to_response(current_user)


@router.patch("/auth/users/{user_id}/roles", response_model=UserResponse)
def update_roles(
    request: Request,
    user_id: str,
    body: RolesPatch,
    current_user: User = Depends(require_role(ROLE_ADMIN)),
) -> UserResponse:
    """Replace a user's roles. ADMIN only.

    New roles reach the user's access tokens at their next rotation.
    """
    engine: CredentialEngine = request.app.state.engine
    roles = sorted({r.strip().upper() for r in body.roles if r.strip()})
    if not roles:
        raise ValidationError("At least one role is required")
    if not engine.store.set_roles(user_id, roles):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return _user_to_response(engine.get_profile(user_id))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _incoming_refresh(request: Request, body: RefreshRequest | None) -> str | None:
    if body is not None and body.refresh_token:
        return body.refresh_token
    return request.cookies.get(REFRESH_COOKIE)


def _session_response(request: Request, session: Session, user: User | None = None) -> JSONResponse:
    settings: Settings = request.app.state.settings
    resp = JSONResponse(
        content=TokenResponse(
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            expires_in=session.expires_in,
            user=_user_to_response(user) if user is not None else None,
        ).model_dump()
    )
    resp.set_cookie(
        REFRESH_COOKIE,
        value=session.refresh_token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.refresh_token_ttl_seconds,
        path=_COOKIE_PATH,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        roles=list(user.roles),
        email_verified=user.email_verified,
    )

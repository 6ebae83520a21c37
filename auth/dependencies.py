"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Access tokens arrive as `Authorization: Bearer <token>`. Verification is
stateless (signature + expiry); the user row is then loaded so role checks
see the current roles.

get_current_user() raises HTTP 401, distinguishing an expired token
(code "access_token_expired") so clients know to rotate rather than log in again.
require_role() wraps get_current_user() and raises HTTP 403.

Layer rule: this module may import from fastapi because it is part of the
FastAPI dependency injection system. No imports from api/ or notify/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.engine import CredentialEngine
from auth.errors import AccessTokenError, Expired
from auth.models import User


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def get_current_user(request: Request) -> User:
    """Require a valid access token. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(user: User = Depends(get_current_user)): ...
    """
    token = _bearer_token(request)
    if not token:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
            headers={"WWW-Authenticate": "Bearer"},
        )
    engine: CredentialEngine = request.app.state.engine
    try:
        return engine.authenticate(token)
    except Expired:
        raise HTTPException(
            status_code=401,
            detail={"code": Expired.code, "message": Expired.message},
            headers={"WWW-Authenticate": "Bearer"},
        ) from None
    except AccessTokenError:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Invalid access token."},
            headers={"WWW-Authenticate": "Bearer"},
        ) from None


def require_role(role: str) -> Callable[[Request], User]:
    """Return a dependency that requires `role`. Raises HTTP 401 or 403.

    Use as a FastAPI dependency:
        @router.post("/admin-only")
        async def route(user: User = Depends(require_role(ROLE_ADMIN))): ...
    """

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        if role not in user.roles:
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": f"{role} role required."},
            )
        return user

    return dependency

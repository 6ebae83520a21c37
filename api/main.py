"""
api/main.py -- FastAPI application entry point for credgate.

Exposes the credential engine over HTTP. The engine itself knows nothing
about HTTP; this module wires it up and translates its typed failures.

Run with:  uvicorn api.main:app --reload

Lifespan handles startup (settings, store, engine, notifier, purge task) and
shutdown (cancel purge task, close DB connection) symmetrically. Settings are
read exactly once here and passed by reference into every component.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.engine import CredentialEngine
from auth.errors import (
    AccessTokenError,
    AuthError,
    DuplicateEmail,
    InvalidCredentials,
    InvalidRefreshToken,
    NotFound,
    PersistenceError,
    TokenExpired,
    ValidationError,
)
from auth.store import CredentialStore
from core.config import get_settings
from notify.delivery import LogNotifier

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("credgate.api")

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------

_PURGE_INTERVAL_SECONDS = 6 * 60 * 60


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired refresh and email token rows every 6 hours.

    Keeps the per-scope linear scan in auth/opaque.py bounded by the number
    of live tokens. CancelledError from task.cancel() during shutdown
    propagates out of asyncio.sleep and unwinds the coroutine.
    """
    while True:
        await asyncio.sleep(_PURGE_INTERVAL_SECONDS)
        removed = await asyncio.to_thread(app.state.store.purge_expired)
        logger.info("Purged %d expired token row(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the component graph once and tear it down on shutdown.

    Startup order: settings -> store -> engine (needs both) -> notifier ->
    purge task (needs store).
    """
    logger.info("credgate API starting up")
    settings = get_settings()
    app.state.settings = settings
    app.state.store = CredentialStore(settings.database_url)
    app.state.engine = CredentialEngine(settings, app.state.store)
    app.state.notifier = LogNotifier()
    logger.info("Credential store initialized")
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    app.state.store.close()
    logger.info("credgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="credgate API",
    description="Password login, access/refresh token rotation, email verification and password reset.",
    version=VERSION,
    lifespan=lifespan,
)


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Logs method, path, status and latency. Query strings are left out because
# /verify-email carries a live token there.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------

# Most specific first; _status_for() walks this in order.
_STATUS_BY_ERROR: list[tuple[type[AuthError], int]] = [
    (ValidationError, 400),
    (InvalidCredentials, 401),
    (InvalidRefreshToken, 401),
    (AccessTokenError, 401),
    (TokenExpired, 400),
    (NotFound, 400),
    (DuplicateEmail, 409),
    (PersistenceError, 503),
]


def _status_for(exc: AuthError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 400


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Map engine failures to status codes.

    PersistenceError is logged with its chained cause; its body stays
    generic so storage details never reach the client.
    """
    status = _status_for(exc)
    if isinstance(exc, PersistenceError):
        logger.error("Storage failure on %s %s", request.method, request.url.path, exc_info=exc)
        detail = None
    else:
        detail = exc.detail
    response = JSONResponse(
        status_code=status,
        content=ErrorResponse(error=ErrorDetail(code=exc.code, message=exc.message, detail=detail)).model_dump(),
    )
    if status == 401:
        response.headers["WWW-Authenticate"] = "Bearer"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with structured error when request body or query params fail validation."""
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for all FastAPI/Starlette HTTP exceptions.

    Route handlers raise HTTPException with a dict detail. When detail is
    already a structured dict, use it directly as the error field rather
    than stringifying it.
    """
    if isinstance(exc.detail, dict):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=exc.headers,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
async def health(request: Request) -> HealthResponse:
    """Return API liveness, version, and database reachability."""
    database = "ok" if request.app.state.store.ping() else "error"
    return HealthResponse(version=VERSION, components={"app": "ok", "database": database})

"""
tests/conftest.py -- Shared test fixtures for credgate.

This module provides:
  - settings: frozen Settings with fixed secrets and bcrypt cost 4
  - clock: a FakeClock injected wherever token expiry is evaluated
  - store / engine: an in-memory CredentialStore and the engine over it
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread.

bcrypt rounds are lowered to 4 (the minimum) so the suite does not spend
seconds per hash; the code paths are identical at any cost.
"""

from __future__ import annotations

import asyncio
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.engine import CredentialEngine
from auth.store import CredentialStore
from core.config import Settings
from notify.delivery import RecordingNotifier

ACCESS_SECRET = "test-access-secret-0123456789abcdef0123"
REFRESH_SECRET = "test-refresh-secret-0123456789abcdef012"


class FakeClock:
    """Callable clock whose time only moves when advance() is called."""

    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


def make_settings(**overrides) -> Settings:
    values = {
        "debug": False,
        "access_token_secret": ACCESS_SECRET,
        "refresh_token_secret": REFRESH_SECRET,
        "bcrypt_rounds": 4,
        "frontend_url": "http://app.test",
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def settings_factory():
    """Build Settings with the test defaults plus keyword overrides."""
    return make_settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = CredentialStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def engine(settings: Settings, store: CredentialStore, clock: FakeClock) -> CredentialEngine:
    return CredentialEngine(settings, store, clock=clock)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, store: CredentialStore, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires the test settings, store and a RecordingNotifier into app.state so
    routes see an isolated database and tests can read delivered links. The
    purge_task is a long-sleeping coroutine so shutdown can cancel it.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.settings = settings
        app.state.store = store
        app.state.engine = CredentialEngine(settings, store)
        app.state.notifier = notifier
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, RecordingNotifier], None, None]:
    """Yield (client, notifier) for API integration tests.

    One database per test module, named after the module so modules never
    share state.
    """
    settings = make_settings()
    db_name = request.module.__name__.replace(".", "_")
    store = CredentialStore(f"sqlite:///file:{db_name}?mode=memory&cache=shared&uri=true")
    notifier = RecordingNotifier()

    app.router.lifespan_context = _patch_lifespan(settings, store, notifier)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, notifier

    store.close()

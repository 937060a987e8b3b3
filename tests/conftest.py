"""
tests/conftest.py -- Shared test fixtures for authcore.

This module provides:
  - FakeClock: injectable clock that only moves when a test advances it
  - make_settings(): isolated Settings instances (no .env, fast bcrypt)
  - engine / service / limiter fixtures over in-memory SQLite
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - api: TestClient over the real FastAPI app with a fresh database per test

Design: plain in-memory SQLite URLs ("sqlite://") get a StaticPool from
open_engine(), so every store and every TestClient worker thread share one
connection and one schema. Tests that need real concurrent connections use a
file database under tmp_path instead.

The DEBUG env var must be set before any auth/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
BCRYPT_ROUNDS=4 is the bcrypt minimum and keeps password hashing fast.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

# CRITICAL: Set env before any auth/core import so module-level get_settings()
# calls see the test configuration.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, build_services, install_services
from auth.mailer import MemoryEmailSender
from auth.store import SessionStore, TokenStore, open_engine
from auth.tokens import utcnow
from auth.uploads import MemoryUploadStore
from core.config import Settings
from ratelimit.limiter import RateLimiter
from ratelimit.store import RateLimitStore

TEST_SECRET = "test-secret-key-0123456789abcdef0123456789"


class FakeClock:
    """Callable clock for deterministic expiry tests.

    Starts on the current hour (so fixed windows begin at the start time and
    cookies issued "now" are not already expired) and moves only on advance().
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or utcnow().replace(minute=0, second=0, microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "environment": "test",
        "secret_key": TEST_SECRET,
        "database_url": "sqlite://",
        "bcrypt_rounds": 4,
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings_factory():
    return make_settings


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine():
    engine = open_engine("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture
def session_store(engine) -> SessionStore:
    return SessionStore(engine)


@pytest.fixture
def token_store(engine) -> TokenStore:
    return TokenStore(engine)


@pytest.fixture
def rate_limiter(engine, clock) -> RateLimiter:
    return RateLimiter(RateLimitStore(engine), clock=clock)


def _services(settings: Settings, engine, clock) -> SimpleNamespace:
    emails = MemoryEmailSender(settings.app_url)
    uploads = MemoryUploadStore(settings.upload_base_url)
    services = build_services(settings, engine=engine, email_sender=emails, uploads=uploads, clock=clock)
    services.emails = emails
    services.uploads = uploads
    services.clock = clock
    services.settings = settings
    return services


@pytest.fixture(params=["database", "memory"])
def env(request, engine, clock) -> SimpleNamespace:
    """AuthService stack for each identity backend.

    Attributes: auth_service, rate_limiter, engine, emails, uploads, clock,
    settings.
    """
    return _services(make_settings(auth_provider=request.param), engine, clock)


@pytest.fixture
def service(env):
    return env.auth_service


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, services: SimpleNamespace):
    """Return an async context manager that replaces the real lifespan.

    Wires the test services into app.state so TestClient routes use the
    isolated in-memory database. OAuth is a MagicMock so no test reaches a
    real provider.

    The cleanup_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        install_services(app, settings, services)
        app.state.oauth = MagicMock()
        app.state.cleanup_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.cleanup_task.cancel()

    return test_lifespan


@pytest.fixture
def api(clock) -> Generator[SimpleNamespace, None, None]:
    """Yield a namespace with client plus the services behind it.

    Function-scoped: every test gets an empty database, fresh rate-limit
    counters (the "api" token bucket allows a burst of 20 per IP) and a
    cookie-less client.
    """
    engine = open_engine("sqlite://")
    settings = make_settings()
    services = _services(settings, engine, clock)
    app.router.lifespan_context = _patch_lifespan(settings, services)
    limiter.reset()

    with TestClient(app, raise_server_exceptions=True) as client:
        services.client = client
        yield services

    engine.dispose()

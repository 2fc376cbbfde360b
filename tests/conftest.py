"""
tests/conftest.py -- Shared test fixtures for TokenWarden unit and integration tests.

This module provides:
  - FrozenClock: injectable clock that only moves when a test advances it
  - crypto: argon2id CryptoService with the smallest legal work factor
  - service_factory / service: isolated AuthService graphs on in-memory DBs
  - _patch_lifespan(): wires a test AuthService into app.state, bypassing real startup
  - api_client: TestClient plus an administrator access token

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
# The shared slowapi limiter counts across the whole session; only the
# rate-limit test tightens it.
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.crypto import CryptoService
from auth.service import AuthService
from core.config import Settings

TEST_SECRET = "tokenwarden-test-secret-0123456789abcdef"
ADMIN_EMAIL = "root@example.com"
ADMIN_PASSWORD = "Str0ng!Passw0rd"


class FrozenClock:
    """Callable clock for the clock= parameters. Starts at real 'now'.

    Token expiry, key grace windows, lockouts and role expiry all read this
    clock, so advancing it is the only way time passes in a test.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


def memory_db_url(prefix: str = "tw") -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_settings(**overrides) -> Settings:
    """Settings for tests: ES256 (fast key generation), no Redis, fresh DB."""
    values = {
        "debug": True,
        "secret_key": TEST_SECRET,
        "database_url": memory_db_url(),
        "jwt_algorithm": "ES256",
        "redis_url": "",
    }
    values.update(overrides)
    return Settings(**values)


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def crypto() -> CryptoService:
    """argon2id at its floor parameters (8 KiB, 1 pass) so tests hash in microseconds."""
    return CryptoService(memory_cost=8, time_cost=1, parallelism=1)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def settings_factory() -> Callable[..., Settings]:
    return make_settings


@pytest.fixture
def service_factory(crypto, clock) -> Generator[Callable[..., AuthService], None, None]:
    """Build isolated AuthService graphs. Keyword arguments override Settings fields.

    token_records= may be passed to inject a specific TokenRecordStore.
    """
    built: list[AuthService] = []

    def factory(token_records=None, **overrides) -> AuthService:
        service = AuthService.from_settings(
            make_settings(**overrides), crypto=crypto, token_records=token_records, clock=clock
        )
        built.append(service)
        return service

    yield factory
    for service in built:
        service.close()


@pytest.fixture
def service(service_factory) -> AuthService:
    return service_factory()


# ---------------------------------------------------------------------------
# Integration fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.auth_service = service
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(crypto) -> Generator[tuple[TestClient, str, str], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    One TestClient per test module. The service runs on the real clock and an
    in-process refresh-token store. base_url must be localhost so
    TrustedHostMiddleware accepts the requests.
    """
    service = AuthService.from_settings(make_settings(), crypto=crypto)
    admin, _ = service.create_admin(ADMIN_EMAIL, ADMIN_PASSWORD)
    token = service.login(ADMIN_EMAIL, ADMIN_PASSWORD).access_token

    app.router.lifespan_context = _patch_lifespan(service)

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, token, admin.id

    service.close()

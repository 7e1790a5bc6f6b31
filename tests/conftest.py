"""
tests/conftest.py -- Shared test fixtures for the Qualibrite security core.

This module provides:
  - FakeClock: controllable clock injected into every store and service
  - make_services(): isolated SecurityServices on a named in-memory DB
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - services / api: per-test service bundle, and a TestClient over it
  - account helpers: create patients and staff with known passwords

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Environment must be set before any auth/core import: DEBUG lets
get_settings() auto-generate SECRET_KEY, BCRYPT_ROUNDS keeps hashing fast,
RATE_LIMIT_ENABLED=false keeps the login limit out of unrelated tests, and
ALLOWED_HOSTS admits TestClient's "testserver" host.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import pyotp
import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import Account, Role
from auth.services import SecurityServices, build_services
from auth.tokens import CSRF_HEADER, hash_password
from core.config import get_settings

PASSWORD = "Corr3ct-Horse!"

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock that only moves when a test says so."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# ---------------------------------------------------------------------------
# Service helpers
# ---------------------------------------------------------------------------


def memory_url(suffix: str) -> str:
    return f"sqlite:///file:test_security_{suffix}?mode=memory&cache=shared&uri=true"


def make_services(clock: FakeClock, db_url: str | None = None) -> SecurityServices:
    """Build an isolated service bundle. Each call gets a fresh named DB unless db_url is given."""
    return build_services(get_settings(), db_url=db_url or memory_url(uuid.uuid4().hex), clock=clock)


def add_account(
    services: SecurityServices,
    email: str,
    role: Role = Role.PATIENT,
    *,
    password: str = PASSWORD,
    **fields,
) -> Account:
    """Insert an account directly through the store with a known password."""
    account_id = services.account_store.create_account(
        Account(email=email, role=role, password_hash=hash_password(password), **fields)
    )
    return services.account_store.get_by_id(account_id)


def totp_now(services: SecurityServices, clock: FakeClock, account_id: int) -> str:
    secret = services.account_store.get_by_id(account_id).mfa_secret
    return pyotp.TOTP(secret).at(clock())


def enroll_mfa(services: SecurityServices, clock: FakeClock, account_id: int) -> list[str]:
    """Run the full enrollment flow and return the cleartext backup codes."""
    services.mfa_enrollment.begin_setup(account_id)
    codes = services.mfa_enrollment.verify_setup(account_id, totp_now(services, clock, account_id))
    assert isinstance(codes, list), codes
    # Move to the next step so a login code is not a replay of the setup code.
    clock.advance(seconds=30)
    return codes


def _patch_lifespan(services: SecurityServices):
    """Return an async context manager that replaces the real lifespan.

    The sweep_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.services = services
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def services(clock: FakeClock) -> Generator[SecurityServices, None, None]:
    bundle = make_services(clock)
    yield bundle
    bundle.close()


@pytest.fixture
def api(services: SecurityServices) -> Generator[TestClient, None, None]:
    """TestClient over the real app with test services and a CSRF token preloaded.

    The client keeps cookies between requests like a browser, and the
    X-CSRF-Token header is set as a default so mutating calls pass the
    double-submit check.
    """
    app.router.lifespan_context = _patch_lifespan(services)
    with TestClient(app, raise_server_exceptions=True) as client:
        token = client.get("/api/auth/csrf-token").json()["csrfToken"]
        client.headers[CSRF_HEADER] = token
        yield client


def login(client: TestClient, email: str, password: str = PASSWORD) -> dict:
    """Password login through the API; returns the JSON body."""
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, resp.text
    return resp.json()

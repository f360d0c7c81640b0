"""
tests/conftest.py -- Shared test fixtures for Eventgate tests.

This module provides:
  - RecordingDelivery: captures every one-time code instead of sending it
  - account_store / event_store: fresh in-memory stores per test
  - auth_service / event_service: services wired exactly as api/main.py does
  - activate(): register + verify helper that returns an active account
  - api_client: TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API client because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.

Environment variables must be set before any eventgate import: get_settings()
is cached on first use, auth.tokens reads it at import time, and the route
decorators read the rate limits at import time.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

# CRITICAL: Set these before any api/auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")
os.environ.setdefault("OTP_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, build_services
from auth.models import VERIFY_EMAIL, Account
from auth.service import AuthService
from auth.store import AccountStore
from events.service import EventService
from events.store import EventStore

# ---------------------------------------------------------------------------
# Code delivery double
# ---------------------------------------------------------------------------


@dataclass
class RecordingDelivery:
    """CodeDelivery that keeps every code it is handed, newest last."""

    sent: list[tuple[str, str, str]] = field(default_factory=list)
    fail: bool = False

    def send_code(self, account: Account, code: str, purpose: str) -> bool:
        self.sent.append((account.email, purpose, code))
        return not self.fail

    def last_code(self, email: str, purpose: str = VERIFY_EMAIL) -> str:
        for sent_email, sent_purpose, code in reversed(self.sent):
            if sent_email == email and sent_purpose == purpose:
                return code
        raise AssertionError(f"no {purpose} code was sent to {email}")

    def count(self, email: str, purpose: str = VERIFY_EMAIL) -> int:
        return sum(1 for e, p, _ in self.sent if e == email and p == purpose)


def wrong_code(code: str) -> str:
    """A six-digit code guaranteed to differ from code."""
    return f"{(int(code) + 1) % 1_000_000:06d}"


# ---------------------------------------------------------------------------
# Unit fixtures -- fresh stores per test
# ---------------------------------------------------------------------------


@pytest.fixture
def account_store() -> Generator[AccountStore, None, None]:
    store = AccountStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def event_store() -> Generator[EventStore, None, None]:
    store = EventStore("sqlite:///:memory:")
    yield store
    store.close()


@pytest.fixture
def delivery() -> RecordingDelivery:
    return RecordingDelivery()


@pytest.fixture
def services(account_store, event_store, delivery) -> tuple[AuthService, EventService]:
    return build_services(account_store, event_store, delivery=delivery)


@pytest.fixture
def auth_service(services) -> AuthService:
    return services[0]


@pytest.fixture
def event_service(services) -> EventService:
    return services[1]


@pytest.fixture
def activate(auth_service, delivery):
    """Return a helper that registers and verifies an account in one call."""

    def _activate(email: str, password: str = "correct-horse-1", display_name: str = "") -> Account:
        auth_service.register(email, password, display_name or email.split("@")[0])
        account, _session = auth_service.verify_otp(email, delivery.last_code(email.lower()))
        return account

    return _activate


# ---------------------------------------------------------------------------
# API client -- one TestClient per test module
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[AccountStore, EventStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state.
    """
    accounts_url = f"sqlite:///file:test_accounts_{db_suffix}?mode=memory&cache=shared&uri=true"
    events_url = f"sqlite:///file:test_events_{db_suffix}?mode=memory&cache=shared&uri=true"
    return AccountStore(db_url=accounts_url), EventStore(db_url=events_url)


def _patch_lifespan(account_store: AccountStore, event_store: EventStore, delivery: RecordingDelivery):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.account_store = account_store
        app.state.event_store = event_store
        app.state.auth_service, app.state.event_service = build_services(
            account_store, event_store, delivery=delivery
        )
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, RecordingDelivery], None, None]:
    """Yield (client, delivery) for API integration tests.

    Tests hit the real route handlers, middleware and exception handlers,
    backed by in-memory stores private to the test module. Codes sent during
    a test are read back from delivery.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    account_store, event_store = _make_test_stores(suffix)
    delivery = RecordingDelivery()

    app.router.lifespan_context = _patch_lifespan(account_store, event_store, delivery)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, delivery

    account_store.close()
    event_store.close()


def sign_up(client: TestClient, delivery: RecordingDelivery, email: str, password: str = "correct-horse-1") -> str:
    """Register and verify through the API. Returns the session token."""
    resp = client.post(
        "/api/v1/auth/register",
        json={"email": email, "password": password, "display_name": email.split("@")[0]},
    )
    assert resp.status_code == 201, resp.text
    resp = client.post("/api/v1/auth/verify-otp", json={"email": email, "code": delivery.last_code(email.lower())})
    assert resp.status_code == 200, resp.text
    # Tests authenticate with explicit Bearer headers; drop the session cookie.
    client.cookies.clear()
    return resp.json()["access_token"]


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}

"""
tests/conftest.py -- Shared test fixtures for Atrium unit and integration tests.

This module provides:
  - make_db_url(): a unique named shared-memory SQLite URI
  - FakeMailer / RecordingOutbox: mail doubles that record instead of sending
  - FakeClock: manual monotonic clock for the exchange store
  - harness: an AuthFlows wired to fresh in-memory stores (function-scoped)
  - api_client: TestClient over the real app with a patched lifespan (module-scoped)

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because the stores are used from several threads: TestClient runs the app's
event loop in its own thread while tests read the stores directly, and the
flows call authenticate_user() through asyncio.to_thread(). Plain :memory:
DBs are per-connection and would present a blank schema to each thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG and LOGIN_RATE_LIMIT must be set before any auth module import:
get_settings() auto-generates the signing keys in dev mode, and the login
limit is read when the routes module is imported.
"""

from __future__ import annotations

import asyncio
import os
import re
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from unittest.mock import MagicMock

# CRITICAL: Set before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("LOGIN_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.exchange import ExchangeTokenStore
from auth.flows import AuthFlows
from auth.store import TokenStore, UserStore
from core.config import get_settings
from mail.mailer import MailDeliveryError, MailMessage

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_db_url(prefix: str) -> str:
    """Unique named shared-memory SQLite URI, so tests never share rows."""
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def extract_token(html: str) -> str:
    """Pull the ?token= value out of a rendered verification or reset email."""
    match = re.search(r"token=([A-Za-z0-9_\-]+)", html)
    assert match, "email body must contain a token link"
    return match.group(1)


class FakeMailer:
    """Records sent messages. Set fail=True to make send() raise MailDeliveryError."""

    def __init__(self) -> None:
        self.sent: list[MailMessage] = []
        self.fail = False

    async def send(self, to: str, subject: str, html: str) -> None:
        if self.fail:
            raise MailDeliveryError("smtp down")
        self.sent.append(MailMessage(to=to, subject=subject, html=html))


class RecordingOutbox:
    """Stands in for MailOutbox: keeps enqueued messages in a list."""

    def __init__(self) -> None:
        self.messages: list[MailMessage] = []

    def enqueue(self, message: MailMessage) -> None:
        self.messages.append(message)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class Harness:
    flows: AuthFlows
    users: UserStore
    tokens: TokenStore
    exchange_store: ExchangeTokenStore
    mailer: FakeMailer
    outbox: RecordingOutbox
    clock: FakeClock
    client: TestClient | None = None


def _build_harness(prefix: str) -> Harness:
    db_url = make_db_url(prefix)
    users = UserStore(db_url=db_url)
    tokens = TokenStore(db_url=db_url)
    clock = FakeClock()
    exchange_store = ExchangeTokenStore(ttl_seconds=900, grace_seconds=60, clock=clock)
    mailer = FakeMailer()
    outbox = RecordingOutbox()
    flows = AuthFlows(
        users=users,
        tokens=tokens,
        exchange_store=exchange_store,
        mailer=mailer,
        outbox=outbox,
        settings=get_settings(),
    )
    return Harness(
        flows=flows,
        users=users,
        tokens=tokens,
        exchange_store=exchange_store,
        mailer=mailer,
        outbox=outbox,
        clock=clock,
    )


def run(coro):
    """Drive one flow coroutine to completion from a sync test."""
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Flow fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def harness() -> Generator[Harness, None, None]:
    """Fresh stores and doubles for one test."""
    h = _build_harness("test_flows")
    yield h
    h.tokens.close()
    h.users.close()


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(h: Harness):
    """Return an async context manager that replaces the real lifespan.

    Wires the harness into app.state so routes use isolated in-memory stores
    and the recording mail doubles. The OAuth registry is a MagicMock so no
    test reaches a real provider.

    The sweep_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = h.users
        app.state.token_store = h.tokens
        app.state.exchange_store = h.exchange_store
        app.state.outbox = h.outbox
        app.state.flows = h.flows
        app.state.oauth = MagicMock()
        app.state.sweep_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.sweep_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[Harness, None, None]:
    """Yield a Harness whose .client is a TestClient over the real app.

    One client per test module for speed. follow_redirects=False so OAuth
    tests can assert on redirect locations.
    """
    h = _build_harness("test_api")
    app.router.lifespan_context = _patch_lifespan(h)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        h.client = client
        yield h

    h.tokens.close()
    h.users.close()

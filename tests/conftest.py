"""
tests/conftest.py -- Shared test fixtures for Community Poll Hub.

This module provides:
  - RecordingAudit / RecordingNotifier: in-memory fakes for the audit sink and
    the outbound notifier, so tests can assert on what was reported and sent
  - FakeClock: a settable clock for the session manager and email workflow
  - store: a fresh in-memory UserStore per test
  - make_user: factory that persists a user with a known password
  - api_env: TestClient over the real app with isolated stores and fakes

Design: Named shared-memory SQLite URIs (not plain :memory:) are required for
the API fixture because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. Unit tests run on one thread and use plain :memory:.

DEBUG, BCRYPT_ROUNDS and RATE_LIMIT_ENABLED must be set before any auth/core
import: get_settings() is cached and auth.tokens reads it at import time.
"""

from __future__ import annotations

import asyncio
import itertools
import os
import re
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple

# CRITICAL: Set before any auth/core import (see module docstring).
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from api.main import app, install_services
from auth.email_change import CONFIRMATION_PATH
from auth.mailer import DeliveryError
from auth.models import RequestContext, User
from auth.roles import Role
from auth.store import UserStore
from auth.tokens import hash_password

DEFAULT_PASSWORD = "correct-horse-battery"

CONTEXT = RequestContext(client_ip="203.0.113.7", method="POST", path="/test")

_TOKEN_RE = re.compile(re.escape(CONFIRMATION_PATH) + r"(\S+)")

_names = itertools.count(1)


def unique_name(prefix: str = "user") -> str:
    """Return a username no other test in the session uses."""
    return f"{prefix}{next(_names)}"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class RecordingAudit:
    """Audit sink that keeps every event in memory."""

    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def record_event(self, category: str, event_name: str, attributes: dict[str, Any]) -> None:
        self.events.append((category, event_name, dict(attributes)))

    def names(self) -> list[str]:
        return [name for _, name, _ in self.events]

    def find(self, event_name: str) -> list[dict[str, Any]]:
        return [attrs for _, name, attrs in self.events if name == event_name]

    def clear(self) -> None:
        self.events.clear()


class RecordingNotifier:
    """Notifier that records messages instead of sending them.

    Set fail=True to make every send() raise DeliveryError.
    """

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str]] = []
        self.fail = False

    def send(self, to_address: str, subject: str, body: str) -> None:
        if self.fail:
            raise DeliveryError("mail server unreachable")
        self.sent.append((to_address, subject, body))

    def last_token(self) -> str:
        """Raw confirmation token from the most recent message."""
        _, _, body = self.sent[-1]
        return _token_in(body)

    def token_for(self, address: str) -> str:
        """Raw confirmation token from the message sent to address."""
        [body] = [body for to_address, _, body in self.sent if to_address == address]
        return _token_in(body)


def _token_in(body: str) -> str:
    match = _TOKEN_RE.search(body)
    assert match, f"no confirmation link in message body:\n{body}"
    return match.group(1)


class FakeClock:
    """Callable clock that only moves when told to.

    Starts at the real current time: session JWTs carry an exp claim that
    python-jose checks against the wall clock.
    """

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Unit-test fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


def _persist_user(
    store: UserStore,
    username: str,
    role: Role = Role.VOTER,
    password: str = DEFAULT_PASSWORD,
    email: str | None = None,
) -> User:
    user = User(
        username=username,
        email=email or f"{username}@example.com",
        role=role,
        password_hash=hash_password(password),
    )
    store.save(user)
    return user


@pytest.fixture
def make_user(store: UserStore) -> Callable[..., User]:
    """Factory: make_user("alice", Role.ADMIN) -> persisted User with DEFAULT_PASSWORD."""

    def _make(username: str, role: Role = Role.VOTER, password: str = DEFAULT_PASSWORD, email: str | None = None):
        return _persist_user(store, username, role, password, email)

    return _make


# ---------------------------------------------------------------------------
# API integration fixture -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


class ApiEnv(NamedTuple):
    client: TestClient
    store: UserStore
    audit: RecordingAudit
    notifier: RecordingNotifier

    def create_user(self, role: Role = Role.VOTER, password: str = DEFAULT_PASSWORD) -> User:
        return _persist_user(self.store, unique_name(role.label), role, password)

    def login(self, user: User, password: str = DEFAULT_PASSWORD) -> dict[str, str]:
        """Log in through the API and return Bearer headers for the session.

        Cookies are cleared afterwards so each request authenticates only with
        the headers it is given.
        """
        resp = self.client.post("/api/v1/auth/login", json={"username": user.username, "password": password})
        assert resp.status_code == 200, resp.text
        self.client.cookies.clear()
        return {"Authorization": f"Bearer {resp.json()['access_token']}"}


def _patch_lifespan(user_store: UserStore, audit: RecordingAudit, notifier: RecordingNotifier):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and fakes into app.state through install_services()
    so routes run against the same services as production.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        install_services(app, user_store, notifier=notifier, audit=audit)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture(scope="module")
def api_env(request) -> Generator[ApiEnv, None, None]:
    """Yield an ApiEnv for API integration tests.

    The database name is derived from the test module so modules never share
    state. Tests within a module do, so they create their own users.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store = UserStore(db_url=f"sqlite:///file:test_auth_{suffix}?mode=memory&cache=shared&uri=true")
    audit_sink = RecordingAudit()
    outbox = RecordingNotifier()

    app.router.lifespan_context = _patch_lifespan(user_store, audit_sink, outbox)

    with TestClient(app, raise_server_exceptions=False) as client:
        yield ApiEnv(client, user_store, audit_sink, outbox)

    user_store.close()

"""
tests/conftest.py -- Shared test fixtures for Keyhold unit and integration tests.

This module provides:
  - store / users / accounts / sessions / projects / oauth: the auth core
    wired around an isolated in-memory credential store (unit tests)
  - api: a TestClient on the real FastAPI app with a patched lifespan, plus
    seeded admin, editor, and member accounts holding live session tokens
  - _reset_rate_limits: autouse; clears slowapi counters between tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

DEBUG must be set before any auth/core import so get_settings() can
auto-generate SECRET_KEY. SECURE_COOKIES=false lets the TestClient (plain
http://testserver) send the session cookie back.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SECURE_COOKIES", "false")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app, init_state
from auth.accounts import AccountManager
from auth.models import User
from auth.oauth import OAuthProvider
from auth.projects import ProjectManager
from auth.sessions import SessionManager
from auth.store import CredentialStore
from auth.tokens import create_session_token
from cache.store import ProjectCache, UserCache

TEST_PASSWORD = "testpass123"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_store() -> CredentialStore:
    """Create an isolated named shared-memory SQLite store.

    The random suffix keeps every test's database separate even though
    they all live in the same process.
    """
    url = f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"
    return CredentialStore(db_url=url)


def _patch_lifespan(store: CredentialStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store into app.state through the same init_state() the
    real lifespan uses. The purge_task is a long-sleeping coroutine
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_state(app, store)
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class SeededUser:
    user: User
    token: str

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}


def _seed(store: CredentialStore, username: str, permissions: list[str]) -> SeededUser:
    accounts = AccountManager(store, UserCache(store.get_user_by_id))
    user = accounts.create_account(username, TEST_PASSWORD, permissions=permissions)
    token = create_session_token(user.id)
    store.create_session(user.id, token)
    return SeededUser(user=user, token=token)


@dataclass
class ApiHarness:
    client: TestClient
    store: CredentialStore
    admin: SeededUser
    editor: SeededUser
    member: SeededUser


# ---------------------------------------------------------------------------
# Auth core fixtures (unit tests)
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> Generator[None, None, None]:
    limiter.reset()
    yield
    limiter.reset()


@pytest.fixture
def store() -> Generator[CredentialStore, None, None]:
    s = _make_test_store()
    yield s
    s.close()


@pytest.fixture
def users(store: CredentialStore) -> UserCache:
    return UserCache(store.get_user_by_id)


@pytest.fixture
def accounts(store: CredentialStore, users: UserCache) -> AccountManager:
    return AccountManager(store, users)


@pytest.fixture
def sessions(store: CredentialStore, users: UserCache) -> SessionManager:
    return SessionManager(store, users)


@pytest.fixture
def projects(store: CredentialStore) -> ProjectManager:
    return ProjectManager(store, ProjectCache(store.list_projects))


@pytest.fixture
def oauth(store: CredentialStore, users: UserCache) -> OAuthProvider:
    return OAuthProvider(store, users)


# ---------------------------------------------------------------------------
# HTTP fixture (integration tests)
# ---------------------------------------------------------------------------


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store.
    follow_redirects=False lets OAuth tests assert on redirect locations.
    """
    store = _make_test_store()
    admin = _seed(store, "testadmin", ["admin"])
    editor = _seed(store, "testeditor", ["editor"])
    member = _seed(store, "testmember", ["viewer"])

    app.router.lifespan_context = _patch_lifespan(store)

    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, admin=admin, editor=editor, member=member)

    store.close()

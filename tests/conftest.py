"""
tests/conftest.py -- Shared test fixtures for Gatehouse.

This module provides:
  - FakeClock: a settable clock injected into AuthService, LockoutTracker
    and RevocationStore so lockout windows and expiries can be crossed
    without sleeping
  - RecordingSender: an EmailSender that keeps every message it is given
  - user_store / role_store / revocation_store / service: isolated stores
    on a fresh shared-memory SQLite DB per test
  - api_client: TestClient against the real FastAPI app with a patched
    lifespan wiring the test stores into app.state

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync dependencies in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format shares one in-memory instance across all
connections in the process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import LegacyRole
from auth.revocation import RevocationStore
from auth.service import AuthService
from auth.store import RoleStore, UserStore
from core.config import get_settings
from core.mailer import EmailMessage

PASSWORD = "Correct-Horse-1"


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FakeClock:
    """Callable clock starting at a fixed UTC instant."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSender:
    """EmailSender that records messages. Set ok=False to simulate delivery failure."""

    def __init__(self) -> None:
        self.sent: list[EmailMessage] = []
        self.ok = True

    def send(self, message: EmailMessage) -> bool:
        self.sent.append(message)
        return self.ok

    def last_token(self) -> str:
        """Pull the token= query value out of the most recent message."""
        text = self.sent[-1].text
        start = text.index("token=") + len("token=")
        end = text.index("&", start)
        return text[start:end]


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_db_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


@pytest.fixture
def password() -> str:
    """A password that satisfies the default policy."""
    return PASSWORD


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def db_url() -> str:
    return make_db_url("test_auth")


@pytest.fixture
def user_store(db_url: str) -> Generator[UserStore, None, None]:
    store = UserStore(db_url)
    yield store
    store.close()


@pytest.fixture
def role_store(db_url: str) -> Generator[RoleStore, None, None]:
    store = RoleStore(db_url)
    store.ensure_default_roles()
    yield store
    store.close()


@pytest.fixture
def revocation_store(db_url: str, clock: FakeClock) -> Generator[RevocationStore, None, None]:
    store = RevocationStore(db_url, clock=clock)
    yield store
    store.close()


@pytest.fixture
def service(user_store, role_store, revocation_store, sender, clock) -> AuthService:
    return AuthService(
        users=user_store,
        roles=role_store,
        revocations=revocation_store,
        mailer=sender,
        settings=get_settings(),
        clock=clock,
    )


@pytest.fixture
def alice(service: AuthService):
    """A verified user with a password and the default role."""
    return service.create_user(email="alice@example.com", password=PASSWORD, name="Alice", is_email_verified=True)


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------


def _patch_lifespan(service: AuthService):
    """Replace the real lifespan so the app uses the test stores.

    The maintenance_task is a long-sleeping coroutine; a real asyncio.Task is
    required because shutdown calls .cancel() on it.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = service.users
        app.state.role_store = service.roles
        app.state.revocation_store = service.revocations
        app.state.auth_service = service
        app.state.maintenance_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.maintenance_task.cancel()

    return test_lifespan


@pytest.fixture
def api_service() -> Generator[AuthService, None, None]:
    """AuthService on its own DB, using the real clock (bearer tokens expire in real time)."""
    url = make_db_url("test_api")
    users, roles, revocations = UserStore(url), RoleStore(url), RevocationStore(url)
    roles.ensure_default_roles()
    yield AuthService(users=users, roles=roles, revocations=revocations, mailer=RecordingSender())
    users.close()
    roles.close()
    revocations.close()


@pytest.fixture
def api_client(api_service: AuthService) -> Generator[TestClient, None, None]:
    app.router.lifespan_context = _patch_lifespan(api_service)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client


@pytest.fixture
def admin_token(api_service: AuthService) -> str:
    admin = api_service.create_user(email="admin@example.com", password=PASSWORD, role=LegacyRole.ADMIN)
    return api_service.issue_session(admin).access_token

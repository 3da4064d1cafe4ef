"""
tests/conftest.py -- Shared test fixtures for SupportDesk integration tests.

This module provides:
  - make_settings(): Settings with test-safe defaults (no Secure cookie, so the
    TestClient's http:// cookie jar sends it back)
  - make_user_store(): isolated named shared-memory SQLite directory
  - FakeIdentityProvider: IdentityStrategy that runs the real state check but
    never touches the network, and counts code exchanges
  - _patch_lifespan(): wires test collaborators into app.state, bypassing
    real startup (no discovery, no Redis)
  - harness / fixture_harness: TestClient plus handles on every collaborator

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because route handlers hop into the thread pool for directory calls. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread.

The DEBUG env var must be set before any api/core import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional
from urllib.parse import parse_qs, urlparse

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.connections import ConnectionRegistry
from auth.models import AuthorizationAttempt, IdentityClaims, TokenSet
from auth.oidc import CallbackParams, FixtureUser, IdentityStrategy, check_state
from auth.sessions import SessionManager
from auth.store import UserStore
from auth.token_vault import TokenVaultController
from auth.vault import EncryptionVault
from coordination.store import MemoryCoordinationStore
from core.config import Settings

TEST_SECRET_KEY = "test-secret-key-0123456789abcdef0123456789"
ADMIN_GROUP = "GRP-L0SUPPORT-ADMIN"
USER_GROUP = "GRP-L0SUPPORT-USER"

# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "secret_key": TEST_SECRET_KEY,
        "identity_mode": "oidc",
        "session_cookie_secure": False,
        "session_cookie_samesite": "lax",
        "client_origin": "http://localhost:3000",
    }
    values.update(overrides)
    return Settings(**values)


def make_user_store(db_suffix: Optional[str] = None) -> UserStore:
    """Create an isolated named shared-memory SQLite directory.

    Args:
        db_suffix: Unique string appended to the DB name; defaults to a uuid
                   so every caller gets its own database.
    """
    suffix = db_suffix or uuid.uuid4().hex
    return UserStore(db_url=f"sqlite:///file:test_users_{suffix}?mode=memory&cache=shared&uri=true")


class FakeIdentityProvider(IdentityStrategy):
    """Stand-in provider: real state check, canned claims, exchange counter."""

    name = "fake"

    def __init__(
        self,
        email: str = "alice@example.com",
        display_name: str = "Alice Admin",
        groups: Optional[list[str]] = None,
    ) -> None:
        self.email = email
        self.display_name = display_name
        self.groups = [ADMIN_GROUP] if groups is None else groups
        self.exchange_calls = 0

    def authorization_url(self, attempt: AuthorizationAttempt) -> str:
        return f"https://idp.example.test/authorize?state={attempt.state}&code_challenge={attempt.code_challenge}"

    async def complete_callback(self, params: CallbackParams, attempt: AuthorizationAttempt) -> IdentityClaims:
        check_state(params, attempt)
        self.exchange_calls += 1
        return IdentityClaims(
            email=self.email,
            display_name=self.display_name,
            groups=list(self.groups),
            tokens=TokenSet(access_token="fake-access", id_token="fake-id"),
        )


def build_manager(
    settings: Settings,
    user_store: UserStore,
    identity: Optional[IdentityStrategy],
    clock=None,
) -> tuple[SessionManager, MemoryCoordinationStore, ConnectionRegistry]:
    store = MemoryCoordinationStore()
    connections = ConnectionRegistry()
    kwargs = {"clock": clock} if clock is not None else {}
    manager = SessionManager(settings, store, user_store, identity, connections, **kwargs)
    return manager, store, connections


def _patch_lifespan(settings: Settings, user_store: UserStore, identity: Optional[IdentityStrategy]):
    """Return an async context manager that replaces the real lifespan.

    Wires test collaborators into app.state so TestClient routes see an
    isolated directory, an in-process coordination store and the fake
    identity provider instead of a discovered OIDC client.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        manager, store, connections = build_manager(settings, user_store, identity)
        app.state.settings = settings
        app.state.user_store = user_store
        app.state.coordination = store
        app.state.identity = identity
        app.state.connections = connections
        app.state.sessions = manager
        app.state.token_vault = TokenVaultController(
            EncryptionVault(settings.vault_kdf_iterations),
            user_store,
            manager,
            strict_revoke=settings.vault_strict_revoke,
        )
        yield
        await connections.close_all()

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@dataclass
class Harness:
    client: TestClient
    settings: Settings
    user_store: UserStore
    identity: Optional[IdentityStrategy]

    @property
    def sessions(self) -> SessionManager:
        return app.state.sessions

    @property
    def coordination(self) -> MemoryCoordinationStore:
        return app.state.coordination

    def login(self, return_to: Optional[str] = "/dashboard") -> str:
        """Run login + callback on this client. Returns the state."""
        params = {"returnTo": return_to} if return_to else {}
        resp = self.client.get("/api/v1/auth/login", params=params)
        assert resp.status_code == 200, resp.text
        state = state_from_url(resp.json()["authUrl"])
        resp = self.client.get("/api/v1/auth/callback", params={"code": "auth-code", "state": state})
        assert resp.status_code == 302, resp.text
        return state


def state_from_url(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


@pytest.fixture(autouse=True)
def _reset_rate_limits() -> Generator[None, None, None]:
    """Rate-limit counters are process-global; start every test from zero."""
    limiter.reset()
    yield


def _harness(settings: Settings, identity: Optional[IdentityStrategy]) -> Generator[Harness, None, None]:
    user_store = make_user_store()
    app.router.lifespan_context = _patch_lifespan(settings, user_store, identity)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield Harness(client=client, settings=settings, user_store=user_store, identity=identity)
    user_store.close()


@pytest.fixture
def harness() -> Generator[Harness, None, None]:
    """TestClient wired to a FakeIdentityProvider that maps to an admin."""
    yield from _harness(make_settings(), FakeIdentityProvider())


@pytest.fixture
def fixture_harness() -> Generator[Harness, None, None]:
    """TestClient running the FixtureUser identity strategy."""
    settings = make_settings(identity_mode="fixture")
    identity = FixtureUser("/api/v1/auth/callback", ADMIN_GROUP, USER_GROUP)
    yield from _harness(settings, identity)


@pytest.fixture
def unconfigured_harness() -> Generator[Harness, None, None]:
    """TestClient with OIDC selected but not configured (identity is None)."""
    yield from _harness(make_settings(), None)


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = make_user_store()
    yield store
    store.close()


@pytest.fixture
def fake_identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def make_manager(user_store: UserStore):
    """Factory for a SessionManager on the shared test directory.

    Usage:
        manager, store, connections = make_manager(identity=fake_identity, clock=lambda: 1000.0)
    """

    def factory(identity: Optional[IdentityStrategy] = None, clock=None, **settings_overrides):
        return build_manager(make_settings(**settings_overrides), user_store, identity, clock)

    return factory


@pytest.fixture
def settings_factory():
    """make_settings as a fixture, for modules that build their own Settings."""
    return make_settings

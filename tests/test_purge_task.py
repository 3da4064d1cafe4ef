"""
tests/test_purge_task.py -- Tests for the coordination purge task in api/main.py.

The in-process store only drops an expired key when that key is read again.
Handshake keys that are never claimed and sessions that are never revisited
would stay in memory forever without the background purge.

Coverage:
  - _purge_loop empties the store once every TTL has elapsed
  - live keys survive a purge
  - lifespan starts the task for the memory backend, cancels it on shutdown
  - lifespan starts no task for the Redis backend
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi import FastAPI

import api.main as main
from auth.connections import ConnectionRegistry
from auth.oidc import CallbackParams
from auth.sessions import SessionManager
from coordination.store import MemoryCoordinationStore, RedisCoordinationStore

DAY = 24 * 60 * 60


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryCoordinationStore:
    return MemoryCoordinationStore(clock=clock)


@pytest.fixture
def manager(settings_factory, store, user_store, fake_identity, clock) -> SessionManager:
    return SessionManager(settings_factory(), store, user_store, fake_identity, ConnectionRegistry(), clock=clock)


async def _sign_in(manager: SessionManager) -> None:
    pre, url = await manager.login(None, "/dashboard")
    state = parse_qs(urlparse(url).query)["state"][0]
    result = await manager.handle_callback(pre, CallbackParams(code="auth-code", state=state))
    assert result.ok, result.error


async def _run_purge_once(store: MemoryCoordinationStore) -> None:
    task = asyncio.create_task(main._purge_loop(SimpleNamespace(state=SimpleNamespace(coordination=store)), 0))
    for _ in range(5):
        await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


class TestPurgeLoop:
    @pytest.mark.asyncio
    async def test_unclaimed_logins_are_purged_after_expiry(self, manager, store, clock) -> None:
        for _ in range(50):
            await _sign_in(manager)
        # One session and one unclaimed session_transfer per login.
        assert len(store._data) == 100

        clock.now += 2 * DAY
        await _run_purge_once(store)
        assert store._data == {}

    @pytest.mark.asyncio
    async def test_live_keys_survive(self, manager, store, clock) -> None:
        await _sign_in(manager)
        clock.now += 10 * 60
        await _run_purge_once(store)
        # The transfer key is past its 300s TTL; the session is not.
        assert len(store._data) == 1
        assert next(iter(store._data)).startswith("sess:")


# ---------------------------------------------------------------------------
# Lifespan wiring
# ---------------------------------------------------------------------------


@pytest.fixture
def lifespan_deps(monkeypatch):
    """Replace the directory and identity provider the real lifespan builds."""

    async def no_identity(settings):
        return None

    monkeypatch.setattr(main, "UserStore", lambda url: MagicMock(count_users=MagicMock(return_value=0)))
    monkeypatch.setattr(main, "build_identity_strategy", no_identity)

    def use_store(store) -> None:
        monkeypatch.setattr(main, "build_store", lambda url: store)

    return use_store


class TestLifespan:
    @pytest.mark.asyncio
    async def test_memory_backend_gets_purge_task(self, lifespan_deps) -> None:
        lifespan_deps(MemoryCoordinationStore())
        app = FastAPI()
        async with main.lifespan(app):
            task = app.state.purge_task
            assert task is not None
            assert not task.done()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert task.cancelled()

    @pytest.mark.asyncio
    async def test_redis_backend_has_no_purge_task(self, lifespan_deps) -> None:
        redis_store = MagicMock(spec=RedisCoordinationStore)
        lifespan_deps(redis_store)
        app = FastAPI()
        async with main.lifespan(app):
            assert app.state.purge_task is None
        redis_store.close.assert_awaited_once()

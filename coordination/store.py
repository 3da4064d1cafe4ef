"""
coordination/store.py -- Shared TTL key/value store for short-lived protocol artifacts.

Holds the login handshake records and the server-side sessions:

    auth_state:{state}        AuthorizationAttempt    TTL handshake_ttl_seconds
    session_transfer:{state}  SessionSnapshot         TTL handshake_ttl_seconds
    sess:{session_id}         SessionRecord           TTL session max-age

Values are JSON strings; callers own (de)serialization.

take() is the only way to consume a one-time record. It is an atomic
read-then-delete: when two requests race on the same key exactly one gets
the value and the other gets None.

Backends:
  RedisCoordinationStore  -- shared across processes; take() runs GET and DEL
                             inside MULTI/EXEC and only the caller whose DEL
                             removed the key wins.
  MemoryCoordinationStore -- single process only (dev, tests). An asyncio.Lock
                             serializes take() so the same guarantee holds
                             between coroutines.

Usage:
    store = build_store(settings.redis_url)
    await store.set("auth_state:abc", payload, ttl=300)
    payload = await store.take("auth_state:abc")   # second call -> None

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Optional

import redis.asyncio as redis

logger = logging.getLogger("supportdesk.coordination")

AUTH_STATE_PREFIX = "auth_state:"
SESSION_TRANSFER_PREFIX = "session_transfer:"
SESSION_PREFIX = "sess:"


def auth_state_key(state: str) -> str:
    return f"{AUTH_STATE_PREFIX}{state}"


def session_transfer_key(state: str) -> str:
    return f"{SESSION_TRANSFER_PREFIX}{state}"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


class CoordinationStore(ABC):
    """Async TTL key/value store interface."""

    @abstractmethod
    async def set(self, key: str, value: str, ttl: int, only_if_exists: bool = False) -> bool:
        """Store value under key, replacing any previous value. ttl is in seconds.

        With only_if_exists the write happens only when a live value is
        already present. Returns True if the value was written.
        """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the live value for key, or None."""

    @abstractmethod
    async def take(self, key: str) -> Optional[str]:
        """Atomically return and delete the value for key. None if absent or expired."""

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if something was removed."""

    @abstractmethod
    async def expire(self, key: str, ttl: int) -> bool:
        """Reset the TTL of an existing key. Returns False if the key is gone."""

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------


class RedisCoordinationStore(CoordinationStore):
    def __init__(self, client: redis.Redis) -> None:
        self._r = client

    @classmethod
    def from_url(cls, url: str, timeout: float = 5.0) -> RedisCoordinationStore:
        client = redis.from_url(url, decode_responses=True, socket_timeout=timeout)
        logger.info("Redis coordination store configured (%s)", url.split("@")[-1])
        return cls(client)

    async def set(self, key: str, value: str, ttl: int, only_if_exists: bool = False) -> bool:
        # SET XX replies nil when the key is missing.
        return bool(await self._r.set(key, value, ex=ttl, xx=only_if_exists))

    async def get(self, key: str) -> Optional[str]:
        return await self._r.get(key)

    async def take(self, key: str) -> Optional[str]:
        # MULTI/EXEC keeps GET and DEL adjacent on the server. If two clients
        # race, both may read the value but only one DEL returns 1.
        async with self._r.pipeline(transaction=True) as pipe:
            pipe.get(key)
            pipe.delete(key)
            value, deleted = await pipe.execute()
        if not deleted:
            return None
        return value

    async def delete(self, key: str) -> bool:
        return bool(await self._r.delete(key))

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._r.expire(key, ttl))

    async def ping(self) -> bool:
        return bool(await self._r.ping())

    async def close(self) -> None:
        await self._r.aclose()


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


class MemoryCoordinationStore(CoordinationStore):
    """Dict-backed store with per-key expiry. Not shared between processes."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key: str, value: str, ttl: int, only_if_exists: bool = False) -> bool:
        async with self._lock:
            if only_if_exists and self._live(key) is None:
                return False
            self._data[key] = (value, self._clock() + ttl)
            return True

    async def get(self, key: str) -> Optional[str]:
        async with self._lock:
            return self._live(key)

    async def take(self, key: str) -> Optional[str]:
        async with self._lock:
            value = self._live(key)
            if value is not None:
                del self._data[key]
            return value

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._data.pop(key, None) is not None

    async def expire(self, key: str, ttl: int) -> bool:
        async with self._lock:
            value = self._live(key)
            if value is None:
                return False
            self._data[key] = (value, self._clock() + ttl)
            return True

    async def ping(self) -> bool:
        return True

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [k for k, (_, exp) in self._data.items() if now >= exp]
        for k in expired:
            del self._data[k]
        return len(expired)


def build_store(redis_url: str) -> CoordinationStore:
    """Return a Redis-backed store when a URL is configured, else the memory store."""
    if redis_url:
        return RedisCoordinationStore.from_url(redis_url)
    logger.warning("REDIS_URL not set -- using in-process coordination store (single worker only)")
    return MemoryCoordinationStore()

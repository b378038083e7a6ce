"""
Session store adapters.

The store is the only writer of persisted bytes. Higher components talk to it
through ``SessionStore`` and never cache state beyond one request.

Two implementations:
  - RedisSessionStore: redis.asyncio client (list/string/expire primitives)
  - InMemorySessionStore: process-local fallback with the same index semantics
"""

import asyncio
import logging
import time
import warnings
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ..errors import StoreError
from .config import MemoryConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionKey:
    """Identifies one session: the (core_id, session_id) pair."""

    core_id: str
    session_id: str

    @property
    def stb(self) -> str:
        return f"stb:{self.core_id}:{self.session_id}"

    @property
    def ltm(self) -> str:
        return f"ltm:{self.core_id}:{self.session_id}"

    @property
    def summary(self) -> str:
        return f"sum:{self.core_id}:{self.session_id}"

    @property
    def lock(self) -> str:
        return f"lock:{self.core_id}:{self.session_id}"

    @property
    def data_keys(self) -> tuple[str, str, str]:
        return (self.stb, self.ltm, self.summary)


class SessionStore(Protocol):
    """Key-value/list primitives the memory tiers rely on."""

    async def type(self, key: str) -> str: ...

    async def delete(self, key: str) -> None: ...

    async def rpush(self, key: str, *values: str) -> int: ...

    async def lrange(self, key: str, start: int, end: int) -> list[str]: ...

    async def ltrim(self, key: str, start: int, end: int) -> None: ...

    async def llen(self, key: str) -> int: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...

    async def expire(self, key: str, ttl_seconds: int) -> None: ...

    def lock(self, name: str, timeout: float, lease: Optional[float] = None): ...

    async def close(self) -> None: ...


class RedisSessionStore:
    """SessionStore backed by a redis.asyncio client."""

    def __init__(self, client: aioredis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisSessionStore":
        return cls(aioredis.from_url(url, encoding="utf-8", decode_responses=True))

    async def _run(self, op: str, key: str, awaitable):
        try:
            return await awaitable
        except RedisError as e:
            raise StoreError(
                f"Redis {op} failed", context={"key": key}, original_error=e
            ) from e

    async def ping(self) -> None:
        await self._run("ping", "", self._client.ping())

    async def type(self, key: str) -> str:
        return await self._run("type", key, self._client.type(key))

    async def delete(self, key: str) -> None:
        await self._run("del", key, self._client.delete(key))

    async def rpush(self, key: str, *values: str) -> int:
        if not values:
            return await self.llen(key)
        return await self._run("rpush", key, self._client.rpush(key, *values))

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        return await self._run("lrange", key, self._client.lrange(key, start, end))

    async def ltrim(self, key: str, start: int, end: int) -> None:
        await self._run("ltrim", key, self._client.ltrim(key, start, end))

    async def llen(self, key: str) -> int:
        return await self._run("llen", key, self._client.llen(key))

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", key, self._client.get(key))

    async def set(self, key: str, value: str) -> None:
        await self._run("set", key, self._client.set(key, value))

    async def expire(self, key: str, ttl_seconds: int) -> None:
        await self._run("expire", key, self._client.expire(key, ttl_seconds))

    @asynccontextmanager
    async def lock(
        self, name: str, timeout: float, lease: Optional[float] = None
    ) -> AsyncIterator[None]:
        """Wait up to ``timeout`` for the lock; hold it for at most ``lease``."""
        lock = self._client.lock(name, timeout=lease or timeout, blocking_timeout=timeout)
        acquired = await self._run("lock", name, lock.acquire())
        if not acquired:
            raise StoreError("Timed out waiting for session lock", context={"key": name})
        try:
            yield
        finally:
            try:
                await lock.release()
            except RedisError as e:
                # Expires on its own when the lease runs out
                logger.warning("Failed to release lock %s: %s", name, e)

    async def close(self) -> None:
        await self._client.aclose()


def _resolve_range(length: int, start: int, end: int) -> tuple[int, int]:
    """Translate inclusive Redis indices into a Python slice."""
    if start < 0:
        start = max(length + start, 0)
    if end < 0:
        end = length + end
    end = min(end, length - 1)
    if start > end:
        return 0, 0
    return start, end + 1


class InMemorySessionStore:
    """Process-local SessionStore, used when Redis is not configured or unreachable."""

    def __init__(self, clock=time.monotonic):
        self._data: dict[str, object] = {}
        self._expires: dict[str, float] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._clock = clock

    def _sweep(self) -> None:
        """Drop every expired key, not only the ones read again."""
        now = self._clock()
        for key in [k for k, deadline in self._expires.items() if now >= deadline]:
            self._data.pop(key, None)
            del self._expires[key]

    def _live(self, key: str):
        deadline = self._expires.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return self._data.get(key)

    def _list(self, key: str) -> list[str]:
        value = self._live(key)
        if value is None:
            return []
        if not isinstance(value, list):
            raise StoreError(
                "WRONGTYPE Operation against a key holding the wrong kind of value",
                context={"key": key},
            )
        return value

    async def type(self, key: str) -> str:
        value = self._live(key)
        if value is None:
            return "none"
        return "list" if isinstance(value, list) else "string"

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)
        self._expires.pop(key, None)

    async def rpush(self, key: str, *values: str) -> int:
        self._sweep()
        items = self._list(key)
        items.extend(values)
        if items:
            self._data[key] = items
        return len(items)

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self._list(key)
        lo, hi = _resolve_range(len(items), start, end)
        return list(items[lo:hi])

    async def ltrim(self, key: str, start: int, end: int) -> None:
        items = self._list(key)
        lo, hi = _resolve_range(len(items), start, end)
        kept = items[lo:hi]
        if kept:
            self._data[key] = kept
        else:
            await self.delete(key)

    async def llen(self, key: str) -> int:
        return len(self._list(key))

    async def get(self, key: str) -> Optional[str]:
        value = self._live(key)
        if value is None:
            return None
        if isinstance(value, list):
            raise StoreError(
                "WRONGTYPE Operation against a key holding the wrong kind of value",
                context={"key": key},
            )
        return value

    async def set(self, key: str, value: str) -> None:
        self._sweep()
        self._data[key] = value
        self._expires.pop(key, None)

    async def expire(self, key: str, ttl_seconds: int) -> None:
        if self._live(key) is not None:
            self._expires[key] = self._clock() + ttl_seconds

    @asynccontextmanager
    async def lock(
        self, name: str, timeout: float, lease: Optional[float] = None
    ) -> AsyncIterator[None]:
        """Wait up to ``timeout`` for the lock. Held until released; ``lease`` is unused."""
        lock = self._locks.setdefault(name, asyncio.Lock())
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout)
            except asyncio.TimeoutError as e:
                raise StoreError(
                    "Timed out waiting for session lock", context={"key": name}
                ) from e
            try:
                yield
            finally:
                lock.release()
        finally:
            # Forget the lock once no holder or waiter refers to it
            self._lock_users[name] -= 1
            if not self._lock_users[name]:
                del self._lock_users[name]
                del self._locks[name]

    async def close(self) -> None:
        return None


async def open_session_store(config: MemoryConfig) -> SessionStore:
    """
    Open the configured session store.

    Uses Redis when ``config.redis_url`` is set and reachable; otherwise
    falls back to the in-process store so the proxy stays runnable.
    """
    if config.redis_url:
        store = RedisSessionStore.from_url(config.redis_url)
        try:
            await store.ping()
            logger.info("Connected to Redis session store")
            return store
        except StoreError as e:
            warnings.warn(
                f"Failed to connect to Redis: {e}. "
                "Falling back to in-process session store."
            )
            await store.close()
    return InMemorySessionStore()

"""Fast key-value cache for OAuth token material."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import Any, AsyncIterator, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class TokenCache(Protocol):
    async def get(self, key: str) -> dict[str, Any] | None: ...

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int | None = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    def lock(self, key: str, *, timeout: float) -> AbstractAsyncContextManager[None]:
        """Mutual exclusion on `key` across every process sharing the cache."""
        ...

    async def close(self) -> None: ...


class RedisTokenCache:
    def __init__(self, url: str, *, client: "redis.Redis | None" = None):
        self.url = url
        self._client = client or redis.from_url(url, decode_responses=True)

    async def get(self, key: str) -> dict[str, Any] | None:
        raw = await self._client.get(key)
        if not raw:
            return None
        try:
            obj = json.loads(raw)
        except ValueError:
            return None
        return obj if isinstance(obj, dict) else None

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int | None = None) -> None:
        payload = json.dumps(value, ensure_ascii=True)
        if ttl_seconds and ttl_seconds > 0:
            await self._client.set(key, payload, ex=int(ttl_seconds))
        else:
            await self._client.set(key, payload)

    async def delete(self, key: str) -> None:
        await self._client.delete(key)

    @asynccontextmanager
    async def lock(self, key: str, *, timeout: float) -> AsyncIterator[None]:
        lk = self._client.lock(f"{key}:lock", timeout=timeout, blocking_timeout=timeout)
        try:
            acquired = await lk.acquire()
        except RedisError as e:
            logger.warning(f"redis lock {key} unavailable, continuing unlocked: {type(e).__name__}")
            acquired = False
        else:
            if not acquired:
                logger.warning(f"redis lock {key} not acquired within {timeout}s, continuing unlocked")
        try:
            yield
        finally:
            if acquired:
                try:
                    await lk.release()
                except RedisError as e:
                    # expired while held; the value was written anyway
                    logger.warning(f"redis lock {key} release failed: {type(e).__name__}")

    async def close(self) -> None:
        await self._client.aclose()


class MemoryTokenCache:
    """In-process cache used when no REDIS_URL is configured, and in tests."""

    def __init__(self) -> None:
        self._items: dict[str, tuple[str, float | None]] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> dict[str, Any] | None:
        async with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            raw, expires = item
            if expires is not None and time.time() >= expires:
                self._items.pop(key, None)
                return None
            return json.loads(raw)

    async def set(self, key: str, value: dict[str, Any], ttl_seconds: int | None = None) -> None:
        expires = time.time() + ttl_seconds if ttl_seconds and ttl_seconds > 0 else None
        async with self._lock:
            self._items[key] = (json.dumps(value, ensure_ascii=True), expires)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._items.pop(key, None)

    @asynccontextmanager
    async def lock(self, key: str, *, timeout: float) -> AsyncIterator[None]:
        # single process: TokenStore's asyncio.Lock already serializes
        yield

    async def close(self) -> None:
        return None


def build_token_cache(redis_url: str | None) -> TokenCache:
    if redis_url:
        return RedisTokenCache(redis_url)
    return MemoryTokenCache()

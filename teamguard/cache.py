from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as redis

from .config import REDIS_URL, USE_REDIS


class TTLCache(Protocol):
    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def invalidate_prefix(self, prefix: str) -> None: ...


class RedisTTLCache:
    def __init__(self, redis_url: str | None = None, namespace: str = "teamguard") -> None:
        self.redis_url = redis_url or REDIS_URL
        self.namespace = namespace
        self._redis = redis.from_url(self.redis_url, decode_responses=True)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Any | None:
        data = await self._redis.get(self._key(key))
        if not data:
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            return None

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        ttl = max(1, int(ttl_seconds))
        await self._redis.setex(self._key(key), ttl, json.dumps(value, default=str))

    async def delete(self, key: str) -> None:
        await self._redis.delete(self._key(key))

    async def invalidate_prefix(self, prefix: str) -> None:
        keys = [k async for k in self._redis.scan_iter(match=f"{self._key(prefix)}*")]
        if keys:
            await self._redis.delete(*keys)

    async def close(self) -> None:
        await self._redis.close()


# Per-process store for development and single-instance deployments
class InMemoryTTLCache:
    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._store: Dict[str, Tuple[float, Any]] = {}
        self._clock = clock or time.monotonic

    async def get(self, key: str) -> Any | None:
        item = self._store.get(key)
        if not item:
            return None
        expires, value = item
        if self._clock() >= expires:
            self._store.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if ttl_seconds <= 0:
            return
        self._store[key] = (self._clock() + ttl_seconds, value)

    async def delete(self, key: str) -> None:
        self._store.pop(key, None)

    async def invalidate_prefix(self, prefix: str) -> None:
        for key in [k for k in self._store if k.startswith(prefix)]:
            del self._store[key]

    async def close(self) -> None:
        pass

    def __len__(self) -> int:
        return len(self._store)


def get_cache() -> TTLCache:
    """Use Redis in production, in-memory for development"""
    return RedisTTLCache() if USE_REDIS else InMemoryTTLCache()

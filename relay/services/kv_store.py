"""
Key-value store backends.

The delivery engine keeps all of its state behind this small async
interface: get, put with TTL, delete, prefix listing and an atomic
set-if-absent used for single-flight markers.
"""
import time
from typing import Callable

import redis.asyncio as redis
import structlog

from relay.config import settings
from relay.exceptions import StoreError

logger = structlog.get_logger()


class KVStore:
    """Async key-value interface. Values are JSON strings."""

    async def get(self, key: str) -> str | None:
        raise NotImplementedError

    async def put(self, key: str, value: str, ttl: int | None = None) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def keys(self, prefix: str, limit: int | None = None) -> list[str]:
        raise NotImplementedError

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        """Write only when the key does not exist. Returns True if written."""
        raise NotImplementedError

    async def close(self) -> None:
        pass


class RedisKVStore(KVStore):
    """Redis-backed store. Redis errors are re-raised as StoreError."""

    def __init__(self, redis_url: str = None, client: redis.Redis = None):
        self.redis_url = redis_url or settings.REDIS_URL
        self._redis = client

    async def get_redis(self) -> redis.Redis:
        if self._redis is None:
            self._redis = redis.from_url(self.redis_url, decode_responses=True)
        return self._redis

    async def get(self, key: str) -> str | None:
        r = await self.get_redis()
        try:
            value = await r.get(key)
        except redis.RedisError as e:
            raise StoreError("get", key, e) from e
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def put(self, key: str, value: str, ttl: int | None = None) -> None:
        r = await self.get_redis()
        try:
            await r.set(key, value, ex=ttl)
        except redis.RedisError as e:
            raise StoreError("put", key, e) from e

    async def delete(self, key: str) -> None:
        r = await self.get_redis()
        try:
            await r.delete(key)
        except redis.RedisError as e:
            raise StoreError("delete", key, e) from e

    async def keys(self, prefix: str, limit: int | None = None) -> list[str]:
        r = await self.get_redis()
        found = []
        try:
            async for key in r.scan_iter(match=f"{prefix}*", count=100):
                found.append(key.decode() if isinstance(key, bytes) else key)
                if limit is not None and len(found) >= limit:
                    break
        except redis.RedisError as e:
            raise StoreError("scan", prefix, e) from e
        return found

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        r = await self.get_redis()
        try:
            written = await r.set(key, value, ex=ttl, nx=True)
        except redis.RedisError as e:
            raise StoreError("set_if_absent", key, e) from e
        return bool(written)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


class MemoryKVStore(KVStore):
    """
    In-process store with TTL expiry.

    Used for local runs (KV_BACKEND=memory) and tests. Expiry is
    evaluated lazily against the injected monotonic clock.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}

    def _expired(self, key: str) -> bool:
        _, expires_at = self._data[key]
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return True
        return False

    async def get(self, key: str) -> str | None:
        if key not in self._data or self._expired(key):
            return None
        return self._data[key][0]

    async def put(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self, prefix: str, limit: int | None = None) -> list[str]:
        found = []
        for key in list(self._data):
            if not key.startswith(prefix) or self._expired(key):
                continue
            found.append(key)
            if limit is not None and len(found) >= limit:
                break
        return found

    async def set_if_absent(self, key: str, value: str, ttl: int) -> bool:
        if await self.get(key) is not None:
            return False
        await self.put(key, value, ttl)
        return True


def create_kv_store(backend: str = None) -> KVStore:
    """Build the store selected by KV_BACKEND."""
    backend = backend or settings.KV_BACKEND
    if backend == "memory":
        logger.warning("kv_store_in_memory", reason="state is lost on restart")
        return MemoryKVStore()
    if backend == "redis":
        return RedisKVStore(settings.REDIS_URL)
    raise ValueError(f"Unknown KV_BACKEND: {backend}")

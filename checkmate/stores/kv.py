import logging
from typing import Dict, Optional, Protocol

import redis.asyncio as aioredis

log = logging.getLogger(__name__)


class KVStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str) -> None: ...


class MemoryKVStore:
    """In-process store for local development. Not durable across restarts."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value


class RedisKVStore:
    def __init__(self, client: aioredis.Redis, ttl_seconds: Optional[int] = None):
        self.client = client
        self.ttl_seconds = ttl_seconds

    async def get(self, key: str) -> Optional[str]:
        value = await self.client.get(key)
        if value is None:
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return str(value)

    async def set(self, key: str, value: str) -> None:
        await self.client.set(key, value, ex=self.ttl_seconds)

    async def close(self) -> None:
        await self.client.aclose()


def make_kv_store(
    backend: str, redis_url: str = "", ttl_seconds: Optional[int] = None
) -> KVStore:
    backend = backend.lower()
    if backend == "memory":
        log.warning("Using in-memory usage store, counters reset on restart")
        return MemoryKVStore()
    if backend == "redis":
        log.info(f"Using redis usage store at {redis_url}")
        return RedisKVStore(aioredis.from_url(redis_url), ttl_seconds=ttl_seconds)
    raise ValueError(f"Unknown store backend: {backend}")

# calsync/infrastructure/redis_cache.py
import os
from typing import Optional, Protocol

import redis.asyncio as aioredis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")


class Cache(Protocol):
    """
    Small TTL key/value surface the sync engine depends on.
    OAuth sessions, per-account sync locks and rate-limit windows all live here.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None: ...

    async def add(self, key: str, value: str, ttl: int) -> bool:
        """Set only if absent. True when this call created the key."""
        ...

    async def pop(self, key: str) -> Optional[str]:
        """Atomically read and delete."""
        ...

    async def delete(self, key: str) -> None: ...

    async def ttl(self, key: str) -> Optional[int]: ...


class RedisCache:
    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        await self.client.set(key, value, ex=ttl)

    async def add(self, key: str, value: str, ttl: int) -> bool:
        return bool(await self.client.set(key, value, ex=ttl, nx=True))

    async def pop(self, key: str) -> Optional[str]:
        # GETDEL keeps single-use reads race free (redis >= 6.2)
        return await self.client.getdel(key)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def ttl(self, key: str) -> Optional[int]:
        remaining = await self.client.ttl(key)
        if remaining is None or remaining < 0:
            return None
        return remaining

    async def close(self) -> None:
        await self.client.aclose()


def redis_cache_from_env() -> RedisCache:
    return RedisCache(aioredis.from_url(REDIS_URL, decode_responses=True))

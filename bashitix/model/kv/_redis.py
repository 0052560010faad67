from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


class KVStore:
    def __init__(self, r: redis.Redis) -> None:
        # expects decode_responses=True
        self.r = r

    async def get(self, key: str) -> Optional[str]:
        return await self.r.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self.r.set(key, value, ex=max(1, int(ttl)))

    async def delete(self, key: str) -> None:
        await self.r.delete(key)

    async def purge_expired(self) -> int:
        return 0

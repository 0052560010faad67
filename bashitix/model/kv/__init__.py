# model/kv/__init__.py
"""Expiring key-value store shared by every service instance.

Rate-limit windows and verification-cache entries live here, never in
process memory. Two backends:

  redis  - redis.asyncio, TTLs handled by Redis
  sql    - the ``kv_entries`` table of the main database

Rate-limit windows go through a ``limits`` storage on the same backend.
"""
from typing import Optional

import redis.asyncio as redis
from limits.aio.storage import RedisStorage, Storage

from ...infra.sql import Database
from ._redis import KVStore as RedisKVStore
from ._sql import KVStore as SqlKVStore
from ._sql import WindowStorage as SqlWindowStorage

BACKENDS = ("redis", "sql")


def new_store(backend: str, *, db: Optional[Database] = None,
              r: Optional[redis.Redis] = None):
    backend = backend.lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError("KVStore(redis) requires r=redis.Redis")
        return RedisKVStore(r=r)
    if backend == "sql":
        if db is None:
            raise RuntimeError("KVStore(sql) requires db=Database")
        return SqlKVStore(db=db)
    raise RuntimeError(f"unknown KV backend: {backend!r}")


def new_rate_storage(backend: str, *, db: Optional[Database] = None,
                     redis_url: Optional[str] = None) -> Storage:
    backend = backend.lower()
    if backend == "redis":
        if not redis_url:
            raise RuntimeError("rate storage(redis) requires redis_url")
        return RedisStorage(f"async+{redis_url}", implementation="redispy")
    if backend == "sql":
        if db is None:
            raise RuntimeError("rate storage(sql) requires db=Database")
        return SqlWindowStorage(db=db)
    raise RuntimeError(f"unknown KV backend: {backend!r}")


__all__ = [
    "RedisKVStore", "SqlKVStore", "SqlWindowStorage", "new_store",
    "new_rate_storage", "BACKENDS",
]

"""Fixed-window rate limiting, keyed by action and client address.

The window engine is ``limits``: the first hit opens a window of ``window``
seconds, every hit inside it counts against ``limit``, and the window
resets when it expires. Storage is shared by every service instance
(Redis or the SQL ``kv_entries`` table).
"""
from __future__ import annotations
import logging

from limits import RateLimitItemPerSecond
from limits.aio.storage import Storage
from limits.aio.strategies import FixedWindowRateLimiter

from .errors import TooManyRequests

log = logging.getLogger(__name__)

NAMESPACE = "ratelimit"


class RateLimiter:
    def __init__(self, storage: Storage) -> None:
        self.storage = storage
        self.strategy = FixedWindowRateLimiter(storage)

    async def allow(self, action: str, client: str, limit: int,
                    window: int) -> bool:
        item = RateLimitItemPerSecond(limit, window, namespace=NAMESPACE)
        return await self.strategy.hit(item, action, client)

    async def check(self, action: str, client: str, limit: int,
                    window: int) -> None:
        if not await self.allow(action, client, limit, window):
            log.warning("rate limit hit: action=%s client=%s", action, client)
            raise TooManyRequests()

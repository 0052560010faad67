"""Door-side verification cache.

Ticket snapshots keyed by ticket id in the shared KV store. The tickets
table stays the source of truth: entries are written after the
authoritative change and filled lazily on a miss. A KV outage degrades to
database lookups; it never fails a verification.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, Optional

import orjson
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from .errors import ConflictError
from .infra.sql import Database, GatedAsyncSession
from .infra.timings import timeit
from .model import tickets

log = logging.getLogger(__name__)

CACHE_ERRORS = (RedisError, SQLAlchemyError, OSError)


def k_ticket(ticket_id: str) -> str:
    return f"ticket:{ticket_id}"


class VerificationCache:
    def __init__(self, kv, db: Database, ttl_seconds: int = 24 * 3600) -> None:
        self.kv = kv
        self.db = db
        self.ttl = ttl_seconds

    async def _read(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        try:
            raw = await self.kv.get(k_ticket(ticket_id))
        except CACHE_ERRORS as e:
            log.warning("verification cache read failed: %s", e)
            return None
        return orjson.loads(raw) if raw else None

    async def put(self, snap: Dict[str, Any]) -> None:
        try:
            await self.kv.set(
                k_ticket(snap["ticket_id"]), orjson.dumps(snap).decode(),
                self.ttl,
            )
        except CACHE_ERRORS as e:
            log.warning("verification cache write failed: %s", e)

    async def evict(self, ticket_id: str) -> None:
        try:
            await self.kv.delete(k_ticket(ticket_id))
        except CACHE_ERRORS as e:
            log.warning("verification cache evict failed: %s", e)

    async def _load(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        async with self.db.session() as s:
            return await tickets.get_snapshot(
                GatedAsyncSession(session=s, gated=self.db.gated), ticket_id
            )

    async def get(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        """Snapshot or None when no such ticket exists."""
        async with timeit("verify.cache_get"):
            snap = await self._read(ticket_id)
        if snap is not None:
            return snap
        async with timeit("verify.db_get"):
            snap = await self._load(ticket_id)
        if snap is not None:
            await self.put(snap)
        return snap

    async def refresh(self, ticket_id: str) -> None:
        snap = await self._load(ticket_id)
        if snap is None:
            await self.evict(ticket_id)
        else:
            await self.put(snap)

    async def mark_used(self, ticket_id: str) -> Dict[str, Any]:
        # authoritative record first, cache from what it now says
        try:
            async with self.db.session() as s:
                snap = await tickets.mark_used(
                    GatedAsyncSession(session=s, gated=self.db.gated),
                    ticket_id,
                )
        except ConflictError:
            # cached copy may still claim "valid"
            await self.refresh(ticket_id)
            raise
        await self.put(snap)
        return snap

from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AlreadyUsed, ConflictError, NotFound
from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession

SQL_TICKET_WITH_EVENT = text("""
    SELECT t.id, t.user_id, t.event_id, t.status, t.verification_code,
           t.created_at, t.used_at,
           e.title, e.location, e.starts_at
    FROM tickets t JOIN events e ON t.event_id = e.id
    WHERE t.id = :id
""")


def snapshot(row) -> Dict[str, Any]:
    """Denormalized view served to the door; derived, never authoritative."""
    return {
        "ticket_id": row["id"],
        "event_id": row["event_id"],
        "user_id": row["user_id"],
        "status": row["status"],
        "valid": row["status"] == "valid",
        "used": row["status"] == "used",
        "used_at": to_iso(row["used_at"]),
        "title": row["title"],
        "location": row["location"],
        "starts_at": row["starts_at"],
    }


async def _fetch(db: AsyncSession, ticket_id: str):
    return (await db.execute(
        SQL_TICKET_WITH_EVENT, {"id": ticket_id}
    )).mappings().first()


async def get_snapshot(db: GatedAsyncSession,
                       ticket_id: str) -> Optional[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            row = await _fetch(db.session, ticket_id)
    return snapshot(row) if row else None


async def mark_used(db: GatedAsyncSession, ticket_id: str) -> Dict[str, Any]:
    """
    valid -> used, exactly once. The conditional UPDATE decides; a second
    caller finds nothing to update and gets AlreadyUsed.
    """
    async with db.gated():
        async with db.session.begin():
            done = (await db.session.execute(text("""
                UPDATE tickets SET status = 'used', used_at = :now
                WHERE id = :id AND status = 'valid'
                RETURNING id
            """), {"id": ticket_id, "now": now_ts()})).first()
            row = await _fetch(db.session, ticket_id)

    if row is None:
        raise NotFound("Ticket not found")
    if done is None:
        if row["status"] == "used":
            raise AlreadyUsed()
        raise ConflictError("Ticket has been refunded")
    return snapshot(row)


async def has_active(db: GatedAsyncSession, user_id: str,
                     event_id: str) -> bool:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT 1 FROM tickets
                WHERE user_id = :u AND event_id = :e
                  AND status IN ('valid', 'used')
                LIMIT 1
            """), {"u": user_id, "e": event_id})).first()
    return row is not None


async def list_for_user(db: GatedAsyncSession,
                        user_id: str) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT t.id, t.event_id, t.status, t.verification_code,
                       t.created_at, t.used_at,
                       e.title, e.starts_at, e.location, e.price
                FROM tickets t
                JOIN events e ON t.event_id = e.id
                WHERE t.user_id = :u
                ORDER BY e.starts_at DESC, t.created_at ASC
            """), {"u": user_id})).mappings().all()
    return [
        {
            "id": r["id"],
            "event_id": r["event_id"],
            "status": r["status"],
            "qr_code": r["verification_code"],
            "created_at": to_iso(r["created_at"]),
            "used_at": to_iso(r["used_at"]),
            "title": r["title"],
            "starts_at": r["starts_at"],
            "location": r["location"],
            "price": r["price"],
        }
        for r in rows
    ]

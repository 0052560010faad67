from __future__ import annotations
from typing import Any, Dict, List, Optional

from sqlalchemy import select, text

from ..errors import ConflictError, NotFound, ValidationError
from ..helpers import new_id, now_ts
from ..infra.sql import GatedAsyncSession
from . import ledger
from .orm import EVENT_STATUSES, Event

EDITABLE = (
    "title", "description", "starts_at", "location", "price", "image_url",
    "category", "capacity", "status",
)


def event_dict(e: Event) -> Dict[str, Any]:
    return {
        "id": e.id,
        "title": e.title,
        "description": e.description,
        "starts_at": e.starts_at,
        "location": e.location,
        "price": e.price,
        "image_url": e.image_url,
        "category": e.category,
        "capacity": e.capacity,
        "status": e.status,
        "created_at": e.created_at,
    }


def _validate(fields: Dict[str, Any]) -> None:
    if "title" in fields and not (fields["title"] or "").strip():
        raise ValidationError("Title is required")
    if "location" in fields and not (fields["location"] or "").strip():
        raise ValidationError("Location is required")
    if "price" in fields and (fields["price"] is None or fields["price"] < 0):
        raise ValidationError("Price must be a non-negative integer")
    if fields.get("capacity") is not None and fields["capacity"] < 1:
        raise ValidationError("Capacity must be at least 1")
    if "status" in fields and fields["status"] not in EVENT_STATUSES:
        raise ValidationError("Invalid status")


async def list_upcoming(db: GatedAsyncSession, limit: int = 100) -> List[Dict]:
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(
                select(Event)
                .where(Event.status == "active", Event.starts_at >= now_ts())
                .order_by(Event.starts_at.asc())
                .limit(limit)
            )).scalars().all()
    return [event_dict(e) for e in rows]


async def get(db: GatedAsyncSession, event_id: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            e = await db.session.get(Event, event_id)
    if e is None:
        raise NotFound("Event not found")
    return event_dict(e)


async def create(db: GatedAsyncSession, fields: Dict[str, Any],
                 created_by: Optional[str]) -> str:
    for required in ("title", "starts_at", "location"):
        if fields.get(required) in (None, ""):
            raise ValidationError("Missing required fields")
    _validate(fields)
    event_id = new_id()
    async with db.gated():
        async with db.session.begin():
            db.session.add(Event(
                id=event_id,
                title=fields["title"].strip(),
                description=fields.get("description") or "",
                starts_at=float(fields["starts_at"]),
                location=fields["location"].strip(),
                price=int(fields.get("price") or 0),
                image_url=fields.get("image_url") or "",
                category=fields.get("category") or "general",
                capacity=fields.get("capacity"),
                status=fields.get("status") or "active",
                ledger_seq=0,
                created_by=created_by,
                created_at=now_ts(),
            ))
    return event_id


async def update(db: GatedAsyncSession, event_id: str,
                 fields: Dict[str, Any]) -> None:
    updates = {k: v for k, v in fields.items() if k in EDITABLE}
    if not updates:
        raise ValidationError("No fields provided")
    _validate(updates)

    async with db.gated():
        async with db.session.begin():
            # capacity changes go through the ledger lock
            locked = await ledger._lock_event(db.session, event_id)
            if locked is None:
                raise NotFound("Event not found")
            if updates.get("capacity") is not None:
                usage = await ledger._usage(db.session, event_id, now_ts())
                if usage["sold"] + usage["held"] > updates["capacity"]:
                    raise ConflictError(
                        "Capacity is below the tickets already issued"
                    )
            sets = ", ".join(f"{k} = :{k}" for k in updates)
            await db.session.execute(
                text(f"UPDATE events SET {sets}, updated_at = :u "
                     "WHERE id = :id"),
                {**updates, "u": now_ts(), "id": event_id},
            )


async def archive(db: GatedAsyncSession, event_id: str) -> None:
    await update(db, event_id, {"status": "archived"})


async def admin_list(db: GatedAsyncSession) -> List[Dict[str, Any]]:
    async with db.gated():
        async with db.session.begin():
            events = (await db.session.execute(
                select(Event).order_by(Event.starts_at.desc())
            )).scalars().all()
            sold_rows = (await db.session.execute(text("""
                SELECT event_id, COUNT(*) FROM tickets
                WHERE status IN ('valid', 'used')
                GROUP BY event_id
            """))).all()
    sold = {r[0]: int(r[1]) for r in sold_rows}
    out = []
    for e in events:
        d = event_dict(e)
        d["tickets_sold"] = sold.get(e.id, 0)
        d["revenue"] = d["tickets_sold"] * e.price
        out.append(d)
    return out


async def stats(db: GatedAsyncSession) -> Dict[str, int]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT
                  (SELECT COUNT(*) FROM users) AS users,
                  (SELECT COUNT(*) FROM events WHERE status = 'active')
                    AS events,
                  (SELECT COUNT(*) FROM tickets WHERE status = 'valid')
                    AS tickets,
                  (SELECT COALESCE(SUM(e.price), 0)
                     FROM tickets t JOIN events e ON t.event_id = e.id
                    WHERE t.status IN ('valid', 'used')) AS revenue
            """))).mappings().first()
    return {k: int(row[k] or 0) for k in ("users", "events", "tickets",
                                          "revenue")}

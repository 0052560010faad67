# model/ledger.py
"""
Capacity ledger: the authoritative count of tickets per event.

- time-limited "holds" on capacity, taken when a checkout is requested
- post (commit) of a hold when the payment completes
- void of a hold when the checkout cannot proceed
- refund of a posted hold, which gives the capacity back
- inventory computation (sold, held, available)

usage(event) = sum(qty of posted holds)
             + sum(qty of pending holds that have not expired)

Every write begins with a conditional UPDATE on the event row. That row
lock is the only mutual-exclusion point for an event: two requests racing
for the last seats serialize in the database, whichever service instance
they hit. Reads and the hold insert that follow run under that lock, in the
same transaction.

The underscore functions run inside a transaction owned by the caller so
the fulfillment pipeline can combine them with its own writes.
"""

from __future__ import annotations
from typing import Dict, Any, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import CapacityExceeded, EventNotAvailable, NotFound
from ..helpers import new_id, now_ts, to_iso
from ..infra.sql import GatedAsyncSession

# Hold statuses
H_PENDING = "pending"
H_POSTED = "posted"
H_VOIDED = "voided"
H_REFUNDED = "refunded"


# ------------------------------------------------------------------------------
# Internals (caller owns the transaction)
# ------------------------------------------------------------------------------

async def _lock_event(db: AsyncSession, event_id: str) -> Optional[Dict[str, Any]]:
    """
    Take the per-event write lock. Returns {status, capacity} or None if the
    event does not exist.
    """
    row = (await db.execute(text("""
        UPDATE events SET ledger_seq = ledger_seq + 1
        WHERE id = :id
        RETURNING status, capacity
    """), {"id": event_id})).mappings().first()
    return dict(row) if row else None


async def _usage(db: AsyncSession, event_id: str, now: float) -> Dict[str, int]:
    sold = (await db.execute(text("""
        SELECT COALESCE(SUM(qty), 0) FROM holds
        WHERE event_id = :e AND status = 'posted'
    """), {"e": event_id})).scalar_one()

    held = (await db.execute(text("""
        SELECT COALESCE(SUM(qty), 0) FROM holds
        WHERE event_id = :e AND status = 'pending'
          AND (expires_at IS NULL OR expires_at > :now)
    """), {"e": event_id, "now": now})).scalar_one()

    return {"sold": int(sold), "held": int(held)}


def _fits(capacity: Optional[int], usage: Dict[str, int], qty: int) -> bool:
    if capacity is None:
        return True
    return usage["sold"] + usage["held"] + qty <= int(capacity)


async def _insert_hold(
    db: AsyncSession, event_id: str, user_id: str, qty: int, status: str,
    expires_at: Optional[float], now: float,
) -> str:
    hold_id = new_id()
    await db.execute(text("""
        INSERT INTO holds(id, event_id, user_id, qty, status, expires_at,
                          created_at)
        VALUES (:id, :e, :u, :q, :s, :x, :c)
    """), {
        "id": hold_id, "e": event_id, "u": user_id, "q": qty,
        "s": status, "x": expires_at, "c": now,
    })
    return hold_id


async def _void_pending(db: AsyncSession, event_id: str, user_id: str) -> int:
    res = await db.execute(text("""
        UPDATE holds SET status = 'voided'
        WHERE event_id = :e AND user_id = :u AND status = 'pending'
    """), {"e": event_id, "u": user_id})
    return int(res.rowcount or 0)


async def _post_pending_hold(
    db: AsyncSession, event_id: str, user_id: str, qty: int, now: float
) -> Optional[str]:
    """
    POST the oldest unexpired pending hold of (event, user, qty). Any other
    pending hold of the same (event, user) is voided: a user ends up with
    one purchase per event.
    """
    row = (await db.execute(text("""
        SELECT id FROM holds
        WHERE event_id = :e AND user_id = :u AND qty = :q
          AND status = 'pending'
          AND (expires_at IS NULL OR expires_at > :now)
        ORDER BY created_at ASC
        LIMIT 1
    """), {"e": event_id, "u": user_id, "q": qty, "now": now})).first()
    if row is None:
        return None

    hold_id = row[0]
    await db.execute(text("""
        UPDATE holds SET status = 'posted', expires_at = NULL
        WHERE id = :id AND status = 'pending'
    """), {"id": hold_id})
    await db.execute(text("""
        UPDATE holds SET status = 'voided'
        WHERE event_id = :e AND user_id = :u AND status = 'pending'
          AND id <> :id
    """), {"e": event_id, "u": user_id, "id": hold_id})
    return hold_id


async def _commit_for_fulfillment(
    db: AsyncSession, event_id: str, user_id: str, qty: int,
    locked: Dict[str, Any], now: float,
) -> Optional[str]:
    """
    Re-check capacity at fulfillment time. The caller already holds the
    event lock (``locked`` is what ``_lock_event`` returned).

    Returns the posted hold id, or None when no capacity can be granted.
    """
    if locked["status"] != "active":
        return None

    hold_id = await _post_pending_hold(db, event_id, user_id, qty, now)
    if hold_id is not None:
        return hold_id

    # late success: the hold expired before the payment completed; book
    # directly if the seats are still there
    usage = await _usage(db, event_id, now)
    if not _fits(locked["capacity"], usage, qty):
        return None
    return await _insert_hold(db, event_id, user_id, qty, H_POSTED, None, now)


async def _refund_hold(db: AsyncSession, hold_id: str) -> bool:
    row = (await db.execute(text("""
        UPDATE holds SET status = 'refunded'
        WHERE id = :id AND status = 'posted'
        RETURNING id
    """), {"id": hold_id})).first()
    return row is not None


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

async def reserve_and_check(
    db: GatedAsyncSession,
    event_id: str,
    user_id: str,
    qty: int,
    timeout_seconds: int,
) -> str:
    """
    Atomically take a PENDING hold of ``qty`` seats if the event is active
    and capacity remains. Returns the hold id.

    Raises NotFound, EventNotAvailable or CapacityExceeded.
    """
    now = now_ts()
    expires_at = now + timeout_seconds if timeout_seconds > 0 else None

    async with db.gated():
        async with db.session.begin():
            locked = await _lock_event(db.session, event_id)
            if locked is None:
                raise NotFound("Event not found")
            if locked["status"] != "active":
                raise EventNotAvailable()
            # a newer checkout replaces the caller's earlier pending one
            await _void_pending(db.session, event_id, user_id)
            usage = await _usage(db.session, event_id, now)
            if not _fits(locked["capacity"], usage, qty):
                raise CapacityExceeded()
            return await _insert_hold(
                db.session, event_id, user_id, qty, H_PENDING, expires_at,
                now,
            )


async def release_hold(db: GatedAsyncSession, hold_id: str) -> None:
    """
    VOID a pending hold (best-effort). Posted or already voided holds are
    left alone.
    """
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(text("""
                UPDATE holds SET status = 'voided'
                WHERE id = :id AND status = 'pending'
            """), {"id": hold_id})


async def compute_inventory(db: GatedAsyncSession, event_id: str) -> Dict[str, Any]:
    """
    Returns:
      { "capacity": ..., "sold": ..., "held": ..., "available": ...,
        "sold_out": ..., "timestamp": ... }
    ``capacity`` and ``available`` are None for unlimited events.
    """
    now = now_ts()
    async with db.gated():
        async with db.session.begin():
            cap = (await db.session.execute(
                text("SELECT capacity FROM events WHERE id = :id"),
                {"id": event_id},
            )).first()
            if cap is None:
                raise NotFound("Event not found")
            usage = await _usage(db.session, event_id, now)

    capacity = cap[0]
    available = (
        None if capacity is None
        else int(capacity) - usage["sold"] - usage["held"]
    )
    return {
        "capacity": capacity,
        "sold": usage["sold"],
        "held": usage["held"],
        "available": available,
        "sold_out": available is not None and available <= 0,
        "timestamp": to_iso(now),
    }

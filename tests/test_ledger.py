"""Tests for the capacity ledger: holds, expiry, inventory."""

import asyncio

import pytest
from sqlalchemy import text

from bashitix.errors import CapacityExceeded, EventNotAvailable, NotFound
from bashitix.infra.sql import GatedAsyncSession
from bashitix.model import ledger
from tests.conftest import add_event


async def _reserve(db, event_id, user_id, qty, ttl=900):
    async with db.session() as s:
        return await ledger.reserve_and_check(
            GatedAsyncSession(session=s, gated=db.gated),
            event_id, user_id, qty, ttl,
        )


async def _inventory(db, event_id):
    async with db.session() as s:
        return await ledger.compute_inventory(
            GatedAsyncSession(session=s, gated=db.gated), event_id
        )


class TestReserve:
    @pytest.mark.asyncio
    async def test_hold_counts_against_capacity(self, db):
        event_id = await add_event(db, capacity=5)
        await _reserve(db, event_id, "u1", 3)
        inv = await _inventory(db, event_id)
        assert inv["held"] == 3
        assert inv["sold"] == 0
        assert inv["available"] == 2
        assert not inv["sold_out"]

    @pytest.mark.asyncio
    async def test_over_capacity(self, db):
        event_id = await add_event(db, capacity=2)
        await _reserve(db, event_id, "u1", 2)
        with pytest.raises(CapacityExceeded):
            await _reserve(db, event_id, "u2", 1)

    @pytest.mark.asyncio
    async def test_unlimited(self, db):
        event_id = await add_event(db, capacity=None)
        await _reserve(db, event_id, "u1", 20)
        inv = await _inventory(db, event_id)
        assert inv["capacity"] is None
        assert inv["available"] is None
        assert not inv["sold_out"]

    @pytest.mark.asyncio
    async def test_unknown_event(self, db):
        with pytest.raises(NotFound):
            await _reserve(db, "nope", "u1", 1)

    @pytest.mark.asyncio
    async def test_inactive_event(self, db):
        event_id = await add_event(db, capacity=10, status="draft")
        with pytest.raises(EventNotAvailable):
            await _reserve(db, event_id, "u1", 1)

    @pytest.mark.asyncio
    async def test_expired_hold_frees_capacity(self, db):
        event_id = await add_event(db, capacity=1)
        hold_id = await _reserve(db, event_id, "u1", 1)
        async with db.session() as s:
            async with s.begin():
                await s.execute(
                    text("UPDATE holds SET expires_at = 0 WHERE id = :id"),
                    {"id": hold_id},
                )
        await _reserve(db, event_id, "u2", 1)

    @pytest.mark.asyncio
    async def test_release_hold(self, db):
        event_id = await add_event(db, capacity=1)
        hold_id = await _reserve(db, event_id, "u1", 1)
        async with db.session() as s:
            await ledger.release_hold(
                GatedAsyncSession(session=s, gated=db.gated), hold_id
            )
        inv = await _inventory(db, event_id)
        assert inv["held"] == 0
        assert inv["available"] == 1

    @pytest.mark.asyncio
    async def test_new_hold_replaces_earlier_pending_hold(self, db):
        event_id = await add_event(db, capacity=40)
        first = await _reserve(db, event_id, "u1", 20)
        second = await _reserve(db, event_id, "u1", 20)
        assert first != second
        await _reserve(db, event_id, "u2", 1)

        inv = await _inventory(db, event_id)
        assert inv["held"] == 21
        async with db.session() as s:
            status = (await s.execute(
                text("SELECT status FROM holds WHERE id = :id"),
                {"id": first},
            )).scalar_one()
        assert status == ledger.H_VOIDED

    @pytest.mark.asyncio
    async def test_replacing_hold_leaves_other_events_alone(self, db):
        event_a = await add_event(db, capacity=5)
        event_b = await add_event(db, capacity=5)
        await _reserve(db, event_a, "u1", 2)
        await _reserve(db, event_b, "u1", 3)
        assert (await _inventory(db, event_a))["held"] == 2
        assert (await _inventory(db, event_b))["held"] == 3


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_racing_reservations_never_exceed_capacity(self, db):
        event_id = await add_event(db, capacity=3)
        results = await asyncio.gather(
            *(_reserve(db, event_id, f"u{i}", 1) for i in range(10)),
            return_exceptions=True,
        )
        granted = [r for r in results if isinstance(r, str)]
        refused = [r for r in results if isinstance(r, CapacityExceeded)]
        assert len(granted) == 3
        assert len(refused) == 7
        inv = await _inventory(db, event_id)
        assert inv["held"] == 3
        assert inv["sold_out"]

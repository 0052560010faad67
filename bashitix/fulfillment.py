"""Ticket issuance and fulfillment.

  Requested --(hold taken, checkout session created)--> SessionCreated
  SessionCreated --(signed checkout.session.completed)--> Fulfilled
  SessionCreated --(nothing ever arrives)--> Abandoned  (hold expires)
  Fulfilled --(signed charge.refunded)--> Refunded

This is the only module that changes ticket status on the purchase path or
writes the capacity ledger. Callbacks are delivered at least once, so every
callback handler is idempotent: the checkout session id is unique on
orders, webhook event ids are recorded, and all of it is decided under the
event's ledger lock.
"""
from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError

from .config import MAX_TICKETS_PER_PURCHASE
from .errors import (
    AlreadyHasTicket, EventNotAvailable, NotFound, ValidationError,
)
from .gateway import PaymentAdapter, parse_correlation_token
from .helpers import new_id, now_ts, qr_code_url
from .infra.sql import Database, GatedAsyncSession
from .infra.timings import timeit
from .model import ledger, tickets
from .model.orm import Event, Order, Ticket, User, WebhookEventSeen
from .notify import Notifier
from .tokens import Claims
from .verification import VerificationCache

log = logging.getLogger(__name__)

ORDER_PAID = "PAID"
ORDER_UNFULFILLED = "PAID_UNFULFILLED"
ORDER_REFUNDED = "REFUNDED"

FULFILLABLE_PAYMENT_STATUSES = ("paid", "no_payment_required")


def validate_quantity(quantity: Any) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("Invalid ticket quantity")
    if quantity < 1 or quantity > MAX_TICKETS_PER_PURCHASE:
        raise ValidationError("Invalid ticket quantity")
    return quantity


class FulfillmentPipeline:
    def __init__(
        self,
        db: Database,
        gateway: PaymentAdapter,
        cache: VerificationCache,
        notifier: Notifier,
        reservation_ttl_seconds: int = 15 * 60,
    ) -> None:
        self.db = db
        self.gateway = gateway
        self.cache = cache
        self.notifier = notifier
        self.reservation_ttl = reservation_ttl_seconds

    def _gated(self, s) -> GatedAsyncSession:
        return GatedAsyncSession(session=s, gated=self.db.gated)

    # ------------------------------------------------------------------
    # Requested -> SessionCreated
    # ------------------------------------------------------------------
    async def request_purchase(
        self, claims: Claims, event_id: str, quantity: Any
    ) -> Dict[str, str]:
        qty = validate_quantity(quantity)
        user_id = claims.sub

        async with self.db.session() as s:
            db = self._gated(s)
            async with db.gated():
                async with s.begin():
                    event = await s.get(Event, event_id)
            if event is None:
                raise NotFound("Event not found")
            if event.status != "active":
                raise EventNotAvailable()
            if await tickets.has_active(db, user_id, event_id):
                raise AlreadyHasTicket()

            async with timeit("ledger.reserve"):
                hold_id = await ledger.reserve_and_check(
                    db, event_id, user_id, qty, self.reservation_ttl
                )

            try:
                async with timeit("gateway.create_session"):
                    session = await self.gateway.create_checkout_session(
                        user_id=user_id,
                        event_id=event_id,
                        quantity=qty,
                        unit_price=event.price,
                        title=event.title,
                        customer_email=claims.email,
                    )
            except Exception:
                # the checkout never started; give the seats back now
                # instead of waiting for the hold to expire
                await ledger.release_hold(db, hold_id)
                raise

        log.info(
            "checkout session %s created: user=%s event=%s qty=%d hold=%s",
            session["session_id"], user_id, event_id, qty, hold_id,
        )
        return {"sessionId": session["session_id"],
                "url": session["redirect_url"]}

    async def request_donation(self, amount: int, donor_email: str) -> Dict[str, str]:
        session = await self.gateway.create_donation_session(
            amount=amount, donor_email=donor_email
        )
        return {"sessionId": session["session_id"],
                "url": session["redirect_url"]}

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------
    async def handle_webhook(self, payload: bytes,
                             headers: Dict[str, str]) -> Dict[str, Any]:
        # raises InvalidSignature before anything is looked at
        event = self.gateway.verify_callback(payload, headers)
        kind = self.gateway.event_kind(event)
        evt_id, obj = self.gateway.event_ids(event)

        if kind == "checkout.session.completed":
            async with timeit("fulfillment.fulfill"):
                return await self.fulfill(evt_id, obj)
        if kind == "charge.refunded":
            async with timeit("fulfillment.refund"):
                return await self.refund(evt_id, obj)
        if kind == "checkout.session.expired":
            log.info("checkout session %s expired", obj.get("id"))
        return {"received": True}

    # SessionCreated -> Fulfilled
    async def fulfill(self, evt_id: Optional[str],
                      obj: Dict[str, Any]) -> Dict[str, Any]:
        session_id = obj.get("id")
        ref = obj.get("client_reference_id")
        if not session_id:
            log.error("completed callback without session id (event %s)",
                      evt_id)
            return {"received": True}
        if not ref:
            # donations carry no correlation token
            log.info("checkout session %s completed without tickets",
                     session_id)
            return {"received": True}
        try:
            user_id, event_id, qty = parse_correlation_token(ref)
        except ValueError as e:
            log.error("session %s: %s", session_id, e)
            return {"received": True}
        if qty > MAX_TICKETS_PER_PURCHASE:
            log.error("session %s: quantity %d out of range", session_id, qty)
            return {"received": True}
        payment_status = obj.get("payment_status", "paid")
        if payment_status not in FULFILLABLE_PAYMENT_STATUSES:
            log.info("session %s completed with payment_status=%s; waiting",
                     session_id, payment_status)
            return {"received": True}

        now = now_ts()
        order_id = new_id()
        issued: List[str] = []
        status = ORDER_UNFULFILLED
        notify_to: Optional[str] = None
        event_info: Optional[Dict[str, Any]] = None

        try:
            async with self.db.session() as s:
                async with self.db.gated():
                    async with s.begin():
                        locked = await ledger._lock_event(s, event_id)
                        if locked is None:
                            log.error("session %s references unknown event %s",
                                      session_id, event_id)
                            return {"received": True}

                        if await self._already_processed(s, session_id, evt_id):
                            return {"received": True, "idempotent": True}
                        if evt_id:
                            s.add(WebhookEventSeen(
                                idempotency_key=evt_id, created_at=now
                            ))

                        duplicate = (await s.execute(text("""
                            SELECT 1 FROM tickets
                            WHERE user_id = :u AND event_id = :e
                              AND status IN ('valid', 'used')
                            LIMIT 1
                        """), {"u": user_id, "e": event_id})).first()

                        hold_id = None
                        if duplicate is None:
                            hold_id = await ledger._commit_for_fulfillment(
                                s, event_id, user_id, qty, locked, now
                            )
                        status = ORDER_PAID if hold_id else ORDER_UNFULFILLED

                        s.add(Order(
                            id=order_id,
                            checkout_session_id=session_id,
                            payment_intent_id=obj.get("payment_intent"),
                            user_id=user_id,
                            event_id=event_id,
                            hold_id=hold_id,
                            qty=qty,
                            amount=int(obj.get("amount_total") or 0),
                            currency=str(obj.get("currency") or "usd"),
                            status=status,
                            created_at=now,
                            paid_at=now,
                        ))
                        # order row must exist before its tickets
                        await s.flush()

                        if hold_id:
                            for _ in range(qty):
                                ticket_id = new_id()
                                s.add(Ticket(
                                    id=ticket_id,
                                    user_id=user_id,
                                    event_id=event_id,
                                    order_id=order_id,
                                    status="valid",
                                    verification_code=qr_code_url(ticket_id),
                                    created_at=now,
                                ))
                                issued.append(ticket_id)

                            user = await s.get(User, user_id)
                            ev = await s.get(Event, event_id)
                            notify_to = user.email if user else None
                            event_info = {
                                "title": ev.title,
                                "location": ev.location,
                                "starts_at": ev.starts_at,
                            }
        except IntegrityError:
            # a replay raced the first write and lost
            log.info("session %s: duplicate delivery rejected by constraint",
                     session_id)
            return {"received": True, "idempotent": True}

        if status == ORDER_UNFULFILLED:
            log.error(
                "order %s PAID_UNFULFILLED (session %s, user %s, event %s, "
                "qty %d): refund required",
                order_id, session_id, user_id, event_id, qty,
            )
            return {"received": True, "order_status": status}

        for ticket_id in issued:
            await self.cache.refresh(ticket_id)
        if notify_to and event_info:
            await self.notifier.tickets_issued(
                notify_to, event_info, [qr_code_url(t) for t in issued]
            )
        log.info("order %s fulfilled with %d tickets", order_id, len(issued))
        return {"received": True, "order_status": status,
                "tickets": len(issued)}

    async def _already_processed(self, s, session_id: str,
                                 evt_id: Optional[str]) -> bool:
        seen = (await s.execute(
            select(Order.id).where(Order.checkout_session_id == session_id)
        )).first()
        if seen is not None:
            return True
        if evt_id:
            seen = await s.get(WebhookEventSeen, evt_id)
            return seen is not None
        return False

    # Fulfilled -> Refunded
    async def refund(self, evt_id: Optional[str],
                     obj: Dict[str, Any]) -> Dict[str, Any]:
        payment_intent = obj.get("payment_intent")
        if not payment_intent:
            log.warning("refund callback without payment intent (event %s)",
                        evt_id)
            return {"received": True}

        async with self.db.session() as s:
            async with self.db.gated():
                event_id = (await s.execute(text("""
                    SELECT event_id FROM orders WHERE payment_intent_id = :pi
                """), {"pi": payment_intent})).scalar_one_or_none()
        if event_id is None:
            log.warning("refund for unknown payment intent %s", payment_intent)
            return {"received": True}

        refunded: List[str] = []
        async with self.db.session() as s:
            async with self.db.gated():
                async with s.begin():
                    await ledger._lock_event(s, event_id)
                    order = (await s.execute(text("""
                        SELECT id, hold_id, amount, status
                        FROM orders WHERE payment_intent_id = :pi
                    """), {"pi": payment_intent})).mappings().one()

                    full = (
                        obj.get("refunded") is True
                        or int(obj.get("amount_refunded") or 0)
                        >= int(order["amount"])
                    )
                    if not full:
                        log.info("partial refund on order %s ignored",
                                 order["id"])
                        return {"received": True}

                    changed = (await s.execute(text("""
                        UPDATE orders SET status = 'REFUNDED', refunded_at = :now
                        WHERE id = :id AND status <> 'REFUNDED'
                        RETURNING id
                    """), {"id": order["id"], "now": now_ts()})).first()
                    if changed is None:
                        return {"received": True, "idempotent": True}

                    if order["hold_id"]:
                        await ledger._refund_hold(s, order["hold_id"])
                    rows = (await s.execute(text("""
                        UPDATE tickets SET status = 'refunded'
                        WHERE order_id = :id AND status IN ('valid', 'used')
                        RETURNING id
                    """), {"id": order["id"]})).all()
                    refunded = [r[0] for r in rows]

        for ticket_id in refunded:
            await self.cache.refresh(ticket_id)
        log.info("order %s refunded, %d tickets", order["id"], len(refunded))
        return {"received": True, "order_status": ORDER_REFUNDED,
                "tickets": len(refunded)}

from __future__ import annotations
import time
import uuid
from typing import Dict, Optional, Tuple

import orjson

from .errors import NotFound, ValidationError
from .gateway import (
    SIGNATURE_HEADER, CheckoutSession, PaymentAdapter, correlation_token,
    signature_header,
)
from .helpers import now_ts

OUTCOMES = ("completed", "expired", "refunded")


def k_mockps(session_id: str) -> str:
    return f"mockps:{session_id}"


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """
    Stand-in for the external processor. Sessions live in the shared KV
    store for ``ttl_seconds``; ``build_event`` produces a signed callback
    with the same shape and signature scheme as the real one.
    """

    def __init__(self, kv, *, webhook_secret: str, currency: str = "usd",
                 ttl_seconds: int = 24 * 3600, tolerance: int = 300) -> None:
        self.kv = kv
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.ttl = ttl_seconds
        self.tolerance = tolerance

    async def _save(self, session: Dict) -> CheckoutSession:
        await self.kv.set(
            k_mockps(session["id"]), orjson.dumps(session).decode(), self.ttl
        )
        return {
            "session_id": session["id"],
            "redirect_url": f"/mockpay/{session['id']}",
        }

    async def create_checkout_session(
        self, *, user_id: str, event_id: str, quantity: int, unit_price: int,
        title: str, customer_email: str,
    ) -> CheckoutSession:
        return await self._save({
            "id": f"cs_mock_{uuid.uuid4().hex}",
            "client_reference_id": correlation_token(
                user_id, event_id, quantity
            ),
            "payment_intent": f"pi_mock_{uuid.uuid4().hex}",
            "amount_total": max(0, int(unit_price)) * int(quantity),
            "currency": self.currency,
            "customer_email": customer_email,
            "title": title,
            "created": int(now_ts()),
        })

    async def create_donation_session(
        self, *, amount: int, donor_email: str
    ) -> CheckoutSession:
        return await self._save({
            "id": f"cs_mock_{uuid.uuid4().hex}",
            "client_reference_id": None,
            "payment_intent": f"pi_mock_{uuid.uuid4().hex}",
            "amount_total": int(amount),
            "currency": self.currency,
            "customer_email": donor_email,
            "title": "Donation",
            "created": int(now_ts()),
        })

    async def get_session(self, session_id: str) -> Optional[Dict]:
        raw = await self.kv.get(k_mockps(session_id))
        return orjson.loads(raw) if raw else None

    async def build_event(
        self, session_id: str, outcome: str,
        timestamp: Optional[int] = None,
    ) -> Tuple[bytes, Dict[str, str]]:
        if outcome not in OUTCOMES:
            raise ValidationError("invalid outcome")
        ps = await self.get_session(session_id)
        if not ps:
            raise NotFound("payment session not found")

        if outcome == "refunded":
            event = {
                "id": f"evt_{uuid.uuid4().hex}",
                "type": "charge.refunded",
                "created": int(time.time()),
                "data": {"object": {
                    "id": f"ch_mock_{uuid.uuid4().hex}",
                    "payment_intent": ps["payment_intent"],
                    "amount_refunded": ps["amount_total"],
                }},
            }
        else:
            event = {
                "id": f"evt_{uuid.uuid4().hex}",
                "type": f"checkout.session.{outcome}",
                "created": int(time.time()),
                "data": {"object": {
                    "id": ps["id"],
                    "client_reference_id": ps["client_reference_id"],
                    "payment_intent": ps["payment_intent"],
                    "amount_total": ps["amount_total"],
                    "currency": ps["currency"],
                    "payment_status": (
                        "paid" if outcome == "completed" else "unpaid"
                    ),
                }},
            }

        payload = orjson.dumps(event)
        headers = {
            SIGNATURE_HEADER: signature_header(
                self.webhook_secret, payload, timestamp
            ),
            "content-type": "application/json",
        }
        return payload, headers

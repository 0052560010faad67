from __future__ import annotations
from abc import ABC, abstractmethod
import hashlib
import hmac
import logging
import time
from typing import Dict, Optional, Tuple, TypedDict

import httpx
import orjson

from .config import DEV_WEBHOOK_SECRET
from .errors import GatewayError, InvalidSignature

log = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"
SEP = ":"


# ----------------------------
# Correlation token: "{user_id}:{event_id}:{quantity}"
# ----------------------------
def correlation_token(user_id: str, event_id: str, quantity: int) -> str:
    if SEP in user_id or SEP in event_id:
        raise ValueError("ids must not contain ':'")
    return f"{user_id}{SEP}{event_id}{SEP}{int(quantity)}"


def parse_correlation_token(token: Optional[str]) -> Tuple[str, str, int]:
    if not token:
        raise ValueError("missing correlation token")
    parts = token.split(SEP)
    if len(parts) != 3 or not parts[0] or not parts[1]:
        raise ValueError(f"malformed correlation token: {token!r}")
    qty = int(parts[2])
    if qty < 1:
        raise ValueError(f"invalid quantity in correlation token: {qty}")
    return parts[0], parts[1], qty


# ----------------------------
# Callback signatures: v1 = HMAC-SHA256(secret, f"{t}.{raw_body}")
# ----------------------------
def compute_signature(secret: str, timestamp: str, payload: bytes) -> str:
    signed = timestamp.encode() + b"." + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def signature_header(secret: str, payload: bytes,
                     timestamp: Optional[int] = None) -> str:
    t = str(int(time.time()) if timestamp is None else timestamp)
    return f"t={t},v1={compute_signature(secret, t, payload)}"


def _parse_signature_header(header: str) -> Tuple[Optional[str], list]:
    ts = None
    sigs = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            ts = value
        elif key == "v1" and value:
            sigs.append(value)
    return ts, sigs


def verify_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    tolerance: int = 300,
    now: Optional[float] = None,
) -> Dict:
    """
    Check the signature header against the raw body and return the decoded
    event. The timestamp comes from the header itself. Raises
    InvalidSignature on any mismatch; nothing of the payload is trusted
    before that.
    """
    if not header:
        raise InvalidSignature("Missing signature")
    ts, sigs = _parse_signature_header(header)
    if not ts or not sigs:
        raise InvalidSignature()

    expected = compute_signature(secret, ts, payload)
    if not any(hmac.compare_digest(expected, s) for s in sigs):
        raise InvalidSignature()

    try:
        ts_int = int(ts)
    except ValueError:
        raise InvalidSignature()
    now = time.time() if now is None else now
    if tolerance > 0 and abs(now - ts_int) > tolerance:
        raise InvalidSignature("Signature timestamp outside tolerance")

    try:
        event = orjson.loads(payload)
    except orjson.JSONDecodeError:
        raise InvalidSignature("Invalid JSON")
    if not isinstance(event, dict):
        raise InvalidSignature("Invalid JSON")
    return event


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CheckoutSession(TypedDict):
    session_id: str
    redirect_url: str


class PaymentAdapter(ABC):
    webhook_secret: str
    tolerance: int = 300

    @abstractmethod
    async def create_checkout_session(
        self, *, user_id: str, event_id: str, quantity: int, unit_price: int,
        title: str, customer_email: str,
    ) -> CheckoutSession: ...

    @abstractmethod
    async def create_donation_session(
        self, *, amount: int, donor_email: str
    ) -> CheckoutSession: ...

    def verify_callback(self, payload: bytes, headers: Dict[str, str]) -> Dict:
        return verify_signature(
            payload,
            headers.get(SIGNATURE_HEADER),
            self.webhook_secret,
            tolerance=self.tolerance,
        )

    # e.g. "checkout.session.completed" | "charge.refunded"
    def event_kind(self, event: Dict) -> str:
        return str(event.get("type", ""))

    # (event id, data.object)
    def event_ids(self, event: Dict) -> Tuple[Optional[str], Dict]:
        obj = (event.get("data") or {}).get("object") or {}
        return event.get("id"), obj


# ----------------------------
# Stripe implementation (plain HTTPS, form-encoded)
# ----------------------------
class StripeGateway(PaymentAdapter):

    def __init__(
        self, http: httpx.AsyncClient, *, secret_key: str,
        webhook_secret: str, api_base: str = "https://api.stripe.com",
        public_base_url: str = "http://localhost:8000",
        currency: str = "usd", tolerance: int = 300,
    ) -> None:
        if not secret_key:
            raise RuntimeError("StripeGateway requires STRIPE_SECRET_KEY")
        if not webhook_secret or webhook_secret == DEV_WEBHOOK_SECRET:
            raise RuntimeError("StripeGateway requires STRIPE_WEBHOOK_SECRET")
        self.http = http
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.api_base = api_base.rstrip("/")
        self.public_base_url = public_base_url.rstrip("/")
        self.currency = currency
        self.tolerance = tolerance

    async def _create_session(self, form: Dict[str, str]) -> CheckoutSession:
        try:
            r = await self.http.post(
                f"{self.api_base}/v1/checkout/sessions",
                data=form,
                headers={"Authorization": f"Bearer {self.secret_key}"},
            )
        except httpx.HTTPError as e:
            log.error("checkout session request failed: %s", e)
            raise GatewayError()
        if r.status_code >= 300:
            log.error(
                "checkout session rejected: status=%s body=%s",
                r.status_code, r.text[:500],
            )
            raise GatewayError()
        try:
            body = r.json()
            return {"session_id": body["id"], "redirect_url": body["url"]}
        except (ValueError, KeyError):
            log.error("checkout session response malformed")
            raise GatewayError()

    async def create_checkout_session(
        self, *, user_id: str, event_id: str, quantity: int, unit_price: int,
        title: str, customer_email: str,
    ) -> CheckoutSession:
        form = {
            "payment_method_types[]": "card",
            "line_items[0][price_data][currency]": self.currency,
            "line_items[0][price_data][unit_amount]": str(max(0, int(unit_price))),
            "line_items[0][price_data][product_data][name]": title,
            "line_items[0][quantity]": str(int(quantity)),
            "mode": "payment",
            "success_url": (
                f"{self.public_base_url}/ticket-success"
                "?session_id={CHECKOUT_SESSION_ID}"
            ),
            "cancel_url": f"{self.public_base_url}/events/{event_id}",
            "client_reference_id": correlation_token(
                user_id, event_id, quantity
            ),
        }
        if customer_email:
            form["customer_email"] = customer_email
        return await self._create_session(form)

    async def create_donation_session(
        self, *, amount: int, donor_email: str
    ) -> CheckoutSession:
        form = {
            "payment_method_types[]": "card",
            "line_items[0][price_data][currency]": self.currency,
            "line_items[0][price_data][unit_amount]": str(int(amount)),
            "line_items[0][price_data][product_data][name]": "Donation",
            "line_items[0][quantity]": "1",
            "mode": "payment",
            "success_url": f"{self.public_base_url}/donate-success?amount={amount}",
            "cancel_url": f"{self.public_base_url}/donate",
            "customer_email": donor_email,
        }
        return await self._create_session(form)

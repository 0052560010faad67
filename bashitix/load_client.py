#!/usr/bin/env python3
"""
bashitix load client (async): oversell check

Drives the purchase flow for many users against one event:
  1) admin login, POST /admin/events with a fixed capacity
  2) per user: POST /auth/register, POST /auth/login
  3) per user, concurrently: POST /tickets/purchase {event_id, quantity}
  4) per created session: POST /mockpay/{id}/emit {"outcome": "completed"}
  5) GET /events/{id} and compare sold against capacity

It prints an aggregate report; the exit status is 1 if more seats were
sold than the event has.

Usage:
  python -m bashitix.load_client --base http://localhost:8000 \
      --admin-email admin@example.com --admin-password 'Secret123' \
      --users 200 --capacity 50 --concurrency 50

Notes:
- This targets the MockPay flow (PAYMENT_BACKEND=mock).
- Registration and login are rate-limited per client address. Start the
  server with TRUST_CLIENT_IP_HEADER=x-forwarded-for; every simulated
  user then sends its own address in that header.
"""

import argparse
import asyncio
import random
import string
import sys
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

PASSWORD = "LoadTest123"


def _rand_email() -> str:
    name = ''.join(
        random.choices(string.ascii_lowercase + string.digits, k=10)
    )
    return f"{name}@example.com"


def _fake_ip(n: int) -> str:
    return f"10.{(n >> 16) & 255}.{(n >> 8) & 255}.{n & 255}"


@dataclass
class Result:
    ok: bool
    outcome: str  # PAID/SOLD_OUT/UNFULFILLED/ERROR
    t_purchase: float = 0.0
    t_emit: float = 0.0
    err: Optional[str] = None


@dataclass
class Stats:
    results: List[Result] = field(default_factory=list)
    capacity: int = 0
    inventory: Dict = field(default_factory=dict)

    def add(self, r: Result):
        self.results.append(r)

    def count(self, outcome: str) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def oversold(self) -> bool:
        return int(self.inventory.get("sold", 0)) > self.capacity

    def print(self, elapsed_s: float):
        lat = sorted(r.t_purchase for r in self.results if r.t_purchase > 0)

        def pct(p):
            if not lat:
                return 0.0
            k = int(max(0, min(len(lat)-1, round(p/100*(len(lat)-1)))))
            return lat[k]

        print("\n=== Oversell Probe ===")
        print(
            f"Users: {len(self.results)}   PAID: {self.count('PAID')}   "
            f"SOLD_OUT: {self.count('SOLD_OUT')}   "
            f"UNFULFILLED: {self.count('UNFULFILLED')}   "
            f"ERROR: {self.count('ERROR')}"
        )
        print(
            f"Capacity: {self.capacity}   "
            f"Sold: {self.inventory.get('sold')}   "
            f"Held: {self.inventory.get('held')}   "
            f"Available: {self.inventory.get('available')}"
        )
        print(
            f"Purchase latency: p50 {pct(50):.3f}s   p90 {pct(90):.3f}s   "
            f"p99 {pct(99):.3f}s"
        )
        print(f"Wall time: {elapsed_s:.3f}s")
        print("OVERSOLD!" if self.oversold() else "No oversell.")


async def _admin_token(client: httpx.AsyncClient, base: str,
                       email: str, password: str) -> str:
    resp = await client.post(f"{base}/auth/login",
                             json={"email": email, "password": password},
                             headers={"x-forwarded-for": _fake_ip(0)})
    resp.raise_for_status()
    return resp.json()["token"]


async def _create_event(client: httpx.AsyncClient, base: str, token: str,
                        capacity: int) -> str:
    resp = await client.post(
        f"{base}/admin/events",
        json={
            "title": f"Load check {int(time.time())}",
            "starts_at": time.time() + 7 * 24 * 3600,
            "location": "Nowhere",
            "price": 1000,
            "capacity": capacity,
        },
        headers={"Authorization": f"Bearer {token}"},
    )
    resp.raise_for_status()
    return resp.json()["id"]


async def _user_token(client: httpx.AsyncClient, base: str, n: int) -> str:
    email = _rand_email()
    hdr = {"x-forwarded-for": _fake_ip(n)}
    resp = await client.post(
        f"{base}/auth/register",
        json={"email": email, "password": PASSWORD,
              "full_name": f"Load User {n}"},
        headers=hdr,
    )
    resp.raise_for_status()
    resp = await client.post(f"{base}/auth/login",
                             json={"email": email, "password": PASSWORD},
                             headers=hdr)
    resp.raise_for_status()
    return resp.json()["token"]


async def one_purchase(client: httpx.AsyncClient, base: str, token: str,
                       event_id: str, quantity: int) -> Result:
    r = Result(ok=False, outcome="ERROR")

    t0 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/tickets/purchase",
            json={"event_id": event_id, "quantity": quantity},
            headers={"Authorization": f"Bearer {token}"},
            timeout=30.0,
        )
    except Exception as e:
        r.err = f"purchase: {e}"
        return r
    r.t_purchase = time.perf_counter() - t0
    if resp.status_code == 400 and "capacity" in resp.text:
        r.ok = True
        r.outcome = "SOLD_OUT"
        return r
    if resp.status_code != 200:
        r.err = f"purchase HTTP {resp.status_code}: {resp.text[:200]}"
        return r

    session_id = resp.json()["sessionId"]
    t1 = time.perf_counter()
    try:
        resp = await client.post(
            f"{base}/mockpay/{session_id}/emit",
            json={"outcome": "completed"},
            timeout=30.0,
        )
        resp.raise_for_status()
        result = resp.json()["result"]
    except Exception as e:
        r.err = f"emit: {e}"
        return r
    r.t_emit = time.perf_counter() - t1
    r.ok = True
    r.outcome = "PAID" if result.get("order_status") == "PAID" \
        else "UNFULFILLED"
    return r


async def run_check(
    base: str,
    admin_email: str,
    admin_password: str,
    users: int,
    capacity: int,
    quantity: int,
    concurrency: int,
) -> Stats:
    sem = asyncio.Semaphore(concurrency)
    stats = Stats(capacity=capacity)

    limits = httpx.Limits(
        max_keepalive_connections=concurrency, max_connections=concurrency
    )
    async with httpx.AsyncClient(
        limits=limits, headers={"User-Agent": "bashitix-load/1.0"}
    ) as client:
        admin = await _admin_token(client, base, admin_email, admin_password)
        event_id = await _create_event(client, base, admin, capacity)

        async def signup(n: int) -> str:
            async with sem:
                return await _user_token(client, base, n + 1)

        tokens = await asyncio.gather(*(signup(i) for i in range(users)))

        # everyone goes for the seats at once
        start = asyncio.Event()

        async def worker(token: str):
            await start.wait()
            async with sem:
                stats.add(await one_purchase(
                    client, base, token, event_id, quantity
                ))

        tasks = [asyncio.create_task(worker(t)) for t in tokens]
        start.set()
        await asyncio.gather(*tasks)

        resp = await client.get(f"{base}/events/{event_id}")
        resp.raise_for_status()
        stats.inventory = resp.json()["inventory"]

    return stats


def main():
    ap = argparse.ArgumentParser(description="bashitix oversell check")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--admin-email", required=True)
    ap.add_argument("--admin-password", required=True)
    ap.add_argument("--users", type=int, default=100,
                    help="Simulated buyers")
    ap.add_argument("--capacity", type=int, default=20,
                    help="Capacity of the load-test event")
    ap.add_argument("--quantity", type=int, default=1,
                    help="Tickets per purchase")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent workers")
    args = ap.parse_args()

    t_start = time.perf_counter()
    stats = asyncio.run(run_check(
        base=args.base,
        admin_email=args.admin_email,
        admin_password=args.admin_password,
        users=args.users,
        capacity=args.capacity,
        quantity=args.quantity,
        concurrency=args.concurrency,
    ))
    elapsed = time.perf_counter() - t_start
    stats.print(elapsed)
    sys.exit(1 if stats.oversold() else 0)


if __name__ == "__main__":
    main()

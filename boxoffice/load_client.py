#!/usr/bin/env python3
"""
BoxOffice probe: concurrent buyers against one ticket tier.

Each buyer
  1) POST /api/orders for --quantity tickets (409 = sold out)
  2) pays with a signed MockPay webhook; --fail-rate of them fail
  3) with --retry, a failed order is re-armed via POST /api/orders/{id}/retry
     and paid again, once per remaining retry
  4) polls GET /api/orders/{id} until the order settles

Afterwards the tier availability is read back. Exit status is 1 when the
tier reports more sold than its capacity, so the probe can gate a deploy.

  boxoffice-probe --base http://localhost:8000 --event EVT --tier TIER \
                  --total 200 --concurrency 50 --fail-rate 0.2 --retry

The server's MOCK_SECRET must match --secret.
"""

import argparse
import asyncio
import random
import statistics
import sys
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx
import orjson

from .providers import MockPay

SETTLED = ("COMPLETED", "FAILED", "CANCELLED")


@dataclass
class ProbeConfig:
    base: str
    event_id: str
    tier_id: str
    quantity: int = 1
    total: int = 100
    concurrency: int = 20
    fail_rate: float = 0.0
    retry: bool = False
    secret: str = "supersecret"
    poll_interval: float = 0.05
    poll_timeout: float = 10.0


@dataclass
class Outcome:
    status: str  # COMPLETED/FAILED/CANCELLED/SOLD_OUT/TIMEOUT/ERROR
    create_s: float = 0.0
    settle_s: float = 0.0
    retries: int = 0
    err: Optional[str] = None


@dataclass
class Report:
    outcomes: List[Outcome] = field(default_factory=list)
    availability: Optional[dict] = None
    wall_s: float = 0.0

    @property
    def oversold(self) -> bool:
        a = self.availability or {}
        return a.get("sold", 0) > a.get("capacity", 0)

    def latency(self) -> Dict[str, float]:
        lat = sorted(o.create_s for o in self.outcomes if o.create_s > 0)
        if len(lat) < 2:
            v = lat[0] if lat else 0.0
            return {"avg": v, "p50": v, "p90": v, "p99": v}
        q = statistics.quantiles(lat, n=100)
        return {"avg": statistics.mean(lat), "p50": q[49], "p90": q[89],
                "p99": q[98]}

    def print(self) -> None:
        counts = Counter(o.status for o in self.outcomes)
        print("\n=== Probe Summary ===")
        print("   ".join(f"{k}: {v}" for k, v in sorted(counts.items())))
        print(f"Retries spent: {sum(o.retries for o in self.outcomes)}")
        lat = self.latency()
        print(f"Order create: avg {lat['avg']:.3f}s   p50 {lat['p50']:.3f}s"
              f"   p90 {lat['p90']:.3f}s   p99 {lat['p99']:.3f}s")
        if self.wall_s > 0:
            print(f"Wall time: {self.wall_s:.3f}s   "
                  f"{len(self.outcomes) / self.wall_s:.1f} orders/s")
        if self.availability:
            a = self.availability
            print(f"Tier: capacity {a.get('capacity')}   sold {a.get('sold')}"
                  f"   available {a.get('available')}")
        if self.oversold:
            print("!!! OVERSOLD !!!")
        for o in [o for o in self.outcomes if o.err][:5]:
            print(f"  error: {o.err}")


class Probe:
    def __init__(self, cfg: ProbeConfig, client: httpx.AsyncClient) -> None:
        self.cfg = cfg
        self.client = client

    def _url(self, path: str) -> str:
        return f"{self.cfg.base.rstrip('/')}{path}"

    async def _create(self) -> httpx.Response:
        return await self.client.post(self._url("/api/orders"), json={
            "event_id": self.cfg.event_id,
            "buyer": {"name": "Probe Buyer",
                      "email": f"probe-{uuid.uuid4().hex[:10]}@example.com"},
            "tickets": [{"tier_id": self.cfg.tier_id,
                         "quantity": self.cfg.quantity}],
            "payment_method": "STRIPE",
        }, timeout=30.0)

    async def _pay(self, order_id: str, succeed: bool) -> None:
        body = orjson.dumps({
            "type": "payment.succeeded" if succeed else "payment.failed",
            "order_id": order_id,
            "idempotency_key": uuid.uuid4().hex,
        })
        headers = {
            "content-type": "application/json",
            "x-mockpay-signature": MockPay.sign(body, self.cfg.secret),
        }
        resp = await self.client.post(self._url("/payments/webhook"),
                                      content=body, headers=headers,
                                      timeout=30.0)
        resp.raise_for_status()

    async def _settled(self, order_id: str) -> dict:
        deadline = time.perf_counter() + self.cfg.poll_timeout
        order: dict = {"status": "TIMEOUT"}
        while time.perf_counter() < deadline:
            g = await self.client.get(self._url(f"/api/orders/{order_id}"),
                                      timeout=10.0)
            if g.status_code == 200:
                order = g.json()
                if order.get("status") in SETTLED:
                    return order
            await asyncio.sleep(self.cfg.poll_interval)
        return {**order, "status": "TIMEOUT"}

    async def buyer(self) -> Outcome:
        t0 = time.perf_counter()
        try:
            resp = await self._create()
        except httpx.HTTPError as e:
            return Outcome("ERROR", err=f"create: {e}")
        out = Outcome("ERROR", create_s=time.perf_counter() - t0)
        if resp.status_code == 409:
            out.status = "SOLD_OUT"
            return out
        if resp.status_code != 200:
            out.err = f"create: HTTP {resp.status_code}"
            return out
        order_id = resp.json()["order_id"]

        t1 = time.perf_counter()
        try:
            await self._pay(order_id, random.random() >= self.cfg.fail_rate)
            order = await self._settled(order_id)
            while (self.cfg.retry and order["status"] == "FAILED"
                   and order.get("retry_eligible")):
                r = await self.client.post(
                    self._url(f"/api/orders/{order_id}/retry"), timeout=10.0)
                if r.status_code != 200:
                    break
                out.retries += 1
                await self._pay(order_id,
                                random.random() >= self.cfg.fail_rate)
                order = await self._settled(order_id)
        except httpx.HTTPError as e:
            out.err = f"order {order_id}: {e}"
            return out
        out.settle_s = time.perf_counter() - t1
        out.status = order["status"]
        return out

    async def availability(self) -> Optional[dict]:
        try:
            g = await self.client.get(
                self._url(f"/api/tiers/{self.cfg.tier_id}/availability"),
                timeout=10.0)
        except httpx.HTTPError as e:
            print(f"availability: {e}")
            return None
        return g.json() if g.status_code == 200 else None


async def run_probe(cfg: ProbeConfig) -> Report:
    sem = asyncio.Semaphore(cfg.concurrency)
    limits = httpx.Limits(max_keepalive_connections=cfg.concurrency,
                          max_connections=cfg.concurrency)
    report = Report()
    t0 = time.perf_counter()
    async with httpx.AsyncClient(
            limits=limits,
            headers={"User-Agent": "BoxOfficeProbe/1.0"}) as client:
        probe = Probe(cfg, client)

        async def one():
            async with sem:
                report.outcomes.append(await probe.buyer())

        await asyncio.gather(*(one() for _ in range(cfg.total)))
        report.wall_s = time.perf_counter() - t0
        report.availability = await probe.availability()
    return report


def main():
    ap = argparse.ArgumentParser(description="BoxOffice oversell probe")
    ap.add_argument("--base", default="http://localhost:8000",
                    help="Base URL of the app")
    ap.add_argument("--event", required=True, help="Event id")
    ap.add_argument("--tier", required=True, help="Ticket tier id")
    ap.add_argument("--quantity", type=int, default=1,
                    help="Tickets per order")
    ap.add_argument("--total", type=int, default=100,
                    help="Orders to attempt")
    ap.add_argument("--concurrency", type=int, default=20,
                    help="Concurrent buyers")
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="Fraction of payments that fail")
    ap.add_argument("--retry", action="store_true",
                    help="Retry failed payments while the order allows it")
    ap.add_argument("--secret", default="supersecret",
                    help="MockPay webhook secret")
    ap.add_argument("--poll-interval", type=float, default=0.05,
                    help="Seconds between status polls")
    ap.add_argument("--poll-timeout", type=float, default=10.0,
                    help="Max seconds to wait for an order to settle")
    args = ap.parse_args()

    report = asyncio.run(run_probe(ProbeConfig(
        base=args.base,
        event_id=args.event,
        tier_id=args.tier,
        quantity=args.quantity,
        total=args.total,
        concurrency=args.concurrency,
        fail_rate=args.fail_rate,
        retry=args.retry,
        secret=args.secret,
        poll_interval=args.poll_interval,
        poll_timeout=args.poll_timeout,
    )))
    report.print()
    sys.exit(1 if report.oversold else 0)


if __name__ == "__main__":
    main()

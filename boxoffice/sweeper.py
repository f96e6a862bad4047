"""
Periodic housekeeping: expire cash holds, deliver queued notifications and
purge webhook keys past their retention window.
"""

from __future__ import annotations
import asyncio
from typing import Any, Callable, Dict, Optional

import httpx
from loguru import logger

from .helpers import now_ms
from .infra.sql import Gated, open_session
from .model import cash, outbox

log = logger.bind(component="sweeper")


class Sweeper:
    def __init__(
        self,
        session_factory: Callable[[], Any],
        gated: Gated,
        events,
        http: Optional[httpx.AsyncClient] = None,
        notify_url: Optional[str] = None,
        interval: float = 60.0,
    ) -> None:
        self.session_factory = session_factory
        self.gated = gated
        self.events = events
        self.http = http
        self.notify_url = notify_url
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[int] = None) -> Dict[str, int]:
        now = now or now_ms()
        out: Dict[str, int] = {}
        async with open_session(self.session_factory, self.gated) as db:
            exp = await cash.expire_cash_orders(db, now=now)
            out["expired_orders"] = exp["expired"]
            out["released_seats"] = exp["released"]
        async with open_session(self.session_factory, self.gated) as db:
            sent = await outbox.dispatch_pending(db, self.http,
                                                 self.notify_url)
            out["notifications_delivered"] = sent["delivered"]
            out["notifications_failed"] = sent["failed"]
        async with open_session(self.session_factory, self.gated) as db:
            out["webhook_keys_purged"] = await self.events.cleanup_expired(
                db, now)
        return out

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                stats = await self.run_once()
            except Exception:
                log.exception("sweep failed, retrying next interval")
                continue
            if any(stats.values()):
                log.info(f"sweep: {stats}")

    def start(self) -> None:
        if self.interval <= 0 or self._task is not None:
            return
        self._task = asyncio.create_task(self._loop())
        log.info(f"sweeper running every {self.interval}s")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

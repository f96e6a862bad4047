from __future__ import annotations
from typing import Optional

import redis.asyncio as redis
from sqlalchemy.ext.asyncio import AsyncSession

from ...infra.sql import GatedAsyncSession


# ---- keys
def k_evt(provider: str, event_id: str) -> str:
    return f"whevt:{provider}:{event_id}"


class WebhookEventStore:
    """
    SET NX EX claim ahead of the SQL transaction. If the transition fails
    the key is deleted again so the provider's redelivery is processed.
    Retention is the key's TTL.
    """

    in_transaction = False

    def __init__(self, *, r: redis.Redis, retention_seconds: int) -> None:
        self.r = r
        self.ttl = retention_seconds

    async def claim(
        self,
        session: Optional[AsyncSession],
        provider: str,
        event_id: str,
        event_type: str,
        now: int,
        order_id: Optional[str] = None,
    ) -> bool:
        ok = await self.r.set(k_evt(provider, event_id),
                              f"{event_type}|{now}", nx=True, ex=self.ttl)
        return bool(ok)

    async def attach_order(self, session: AsyncSession, provider: str,
                           event_id: str, order_id: Optional[str]) -> None:
        return None

    async def forget(self, provider: str, event_id: str) -> None:
        await self.r.delete(k_evt(provider, event_id))

    async def seen(self, db: GatedAsyncSession, provider: str,
                   event_id: str) -> bool:
        return bool(await self.r.exists(k_evt(provider, event_id)))

    async def cleanup_expired(self, db: GatedAsyncSession, now: int) -> int:
        # redis expires keys itself
        return 0

from __future__ import annotations
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ...infra.sql import GatedAsyncSession


class WebhookEventStore:
    """
    Event keys live in the webhook_events table and are claimed inside the
    same transaction as the order transition they guard: both commit or
    neither does.
    """

    in_transaction = True

    def __init__(self, *, retention_seconds: int) -> None:
        self.retention_ms = retention_seconds * 1000

    # UN-GATED: caller owns the transaction
    async def claim(
        self,
        session: Optional[AsyncSession],
        provider: str,
        event_id: str,
        event_type: str,
        now: int,
        order_id: Optional[str] = None,
    ) -> bool:
        row = (await session.execute(text("""
            INSERT INTO webhook_events (
                provider, event_id, event_type, order_id, processed_at,
                expires_at
            ) VALUES (:p, :e, :t, :o, :now, :exp)
            ON CONFLICT (provider, event_id) DO NOTHING
            RETURNING event_id
        """), {"p": provider, "e": event_id, "t": event_type, "o": order_id,
               "now": now, "exp": now + self.retention_ms})).first()
        return row is not None

    # UN-GATED
    async def attach_order(self, session: AsyncSession, provider: str,
                           event_id: str, order_id: Optional[str]) -> None:
        if order_id is None:
            return
        await session.execute(text("""
            UPDATE webhook_events SET order_id = :o
            WHERE provider = :p AND event_id = :e
        """), {"o": order_id, "p": provider, "e": event_id})

    async def forget(self, provider: str, event_id: str) -> None:
        # rolled back together with the failed transition
        return None

    async def seen(self, db: GatedAsyncSession, provider: str,
                   event_id: str) -> bool:
        async with db.gated():
            async with db.session.begin():
                row = (await db.session.execute(text("""
                    SELECT 1 FROM webhook_events
                    WHERE provider = :p AND event_id = :e
                """), {"p": provider, "e": event_id})).first()
        return row is not None

    async def cleanup_expired(self, db: GatedAsyncSession, now: int) -> int:
        async with db.gated():
            async with db.session.begin():
                res = await db.session.execute(text("""
                    DELETE FROM webhook_events WHERE expires_at < :now
                """), {"now": now})
        return int(res.rowcount or 0)

# model/outbox.py
"""
Transactional outbox for notification side effects.

Intents are written in the same transaction as the state change that causes
them and delivered later by dispatch_pending(). Delivery is at-least-once;
receivers dedupe on the Idempotency-Key header. A delivery failure is logged
and left for the next sweep, it never reaches the caller of the transition.
"""

from __future__ import annotations
from typing import Dict, Any, Optional

import httpx
import orjson
from loguru import logger
from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ms, new_id
from ..infra.sql import GatedAsyncSession

log = logger.bind(component="outbox")

# kinds
TICKETS_CONFIRMED = "tickets.confirmed"
TICKETS_REFUNDED = "tickets.refunded"
CASH_ORDER_CREATED = "cash_order.created"
ACTIVATION_CODE_ISSUED = "cash_order.activation_code"

MAX_ATTEMPTS = 10


# UN-GATED internal function
async def enqueue(
    session: AsyncSession,
    kind: str,
    dedupe_key: str,
    payload: Dict[str, Any],
    now: Optional[int] = None,
) -> bool:
    """Queue a notification; False if `dedupe_key` was already queued."""
    row = (await session.execute(text("""
        INSERT INTO outbox (id, kind, dedupe_key, payload, created_at,
                            attempts)
        VALUES (:id, :kind, :key, :payload, :now, 0)
        ON CONFLICT (dedupe_key) DO NOTHING
        RETURNING id
    """), {
        "id": new_id(),
        "kind": kind,
        "key": dedupe_key,
        "payload": orjson.dumps(payload).decode(),
        "now": now or now_ms(),
    })).first()
    return row is not None


async def dispatch_pending(
    db: GatedAsyncSession,
    http: Optional[httpx.AsyncClient],
    url: Optional[str],
    limit: int = 50,
) -> Dict[str, int]:
    """
    Deliver up to `limit` queued messages. No DB transaction is held while
    the HTTP calls are in flight.
    """
    async with db.gated():
        async with db.session.begin():
            rows = (await db.session.execute(text("""
                SELECT id, kind, dedupe_key, payload, attempts
                FROM outbox
                WHERE dispatched_at IS NULL AND attempts < :max
                ORDER BY created_at
                LIMIT :lim
            """), {"max": MAX_ATTEMPTS, "lim": limit})).mappings().all()

    if not rows:
        return {"delivered": 0, "failed": 0}

    delivered = []
    failed = []
    for r in rows:
        if not url or http is None:
            # no receiver configured: the log line is the delivery
            log.info(f"notify {r['kind']} key={r['dedupe_key']}")
            delivered.append(r["id"])
            continue
        try:
            resp = await http.post(
                url,
                content=r["payload"].encode(),
                headers={
                    "content-type": "application/json",
                    "idempotency-key": r["dedupe_key"],
                    "x-boxoffice-kind": r["kind"],
                },
            )
            resp.raise_for_status()
            delivered.append(r["id"])
        except Exception as e:
            log.exception(
                f"delivery of {r['kind']} ({r['dedupe_key']}) failed, "
                f"attempt {r['attempts'] + 1}"
            )
            failed.append({"id": r["id"], "err": str(e)[:500]})

    now = now_ms()
    async with db.gated():
        async with db.session.begin():
            if delivered:
                await db.session.execute(
                    text("""
                        UPDATE outbox
                        SET dispatched_at = :now, attempts = attempts + 1,
                            last_error = NULL
                        WHERE id IN :ids
                    """).bindparams(bindparam("ids", expanding=True)),
                    {"now": now, "ids": tuple(delivered)},
                )
            for f in failed:
                await db.session.execute(text("""
                    UPDATE outbox
                    SET attempts = attempts + 1, last_error = :err
                    WHERE id = :id
                """), f)

    return {"delivered": len(delivered), "failed": len(failed)}


async def pending_count(db: GatedAsyncSession) -> int:
    async with db.gated():
        async with db.session.begin():
            return int((await db.session.execute(text(
                "SELECT COUNT(*) FROM outbox WHERE dispatched_at IS NULL"
            ))).scalar_one())

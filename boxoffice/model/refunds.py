# model/refunds.py
"""
Refund reconciliation: give an order's seats back and void its tickets.

Seats are released only for tickets this transaction moves out of a live
status, and the release happens once per (tier, pool), not once per ticket.
A second run finds no live tickets and releases nothing.
"""

from __future__ import annotations
from collections import defaultdict
from typing import Dict, Any, Optional, Tuple

from loguru import logger
from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError
from ..helpers import now_ms
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from . import inventory, outbox
from .db import COMPLETED, DISPUTED, REFUNDED, T_REFUNDED
from .transitions import (
    LIVE_TICKET, transition, find_orders_by_transaction, load_order,
)

log = logger.bind(component="refunds")


# UN-GATED internal function
async def release_order_holds(
    session: AsyncSession,
    order_id: str,
    to_status: str,
    now: Optional[int] = None,
) -> Dict[str, int]:
    """
    Move every live ticket of the order to `to_status` and hand the seats
    back to inventory.
    """
    now = now or now_ms()
    stmt = text("""
        UPDATE tickets SET status = :to, updated_at = :now
        WHERE order_id = :oid AND status IN :live
        RETURNING ticket_tier_id, pool, seats
    """).bindparams(bindparam("live", expanding=True))
    rows = (await session.execute(stmt, {
        "to": to_status, "now": now, "oid": order_id, "live": LIVE_TICKET,
    })).all()

    groups: Dict[Tuple[str, str], list] = defaultdict(lambda: [0, 0])
    for tier_id, pool, seats in rows:
        if tier_id is None:
            continue
        g = groups[(tier_id, pool)]
        g[0] += 1
        g[1] += int(seats)

    released = 0
    for (tier_id, pool), (units, seats) in groups.items():
        await inventory.release(session, tier_id, units, seats, pool, now=now)
        released += seats

    if rows:
        log.info(f"order {order_id}: {len(rows)} tickets -> {to_status}, "
                 f"{released} seats released over {len(groups)} pools")
    return {"tickets": len(rows), "released": released,
            "tiers": len({t for t, _ in groups})}


# UN-GATED internal function
async def reconcile_refund(
    session: AsyncSession, order_id: str, now: Optional[int] = None
) -> Dict[str, int]:
    """Reconcile an order this transaction has just moved to REFUNDED."""
    return await release_order_holds(session, order_id, T_REFUNDED, now=now)


# UN-GATED
async def refund_one(
    session: AsyncSession,
    order_id: str,
    amount_cents: Optional[int],
    reason: Optional[str],
    now: int,
) -> Dict[str, Any]:
    values: Dict[str, Any] = {"refund_reason": reason}
    if amount_cents is not None:
        values["refund_amount_cents"] = amount_cents
    changed = await transition(
        session, order_id, REFUNDED, sources=(COMPLETED, DISPUTED),
        values=values, now=now,
    )
    if not changed:
        return {"order_id": order_id, "already_refunded": True,
                "tickets": 0, "released": 0}
    counts = await reconcile_refund(session, order_id, now=now)
    order = await load_order(session, order_id)
    await outbox.enqueue(session, outbox.TICKETS_REFUNDED,
                         f"refunded:{order_id}", {
                             "order_id": order_id,
                             "buyer_email": order["buyer_email"],
                             "amount_cents": amount_cents,
                             "tickets": counts["tickets"],
                         }, now=now)
    return {"order_id": order_id, "already_refunded": False, **counts}


# UN-GATED internal function
async def refund_orders_by_transaction(
    session: AsyncSession,
    provider: str,
    transaction_id: str,
    amount_cents: Optional[int] = None,
    reason: Optional[str] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    now = now or now_ms()
    order_ids = await find_orders_by_transaction(session, provider,
                                                 transaction_id)
    if not order_ids:
        log.warning(f"refund for unknown {provider} transaction "
                    f"{transaction_id}, no order matched")
        return {"success": False, "error": "order_not_found"}
    if len(order_ids) > 1:
        log.error(f"{len(order_ids)} orders match {provider} transaction "
                  f"{transaction_id}, reconciling each")

    results = []
    for oid in order_ids:
        try:
            results.append(
                await refund_one(session, oid, amount_cents, reason, now))
        except ConflictError as e:
            log.warning(f"refund of order {oid} skipped: {e.message}")
            results.append({"order_id": oid, "already_refunded": False,
                            "error": e.message})
    return {
        "success": True,
        "already_refunded": all(r["already_refunded"] for r in results),
        "orders": results,
    }


async def reconcile_by_transaction(
    db: GatedAsyncSession,
    provider: str,
    transaction_id: str,
    amount_cents: Optional[int] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    async with timeit("refunds.reconcile"):
        async with db.gated():
            async with db.session.begin():
                return await refund_orders_by_transaction(
                    db.session, provider, transaction_id, amount_cents,
                    reason)


async def refund_order(
    db: GatedAsyncSession,
    order_id: str,
    amount_cents: Optional[int] = None,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    async with timeit("refunds.reconcile"):
        async with db.gated():
            async with db.session.begin():
                res = await refund_one(db.session, order_id, amount_cents,
                                        reason, now_ms())
    return {"success": True, **res}


async def recount_tier(db: GatedAsyncSession, tier_id: str) -> Dict[str, int]:
    """Live seats held by tickets vs. the tier counter, for audits."""
    async with db.gated():
        async with db.session.begin():
            held = (await db.session.execute(
                text("""
                    SELECT COALESCE(SUM(seats), 0) FROM tickets
                    WHERE ticket_tier_id = :id AND status IN :live
                """).bindparams(bindparam("live", expanding=True)),
                {"id": tier_id, "live": LIVE_TICKET},
            )).scalar_one()
            sold = (await db.session.execute(
                text("SELECT sold FROM ticket_tiers WHERE id = :id"),
                {"id": tier_id},
            )).scalar_one()
    return {"held": int(held), "sold": int(sold)}

# model/transitions.py
"""
Order state machine core.

Every status change is a compare-and-set UPDATE guarded by the set of states
the target may be entered from. When no row matches, the order is re-read:
an order already at the target is an idempotent replay, anything else is a
conflict. Callers use the returned flag to skip side effects on replays.
"""

from __future__ import annotations
from typing import Dict, Any, Optional, Sequence

from loguru import logger
from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import InvalidTransitionError, NotFoundError
from ..helpers import now_ms
from .db import (
    PENDING, PENDING_PAYMENT, COMPLETED, FAILED, CANCELLED, EXPIRED,
    REFUNDED, DISPUTED,
    T_VALID, T_PENDING, T_PENDING_ACTIVATION, T_SCANNED,
)

log = logger.bind(component="orders")

TRANSITIONS: Dict[str, frozenset] = {
    PENDING: frozenset({COMPLETED, FAILED, CANCELLED}),
    PENDING_PAYMENT: frozenset({COMPLETED, CANCELLED, EXPIRED}),
    COMPLETED: frozenset({REFUNDED, DISPUTED}),
    # FAILED -> PENDING only through the retry coordinator; an abandoned
    # failed order may still be cancelled to give its seats back
    FAILED: frozenset({PENDING, CANCELLED}),
    DISPUTED: frozenset({COMPLETED, REFUNDED}),
}

TERMINAL = (CANCELLED, EXPIRED, REFUNDED)
LIVE_TICKET = (T_VALID, T_PENDING, T_PENDING_ACTIVATION, T_SCANNED)

# provider -> column holding that provider's transaction id
PROVIDER_COLUMNS = {
    "stripe": "stripe_payment_intent_id",
    "paypal": "paypal_order_id",
}


def allowed_from(target: str) -> tuple:
    return tuple(sorted(s for s, to in TRANSITIONS.items() if target in to))


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, ())


# UN-GATED internal function
async def load_order(session: AsyncSession, order_id: str) -> Dict[str, Any]:
    row = (await session.execute(text("""
        SELECT o.*, e.organizer_id
        FROM orders AS o
        JOIN events AS e ON e.id = o.event_id
        WHERE o.id = :id
    """), {"id": order_id})).mappings().first()
    if row is None:
        raise NotFoundError("Order", order_id)
    return dict(row)


# UN-GATED internal function
async def find_orders_by_transaction(
    session: AsyncSession, provider: str, transaction_id: str
) -> list:
    column = PROVIDER_COLUMNS.get(provider)
    if column is None or not transaction_id:
        return []
    rows = (await session.execute(
        text(f"SELECT id FROM orders WHERE {column} = :tx"),
        {"tx": transaction_id},
    )).all()
    return [r[0] for r in rows]


# UN-GATED internal function
async def transition(
    session: AsyncSession,
    order_id: str,
    target: str,
    *,
    sources: Optional[Sequence[str]] = None,
    values: Optional[Dict[str, Any]] = None,
    exprs: Optional[Dict[str, str]] = None,
    now: Optional[int] = None,
) -> bool:
    """
    Move `order_id` to `target`. Returns True if this call made the change,
    False if the order was already at `target`.

    `sources` narrows the default set of states `target` may be entered
    from. `values` are bound column values, `exprs` raw SQL expressions over
    the row being updated (e.g. ``retry_count + 1``).
    """
    sources = tuple(sources) if sources is not None else allowed_from(target)
    now = now or now_ms()
    params: Dict[str, Any] = {"id": order_id, "to": target, "now": now,
                              "sources": sources}
    sets = ["status = :to", "updated_at = :now"]
    for col, val in (values or {}).items():
        sets.append(f"{col} = :v_{col}")
        params[f"v_{col}"] = val
    for col, expr in (exprs or {}).items():
        sets.append(f"{col} = {expr}")

    stmt = text(f"""
        UPDATE orders SET {', '.join(sets)}
        WHERE id = :id AND status IN :sources
        RETURNING id
    """).bindparams(bindparam("sources", expanding=True))
    row = (await session.execute(stmt, params)).first()
    if row is not None:
        log.info(f"order {order_id} -> {target}")
        return True

    current = (await session.execute(
        text("SELECT status FROM orders WHERE id = :id"), {"id": order_id}
    )).scalar_one_or_none()
    if current is None:
        raise NotFoundError("Order", order_id)
    if current == target:
        log.debug(f"order {order_id} already {target}, no-op")
        return False
    raise InvalidTransitionError(order_id, current, target)


# UN-GATED internal function
async def order_tickets(session: AsyncSession, order_id: str) -> list:
    rows = (await session.execute(text("""
        SELECT id, ticket_code, ticket_tier_id, pool, seats, status,
               attendee_name, attendee_email, sold_by_staff_id, activated_at
        FROM tickets WHERE order_id = :oid ORDER BY created_at, id
    """), {"oid": order_id})).mappings().all()
    return [dict(r) for r in rows]


# model/retry.py
"""Bounded payment retries for FAILED orders, plus the admin overrides."""

from __future__ import annotations
from typing import Dict, Any, Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import MAX_RETRIES_LIMIT
from ..errors import ConflictError, ErrorCode, ValidationError
from ..helpers import now_ms
from ..infra.sql import GatedAsyncSession
from .db import PENDING, FAILED, COMPLETED, REFUNDED
from .transitions import transition, load_order

log = logger.bind(component="retry")

# admin overrides never touch these
PROTECTED = (COMPLETED, REFUNDED)


async def prepare_order_for_retry(
    db: GatedAsyncSession, order_id: str
) -> Dict[str, Any]:
    """FAILED -> PENDING, spending one unit of the retry budget."""
    now = now_ms()
    async with db.gated():
        async with db.session.begin():
            # the budget check is part of the compare-and-set: two
            # concurrent retries cannot both spend the last attempt
            row = (await db.session.execute(text("""
                UPDATE orders
                SET status = :pending,
                    retry_count = retry_count + 1,
                    last_retry_at = :now,
                    failure_reason = NULL,
                    updated_at = :now
                WHERE id = :id AND status = :failed
                  AND retry_eligible AND retry_count < max_retries
                RETURNING retry_count, max_retries
            """), {"pending": PENDING, "failed": FAILED, "now": now,
                   "id": order_id})).first()
            if row is None:
                order = await load_order(db.session, order_id)
                if order["status"] != FAILED:
                    raise ConflictError(
                        f"Order {order_id} is {order['status']}, only FAILED "
                        f"orders can be retried",
                        code=ErrorCode.INVALID_TRANSITION,
                    )
                raise ConflictError(
                    f"Order {order_id} has no retries left "
                    f"({order['retry_count']}/{order['max_retries']})",
                    code=ErrorCode.RETRY_EXHAUSTED,
                )
    log.info(f"order {order_id} retry {row[0]}/{row[1]}")
    return {"success": True, "order_id": order_id, "retry_count": row[0],
            "max_retries": row[1], "retries_remaining": row[1] - row[0]}


# UN-GATED internal function
async def _mark_retry_failed(
    session: AsyncSession,
    order_id: str,
    reason: Optional[str] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    changed = await transition(
        session, order_id, FAILED, sources=(PENDING,),
        values={"failure_reason": reason or "retry_failed"},
        exprs={"retry_eligible": "(retry_count < max_retries)"},
        now=now,
    )
    order = await load_order(session, order_id)
    eligible = bool(order["retry_eligible"])
    if changed and not eligible:
        log.info(f"order {order_id} exhausted its "
                 f"{order['max_retries']} retries")
    return {"success": True, "order_id": order_id,
            "already_failed": not changed, "retry_eligible": eligible,
            "retry_count": order["retry_count"],
            "max_retries": order["max_retries"]}


async def mark_retry_failed(
    db: GatedAsyncSession, order_id: str, reason: Optional[str] = None
) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            return await _mark_retry_failed(db.session, order_id, reason)


async def set_order_max_retries(
    db: GatedAsyncSession, order_id: str, max_retries: int
) -> Dict[str, Any]:
    if not isinstance(max_retries, int) or isinstance(max_retries, bool) \
            or not 0 <= max_retries <= MAX_RETRIES_LIMIT:
        raise ValidationError(
            f"max_retries must be within 0..{MAX_RETRIES_LIMIT}")
    now = now_ms()
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                UPDATE orders
                SET max_retries = :m,
                    retry_eligible = (retry_count < :m),
                    updated_at = :now
                WHERE id = :id AND status NOT IN (:completed, :refunded)
                RETURNING retry_count, retry_eligible
            """), {"m": max_retries, "now": now, "id": order_id,
                   "completed": COMPLETED, "refunded": REFUNDED})).first()
            if row is None:
                order = await load_order(db.session, order_id)
                raise ConflictError(
                    f"Cannot change retries of a {order['status']} order")
    log.info(f"order {order_id} max_retries -> {max_retries}")
    return {"success": True, "order_id": order_id, "max_retries": max_retries,
            "retry_count": row[0], "retry_eligible": bool(row[1])}


async def cancel_retry_eligibility(
    db: GatedAsyncSession, order_id: str, reason: Optional[str] = None
) -> Dict[str, Any]:
    """Stop further retries without touching the order status."""
    now = now_ms()
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                UPDATE orders
                SET retry_eligible = false,
                    failure_reason = COALESCE(:reason, failure_reason),
                    updated_at = :now
                WHERE id = :id AND status NOT IN (:completed, :refunded)
                RETURNING status
            """), {"reason": reason, "now": now, "id": order_id,
                   "completed": COMPLETED, "refunded": REFUNDED})).first()
            if row is None:
                order = await load_order(db.session, order_id)
                raise ConflictError(
                    f"Cannot cancel retries of a {order['status']} order")
    log.info(f"order {order_id} retries cancelled ({reason})")
    return {"success": True, "order_id": order_id, "status": row[0],
            "retry_eligible": False}

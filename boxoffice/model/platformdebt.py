# model/platformdebt.py
"""
Organizer platform debt.

Cash sales under the pay-as-you-sell (CREDIT_CARD) model skip the normal fee
collection, so the platform fee for each approved cash order becomes debt the
organizer owes. It is recovered from later digital orders (settlements) or
paid by hand.

Storage is an append-only ledger of signed deltas plus one running-balance
row per organizer. Every write goes through _apply_delta(), which locks the
balance row first, so the sum of an organizer's ledger amounts always equals
remaining_debt_cents.
"""

from __future__ import annotations
from typing import Dict, Any, Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import PLATFORM_FEE_PERCENT, PLATFORM_FEE_FIXED_CENTS
from ..errors import ConflictError, ValidationError, NotFoundError
from ..helpers import dollars, now_ms, new_id, percent_of
from ..infra.sql import GatedAsyncSession

log = logger.bind(component="platformdebt")

CASH_ORDER_DEBT = "CASH_ORDER_DEBT"
DIGITAL_SETTLEMENT = "DIGITAL_SETTLEMENT"
MANUAL_PAYMENT = "MANUAL_PAYMENT"
ADJUSTMENT = "ADJUSTMENT"


def calculate_platform_fee(subtotal_cents: int) -> int:
    if subtotal_cents <= 0:
        return 0
    return percent_of(subtotal_cents, PLATFORM_FEE_PERCENT) \
        + PLATFORM_FEE_FIXED_CENTS


# UN-GATED internal function
async def _lock_debt_row(
    session: AsyncSession, organizer_id: str, now: int, create: bool
) -> Optional[Dict[str, Any]]:
    # A no-op write takes the row lock (postgres) or the write lock (sqlite)
    # before we read the balance we are about to change.
    if create:
        await session.execute(text("""
            INSERT INTO organizer_platform_debt (
                organizer_id, total_debt_cents, total_settled_cents,
                remaining_debt_cents, created_at, updated_at
            ) VALUES (:org, 0, 0, 0, :now, :now)
            ON CONFLICT (organizer_id) DO NOTHING
        """), {"org": organizer_id, "now": now})
    row = (await session.execute(text("""
        UPDATE organizer_platform_debt SET updated_at = :now
        WHERE organizer_id = :org
        RETURNING total_debt_cents, total_settled_cents, remaining_debt_cents
    """), {"org": organizer_id, "now": now})).mappings().first()
    return dict(row) if row else None


# UN-GATED internal function
async def _apply_delta(
    session: AsyncSession,
    organizer_id: str,
    transaction_type: str,
    delta: int,
    *,
    balance: Dict[str, Any],
    description: str,
    now: int,
    order_id: Optional[str] = None,
    event_id: Optional[str] = None,
    notes: Optional[str] = None,
    processed_by: Optional[str] = None,
) -> int:
    """Post a signed `delta` against a locked balance row; returns new balance."""
    new_balance = balance["remaining_debt_cents"] + delta
    if new_balance < 0:
        raise ConflictError(
            f"Debt balance of organizer {organizer_id} cannot go negative "
            f"({balance['remaining_debt_cents']} + {delta})")

    ts = {
        CASH_ORDER_DEBT: "last_cash_order_at = :now,",
        DIGITAL_SETTLEMENT: "last_settlement_at = :now,",
        MANUAL_PAYMENT: "last_settlement_at = :now,",
    }.get(transaction_type, "")
    await session.execute(text(f"""
        UPDATE organizer_platform_debt
        SET total_debt_cents = total_debt_cents + :debt,
            total_settled_cents = total_settled_cents + :settled,
            remaining_debt_cents = :bal,
            {ts}
            updated_at = :now
        WHERE organizer_id = :org
    """), {
        "org": organizer_id,
        "debt": max(delta, 0),
        "settled": max(-delta, 0),
        "bal": new_balance,
        "now": now,
    })
    await session.execute(text("""
        INSERT INTO platform_debt_ledger (
            id, organizer_id, transaction_type, order_id, event_id,
            amount_cents, balance_after_cents, description, notes,
            processed_by, created_at
        ) VALUES (
            :id, :org, :type, :order_id, :event_id, :amount, :bal, :descr,
            :notes, :by, :now
        )
    """), {
        "id": new_id(),
        "org": organizer_id,
        "type": transaction_type,
        "order_id": order_id,
        "event_id": event_id,
        "amount": delta,
        "bal": new_balance,
        "descr": description,
        "notes": notes,
        "by": processed_by,
        "now": now,
    })
    balance["remaining_debt_cents"] = new_balance
    return new_balance


# UN-GATED internal function
async def _already_posted(
    session: AsyncSession, transaction_type: str, order_id: str
) -> bool:
    row = (await session.execute(text("""
        SELECT 1 FROM platform_debt_ledger
        WHERE transaction_type = :type AND order_id = :oid
    """), {"type": transaction_type, "oid": order_id})).first()
    return row is not None


# ------------------------------------------------------------------------------
# Called inside other transactions
# ------------------------------------------------------------------------------

# UN-GATED: runs inside the approving transaction
async def add_cash_order_debt(
    session: AsyncSession,
    organizer_id: str,
    order_id: str,
    event_id: str,
    subtotal_cents: int,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    now = now or now_ms()
    fee = calculate_platform_fee(subtotal_cents)
    if fee == 0:
        return {"posted": False, "platform_fee_owed": 0}
    if await _already_posted(session, CASH_ORDER_DEBT, order_id):
        log.info(f"cash debt for order {order_id} already posted")
        return {"posted": False, "platform_fee_owed": fee}

    balance = await _lock_debt_row(session, organizer_id, now, create=True)
    new_balance = await _apply_delta(
        session, organizer_id, CASH_ORDER_DEBT, fee,
        balance=balance,
        description=(
            f"Platform fee from cash order "
            f"(subtotal: {dollars(subtotal_cents)})"
        ),
        now=now, order_id=order_id, event_id=event_id,
    )
    log.info(f"organizer {organizer_id} owes {dollars(fee)} for cash "
             f"order {order_id}, balance {dollars(new_balance)}")
    return {"posted": True, "platform_fee_owed": fee,
            "new_balance": new_balance}


# UN-GATED: runs inside the payment transaction
async def record_settlement(
    session: AsyncSession,
    organizer_id: str,
    order_id: str,
    settlement_cents: int,
    event_id: Optional[str] = None,
    now: Optional[int] = None,
) -> Dict[str, int]:
    """
    Recover debt from a digital order. Only what is actually owed is
    applied; the order records the applied amount.
    """
    now = now or now_ms()
    if settlement_cents <= 0:
        return {"settled": 0, "remaining": 0}
    if await _already_posted(session, DIGITAL_SETTLEMENT, order_id):
        log.info(f"settlement for order {order_id} already recorded")
        return {"settled": 0, "remaining": -1}

    balance = await _lock_debt_row(session, organizer_id, now, create=False)
    if balance is None:
        log.warning(f"no debt record for organizer {organizer_id}, "
                    f"settlement of {settlement_cents} ignored")
        return {"settled": 0, "remaining": 0}

    applied = min(settlement_cents, balance["remaining_debt_cents"])
    if applied < settlement_cents:
        log.warning(f"order {order_id} settles {settlement_cents} but only "
                    f"{applied} is owed by {organizer_id}")
    remaining = balance["remaining_debt_cents"]
    if applied > 0:
        remaining = await _apply_delta(
            session, organizer_id, DIGITAL_SETTLEMENT, -applied,
            balance=balance,
            description="Settlement from digital payment",
            now=now, order_id=order_id, event_id=event_id,
        )
    await session.execute(text("""
        UPDATE orders SET debt_settlement_cents = :amt WHERE id = :id
    """), {"amt": applied, "id": order_id})
    return {"settled": applied, "remaining": remaining}


# ------------------------------------------------------------------------------
# Admin operations (own transaction)
# ------------------------------------------------------------------------------

async def record_manual_payment(
    db: GatedAsyncSession,
    organizer_id: str,
    amount_cents: int,
    processed_by: str,
    notes: Optional[str] = None,
) -> Dict[str, int]:
    if not isinstance(amount_cents, int) or amount_cents <= 0:
        raise ValidationError("Payment amount must be a positive integer")
    now = now_ms()
    async with db.gated():
        async with db.session.begin():
            balance = await _lock_debt_row(db.session, organizer_id, now,
                                           create=False)
            if balance is None:
                raise NotFoundError("Debt record for organizer",
                                    organizer_id)
            if amount_cents > balance["remaining_debt_cents"]:
                raise ValidationError(
                    f"Payment amount ({dollars(amount_cents)}) exceeds "
                    f"remaining debt "
                    f"({dollars(balance['remaining_debt_cents'])})"
                )
            remaining = await _apply_delta(
                db.session, organizer_id, MANUAL_PAYMENT, -amount_cents,
                balance=balance,
                description="Manual payment received",
                now=now, notes=notes, processed_by=processed_by,
            )
    log.info(f"manual payment {dollars(amount_cents)} from {organizer_id} "
             f"by {processed_by}")
    return {"settled": amount_cents, "remaining": remaining}


async def admin_adjustment(
    db: GatedAsyncSession,
    organizer_id: str,
    adjustment_cents: int,
    notes: str,
    processed_by: str,
) -> Dict[str, int]:
    """Positive adjustments add debt, negative ones forgive it (floored)."""
    if not isinstance(adjustment_cents, int) or adjustment_cents == 0:
        raise ValidationError("Adjustment must be a non-zero integer")
    if not (notes or "").strip():
        raise ValidationError("Adjustments require notes")
    now = now_ms()
    async with db.gated():
        async with db.session.begin():
            balance = await _lock_debt_row(
                db.session, organizer_id, now, create=adjustment_cents > 0
            )
            if balance is None:
                raise ValidationError(
                    "Cannot reduce debt for organizer with no debt record")
            delta = max(adjustment_cents, -balance["remaining_debt_cents"])
            remaining = balance["remaining_debt_cents"]
            if delta != 0:
                remaining = await _apply_delta(
                    db.session, organizer_id, ADJUSTMENT, delta,
                    balance=balance,
                    description=("Debt increased (admin)" if delta > 0
                                 else "Debt decreased (admin)"),
                    now=now, notes=notes, processed_by=processed_by,
                )
    return {"adjustment": delta, "new_balance": remaining}


async def get_debt(
    db: GatedAsyncSession, organizer_id: str, limit: int = 50
) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT organizer_id, total_debt_cents, total_settled_cents,
                       remaining_debt_cents, last_cash_order_at,
                       last_settlement_at
                FROM organizer_platform_debt WHERE organizer_id = :org
            """), {"org": organizer_id})).mappings().first()
            entries = (await db.session.execute(text("""
                SELECT id, transaction_type, order_id, event_id, amount_cents,
                       balance_after_cents, description, notes, processed_by,
                       created_at
                FROM platform_debt_ledger
                WHERE organizer_id = :org
                ORDER BY created_at DESC, id
                LIMIT :lim
            """), {"org": organizer_id, "lim": limit})).mappings().all()
    out = dict(row) if row else {
        "organizer_id": organizer_id,
        "total_debt_cents": 0,
        "total_settled_cents": 0,
        "remaining_debt_cents": 0,
        "last_cash_order_at": None,
        "last_settlement_at": None,
    }
    out["ledger"] = [dict(e) for e in entries]
    return out


async def verify_balance(
    db: GatedAsyncSession, organizer_id: str
) -> Dict[str, Any]:
    """Sum of ledger deltas vs. the running balance."""
    async with db.gated():
        async with db.session.begin():
            total = (await db.session.execute(text("""
                SELECT COALESCE(SUM(amount_cents), 0)
                FROM platform_debt_ledger WHERE organizer_id = :org
            """), {"org": organizer_id})).scalar_one()
            remaining = (await db.session.execute(text("""
                SELECT remaining_debt_cents FROM organizer_platform_debt
                WHERE organizer_id = :org
            """), {"org": organizer_id})).scalar_one_or_none()
    remaining = int(remaining or 0)
    ok = int(total) == remaining
    if not ok:
        log.error(f"debt ledger for {organizer_id} sums to {total}, "
                  f"balance says {remaining}")
    return {"ledger_sum": int(total), "remaining_debt_cents": remaining,
            "ok": ok}

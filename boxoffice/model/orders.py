# model/orders.py
"""
Digital orders and the payment-driven transitions of the order lifecycle.

    PENDING          -> COMPLETED | FAILED | CANCELLED
    PENDING_PAYMENT  -> COMPLETED | CANCELLED | EXPIRED
    COMPLETED        -> REFUNDED | DISPUTED
    FAILED           -> PENDING (retry) | CANCELLED
    DISPUTED         -> COMPLETED (won) | REFUNDED (lost)

Each public function is one gated transaction. The `_`-prefixed variants run
inside a caller's transaction (the webhook gateway uses those so the event
key and the transition commit together).
"""

from __future__ import annotations
from typing import Dict, Any, Callable, List, Optional, Tuple
import uuid

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import (
    DEFAULT_MAX_RETRIES, MAX_RETRIES_LIMIT,
    PROCESSING_FEE_PERCENT, PROCESSING_FEE_FIXED_CENTS,
)
from ..errors import ValidationError, ConflictError, NotFoundError
from ..helpers import now_ms, new_id, is_valid_email, percent_of, to_iso
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from . import inventory, outbox, platformdebt, refunds
from .db import (
    Order, OrderItem, Ticket,
    PENDING, PENDING_PAYMENT, COMPLETED, FAILED, CANCELLED, DISPUTED,
    T_VALID, T_PENDING, T_PENDING_ACTIVATION, T_CANCELLED,
    POOL_INDIVIDUAL,
)
from .transitions import (
    PROVIDER_COLUMNS, transition, load_order, order_tickets,
    find_orders_by_transaction,
)

log = logger.bind(component="orders")

DIGITAL_METHODS = ("STRIPE", "PAYPAL", "FREE", "TEST")
CARD_METHODS = ("STRIPE", "PAYPAL")

# dispute outcome codes (PayPal / Stripe)
DISPUTE_WON = ("RESOLVED_SELLER_FAVOUR", "won")
DISPUTE_LOST = ("RESOLVED_BUYER_FAVOUR", "lost")


def new_ticket_code() -> str:
    return f"TCK-{uuid.uuid4().hex[:10].upper()}"


def new_order_number(prefix: str = "ORD") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8].upper()}"


def processing_fee(subtotal_cents: int, payment_method: str) -> int:
    if payment_method not in CARD_METHODS or subtotal_cents <= 0:
        return 0
    return percent_of(subtotal_cents, PROCESSING_FEE_PERCENT) \
        + PROCESSING_FEE_FIXED_CENTS


def validate_buyer(buyer: Dict[str, Any],
                   require_email: bool = True) -> Dict[str, Any]:
    name = (buyer.get("name") or "").strip()
    email = (buyer.get("email") or "").strip()
    if not name:
        raise ValidationError("Buyer name is required")
    if (email or require_email) and not is_valid_email(email):
        raise ValidationError("A valid buyer email is required")
    return {"name": name, "email": email.lower(),
            "phone": (buyer.get("phone") or None)}


def validate_requests(ticket_requests: List[Dict[str, Any]]) -> list:
    if not ticket_requests:
        raise ValidationError("At least one ticket is required")
    out = []
    for req in ticket_requests:
        tier_id = req.get("tier_id")
        qty = req.get("quantity")
        pool = req.get("pool") or POOL_INDIVIDUAL
        if not tier_id:
            raise ValidationError("tier_id is required")
        if not isinstance(qty, int) or isinstance(qty, bool) or qty < 1:
            raise ValidationError(f"Invalid quantity for tier {tier_id}")
        out.append((tier_id, qty, pool))
    return out


# UN-GATED internal function
async def event_organizer(session: AsyncSession, event_id: str) -> str:
    org = (await session.execute(
        text("SELECT organizer_id FROM events WHERE id = :id"),
        {"id": event_id},
    )).scalar_one_or_none()
    if org is None:
        raise NotFoundError("Event", event_id)
    return org


# UN-GATED internal function
async def reserve_and_write(
    session: AsyncSession,
    *,
    event_id: str,
    buyer: Dict[str, Any],
    requests: list,
    status: str,
    ticket_status: str,
    payment_method: str,
    fees: Callable[[int], Tuple[int, int]],
    now: int,
    max_retries: int = DEFAULT_MAX_RETRIES,
    hold_expires_at: Optional[int] = None,
    order_number_prefix: str = "ORD",
) -> Dict[str, Any]:
    """
    Reserve every request, then write the order, its items and one ticket
    per reserved unit. Reservation always precedes the rows that reference
    it; a shortfall on any request aborts the whole transaction.
    """
    reservations = []
    for tier_id, qty, pool in requests:
        reservations.append(await inventory.reserve(
            session, tier_id, qty, pool, now=now, event_id=event_id))

    subtotal = sum(r.units * r.unit_price_cents for r in reservations)
    platform_fee, proc_fee = fees(subtotal)
    order_id = new_id()
    order_number = new_order_number(order_number_prefix)

    session.add(Order(
        id=order_id,
        event_id=event_id,
        buyer_name=buyer["name"],
        buyer_email=buyer["email"],
        buyer_phone=buyer.get("phone"),
        order_number=order_number,
        status=status,
        subtotal_cents=subtotal,
        platform_fee_cents=platform_fee,
        processing_fee_cents=proc_fee,
        total_cents=subtotal + platform_fee + proc_fee,
        payment_method=payment_method,
        retry_count=0,
        max_retries=max_retries,
        retry_eligible=max_retries > 0,
        hold_expires_at=hold_expires_at,
        created_at=now,
        updated_at=now,
    ))
    # the order row must exist before its items and tickets
    await session.flush()

    item_ids = []
    for r in reservations:
        item_ids.append(new_id())
        session.add(OrderItem(
            id=item_ids[-1], order_id=order_id, ticket_tier_id=r.tier_id,
            pool=r.pool, quantity=r.units,
            unit_price_cents=r.unit_price_cents, created_at=now,
        ))
    await session.flush()

    ticket_ids = []
    for item_id, r in zip(item_ids, reservations):
        for _ in range(r.units):
            tid = new_id()
            ticket_ids.append(tid)
            session.add(Ticket(
                id=tid, order_id=order_id, order_item_id=item_id,
                event_id=event_id, ticket_tier_id=r.tier_id, pool=r.pool,
                seats=r.seats // r.units, ticket_code=new_ticket_code(),
                status=ticket_status, attendee_name=buyer["name"],
                attendee_email=buyer["email"], created_at=now,
                updated_at=now,
            ))
    await session.flush()

    return {
        "order_id": order_id,
        "order_number": order_number,
        "ticket_ids": ticket_ids,
        "subtotal_cents": subtotal,
        "platform_fee_cents": platform_fee,
        "processing_fee_cents": proc_fee,
        "total_cents": subtotal + platform_fee + proc_fee,
        "status": status,
    }


async def create_order(
    db: GatedAsyncSession,
    event_id: str,
    buyer: Dict[str, Any],
    ticket_requests: List[Dict[str, Any]],
    payment_method: str = "STRIPE",
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> Dict[str, Any]:
    """Digital order, PENDING until the provider confirms payment."""
    if payment_method not in DIGITAL_METHODS:
        raise ValidationError(f"Unsupported payment method: {payment_method}")
    if not 0 <= max_retries <= MAX_RETRIES_LIMIT:
        raise ValidationError(
            f"max_retries must be within 0..{MAX_RETRIES_LIMIT}")
    buyer = validate_buyer(buyer)
    requests = validate_requests(ticket_requests)

    def fees(subtotal: int):
        return (platformdebt.calculate_platform_fee(subtotal),
                processing_fee(subtotal, payment_method))

    now = now_ms()
    async with timeit("orders.create"):
        async with db.gated():
            async with db.session.begin():
                await event_organizer(db.session, event_id)
                return await reserve_and_write(
                    db.session, event_id=event_id, buyer=buyer,
                    requests=requests, status=PENDING,
                    ticket_status=T_PENDING, payment_method=payment_method,
                    fees=fees, now=now, max_retries=max_retries,
                )


# ------------------------------------------------------------------------------
# COMPLETED
# ------------------------------------------------------------------------------

# UN-GATED internal function
async def _mark_order_paid(
    session: AsyncSession,
    order_id: str,
    payment_intent_id: Optional[str] = None,
    provider: str = "stripe",
    settlement_cents: Optional[int] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    now = now or now_ms()
    values: Dict[str, Any] = {"paid_at": now, "failure_reason": None}
    column = PROVIDER_COLUMNS.get(provider)
    if payment_intent_id and column:
        values[column] = payment_intent_id

    changed = await transition(
        session, order_id, COMPLETED, sources=(PENDING, PENDING_PAYMENT),
        values=values, now=now,
    )
    if not changed:
        return {"success": True, "order_id": order_id,
                "already_completed": True}

    activated = await _complete_tickets(session, order_id, now)
    order = await load_order(session, order_id)

    settled = 0
    if settlement_cents:
        res = await platformdebt.record_settlement(
            session, order["organizer_id"], order_id, int(settlement_cents),
            event_id=order["event_id"], now=now,
        )
        settled = res["settled"]

    await outbox.enqueue(session, outbox.TICKETS_CONFIRMED,
                         f"confirmed:{order_id}", {
                             "order_id": order_id,
                             "order_number": order["order_number"],
                             "buyer_email": order["buyer_email"],
                             "buyer_name": order["buyer_name"],
                             "total_cents": order["total_cents"],
                             "tickets": activated,
                         }, now=now)
    return {"success": True, "order_id": order_id,
            "already_completed": False, "tickets_activated": activated,
            "debt_settled_cents": settled}


# UN-GATED internal function
async def _complete_tickets(session: AsyncSession, order_id: str,
                            now: int) -> int:
    res = await session.execute(text("""
        UPDATE tickets
        SET status = :valid, updated_at = :now,
            activated_at = COALESCE(activated_at, :now)
        WHERE order_id = :oid AND status IN (:pending, :pending_act)
    """), {"valid": T_VALID, "now": now, "oid": order_id,
           "pending": T_PENDING, "pending_act": T_PENDING_ACTIVATION})
    return int(res.rowcount or 0)


async def mark_order_paid(
    db: GatedAsyncSession,
    order_id: str,
    payment_intent_id: Optional[str] = None,
    provider: str = "stripe",
    settlement_cents: Optional[int] = None,
) -> Dict[str, Any]:
    async with timeit("orders.mark_paid"):
        async with db.gated():
            async with db.session.begin():
                return await _mark_order_paid(
                    db.session, order_id, payment_intent_id, provider,
                    settlement_cents)


# ------------------------------------------------------------------------------
# FAILED
# ------------------------------------------------------------------------------

# UN-GATED internal function
async def _mark_order_failed(
    session: AsyncSession,
    order_id: str,
    reason: Optional[str] = None,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    changed = await transition(
        session, order_id, FAILED,
        values={"failure_reason": reason or "payment_failed"},
        exprs={"retry_eligible": "(retry_count < max_retries)"},
        now=now,
    )
    order = await load_order(session, order_id)
    return {
        "success": True,
        "order_id": order_id,
        "already_failed": not changed,
        "retry_eligible": bool(order["retry_eligible"]),
        "retry_count": order["retry_count"],
        "max_retries": order["max_retries"],
    }


async def mark_order_failed(
    db: GatedAsyncSession, order_id: str, reason: Optional[str] = None
) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            return await _mark_order_failed(db.session, order_id, reason)


# ------------------------------------------------------------------------------
# REFUNDED / DISPUTED
# ------------------------------------------------------------------------------

async def mark_order_refunded(
    db: GatedAsyncSession,
    payment_intent_id: str,
    amount_cents: Optional[int] = None,
    reason: Optional[str] = None,
    provider: str = "stripe",
) -> Dict[str, Any]:
    """
    Refund every order carrying the provider transaction id. An unknown id
    is reported as ``{"success": False, "error": "order_not_found"}``.
    """
    return await refunds.reconcile_by_transaction(
        db, provider, payment_intent_id, amount_cents, reason)


# UN-GATED internal function
async def _mark_order_disputed(
    session: AsyncSession,
    provider: str,
    dispute_id: str,
    *,
    transaction_id: Optional[str] = None,
    order_id: Optional[str] = None,
    reason: Optional[str] = None,
    amount_cents: int = 0,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    now = now or now_ms()
    if order_id is None and transaction_id:
        matches = await find_orders_by_transaction(session, provider,
                                                   transaction_id)
        if len(matches) > 1:
            log.error(f"dispute {dispute_id}: {len(matches)} orders match "
                      f"{provider} transaction {transaction_id}")
        order_id = matches[0] if matches else None

    row = (await session.execute(text("""
        INSERT INTO payment_disputes (
            id, dispute_id, provider, order_id, transaction_id, reason,
            amount_cents, status, created_at
        ) VALUES (:id, :did, :provider, :oid, :tx, :reason, :amt, 'OPEN',
                  :now)
        ON CONFLICT (dispute_id) DO NOTHING
        RETURNING id
    """), {"id": new_id(), "did": dispute_id, "provider": provider,
           "oid": order_id, "tx": transaction_id, "reason": reason,
           "amt": amount_cents or 0, "now": now})).first()
    already_exists = row is None

    if order_id is None:
        log.warning(f"dispute {dispute_id} does not match any order")
        return {"success": True, "order_found": False,
                "already_exists": already_exists}

    try:
        await transition(session, order_id, DISPUTED, now=now)
    except ConflictError as e:
        # the dispute is on file either way; the order stays where it is
        log.warning(f"dispute {dispute_id}: {e}")
    return {"success": True, "order_found": True, "order_id": order_id,
            "already_exists": already_exists}


async def mark_order_disputed(db: GatedAsyncSession, provider: str,
                              dispute_id: str, **kw) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            return await _mark_order_disputed(db.session, provider,
                                              dispute_id, **kw)


# UN-GATED internal function
async def _resolve_dispute(
    session: AsyncSession,
    dispute_id: str,
    outcome_code: str,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    now = now or now_ms()
    if outcome_code in DISPUTE_WON:
        status = "WON"
    elif outcome_code in DISPUTE_LOST:
        status = "LOST"
    else:
        status = "CLOSED"

    row = (await session.execute(text("""
        UPDATE payment_disputes
        SET status = :status, outcome_code = :code, resolved_at = :now
        WHERE dispute_id = :did AND status = 'OPEN'
        RETURNING order_id, amount_cents
    """), {"status": status, "code": outcome_code, "now": now,
           "did": dispute_id})).first()
    if row is None:
        existing = (await session.execute(text(
            "SELECT status FROM payment_disputes WHERE dispute_id = :did"
        ), {"did": dispute_id})).scalar_one_or_none()
        if existing is None:
            log.warning(f"dispute {dispute_id} not found")
            return {"success": False, "error": "dispute_not_found"}
        return {"success": True, "status": existing,
                "already_resolved": True}

    order_id, amount = row
    out: Dict[str, Any] = {"success": True, "status": status,
                           "already_resolved": False, "order_id": order_id}
    if order_id is None:
        return out
    if status == "WON":
        await transition(session, order_id, COMPLETED, sources=(DISPUTED,),
                         now=now)
    elif status == "LOST":
        res = await refunds.refund_one(session, order_id, amount or None,
                                        "chargeback", now)
        out["refund"] = res
    return out


async def resolve_dispute(db: GatedAsyncSession, dispute_id: str,
                          outcome_code: str) -> Dict[str, Any]:
    async with db.gated():
        async with db.session.begin():
            return await _resolve_dispute(db.session, dispute_id,
                                          outcome_code)


# ------------------------------------------------------------------------------
# CANCELLED
# ------------------------------------------------------------------------------

async def cancel_order(
    db: GatedAsyncSession, order_id: str, reason: Optional[str] = None
) -> Dict[str, Any]:
    now = now_ms()
    async with db.gated():
        async with db.session.begin():
            changed = await transition(
                db.session, order_id, CANCELLED,
                values={"failure_reason": reason or "cancelled"},
                exprs={"retry_eligible": "false"},
                now=now,
            )
            if not changed:
                return {"success": True, "already_cancelled": True}
            counts = await refunds.release_order_holds(
                db.session, order_id, T_CANCELLED, now=now)
    return {"success": True, "already_cancelled": False, **counts}


# ------------------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------------------

async def get_order(db: GatedAsyncSession, order_id: str) -> Dict[str, Any]:
    async with timeit("orders.get"):
        async with db.gated():
            async with db.session.begin():
                order = await load_order(db.session, order_id)
                tickets = await order_tickets(db.session, order_id)
    return {
        "order_id": order["id"],
        "order_number": order["order_number"],
        "event_id": order["event_id"],
        "status": order["status"],
        "buyer_name": order["buyer_name"],
        "buyer_email": order["buyer_email"],
        "subtotal_cents": order["subtotal_cents"],
        "platform_fee_cents": order["platform_fee_cents"],
        "processing_fee_cents": order["processing_fee_cents"],
        "total_cents": order["total_cents"],
        "payment_method": order["payment_method"],
        "paid_at": to_iso(order["paid_at"]),
        "retry_count": order["retry_count"],
        "max_retries": order["max_retries"],
        "retry_eligible": bool(order["retry_eligible"]),
        "failure_reason": order["failure_reason"],
        "hold_expires_at": to_iso(order["hold_expires_at"]),
        "debt_settlement_cents": order["debt_settlement_cents"],
        "refund_amount_cents": order["refund_amount_cents"],
        "tickets": [{
            "id": t["id"],
            "ticket_code": t["ticket_code"],
            "tier_id": t["ticket_tier_id"],
            "pool": t["pool"],
            "seats": t["seats"],
            "status": t["status"],
        } for t in tickets],
    }

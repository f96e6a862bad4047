# model/cash.py
"""
Cash-in-person orders.

A cash order reserves its seats the moment it is created and holds them in
PENDING_PAYMENT for CASH_HOLD_MINUTES. It completes either when a staff
member with cash permission approves it on the spot, or when the buyer
redeems an activation code the staff member handed out. Unapproved holds are
expired by the sweeper, which gives the seats back.

Completion credits the staff node (tickets, cash, commission) and, for
events on the pay-as-you-sell model, books the platform fee as organizer
debt. Both happen in the completing transaction.
"""

from __future__ import annotations
import hashlib
import secrets
from typing import Dict, Any, List, Optional

from loguru import logger
from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import CASH_HOLD_MINUTES, ACTIVATION_CODE_TTL_HOURS
from ..errors import (
    AuthorizationError, ConflictError, InvalidTransitionError,
    NotFoundError, ValidationError,
)
from ..helpers import now_ms
from ..infra.sql import GatedAsyncSession
from ..infra.timings import timeit
from . import outbox, platformdebt, staff as staffmod
from .db import (
    PENDING_PAYMENT, COMPLETED, EXPIRED, PREPAY, CREDIT_CARD,
    T_PENDING, T_PENDING_ACTIVATION, T_VALID, T_CANCELLED,
)
from .orders import (
    event_organizer, reserve_and_write, validate_buyer, validate_requests,
)
from .refunds import release_order_holds
from .transitions import transition, load_order

log = logger.bind(component="cash")

CASH = "CASH"

# no 0/O, 1/I/L
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8

_LEGACY_MODELS = {"PRE_PURCHASE": PREPAY, "PAY_AS_SELL": CREDIT_CARD}


def generate_code() -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def hash_code(code: str) -> str:
    return hashlib.sha256(code.strip().upper().encode()).hexdigest()


# UN-GATED internal function
async def payment_model(session: AsyncSession, event_id: str) -> str:
    model = (await session.execute(text("""
        SELECT payment_model FROM event_payment_config WHERE event_id = :id
    """), {"id": event_id})).scalar_one_or_none()
    if model is None:
        return PREPAY
    return _LEGACY_MODELS.get(model, model)


def _check_cash_staff(staff: Dict[str, Any], order: Dict[str, Any]) -> None:
    if not staff["is_active"]:
        raise AuthorizationError(f"Staff {staff['id']} is not active")
    if not staff["accept_cash_in_person"]:
        raise AuthorizationError(
            "Staff member is not authorized to accept cash payments")
    if staff["organizer_id"] != order["organizer_id"]:
        raise AuthorizationError("Staff member works for another organizer")
    if staff["event_id"] is not None and staff["event_id"] != \
            order["event_id"]:
        raise AuthorizationError("Staff member is not assigned to this event")


def _require_pending_cash(order: Dict[str, Any]) -> None:
    if order["payment_method"] != CASH:
        raise ValidationError(f"Order {order['id']} is not a cash order")
    if order["status"] != PENDING_PAYMENT:
        raise InvalidTransitionError(order["id"], order["status"],
                                     COMPLETED)


async def create_cash_order(
    db: GatedAsyncSession,
    event_id: str,
    buyer: Dict[str, Any],
    ticket_requests: List[Dict[str, Any]],
) -> Dict[str, Any]:
    buyer = validate_buyer(buyer, require_email=False)
    requests = validate_requests(ticket_requests)
    now = now_ms()
    hold = now + CASH_HOLD_MINUTES * 60 * 1000

    async with timeit("cash.create"):
        async with db.gated():
            async with db.session.begin():
                await event_organizer(db.session, event_id)
                out = await reserve_and_write(
                    db.session, event_id=event_id, buyer=buyer,
                    requests=requests, status=PENDING_PAYMENT,
                    ticket_status=T_PENDING, payment_method=CASH,
                    fees=lambda subtotal: (0, 0), now=now, max_retries=0,
                    hold_expires_at=hold, order_number_prefix="CASH",
                )
                await outbox.enqueue(
                    db.session, outbox.CASH_ORDER_CREATED,
                    f"cash-created:{out['order_id']}", {
                        "order_id": out["order_id"],
                        "order_number": out["order_number"],
                        "event_id": event_id,
                        "buyer_name": buyer["name"],
                        "total_cents": out["total_cents"],
                        "hold_expires_at": hold,
                    }, now=now)
    log.info(f"cash order {out['order_id']} holds "
             f"{len(out['ticket_ids'])} tickets until {hold}")
    out["hold_expires_at"] = hold
    return out


# UN-GATED internal function
async def _complete_cash_order(
    session: AsyncSession,
    order: Dict[str, Any],
    staff: Optional[Dict[str, Any]],
    now: int,
    attendee: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """PENDING_PAYMENT -> COMPLETED with every side effect of the sale."""
    order_id = order["id"]
    values: Dict[str, Any] = {"paid_at": now}
    if staff is not None:
        values["sold_by_staff_id"] = staff["id"]
    changed = await transition(session, order_id, COMPLETED,
                               sources=(PENDING_PAYMENT,), values=values,
                               now=now)
    if not changed:
        return {"success": True, "order_id": order_id,
                "already_completed": True}

    extra = ""
    params: Dict[str, Any] = {"valid": T_VALID, "now": now, "oid": order_id,
                              "live": (T_PENDING, T_PENDING_ACTIVATION)}
    if attendee:
        extra = ("attendee_name = COALESCE(:aname, attendee_name), "
                 "attendee_email = COALESCE(:aemail, attendee_email),")
        params.update(aname=attendee.get("name"),
                      aemail=attendee.get("email"))
    res = await session.execute(text(f"""
        UPDATE tickets
        SET status = :valid, {extra}
            activated_at = :now, updated_at = :now
        WHERE order_id = :oid AND status IN :live
    """).bindparams(bindparam("live", expanding=True)), params)
    ticket_count = int(res.rowcount or 0)

    credit = None
    if staff is not None:
        credit = await staffmod.credit_sale(
            session, staff, order_id=order_id, event_id=order["event_id"],
            subtotal_cents=order["subtotal_cents"],
            total_cents=order["total_cents"], ticket_count=ticket_count,
            payment_method=CASH, now=now,
        )

    debt = None
    if await payment_model(session, order["event_id"]) == CREDIT_CARD:
        debt = await platformdebt.add_cash_order_debt(
            session, order["organizer_id"], order_id, order["event_id"],
            order["subtotal_cents"], now=now,
        )

    if order["buyer_email"]:
        await outbox.enqueue(session, outbox.TICKETS_CONFIRMED,
                             f"confirmed:{order_id}", {
                                 "order_id": order_id,
                                 "order_number": order["order_number"],
                                 "buyer_email": order["buyer_email"],
                                 "buyer_name": order["buyer_name"],
                                 "total_cents": order["total_cents"],
                                 "tickets": ticket_count,
                             }, now=now)

    return {
        "success": True,
        "order_id": order_id,
        "already_completed": False,
        "tickets_activated": ticket_count,
        "commission_cents": credit["commission_cents"] if credit else 0,
        "platform_fee_owed": debt["platform_fee_owed"] if debt else 0,
    }


async def approve_cash_order(
    db: GatedAsyncSession, order_id: str, staff_id: str
) -> Dict[str, Any]:
    now = now_ms()
    async with timeit("cash.approve"):
        async with db.gated():
            async with db.session.begin():
                order = await load_order(db.session, order_id)
                staff = await staffmod.load_staff(db.session, staff_id)
                _check_cash_staff(staff, order)
                if order["status"] == COMPLETED:
                    return {"success": True, "order_id": order_id,
                            "already_completed": True}
                _require_pending_cash(order)
                out = await _complete_cash_order(db.session, order, staff,
                                                 now)
    if not out["already_completed"]:
        log.info(f"cash order {order_id} approved by staff {staff_id}")
    return out


async def organizer_approve_cash_order(
    db: GatedAsyncSession,
    order_id: str,
    organizer_id: Optional[str],
    is_admin: bool = False,
) -> Dict[str, Any]:
    """Approval by the event owner (or an admin), no staff attribution."""
    now = now_ms()
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
            if not is_admin and order["organizer_id"] != organizer_id:
                raise AuthorizationError(
                    "Not authorized to approve orders for this event")
            if order["status"] == COMPLETED:
                return {"success": True, "order_id": order_id,
                        "already_completed": True}
            _require_pending_cash(order)
            return await _complete_cash_order(db.session, order, None, now)


async def generate_cash_activation_code(
    db: GatedAsyncSession, order_id: str, staff_id: str
) -> Dict[str, Any]:
    """
    Issue a code the buyer redeems later. Only the hash is stored. The hold
    is stretched to the code's expiry so the sweeper leaves the order alone
    while the code is valid.
    """
    now = now_ms()
    expiry = now + ACTIVATION_CODE_TTL_HOURS * 3600 * 1000
    async with db.gated():
        async with db.session.begin():
            order = await load_order(db.session, order_id)
            staff = await staffmod.load_staff(db.session, staff_id)
            _check_cash_staff(staff, order)
            _require_pending_cash(order)

            # claim the order first; a concurrent approval or expiry
            # makes this match nothing
            row = (await db.session.execute(text("""
                UPDATE orders
                SET sold_by_staff_id = :sid, hold_expires_at = :exp,
                    updated_at = :now
                WHERE id = :id AND status = :pp
                RETURNING id
            """), {"sid": staff_id, "exp": expiry, "now": now,
                   "id": order_id, "pp": PENDING_PAYMENT})).first()
            if row is None:
                raise ConflictError(f"Order {order_id} changed, refresh")

            for _ in range(5):
                code = generate_code()
                taken = (await db.session.execute(text("""
                    SELECT 1 FROM tickets
                    WHERE activation_code_hash = :h AND status = :pa
                    LIMIT 1
                """), {"h": hash_code(code), "pa": T_PENDING_ACTIVATION})
                ).first()
                if taken is None:
                    break
            else:
                raise ConflictError("Could not allocate an activation code")

            res = await db.session.execute(text("""
                UPDATE tickets
                SET status = :pa, activation_code_hash = :h,
                    activation_code_expiry = :exp, sold_by_staff_id = :sid,
                    updated_at = :now
                WHERE order_id = :oid AND status IN (:pending, :pa)
            """), {"pa": T_PENDING_ACTIVATION, "h": hash_code(code),
                   "exp": expiry, "sid": staff_id, "now": now,
                   "oid": order_id, "pending": T_PENDING})
            ticket_count = int(res.rowcount or 0)

            await outbox.enqueue(db.session, outbox.ACTIVATION_CODE_ISSUED,
                                 f"activation:{order_id}:{now}", {
                                     "order_id": order_id,
                                     "staff_id": staff_id,
                                     "ticket_count": ticket_count,
                                     "expires_at": expiry,
                                 }, now=now)
    log.info(f"activation code issued for order {order_id} "
             f"({ticket_count} tickets) by staff {staff_id}")
    return {"success": True, "order_id": order_id, "activation_code": code,
            "ticket_count": ticket_count, "expires_at": expiry}


async def activate_tickets(
    db: GatedAsyncSession,
    code: str,
    attendee_email: Optional[str] = None,
    attendee_name: Optional[str] = None,
) -> Dict[str, Any]:
    """Redeem an activation code: completes the order it belongs to."""
    if not code or not code.strip():
        raise ValidationError("Activation code is required")
    h = hash_code(code)
    now = now_ms()
    async with timeit("cash.activate"):
        async with db.gated():
            async with db.session.begin():
                rows = (await db.session.execute(text("""
                    SELECT DISTINCT order_id, status, activation_code_expiry
                    FROM tickets WHERE activation_code_hash = :h
                """), {"h": h})).all()
                pending = [r for r in rows if r[1] == T_PENDING_ACTIVATION]
                if not pending:
                    if any(r[1] == T_VALID for r in rows):
                        return {"success": True, "already_activated": True,
                                "order_id": rows[0][0]}
                    raise NotFoundError("Activation code", "supplied")
                order_id, _, expiry = pending[0]
                if expiry is not None and now > expiry:
                    raise ValidationError("Activation code has expired")

                order = await load_order(db.session, order_id)
                _require_pending_cash(order)
                staff = None
                if order["sold_by_staff_id"]:
                    staff = await staffmod.load_staff(
                        db.session, order["sold_by_staff_id"])
                out = await _complete_cash_order(
                    db.session, order, staff, now,
                    attendee={"name": attendee_name,
                              "email": attendee_email},
                )
    log.info(f"order {order_id} activated by code")
    out["already_activated"] = out.pop("already_completed")
    return out


async def expire_cash_orders(
    db: GatedAsyncSession, now: Optional[int] = None, limit: int = 100
) -> Dict[str, int]:
    """Expire unpaid cash holds and give their seats back."""
    now = now or now_ms()
    expired = 0
    released = 0
    async with timeit("cash.expire"):
        async with db.gated():
            async with db.session.begin():
                ids = (await db.session.execute(text("""
                    SELECT id FROM orders
                    WHERE status = :pp AND payment_method = :cash
                      AND hold_expires_at IS NOT NULL
                      AND hold_expires_at < :now
                    ORDER BY hold_expires_at
                    LIMIT :lim
                """), {"pp": PENDING_PAYMENT, "cash": CASH, "now": now,
                       "lim": limit})).scalars().all()
                for order_id in ids:
                    try:
                        changed = await transition(
                            db.session, order_id, EXPIRED,
                            sources=(PENDING_PAYMENT,),
                            values={"failure_reason": "cash hold expired"},
                            now=now,
                        )
                    except ConflictError:
                        # approved between the scan and the update
                        continue
                    if not changed:
                        continue
                    counts = await release_order_holds(
                        db.session, order_id, T_CANCELLED, now=now)
                    expired += 1
                    released += counts["released"]
    if expired:
        log.info(f"expired {expired} cash orders, {released} seats back")
    return {"expired": expired, "released": released}

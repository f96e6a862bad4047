# model/staff.py
"""
Event staff and cash-sale commissions.

Staff form a seller tree through assigned_by_staff_id. Each node stores its
own hierarchy_level, so the depth bound is checked against the parent row
alone on insert and nothing ever walks the ancestor chain.
"""

from __future__ import annotations
from typing import Dict, Any, Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import MAX_STAFF_DEPTH
from ..errors import (
    AuthorizationError, ConflictError, NotFoundError, ValidationError,
)
from ..helpers import now_ms, new_id, percent_of
from ..infra.sql import GatedAsyncSession
from .db import EventStaff, StaffSale

log = logger.bind(component="staff")

PERCENTAGE = "PERCENTAGE"
FIXED = "FIXED"

ROLE_SELLER = "SELLER"
ROLE_MANAGER = "MANAGER"
ROLE_SCANNER = "SCANNER"
ROLES = (ROLE_SELLER, ROLE_MANAGER, ROLE_SCANNER)


def _validate_commission(commission_type: Optional[str],
                         commission_value: Optional[float],
                         parent_commission_percent: Optional[float]) -> None:
    if commission_type not in (None, PERCENTAGE, FIXED):
        raise ValidationError(f"Unknown commission type: {commission_type}")
    if commission_value is not None:
        if commission_value < 0:
            raise ValidationError("Commission cannot be negative")
        if commission_type == PERCENTAGE and commission_value > 100:
            raise ValidationError("Commission percentage above 100")
    if parent_commission_percent is not None and \
            not 0 <= parent_commission_percent <= 100:
        raise ValidationError("Parent commission must be within 0..100")


async def add_staff(
    db: GatedAsyncSession,
    *,
    organizer_id: str,
    staff_user_id: str,
    name: str,
    event_id: Optional[str] = None,
    role: str = ROLE_SELLER,
    assigned_by_staff_id: Optional[str] = None,
    commission_type: Optional[str] = None,
    commission_value: Optional[float] = None,
    parent_commission_percent: Optional[float] = None,
    can_assign_sub_sellers: bool = False,
    max_sub_sellers: Optional[int] = None,
    accept_cash_in_person: bool = False,
) -> str:
    if role not in ROLES:
        raise ValidationError(f"Unknown staff role: {role}")
    _validate_commission(commission_type, commission_value,
                         parent_commission_percent)
    now = now_ms()
    level = 1

    async with db.gated():
        async with db.session.begin():
            if assigned_by_staff_id is not None:
                # touch the parent first so concurrent inserts under the
                # same parent serialize on the sub-seller limit
                parent = (await db.session.execute(text("""
                    UPDATE event_staff SET updated_at = :now
                    WHERE id = :id
                    RETURNING organizer_id, event_id, hierarchy_level,
                              can_assign_sub_sellers, max_sub_sellers,
                              is_active
                """), {"id": assigned_by_staff_id, "now": now})
                ).mappings().first()
                if parent is None:
                    raise NotFoundError("Staff", assigned_by_staff_id)
                if parent["organizer_id"] != organizer_id:
                    raise AuthorizationError(
                        "Parent staff belongs to another organizer")
                if not parent["can_assign_sub_sellers"] or \
                        not parent["is_active"]:
                    raise AuthorizationError(
                        "Parent staff may not assign sub-sellers")
                if parent["event_id"] is not None and \
                        event_id != parent["event_id"]:
                    raise ValidationError(
                        "Sub-seller must work the parent's event")
                level = int(parent["hierarchy_level"]) + 1
                if level > MAX_STAFF_DEPTH:
                    raise ValidationError(
                        f"Staff hierarchy is limited to {MAX_STAFF_DEPTH} "
                        f"levels")
                if parent["max_sub_sellers"] is not None:
                    n = (await db.session.execute(text("""
                        SELECT COUNT(*) FROM event_staff
                        WHERE assigned_by_staff_id = :id AND is_active
                    """), {"id": assigned_by_staff_id})).scalar_one()
                    if n >= parent["max_sub_sellers"]:
                        raise ConflictError(
                            f"Staff {assigned_by_staff_id} already has "
                            f"{n} sub-sellers")

            staff_id = new_id()
            db.session.add(EventStaff(
                id=staff_id,
                event_id=event_id,
                organizer_id=organizer_id,
                staff_user_id=staff_user_id,
                name=name,
                role=role,
                assigned_by_staff_id=assigned_by_staff_id,
                hierarchy_level=level,
                can_assign_sub_sellers=(can_assign_sub_sellers
                                        and level < MAX_STAFF_DEPTH),
                max_sub_sellers=max_sub_sellers,
                commission_type=commission_type,
                commission_value=commission_value,
                parent_commission_percent=parent_commission_percent,
                accept_cash_in_person=accept_cash_in_person,
                is_active=True,
                tickets_sold=0,
                commission_earned=0,
                cash_collected=0,
                created_at=now,
                updated_at=now,
            ))
    log.info(f"staff {staff_id} ({name}) added at level {level}")
    return staff_id


# UN-GATED internal function
async def load_staff(session: AsyncSession, staff_id: str) -> Dict[str, Any]:
    row = (await session.execute(text("""
        SELECT * FROM event_staff WHERE id = :id
    """), {"id": staff_id})).mappings().first()
    if row is None:
        raise NotFoundError("Staff", staff_id)
    return dict(row)


def compute_commission(staff: Dict[str, Any], subtotal_cents: int,
                       ticket_count: int) -> int:
    ctype = staff.get("commission_type")
    value = staff.get("commission_value")
    if not value:
        return 0
    if ctype == PERCENTAGE:
        return percent_of(subtotal_cents, value)
    if ctype == FIXED:
        return int(round(value)) * ticket_count
    return 0


# UN-GATED: runs inside the completing transaction
async def credit_sale(
    session: AsyncSession,
    staff: Dict[str, Any],
    *,
    order_id: str,
    event_id: str,
    subtotal_cents: int,
    total_cents: int,
    ticket_count: int,
    payment_method: str = "CASH",
    now: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Attribute a completed sale to a staff node. The direct parent, if it
    takes a cut, gets parent_commission_percent of the seller's commission,
    paid out of the seller's share.
    """
    now = now or now_ms()
    commission = compute_commission(staff, subtotal_cents, ticket_count)

    override = 0
    parent: Optional[Dict[str, Any]] = None
    if staff.get("assigned_by_staff_id") and commission > 0:
        parent = await load_staff(session, staff["assigned_by_staff_id"])
        pct = parent.get("parent_commission_percent") or 0
        if parent["is_active"] and pct > 0:
            override = percent_of(commission, pct)
            commission -= override
        else:
            parent = None

    cash = total_cents if payment_method == "CASH" else 0
    await session.execute(text("""
        UPDATE event_staff
        SET tickets_sold = tickets_sold + :n,
            cash_collected = cash_collected + :cash,
            commission_earned = commission_earned + :c,
            updated_at = :now
        WHERE id = :id
    """), {"id": staff["id"], "n": ticket_count, "cash": cash,
           "c": commission, "now": now})
    session.add(StaffSale(
        id=new_id(), order_id=order_id, event_id=event_id,
        staff_id=staff["id"], staff_user_id=staff["staff_user_id"],
        ticket_count=ticket_count, commission_cents=commission,
        payment_method=payment_method, is_override=False, created_at=now,
    ))

    if parent is not None:
        await session.execute(text("""
            UPDATE event_staff
            SET commission_earned = commission_earned + :c, updated_at = :now
            WHERE id = :id
        """), {"id": parent["id"], "c": override, "now": now})
        session.add(StaffSale(
            id=new_id(), order_id=order_id, event_id=event_id,
            staff_id=parent["id"], staff_user_id=parent["staff_user_id"],
            ticket_count=ticket_count, commission_cents=override,
            payment_method=payment_method, is_override=True, created_at=now,
        ))

    await session.execute(text("""
        UPDATE tickets SET sold_by_staff_id = :sid WHERE order_id = :oid
    """), {"sid": staff["id"], "oid": order_id})

    log.info(f"staff {staff['id']} credited {ticket_count} tickets, "
             f"commission {commission}"
             + (f", override {override} to {parent['id']}" if parent else ""))
    return {
        "commission_cents": commission,
        "override_cents": override,
        "parent_staff_id": parent["id"] if parent else None,
    }

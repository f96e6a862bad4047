# model/inventory.py
"""
Inventory ledger: per-tier seat counters.

Every reservation is a single conditional UPDATE that checks the remaining
capacity and bumps the counters in one statement, so two buyers can never both
pass the availability check. Nothing that references a reservation (orders,
tickets) may be written before reserve() has returned.

Pools:
  individual   -- whole tier (individual mode) or the individual sub-pool
                  (mixed mode); one unit == one seat
  table        -- table sub-pool; one unit == one table of table_capacity
  group:<id>   -- a named TableGroup; one unit == one table of that group

`sold` on the tier always counts seats across every pool and is bounded by
`quantity`; the sub-pool counters are bounded by their own capacity.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Any, Optional

from loguru import logger
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import (
    InsufficientInventoryError, NotFoundError, ValidationError,
)
from ..helpers import now_ms
from .db import (
    MODE_INDIVIDUAL, MODE_MIXED, MODE_TABLE,
    POOL_INDIVIDUAL, POOL_TABLE, POOL_GROUP_PREFIX,
)

log = logger.bind(component="inventory")


@dataclass(frozen=True)
class Reservation:
    tier_id: str
    pool: str
    units: int
    seats: int
    unit_price_cents: int
    sold_after: int
    version: int


# ------------------------------------------------------------------------------
# Internal lookups
# ------------------------------------------------------------------------------

async def _tier_row(session: AsyncSession, tier_id: str) -> Dict[str, Any]:
    row = (await session.execute(text("""
        SELECT id, event_id, name, price_cents, quantity, sold, version,
               allocation_mode, table_capacity, table_quantity, table_sold,
               individual_quantity, individual_sold, is_active,
               sale_start, sale_end
        FROM ticket_tiers WHERE id = :id
    """), {"id": tier_id})).mappings().first()
    if row is None:
        raise NotFoundError("Ticket tier", tier_id)
    return dict(row)


async def _group_row(session: AsyncSession, tier_id: str,
                     group_id: str) -> Dict[str, Any]:
    row = (await session.execute(text("""
        SELECT id, seats_per_table, number_of_tables, sold
        FROM table_groups WHERE id = :gid AND tier_id = :tid
    """), {"gid": group_id, "tid": tier_id})).mappings().first()
    if row is None:
        raise NotFoundError("Table group", group_id)
    return dict(row)


def _check_pool(tier: Dict[str, Any], pool: str) -> None:
    mode = tier["allocation_mode"] or MODE_INDIVIDUAL
    if pool == POOL_INDIVIDUAL:
        if mode == MODE_TABLE:
            raise ValidationError(
                f"Tier {tier['id']} only sells whole tables")
        return
    if pool == POOL_TABLE:
        if mode == MODE_INDIVIDUAL or not tier["table_capacity"]:
            raise ValidationError(
                f"Tier {tier['id']} does not sell tables")
        return
    if pool.startswith(POOL_GROUP_PREFIX):
        if mode == MODE_INDIVIDUAL:
            raise ValidationError(
                f"Tier {tier['id']} does not sell tables")
        return
    raise ValidationError(f"Unknown allocation pool: {pool}")


def tier_capacity(tier: Dict[str, Any]) -> int:
    """Total seat capacity of a tier, whatever its allocation mode."""
    return int(tier["quantity"])


def pool_unit_price(tier: Dict[str, Any], pool: str,
                    seats_per_unit: int) -> int:
    if pool == POOL_INDIVIDUAL or tier["allocation_mode"] == MODE_TABLE:
        # table mode prices the whole table
        return int(tier["price_cents"])
    return int(tier["price_cents"]) * seats_per_unit


# ------------------------------------------------------------------------------
# Public API
# ------------------------------------------------------------------------------

# UN-GATED: runs inside the caller's transaction
async def reserve(
    session: AsyncSession,
    tier_id: str,
    quantity: int,
    pool: str = POOL_INDIVIDUAL,
    now: Optional[int] = None,
    event_id: Optional[str] = None,
) -> Reservation:
    """
    Atomically claim `quantity` units of `pool` on a tier.

    Must run inside the caller's transaction. Raises
    InsufficientInventoryError if the pool (or the tier as a whole) cannot
    take the request; nothing is written in that case.
    """
    if not isinstance(quantity, int) or quantity < 1:
        raise ValidationError(f"Invalid quantity: {quantity!r}")

    now = now or now_ms()
    tier = await _tier_row(session, tier_id)
    if event_id is not None and tier["event_id"] != event_id:
        raise ValidationError(
            f"Tier {tier_id} does not belong to event {event_id}")
    if not tier["is_active"]:
        raise ValidationError(f"Tier {tier_id} is not on sale")
    if tier["sale_start"] and now < tier["sale_start"]:
        raise ValidationError(f"Sales for tier {tier_id} have not started")
    if tier["sale_end"] and now > tier["sale_end"]:
        raise ValidationError(f"Sales for tier {tier_id} have ended")
    _check_pool(tier, pool)

    params = {"id": tier_id, "n": quantity, "now": now}

    if pool.startswith(POOL_GROUP_PREFIX):
        group_id = pool[len(POOL_GROUP_PREFIX):]
        group = await _group_row(session, tier_id, group_id)
        seats_per_unit = int(group["seats_per_table"])
        seats = quantity * seats_per_unit
        row = (await session.execute(text("""
            UPDATE table_groups
            SET sold = sold + :n
            WHERE id = :gid AND tier_id = :id
              AND sold + :n <= number_of_tables
            RETURNING sold
        """), {**params, "gid": group_id})).first()
        if row is None:
            raise InsufficientInventoryError(
                tier_id, quantity,
                max(0, int(group["number_of_tables"]) - int(group["sold"])))
        # the group counter is rolled back with the transaction if the
        # aggregate check below fails
        row = (await session.execute(text("""
            UPDATE ticket_tiers
            SET sold = sold + :seats,
                version = version + 1,
                first_sale_at = COALESCE(first_sale_at, :now),
                updated_at = :now
            WHERE id = :id AND sold + :seats <= quantity
            RETURNING sold, version
        """), {**params, "seats": seats})).first()
        if row is None:
            raise InsufficientInventoryError(
                tier_id, seats, max(0, tier["quantity"] - tier["sold"]))

    elif pool == POOL_TABLE:
        seats_per_unit = int(tier["table_capacity"])
        seats = quantity * seats_per_unit
        row = (await session.execute(text("""
            UPDATE ticket_tiers
            SET table_sold = table_sold + :n,
                sold = sold + :seats,
                version = version + 1,
                first_sale_at = COALESCE(first_sale_at, :now),
                updated_at = :now
            WHERE id = :id
              AND table_sold + :n <= COALESCE(table_quantity, 0)
              AND sold + :seats <= quantity
            RETURNING sold, version
        """), {**params, "seats": seats})).first()
        if row is None:
            raise InsufficientInventoryError(
                tier_id, quantity,
                max(0, (tier["table_quantity"] or 0) - tier["table_sold"]))

    elif tier["allocation_mode"] == MODE_MIXED:
        seats_per_unit = 1
        seats = quantity
        row = (await session.execute(text("""
            UPDATE ticket_tiers
            SET individual_sold = individual_sold + :n,
                sold = sold + :n,
                version = version + 1,
                first_sale_at = COALESCE(first_sale_at, :now),
                updated_at = :now
            WHERE id = :id
              AND individual_sold + :n <= COALESCE(individual_quantity, 0)
              AND sold + :n <= quantity
            RETURNING sold, version
        """), params)).first()
        if row is None:
            raise InsufficientInventoryError(
                tier_id, quantity,
                max(0, (tier["individual_quantity"] or 0)
                    - tier["individual_sold"]))

    else:
        seats_per_unit = 1
        seats = quantity
        row = (await session.execute(text("""
            UPDATE ticket_tiers
            SET sold = sold + :n,
                version = version + 1,
                first_sale_at = COALESCE(first_sale_at, :now),
                updated_at = :now
            WHERE id = :id AND sold + :n <= quantity
            RETURNING sold, version
        """), params)).first()
        if row is None:
            raise InsufficientInventoryError(
                tier_id, quantity, max(0, tier["quantity"] - tier["sold"]))

    log.debug(f"reserved {quantity} x {pool} on tier {tier_id} "
              f"(sold={row[0]}, v{row[1]})")
    return Reservation(
        tier_id=tier_id,
        pool=pool,
        units=quantity,
        seats=seats,
        unit_price_cents=pool_unit_price(tier, pool, seats_per_unit),
        sold_after=int(row[0]),
        version=int(row[1]),
    )


# UN-GATED
async def release(
    session: AsyncSession,
    tier_id: str,
    units: int,
    seats: int,
    pool: str = POOL_INDIVIDUAL,
    now: Optional[int] = None,
) -> int:
    """
    Give back `units` of `pool` (`seats` seats in total) to a tier.

    Counters are floored at zero. Callers only pass units for tickets they
    have just moved out of a live status in the same transaction, which is
    what keeps a ticket from being released twice. Returns the new `sold`,
    or -1 if the tier no longer exists.
    """
    if units <= 0:
        return -1
    now = now or now_ms()
    params = {"id": tier_id, "n": units, "seats": seats, "now": now}

    if pool.startswith(POOL_GROUP_PREFIX):
        await session.execute(text("""
            UPDATE table_groups
            SET sold = CASE WHEN sold >= :n THEN sold - :n ELSE 0 END
            WHERE id = :gid AND tier_id = :id
        """), {**params, "gid": pool[len(POOL_GROUP_PREFIX):]})
        sub = ""
    elif pool == POOL_TABLE:
        sub = ("table_sold = CASE WHEN table_sold >= :n "
               "THEN table_sold - :n ELSE 0 END,")
    else:
        # individual_sold stays 0 outside mixed mode, the floor keeps it so
        sub = ("individual_sold = CASE WHEN individual_sold >= :n "
               "THEN individual_sold - :n ELSE 0 END,")

    row = (await session.execute(text(f"""
        UPDATE ticket_tiers
        SET {sub}
            sold = CASE WHEN sold >= :seats THEN sold - :seats ELSE 0 END,
            version = version + 1,
            updated_at = :now
        WHERE id = :id
        RETURNING sold
    """), params)).first()
    if row is None:
        log.warning(f"release on missing tier {tier_id}, skipped")
        return -1
    log.debug(f"released {units} x {pool} on tier {tier_id} (sold={row[0]})")
    return int(row[0])


# UN-GATED
async def availability(session: AsyncSession, tier_id: str) -> Dict[str, Any]:
    """Capacity / sold / available for the tier and each of its pools."""
    tier = await _tier_row(session, tier_id)
    out: Dict[str, Any] = {
        "tier_id": tier_id,
        "name": tier["name"],
        "allocation_mode": tier["allocation_mode"],
        "capacity": tier_capacity(tier),
        "sold": int(tier["sold"]),
        "available": max(0, tier_capacity(tier) - int(tier["sold"])),
        "version": int(tier["version"]),
        "pools": {},
    }
    mode = tier["allocation_mode"]
    if mode == MODE_MIXED:
        iq = tier["individual_quantity"] or 0
        out["pools"][POOL_INDIVIDUAL] = {
            "capacity": iq, "sold": tier["individual_sold"],
            "available": max(0, iq - tier["individual_sold"]),
        }
    if mode in (MODE_TABLE, MODE_MIXED) and tier["table_capacity"]:
        tq = tier["table_quantity"] or 0
        out["pools"][POOL_TABLE] = {
            "capacity": tq, "sold": tier["table_sold"],
            "available": max(0, tq - tier["table_sold"]),
            "seats_per_table": tier["table_capacity"],
        }
    groups = (await session.execute(text("""
        SELECT id, seats_per_table, number_of_tables, sold
        FROM table_groups WHERE tier_id = :id
    """), {"id": tier_id})).mappings().all()
    for g in groups:
        out["pools"][f"{POOL_GROUP_PREFIX}{g['id']}"] = {
            "capacity": g["number_of_tables"], "sold": g["sold"],
            "available": max(0, g["number_of_tables"] - g["sold"]),
            "seats_per_table": g["seats_per_table"],
        }
    return out

"""
Cash order tests

Reservation at creation, approval by cash-authorized staff, activation codes,
hold expiry, and the platform debt booked under the pay-as-you-sell model.
"""

import pytest

from boxoffice.config import CASH_HOLD_MINUTES
from boxoffice.errors import (
    AuthorizationError, InvalidTransitionError, NotFoundError,
    ValidationError,
)
from boxoffice.helpers import now_ms
from boxoffice.model import cash, orders, platformdebt
from boxoffice.model.db import (
    COMPLETED, CREDIT_CARD, EXPIRED, PENDING_PAYMENT, PREPAY,
    T_CANCELLED, T_PENDING, T_PENDING_ACTIVATION, T_VALID,
)

WALK_IN = {"name": "Walk In"}


async def _setup(seed, payment_model=CREDIT_CARD, quantity=10, **staff_kw):
    event_id = await seed.event(payment_model=payment_model)
    tier_id = await seed.tier(event_id, quantity=quantity, price_cents=1000)
    staff_kw.setdefault("accept_cash_in_person", True)
    staff_kw.setdefault("commission_type", "PERCENTAGE")
    staff_kw.setdefault("commission_value", 10)
    staff_id = await seed.staff(**staff_kw)
    return event_id, tier_id, staff_id


async def _cash_order(db, event_id, tier_id, quantity=3, buyer=None):
    return await cash.create_cash_order(
        db, event_id, buyer or WALK_IN,
        [{"tier_id": tier_id, "quantity": quantity}])


class TestCreateCashOrder:
    @pytest.mark.asyncio
    async def test_reserves_and_holds(self, db, seed):
        event_id, tier_id, _ = await _setup(seed)
        before = now_ms()

        out = await _cash_order(db, event_id, tier_id)

        assert out["status"] == PENDING_PAYMENT
        assert out["total_cents"] == out["subtotal_cents"] == 3000
        assert out["platform_fee_cents"] == 0
        assert out["order_number"].startswith("CASH-")
        assert out["hold_expires_at"] >= before + CASH_HOLD_MINUTES * 60_000
        assert (await seed.tier_row(tier_id))["sold"] == 3
        order = await seed.order_row(out["order_id"])
        assert order["max_retries"] == 0
        assert not order["retry_eligible"]
        tickets = await seed.tickets(out["order_id"])
        assert {t["status"] for t in tickets} == {T_PENDING}
        assert await seed.scalar(
            "SELECT COUNT(*) FROM outbox WHERE kind = 'cash_order.created'"
        ) == 1

    @pytest.mark.asyncio
    async def test_email_is_optional_but_validated(self, db, seed):
        event_id, tier_id, _ = await _setup(seed)

        with pytest.raises(ValidationError):
            await _cash_order(db, event_id, tier_id,
                              buyer={"name": "X", "email": "bogus"})


class TestApprove:
    @pytest.mark.asyncio
    async def test_scenario_credit_card_model(self, db, seed):
        """
        Given: a pay-as-you-sell event and a 10% cash seller
        When: the seller approves a 3-ticket cash order of 30.00
        Then: tickets are valid, the seller is credited and the organizer
              owes the platform fee of 3.7% + 1.79
        """
        event_id, tier_id, staff_id = await _setup(seed)
        out = await _cash_order(db, event_id, tier_id)

        res = await cash.approve_cash_order(db, out["order_id"], staff_id)

        assert res["already_completed"] is False
        assert res["tickets_activated"] == 3
        assert res["commission_cents"] == 300
        assert res["platform_fee_owed"] == 111 + 179

        order = await seed.order_row(out["order_id"])
        assert order["status"] == COMPLETED
        assert order["sold_by_staff_id"] == staff_id
        tickets = await seed.tickets(out["order_id"])
        assert {t["status"] for t in tickets} == {T_VALID}
        assert {t["sold_by_staff_id"] for t in tickets} == {staff_id}

        staff = await seed.row("SELECT * FROM event_staff WHERE id = :id",
                               id=staff_id)
        assert staff["tickets_sold"] == 3
        assert staff["cash_collected"] == 3000
        assert staff["commission_earned"] == 300

        debt = await platformdebt.get_debt(db, "org-1")
        assert debt["remaining_debt_cents"] == 290
        assert debt["ledger"][0]["transaction_type"] == "CASH_ORDER_DEBT"
        assert debt["ledger"][0]["order_id"] == out["order_id"]

    @pytest.mark.asyncio
    async def test_replay_books_nothing_twice(self, db, seed):
        event_id, tier_id, staff_id = await _setup(seed)
        out = await _cash_order(db, event_id, tier_id)

        await cash.approve_cash_order(db, out["order_id"], staff_id)
        again = await cash.approve_cash_order(db, out["order_id"], staff_id)

        assert again["already_completed"] is True
        assert (await platformdebt.get_debt(db, "org-1"))[
            "remaining_debt_cents"] == 290
        assert await seed.scalar("SELECT COUNT(*) FROM staff_sales") == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("model", [PREPAY, None])
    async def test_prepay_books_no_debt(self, db, seed, model):
        event_id, tier_id, staff_id = await _setup(seed, payment_model=model)
        out = await _cash_order(db, event_id, tier_id)

        res = await cash.approve_cash_order(db, out["order_id"], staff_id)

        assert res["platform_fee_owed"] == 0
        debt = await platformdebt.get_debt(db, "org-1")
        assert debt["remaining_debt_cents"] == 0
        assert debt["ledger"] == []

    @pytest.mark.asyncio
    async def test_legacy_pay_as_sell_is_credit_card(self, db, seed):
        event_id, tier_id, staff_id = await _setup(
            seed, payment_model="PAY_AS_SELL")
        out = await _cash_order(db, event_id, tier_id, quantity=1)

        res = await cash.approve_cash_order(db, out["order_id"], staff_id)

        assert res["platform_fee_owed"] == 37 + 179

    @pytest.mark.asyncio
    async def test_staff_needs_cash_permission(self, db, seed):
        event_id, tier_id, _ = await _setup(seed)
        plain = await seed.staff(accept_cash_in_person=False)
        out = await _cash_order(db, event_id, tier_id)

        with pytest.raises(AuthorizationError):
            await cash.approve_cash_order(db, out["order_id"], plain)
        assert (await seed.order_row(out["order_id"]))[
            "status"] == PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_staff_of_other_organizer(self, db, seed):
        event_id, tier_id, _ = await _setup(seed)
        stranger = await seed.staff("org-2", accept_cash_in_person=True)
        out = await _cash_order(db, event_id, tier_id)

        with pytest.raises(AuthorizationError):
            await cash.approve_cash_order(db, out["order_id"], stranger)

    @pytest.mark.asyncio
    async def test_staff_scoped_to_other_event(self, db, seed):
        event_id, tier_id, _ = await _setup(seed)
        other_event = await seed.event()
        scoped = await seed.staff(event_id=other_event,
                                  accept_cash_in_person=True)
        out = await _cash_order(db, event_id, tier_id)

        with pytest.raises(AuthorizationError):
            await cash.approve_cash_order(db, out["order_id"], scoped)

    @pytest.mark.asyncio
    async def test_digital_order_is_not_cash(self, db, seed, buyer):
        event_id, tier_id, staff_id = await _setup(seed)
        out = await orders.create_order(
            db, event_id, buyer, [{"tier_id": tier_id, "quantity": 1}])

        with pytest.raises(ValidationError):
            await cash.approve_cash_order(db, out["order_id"], staff_id)

    @pytest.mark.asyncio
    async def test_parent_takes_override(self, db, seed):
        """
        Given: a seller whose parent takes 20% of sub-seller commission
        When: the seller completes a 30.00 cash sale at 10%
        Then: the parent gets 0.60 and the seller keeps 2.40
        """
        event_id, tier_id, _ = await _setup(seed)
        parent = await seed.staff(can_assign_sub_sellers=True,
                                  parent_commission_percent=20,
                                  role="MANAGER")
        child = await seed.staff(assigned_by_staff_id=parent,
                                 accept_cash_in_person=True,
                                 commission_type="PERCENTAGE",
                                 commission_value=10)
        out = await _cash_order(db, event_id, tier_id)

        res = await cash.approve_cash_order(db, out["order_id"], child)

        assert res["commission_cents"] == 240
        sales = await seed.rows(
            "SELECT * FROM staff_sales ORDER BY is_override")
        assert [(s["staff_id"], s["commission_cents"], bool(s["is_override"]))
                for s in sales] == [(child, 240, False), (parent, 60, True)]
        p = await seed.row("SELECT * FROM event_staff WHERE id = :id",
                           id=parent)
        assert p["commission_earned"] == 60
        assert p["tickets_sold"] == 0


class TestOrganizerApprove:
    @pytest.mark.asyncio
    async def test_only_the_owner_or_an_admin(self, db, seed):
        event_id, tier_id, _ = await _setup(seed)
        a = await _cash_order(db, event_id, tier_id, quantity=1)
        b = await _cash_order(db, event_id, tier_id, quantity=1)

        with pytest.raises(AuthorizationError):
            await cash.organizer_approve_cash_order(db, a["order_id"],
                                                    "org-2")
        res = await cash.organizer_approve_cash_order(db, a["order_id"],
                                                      "org-1")
        assert res["already_completed"] is False
        assert res["commission_cents"] == 0

        res = await cash.organizer_approve_cash_order(
            db, b["order_id"], None, is_admin=True)
        assert (await seed.order_row(b["order_id"]))["status"] == COMPLETED


class TestActivationCode:
    @pytest.mark.asyncio
    async def test_code_completes_order_once(self, db, seed):
        event_id, tier_id, staff_id = await _setup(seed)
        out = await _cash_order(db, event_id, tier_id, quantity=2)

        issued = await cash.generate_cash_activation_code(
            db, out["order_id"], staff_id)
        code = issued["activation_code"]

        assert len(code) == cash.CODE_LENGTH
        assert set(code) <= set(cash.CODE_ALPHABET)
        assert issued["ticket_count"] == 2
        order = await seed.order_row(out["order_id"])
        assert order["hold_expires_at"] == issued["expires_at"]
        tickets = await seed.tickets(out["order_id"])
        assert {t["status"] for t in tickets} == {T_PENDING_ACTIVATION}
        # only the hash is stored
        assert code not in {t["activation_code_hash"] for t in tickets}

        res = await cash.activate_tickets(db, f" {code.lower()} ",
                                          "guest@example.com", "Guest")
        again = await cash.activate_tickets(db, code)

        assert res["already_activated"] is False
        assert res["commission_cents"] == 200
        assert again["already_activated"] is True
        tickets = await seed.tickets(out["order_id"])
        assert {t["status"] for t in tickets} == {T_VALID}
        assert {t["attendee_email"] for t in tickets} == {"guest@example.com"}
        assert (await seed.order_row(out["order_id"]))["status"] == COMPLETED

    @pytest.mark.asyncio
    async def test_unknown_code(self, db, seed):
        with pytest.raises(NotFoundError):
            await cash.activate_tickets(db, "ZZZZZZZZ")
        with pytest.raises(ValidationError):
            await cash.activate_tickets(db, "  ")

    @pytest.mark.asyncio
    async def test_expired_code(self, db, seed):
        event_id, tier_id, staff_id = await _setup(seed)
        out = await _cash_order(db, event_id, tier_id, quantity=1)
        issued = await cash.generate_cash_activation_code(
            db, out["order_id"], staff_id)
        await seed.execute(
            "UPDATE tickets SET activation_code_expiry = 1 "
            "WHERE order_id = :id", id=out["order_id"])

        with pytest.raises(ValidationError):
            await cash.activate_tickets(db, issued["activation_code"])

    @pytest.mark.asyncio
    async def test_code_keeps_hold_alive(self, db, seed):
        event_id, tier_id, staff_id = await _setup(seed)
        out = await _cash_order(db, event_id, tier_id)
        await cash.generate_cash_activation_code(db, out["order_id"],
                                                 staff_id)

        res = await cash.expire_cash_orders(
            db, now=out["hold_expires_at"] + 60_000)

        assert res["expired"] == 0


class TestExpiry:
    @pytest.mark.asyncio
    async def test_unpaid_hold_expires_and_releases(self, db, seed):
        event_id, tier_id, staff_id = await _setup(seed)
        out = await _cash_order(db, event_id, tier_id)

        early = await cash.expire_cash_orders(
            db, now=out["hold_expires_at"] - 1)
        res = await cash.expire_cash_orders(
            db, now=out["hold_expires_at"] + 1)
        again = await cash.expire_cash_orders(
            db, now=out["hold_expires_at"] + 1)

        assert early == {"expired": 0, "released": 0}
        assert res == {"expired": 1, "released": 3}
        assert again["expired"] == 0
        assert (await seed.tier_row(tier_id))["sold"] == 0
        assert (await seed.order_row(out["order_id"]))["status"] == EXPIRED
        tickets = await seed.tickets(out["order_id"])
        assert {t["status"] for t in tickets} == {T_CANCELLED}

        with pytest.raises(InvalidTransitionError):
            await cash.approve_cash_order(db, out["order_id"], staff_id)

"""
Order lifecycle tests: creation, payment confirmation, failure, cancellation,
disputes and debt settlement through digital payments.
"""

import pytest

from boxoffice.errors import (
    InsufficientInventoryError, InvalidTransitionError, NotFoundError,
    ValidationError,
)
from boxoffice.model import orders, platformdebt, transitions
from boxoffice.model.db import (
    CANCELLED, COMPLETED, DISPUTED, EXPIRED, FAILED, PENDING,
    PENDING_PAYMENT, REFUNDED,
)


@pytest.fixture
async def tier(seed):
    event_id = await seed.event()
    tier_id = await seed.tier(event_id, quantity=10, price_cents=1000)
    return event_id, tier_id


async def _order(db, tier, buyer, quantity=2, **kw):
    event_id, tier_id = tier
    return await orders.create_order(
        db, event_id, buyer, [{"tier_id": tier_id, "quantity": quantity}],
        **kw)


class TestTransitionTable:
    def test_allowed_moves(self):
        assert transitions.can_transition(PENDING, COMPLETED)
        assert transitions.can_transition(FAILED, PENDING)
        assert transitions.can_transition(COMPLETED, DISPUTED)
        assert transitions.can_transition(DISPUTED, REFUNDED)
        assert not transitions.can_transition(COMPLETED, PENDING)
        assert not transitions.can_transition(REFUNDED, COMPLETED)
        assert not transitions.can_transition(EXPIRED, PENDING_PAYMENT)

    def test_terminal_states_have_no_exit(self):
        for status in transitions.TERMINAL:
            assert status not in transitions.TRANSITIONS

    def test_allowed_from(self):
        assert set(transitions.allowed_from(COMPLETED)) == {
            PENDING, PENDING_PAYMENT, DISPUTED}
        assert set(transitions.allowed_from(CANCELLED)) == {
            PENDING, PENDING_PAYMENT, FAILED}


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_fees_and_holds(self, db, seed, tier, buyer):
        """
        Given: a 10 USD tier
        When: 2 tickets are bought by card
        Then: platform fee 3.7% + 1.79 and processing 2.9% + 0.30 are added
        """
        out = await _order(db, tier, buyer)

        assert out["status"] == PENDING
        assert out["subtotal_cents"] == 2000
        assert out["platform_fee_cents"] == 74 + 179
        assert out["processing_fee_cents"] == 58 + 30
        assert out["total_cents"] == 2000 + 253 + 88
        assert len(out["ticket_ids"]) == 2
        assert out["order_number"].startswith("ORD-")

        tickets = await seed.tickets(out["order_id"])
        assert {t["status"] for t in tickets} == {"PENDING"}
        assert (await seed.tier_row(tier[1]))["sold"] == 2

    @pytest.mark.asyncio
    async def test_free_orders_skip_processing_fee(self, db, tier, buyer):
        out = await _order(db, tier, buyer, payment_method="FREE")

        assert out["processing_fee_cents"] == 0

    @pytest.mark.asyncio
    async def test_shortfall_leaves_no_order(self, db, seed, tier, buyer):
        with pytest.raises(InsufficientInventoryError):
            await _order(db, tier, buyer, quantity=11)

        assert await seed.scalar("SELECT COUNT(*) FROM orders") == 0
        assert (await seed.tier_row(tier[1]))["sold"] == 0

    @pytest.mark.asyncio
    async def test_multi_tier_order_is_all_or_nothing(self, db, seed, tier,
                                                      buyer):
        event_id, tier_id = tier
        small = await seed.tier(event_id, quantity=1)

        with pytest.raises(InsufficientInventoryError):
            await orders.create_order(db, event_id, buyer, [
                {"tier_id": tier_id, "quantity": 3},
                {"tier_id": small, "quantity": 2},
            ])

        assert (await seed.tier_row(tier_id))["sold"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("bad", [
        {"name": "", "email": "a@example.com"},
        {"name": "Ada", "email": "not-an-email"},
    ])
    async def test_buyer_validation(self, db, tier, bad):
        with pytest.raises(ValidationError):
            await _order(db, tier, bad)

    @pytest.mark.asyncio
    async def test_rejects_unknown_method_and_event(self, db, tier, buyer):
        with pytest.raises(ValidationError):
            await _order(db, tier, buyer, payment_method="CASH")
        with pytest.raises(ValidationError):
            await _order(db, tier, buyer, max_retries=11)
        with pytest.raises(NotFoundError):
            await orders.create_order(db, "no-event", buyer,
                                      [{"tier_id": tier[1], "quantity": 1}])


class TestMarkPaid:
    @pytest.mark.asyncio
    async def test_paid_activates_tickets_once(self, db, seed, tier, buyer):
        out = await _order(db, tier, buyer)

        first = await orders.mark_order_paid(db, out["order_id"], "pi_123")
        second = await orders.mark_order_paid(db, out["order_id"], "pi_123")

        assert first["already_completed"] is False
        assert first["tickets_activated"] == 2
        assert second["already_completed"] is True
        order = await seed.order_row(out["order_id"])
        assert order["status"] == COMPLETED
        assert order["stripe_payment_intent_id"] == "pi_123"
        assert order["paid_at"] is not None
        tickets = await seed.tickets(out["order_id"])
        assert {t["status"] for t in tickets} == {"VALID"}
        assert await seed.scalar(
            "SELECT COUNT(*) FROM outbox WHERE kind = 'tickets.confirmed'"
        ) == 1

    @pytest.mark.asyncio
    async def test_paypal_column(self, db, seed, tier, buyer):
        out = await _order(db, tier, buyer, payment_method="PAYPAL")

        await orders.mark_order_paid(db, out["order_id"], "PP-9", "paypal")

        order = await seed.order_row(out["order_id"])
        assert order["paypal_order_id"] == "PP-9"
        assert order["stripe_payment_intent_id"] is None

    @pytest.mark.asyncio
    async def test_failed_order_cannot_be_paid(self, db, tier, buyer):
        out = await _order(db, tier, buyer)
        await orders.mark_order_failed(db, out["order_id"], "card_declined")

        with pytest.raises(InvalidTransitionError):
            await orders.mark_order_paid(db, out["order_id"], "pi_1")

    @pytest.mark.asyncio
    async def test_unknown_order(self, db):
        with pytest.raises(NotFoundError):
            await orders.mark_order_paid(db, "missing", "pi_1")


class TestMarkFailed:
    @pytest.mark.asyncio
    async def test_failed_keeps_holds(self, db, seed, tier, buyer):
        out = await _order(db, tier, buyer)

        first = await orders.mark_order_failed(db, out["order_id"], "declined")
        second = await orders.mark_order_failed(db, out["order_id"])

        assert first["already_failed"] is False
        assert first["retry_eligible"] is True
        assert second["already_failed"] is True
        order = await seed.order_row(out["order_id"])
        assert order["failure_reason"] == "declined"
        assert (await seed.tier_row(tier[1]))["sold"] == 2

    @pytest.mark.asyncio
    async def test_no_retry_budget(self, db, tier, buyer):
        out = await _order(db, tier, buyer, max_retries=0)

        res = await orders.mark_order_failed(db, out["order_id"])

        assert res["retry_eligible"] is False


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_releases_seats(self, db, seed, tier, buyer):
        out = await _order(db, tier, buyer, quantity=3)

        first = await orders.cancel_order(db, out["order_id"], "changed mind")
        second = await orders.cancel_order(db, out["order_id"])

        assert first["already_cancelled"] is False
        assert first["released"] == 3
        assert second["already_cancelled"] is True
        assert (await seed.tier_row(tier[1]))["sold"] == 0
        order = await seed.order_row(out["order_id"])
        assert order["status"] == CANCELLED
        assert not order["retry_eligible"]
        tickets = await seed.tickets(out["order_id"])
        assert {t["status"] for t in tickets} == {CANCELLED}

    @pytest.mark.asyncio
    async def test_failed_order_can_be_cancelled(self, db, seed, tier, buyer):
        out = await _order(db, tier, buyer)
        await orders.mark_order_failed(db, out["order_id"])

        await orders.cancel_order(db, out["order_id"])

        assert (await seed.tier_row(tier[1]))["sold"] == 0

    @pytest.mark.asyncio
    async def test_completed_order_cannot_be_cancelled(self, db, tier, buyer):
        out = await _order(db, tier, buyer)
        await orders.mark_order_paid(db, out["order_id"], "pi_1")

        with pytest.raises(InvalidTransitionError):
            await orders.cancel_order(db, out["order_id"])


class TestDisputes:
    @pytest.mark.asyncio
    async def test_won_dispute_restores_completed(self, db, seed, tier,
                                                  buyer):
        out = await _order(db, tier, buyer)
        await orders.mark_order_paid(db, out["order_id"], "pi_d1")

        opened = await orders.mark_order_disputed(
            db, "stripe", "dp_1", transaction_id="pi_d1",
            reason="fraudulent", amount_cents=2341)
        again = await orders.mark_order_disputed(
            db, "stripe", "dp_1", transaction_id="pi_d1")

        assert opened["order_found"] is True
        assert again["already_exists"] is True
        assert (await seed.order_row(out["order_id"]))["status"] == DISPUTED
        # tickets stay usable while the dispute is open
        tickets = await seed.tickets(out["order_id"])
        assert {t["status"] for t in tickets} == {"VALID"}

        res = await orders.resolve_dispute(db, "dp_1", "won")

        assert res["status"] == "WON"
        assert (await seed.order_row(out["order_id"]))["status"] == COMPLETED
        assert (await orders.resolve_dispute(db, "dp_1", "lost"))[
            "already_resolved"] is True

    @pytest.mark.asyncio
    async def test_lost_dispute_refunds(self, db, seed, tier, buyer):
        out = await _order(db, tier, buyer)
        await orders.mark_order_paid(db, out["order_id"], "pi_d2")
        await orders.mark_order_disputed(db, "stripe", "dp_2",
                                         transaction_id="pi_d2")

        res = await orders.resolve_dispute(db, "dp_2",
                                           "RESOLVED_BUYER_FAVOUR")

        assert res["status"] == "LOST"
        order = await seed.order_row(out["order_id"])
        assert order["status"] == REFUNDED
        assert order["refund_reason"] == "chargeback"
        assert (await seed.tier_row(tier[1]))["sold"] == 0

    @pytest.mark.asyncio
    async def test_other_outcome_leaves_order_disputed(self, db, seed, tier,
                                                       buyer):
        out = await _order(db, tier, buyer)
        await orders.mark_order_paid(db, out["order_id"], "pi_d3")
        await orders.mark_order_disputed(db, "stripe", "dp_3",
                                         order_id=out["order_id"])

        res = await orders.resolve_dispute(db, "dp_3", "CANCELED")

        assert res["status"] == "CLOSED"
        assert (await seed.order_row(out["order_id"]))["status"] == DISPUTED

    @pytest.mark.asyncio
    async def test_unmatched_dispute_is_recorded(self, db, seed):
        res = await orders.mark_order_disputed(db, "stripe", "dp_x",
                                               transaction_id="pi_unknown")

        assert res["order_found"] is False
        assert await seed.scalar(
            "SELECT COUNT(*) FROM payment_disputes") == 1
        assert (await orders.resolve_dispute(db, "dp_none", "won"))[
            "error"] == "dispute_not_found"

    @pytest.mark.asyncio
    async def test_dispute_on_pending_order_keeps_status(self, db, seed, tier,
                                                         buyer):
        out = await _order(db, tier, buyer)

        res = await orders.mark_order_disputed(db, "stripe", "dp_4",
                                               order_id=out["order_id"])

        assert res["success"] is True
        assert (await seed.order_row(out["order_id"]))["status"] == PENDING


class TestSettlement:
    @pytest.mark.asyncio
    async def test_digital_payment_recovers_debt(self, db, seed, tier, buyer):
        """
        Given: an organizer owing 5.00
        When: two digital orders each carry a settlement larger than what
              is left
        Then: only the owed amount is applied and recorded on the order
        """
        await platformdebt.admin_adjustment(db, "org-1", 500, "opening",
                                            "admin")
        a = await _order(db, tier, buyer, quantity=1)
        b = await _order(db, tier, buyer, quantity=1)

        res_a = await orders.mark_order_paid(db, a["order_id"], "pi_a",
                                             settlement_cents=300)
        res_b = await orders.mark_order_paid(db, b["order_id"], "pi_b",
                                             settlement_cents=300)

        assert res_a["debt_settled_cents"] == 300
        assert res_b["debt_settled_cents"] == 200
        assert (await seed.order_row(b["order_id"]))[
            "debt_settlement_cents"] == 200
        debt = await platformdebt.get_debt(db, "org-1")
        assert debt["remaining_debt_cents"] == 0
        assert debt["total_settled_cents"] == 500
        assert (await platformdebt.verify_balance(db, "org-1"))["ok"]


class TestGetOrder:
    @pytest.mark.asyncio
    async def test_view(self, db, tier, buyer):
        out = await _order(db, tier, buyer)

        view = await orders.get_order(db, out["order_id"])

        assert view["status"] == PENDING
        assert view["buyer_email"] == "ada@example.com"
        assert len(view["tickets"]) == 2
        assert view["tickets"][0]["ticket_code"].startswith("TCK-")
        assert view["paid_at"] is None

    @pytest.mark.asyncio
    async def test_missing(self, db):
        with pytest.raises(NotFoundError):
            await orders.get_order(db, "nope")

"""
Platform debt tests

The ledger is append-only; after any sequence of postings its signed sum
equals the organizer's remaining balance.
"""

import pytest

from boxoffice.errors import ConflictError, NotFoundError, ValidationError
from boxoffice.model import platformdebt


async def _cash_debt(db, order_id, subtotal, organizer_id="org-1"):
    async with db.gated():
        async with db.session.begin():
            return await platformdebt.add_cash_order_debt(
                db.session, organizer_id, order_id, "evt-1", subtotal)


class TestFee:
    @pytest.mark.parametrize("subtotal,fee", [
        (0, 0),
        (-100, 0),
        (1000, 37 + 179),
        (2000, 74 + 179),
        (4550, 168 + 179),
    ])
    def test_platform_fee(self, subtotal, fee):
        assert platformdebt.calculate_platform_fee(subtotal) == fee


class TestCashDebt:
    @pytest.mark.asyncio
    async def test_posted_once_per_order(self, db):
        first = await _cash_debt(db, "order-1", 1000)
        second = await _cash_debt(db, "order-1", 1000)

        assert first["posted"] is True
        assert first["new_balance"] == 216
        assert second["posted"] is False
        debt = await platformdebt.get_debt(db, "org-1")
        assert debt["remaining_debt_cents"] == 216
        assert debt["total_debt_cents"] == 216
        assert len(debt["ledger"]) == 1
        assert debt["last_cash_order_at"] is not None

    @pytest.mark.asyncio
    async def test_zero_subtotal_books_nothing(self, db):
        res = await _cash_debt(db, "order-free", 0)

        assert res["posted"] is False
        assert (await platformdebt.get_debt(db, "org-1"))["ledger"] == []


class TestManualPayment:
    @pytest.mark.asyncio
    async def test_reduces_balance(self, db):
        await _cash_debt(db, "order-1", 2000)

        res = await platformdebt.record_manual_payment(
            db, "org-1", 200, processed_by="admin", notes="wire 42")

        assert res == {"settled": 200, "remaining": 53}
        debt = await platformdebt.get_debt(db, "org-1")
        assert debt["ledger"][0]["transaction_type"] == "MANUAL_PAYMENT"
        assert debt["ledger"][0]["amount_cents"] == -200
        assert debt["ledger"][0]["processed_by"] == "admin"

    @pytest.mark.asyncio
    async def test_cannot_overpay(self, db):
        await _cash_debt(db, "order-1", 1000)

        with pytest.raises(ValidationError):
            await platformdebt.record_manual_payment(db, "org-1", 217,
                                                     "admin")

    @pytest.mark.asyncio
    async def test_requires_a_debt_record(self, db):
        with pytest.raises(NotFoundError):
            await platformdebt.record_manual_payment(db, "org-9", 10, "admin")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, 1.5])
    async def test_amount_must_be_positive_integer(self, db, amount):
        with pytest.raises(ValidationError):
            await platformdebt.record_manual_payment(db, "org-1", amount,
                                                     "admin")


class TestAdjustment:
    @pytest.mark.asyncio
    async def test_reduction_is_floored(self, db):
        await platformdebt.admin_adjustment(db, "org-1", 500, "opening",
                                            "admin")

        res = await platformdebt.admin_adjustment(db, "org-1", -800,
                                                  "write off", "admin")

        assert res == {"adjustment": -500, "new_balance": 0}

    @pytest.mark.asyncio
    async def test_notes_required(self, db):
        with pytest.raises(ValidationError):
            await platformdebt.admin_adjustment(db, "org-1", 100, "  ",
                                                "admin")

    @pytest.mark.asyncio
    async def test_reduction_without_record(self, db):
        with pytest.raises(ValidationError):
            await platformdebt.admin_adjustment(db, "org-7", -100, "oops",
                                                "admin")


    @pytest.mark.asyncio
    async def test_overdrawing_delta_is_refused(self, db, seed):
        """
        Given: a balance snapshot of 216 cents
        When: a delta that would take it below zero is posted directly
        Then: a ConflictError is raised and nothing is written
        """
        await _cash_debt(db, "order-1", 1000)

        with pytest.raises(ConflictError):
            async with db.gated():
                async with db.session.begin():
                    await platformdebt._apply_delta(
                        db.session, "org-1", platformdebt.MANUAL_PAYMENT,
                        -300, balance={"remaining_debt_cents": 216},
                        description="overdraw", now=1)

        res = await platformdebt.verify_balance(db, "org-1")
        assert res["ok"] is True
        assert res["remaining_debt_cents"] == 216
        assert await seed.scalar(
            "SELECT COUNT(*) FROM platform_debt_ledger") == 1


class TestLedgerInvariant:
    @pytest.mark.asyncio
    async def test_ledger_sums_to_balance(self, db):
        await _cash_debt(db, "order-1", 1000)
        await _cash_debt(db, "order-2", 4550)
        await platformdebt.record_manual_payment(db, "org-1", 100, "admin")
        await platformdebt.admin_adjustment(db, "org-1", 25, "late fee",
                                            "admin")
        async with db.gated():
            async with db.session.begin():
                await platformdebt.record_settlement(
                    db.session, "org-1", "order-3", 10_000)

        res = await platformdebt.verify_balance(db, "org-1")

        assert res["ok"] is True
        assert res["remaining_debt_cents"] == 0
        assert res["ledger_sum"] == 0

    @pytest.mark.asyncio
    async def test_settlement_without_record_is_ignored(self, db):
        async with db.gated():
            async with db.session.begin():
                res = await platformdebt.record_settlement(
                    db.session, "org-5", "order-x", 500)

        assert res == {"settled": 0, "remaining": 0}

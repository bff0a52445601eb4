"""Tests for the conditional and idempotent writes the ledgers rely on."""
import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from retail_core.models.audit import DailySalesEntry
from retail_core.models.debt import Debt
from retail_core.models.treasury import CashboxDaily
from retail_core.repositories.daily_sales_repo import DailySalesRepository
from retail_core.repositories.debt_repo import DebtRepository
from retail_core.repositories.party_repo import PartyRepository
from retail_core.repositories.product_repo import ProductRepository
from retail_core.repositories.treasury_repo import TreasuryRepository
from retail_core.utils.dates import utcnow


@pytest.mark.asyncio
class TestProductRepository:
    async def test_guarded_decrement_refuses_overdraw(self, test_db, product):
        repo = ProductRepository(test_db)

        result = await repo.apply_deltas(product.id, 0, -6, guard={"shop_qty": {"$gte": 6}})

        assert result is None
        assert (await repo.get(product.id)).shop_qty == 5

    async def test_deltas_keep_total_in_sync(self, test_db, product):
        repo = ProductRepository(test_db)

        result = await repo.apply_deltas(product.id, -2, 2)

        assert (result.warehouse_qty, result.shop_qty, result.stock_qty) == (8, 7, 15)

    async def test_cost_update_fails_on_stale_read(self, test_db, product):
        repo = ProductRepository(test_db)
        await repo.apply_deltas(product.id, 1, 0)

        assert await repo.compare_and_set_cost(product, 5, 6.0) is None


@pytest.mark.asyncio
class TestPartyRepository:
    async def test_take_credit_is_conditional(self, test_db, customer):
        repo = PartyRepository(test_db)
        await repo.inc_credit(customer.id, 10.0)

        assert await repo.take_credit(customer.id, 15.0) is None
        taken = await repo.take_credit(customer.id, 10.0)
        assert taken.credit_balance == 0.0

    async def test_record_purchase_sets_last_date(self, test_db, supplier):
        repo = PartyRepository(test_db)

        updated = await repo.record_purchase("Supplier", supplier.id, 40.0, utcnow())

        assert updated.total_purchases == 40.0
        assert updated.last_supply_date is not None


@pytest.mark.asyncio
class TestDebtRepository:
    async def test_one_debt_per_reference(self, test_db, customer):
        repo = DebtRepository(test_db)
        reference_id = ObjectId()

        def debt():
            return Debt(
                debtor_type="Customer",
                debtor_id=customer.id,
                original_amount=10.0,
                remaining_amount=10.0,
                due_date=utcnow(),
                reference_type="Invoice",
                reference_id=reference_id,
            )

        await repo.insert(debt())
        with pytest.raises(DuplicateKeyError):
            await repo.insert(debt())

    async def test_compare_and_set_guards_on_expected(self, test_db, customer):
        repo = DebtRepository(test_db)
        debt = await repo.insert(Debt(
            debtor_type="Customer",
            debtor_id=customer.id,
            original_amount=10.0,
            remaining_amount=10.0,
            due_date=utcnow(),
            reference_type="Manual",
            reference_id=customer.id,
        ))

        assert await repo.compare_and_set(debt.id, {"remaining_amount": 9.0}, {"remaining_amount": 5.0}) is None
        updated = await repo.compare_and_set(debt.id, {"remaining_amount": 10.0}, {"remaining_amount": 5.0})
        assert updated.remaining_amount == 5.0


@pytest.mark.asyncio
class TestTreasuryRepository:
    async def test_sequence_is_monotonic(self, test_db):
        repo = TreasuryRepository(test_db)

        assert [await repo.next_sequence("receiptNumber") for _ in range(3)] == [1, 2, 3]

    async def test_contribution_applies_and_reverts_once(self, test_db):
        repo = TreasuryRepository(test_db)
        await repo.insert_cashbox_if_missing(CashboxDaily(day="2026-05-01"))
        contribution_id = ObjectId()

        assert await repo.apply_contribution("2026-05-01", "sales_income", 10.0, contribution_id) is True
        assert await repo.apply_contribution("2026-05-01", "sales_income", 10.0, contribution_id) is False
        assert (await repo.get_cashbox("2026-05-01")).sales_income == 10.0

        assert await repo.revert_contribution("2026-05-01", "sales_income", 10.0, contribution_id) is True
        assert await repo.revert_contribution("2026-05-01", "sales_income", 10.0, contribution_id) is False
        assert (await repo.get_cashbox("2026-05-01")).sales_income == 0.0

    async def test_existing_cashbox_is_not_reseeded(self, test_db):
        repo = TreasuryRepository(test_db)
        await repo.insert_cashbox_if_missing(CashboxDaily(day="2026-05-01", opening_balance=100.0))

        await repo.insert_cashbox_if_missing(CashboxDaily(day="2026-05-01", opening_balance=999.0))

        assert (await repo.get_cashbox("2026-05-01")).opening_balance == 100.0


@pytest.mark.asyncio
class TestDailySalesRepository:
    async def test_entry_counts_once(self, test_db):
        repo = DailySalesRepository(test_db)
        entry = DailySalesEntry(invoice_id=ObjectId(), revenue=18.0, cost=10.0, profit=8.0, items_sold=2)
        await repo.ensure_day("2026-05-01")

        assert await repo.add_entry("2026-05-01", entry) is True
        assert await repo.add_entry("2026-05-01", entry) is False

        row = await repo.get("2026-05-01")
        assert row.total_revenue == 18.0
        assert row.invoice_count == 1

        assert await repo.remove_entry("2026-05-01", entry) is True
        row = await repo.get("2026-05-01")
        assert row.total_revenue == 0.0
        assert row.entries == []

"""
Tests for the debt and aging ledger.

Covers:
- Idempotent debt creation keyed by debtor and originating document
- Balance moving in lockstep with open remainders
- Installment splitting and payment application
- Aging tiers and risk score
"""

from datetime import datetime, timedelta

import pytest
from bson import ObjectId

from retail_core.core.errors import NotFoundError, ValidationError
from retail_core.models.debt import AgingReport, AgingTiers, DebtStatus, ScheduleStatus
from retail_core.services.debt_service import DebtService, aging_tier
from retail_core.utils.dates import utcnow


async def _customer_balance(container, customer):
    return (await container.parties.get("Customer", customer.id)).balance


async def _open_total(container, customer):
    return sum(d.remaining_amount for d in await container.debts.find_open("Customer", customer.id))


async def _invoice_debt(container, customer, amount=100.0, due_in_days=10, reference_id=None):
    return await container.debts.create_debt(
        "Customer",
        customer.id,
        amount,
        utcnow() + timedelta(days=due_in_days),
        "Invoice",
        reference_id or ObjectId(),
        description="Invoice",
    )


@pytest.mark.parametrize(
    "days,tier",
    [(-3, "current"), (0, "current"), (1, "tier1"), (30, "tier1"), (31, "tier2"), (60, "tier2"), (61, "tier3")],
)
def test_aging_tier_boundaries(days, tier):
    assert aging_tier(days) == tier


def test_risk_score_thresholds():
    def report(tier3):
        return AgingReport(debtor_type="Customer", total=100.0, tiers=AgingTiers(tier3=tier3))

    assert DebtService.calculate_risk(report(20)) == "HEALTHY"
    assert DebtService.calculate_risk(report(21)) == "WARNING"
    assert DebtService.calculate_risk(report(41)) == "CRITICAL"
    assert DebtService.calculate_risk(AgingReport(debtor_type="Customer")) == "HEALTHY"


@pytest.mark.asyncio
class TestCreateDebt:
    async def test_create_raises_balance(self, container, customer):
        debt = await _invoice_debt(container, customer, 250.0)

        assert debt.status == DebtStatus.ACTIVE
        assert debt.remaining_amount == 250.0
        assert await _customer_balance(container, customer) == 250.0

    async def test_create_is_idempotent(self, container, customer):
        reference_id = ObjectId()
        first = await _invoice_debt(container, customer, 100.0, reference_id=reference_id)
        second = await _invoice_debt(container, customer, 100.0, reference_id=reference_id)

        assert first.id == second.id
        assert await _customer_balance(container, customer) == 100.0
        assert len(await container.debts.find_open("Customer", customer.id)) == 1

    async def test_past_due_date_starts_overdue(self, container, customer):
        debt = await _invoice_debt(container, customer, 50.0, due_in_days=-5)

        assert debt.status == DebtStatus.OVERDUE

    async def test_rejects_non_positive_amount(self, container, customer):
        with pytest.raises(ValidationError):
            await _invoice_debt(container, customer, 0)

    async def test_unknown_debtor(self, container):
        with pytest.raises(NotFoundError):
            await container.debts.create_debt("Customer", ObjectId(), 10.0, utcnow(), "Invoice", ObjectId())


@pytest.mark.asyncio
class TestBalanceConservation:
    async def test_payment_reduces_balance(self, container, customer):
        debt = await _invoice_debt(container, customer, 100.0)

        updated = await container.debts.update_balance(debt.id, 40.0)

        assert updated.remaining_amount == 60.0
        assert await _customer_balance(container, customer) == 60.0
        assert await _open_total(container, customer) == 60.0

    async def test_payment_within_tolerance_settles(self, container, customer):
        debt = await _invoice_debt(container, customer, 100.0)

        updated = await container.debts.update_balance(debt.id, 99.995)

        assert updated.status == DebtStatus.SETTLED
        assert updated.remaining_amount == 0.0
        assert await _customer_balance(container, customer) == 0.0

    async def test_negative_payment_reopens(self, container, customer):
        debt = await _invoice_debt(container, customer, 100.0)
        await container.debts.update_balance(debt.id, 100.0)

        reopened = await container.debts.update_balance(debt.id, -30.0)

        assert reopened.status == DebtStatus.ACTIVE
        assert reopened.remaining_amount == 30.0
        assert await _customer_balance(container, customer) == 30.0

    async def test_delete_restores_balance(self, container, customer):
        debt = await _invoice_debt(container, customer, 100.0)
        await container.debts.update_balance(debt.id, 25.0)

        await container.debts.delete_debt(debt.id)

        assert await _customer_balance(container, customer) == 0.0
        assert await container.debts.find_debt(debt.id) is None

    async def test_write_off_removes_remainder(self, container, customer):
        debt = await _invoice_debt(container, customer, 100.0)
        await container.debts.update_balance(debt.id, 30.0)

        written_off = await container.debts.write_off(debt.id, "Customer left town")

        assert written_off.status == DebtStatus.WRITTEN_OFF
        assert written_off.meta["write_off_reason"] == "Customer left town"
        assert await _customer_balance(container, customer) == 0.0

    async def test_written_off_debt_is_terminal(self, container, customer):
        debt = await _invoice_debt(container, customer, 100.0)
        await container.debts.write_off(debt.id, "Bad debt")

        with pytest.raises(ValidationError):
            await container.debts.update_balance(debt.id, 10.0)
        with pytest.raises(ValidationError):
            await container.debts.write_off(debt.id, "Again")

    async def test_update_debt_moves_balance(self, container, customer):
        debt = await _invoice_debt(container, customer, 100.0)

        updated, collected_difference, previous = await container.debts.update_debt(
            debt.id, {"remaining_amount": 70.0}
        )

        assert updated.remaining_amount == 70.0
        assert collected_difference == 30.0
        assert previous == {"remaining_amount": 100.0}
        assert await _customer_balance(container, customer) == 70.0

    async def test_update_debt_rejects_remaining_above_original(self, container, customer):
        debt = await _invoice_debt(container, customer, 100.0)

        with pytest.raises(ValidationError):
            await container.debts.update_debt(debt.id, {"remaining_amount": 120.0})

    async def test_sync_debts_backs_legacy_balance(self, container, customer):
        await container.parties.inc_balance("Customer", customer.id, 80.0)

        debt = await container.debts.sync_debts("Customer", customer.id)

        assert debt.remaining_amount == 80.0
        assert debt.reference_type == "Manual"
        assert await _customer_balance(container, customer) == 80.0
        assert await container.debts.sync_debts("Customer", customer.id) is None


@pytest.mark.asyncio
class TestInstallments:
    async def test_split_last_absorbs_remainder(self, container, customer):
        debt = await _invoice_debt(container, customer, 100.0)

        schedules = await container.debts.create_installment_plan(debt.id, 3, "monthly", datetime(2026, 1, 31))

        assert [s.amount for s in schedules] == [33.33, 33.33, 33.34]
        assert [s.due_date for s in schedules] == [
            datetime(2026, 1, 31), datetime(2026, 2, 28), datetime(2026, 3, 31)
        ]

    async def test_plan_replaces_unpaid_schedule(self, container, customer):
        debt = await _invoice_debt(container, customer, 90.0)
        await container.debts.create_installment_plan(debt.id, 3, "weekly")

        await container.debts.create_installment_plan(debt.id, 2, "weekly")

        schedules = await container.debts.get_installments(debt.id)
        assert [s.amount for s in schedules] == [45.0, 45.0]

    async def test_rejects_unknown_interval(self, container, customer):
        debt = await _invoice_debt(container, customer, 90.0)

        with pytest.raises(ValidationError):
            await container.debts.create_installment_plan(debt.id, 3, "yearly")

    async def test_payment_fills_oldest_first(self, container, customer):
        debt = await _invoice_debt(container, customer, 100.0)
        await container.debts.create_installment_plan(debt.id, 3, "daily")

        applied = await container.debts.update_schedules_after_payment("Customer", customer.id, 40.0)

        schedules = await container.debts.get_installments(debt.id)
        assert [s.paid_amount for s in schedules] == [33.33, 6.67, 0.0]
        assert schedules[0].status == ScheduleStatus.PAID
        assert schedules[1].status == ScheduleStatus.PENDING
        assert round(sum(portion for _, portion in applied), 2) == 40.0

    async def test_revert_schedule_payments(self, container, customer):
        debt = await _invoice_debt(container, customer, 100.0)
        await container.debts.create_installment_plan(debt.id, 2, "monthly", utcnow() + timedelta(days=1))
        applied = await container.debts.update_schedules_after_payment("Customer", customer.id, 60.0)

        await container.debts.revert_schedule_payments(applied)

        schedules = await container.debts.get_installments(debt.id)
        assert [s.paid_amount for s in schedules] == [0.0, 0.0]
        assert all(s.status == ScheduleStatus.PENDING for s in schedules)


@pytest.mark.asyncio
class TestAging:
    async def test_aging_buckets(self, container, customer):
        now = datetime(2026, 6, 30, 12, 0)
        for days_late in (0, 30, 31, 90):
            await container.debts.create_debt(
                "Customer", customer.id, 100.0, now - timedelta(days=days_late), "Invoice", ObjectId()
            )

        report = await container.debts.get_aging_data("Customer", now)

        assert report.tiers.current == 100.0
        assert report.tiers.tier1 == 100.0
        assert report.tiers.tier2 == 100.0
        assert report.tiers.tier3 == 100.0
        assert report.total == 400.0
        assert report.overdue == 300.0

    async def test_overview_nets_receivables_against_payables(self, container, customer, supplier):
        await _invoice_debt(container, customer, 300.0)
        await container.debts.create_debt("Supplier", supplier.id, 120.0, utcnow(), "PurchaseOrder", ObjectId())

        overview = await container.debts.get_debt_overview()

        assert overview.receivables.total == 300.0
        assert overview.payables.total == 120.0
        assert overview.total_net == 180.0
        assert overview.risk_score == "HEALTHY"

    async def test_mark_overdue(self, container, customer):
        debt = await _invoice_debt(container, customer, 100.0, due_in_days=2)

        count = await container.debts.mark_overdue(utcnow() + timedelta(days=5))

        assert count == 1
        assert (await container.debts.get_debt_by_id(debt.id)).status == DebtStatus.OVERDUE

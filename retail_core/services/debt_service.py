"""
DebtService - Debt & aging ledger.

The only code allowed to move a debtor's denormalized balance is
apply_balance_delta. Every debt mutation moves the balance by exactly the
change in open remaining amount, so the sum of open remainders equals the
balance of any debtor whose balance is fully debt-backed.
"""

import logging
from datetime import datetime
from math import ceil
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from retail_core.core.config import Settings
from retail_core.core.errors import ConcurrencyConflictError, NotFoundError, ValidationError
from retail_core.models.debt import (
    AgingReport,
    AgingTiers,
    Debt,
    DebtOverview,
    DebtorType,
    DebtStatus,
    OPEN_STATUSES,
    PaymentSchedule,
    ReferenceType,
    ScheduleStatus,
)
from retail_core.repositories.debt_repo import DebtRepository
from retail_core.repositories.party_repo import PartyRepository
from retail_core.utils.dates import INTERVALS, add_days, days_overdue, step_date, to_datetime, utcnow
from retail_core.utils.money import is_settled, round_money, split_evenly

logger = logging.getLogger("retail_core.debt")


def _open_status(due_date: datetime, now: Optional[datetime] = None) -> str:
    return DebtStatus.OVERDUE.value if due_date < (now or utcnow()) else DebtStatus.ACTIVE.value


def aging_tier(overdue_days: int) -> str:
    if overdue_days <= 0:
        return "current"
    if overdue_days <= 30:
        return "tier1"
    if overdue_days <= 60:
        return "tier2"
    return "tier3"


class DebtService:
    def __init__(self, debts: DebtRepository, parties: PartyRepository, settings: Settings):
        self.debts = debts
        self.parties = parties
        self.settings = settings

    @property
    def tolerance(self) -> float:
        return self.settings.SETTLEMENT_TOLERANCE

    async def _get(self, debt_id: ObjectId, session=None) -> Debt:
        debt = await self.debts.get(debt_id, session=session)
        if debt is None:
            raise NotFoundError("Debt", debt_id)
        return debt

    async def apply_balance_delta(self, debtor_type: str, debtor_id: ObjectId, delta: float, session=None) -> float:
        """Move a debtor's balance. Returns the new balance."""
        delta = round_money(delta)
        if delta == 0:
            party = await self.parties.get(debtor_type, debtor_id, session=session)
        else:
            party = await self.parties.inc_balance(debtor_type, debtor_id, delta, session=session)
        if party is None:
            raise NotFoundError(debtor_type, debtor_id)
        return party.balance

    async def create_debt(
        self,
        debtor_type: str,
        debtor_id: ObjectId,
        amount: float,
        due_date: datetime,
        reference_type: str,
        reference_id: ObjectId,
        description: str = "",
        created_by: Optional[ObjectId] = None,
        meta: Optional[Dict[str, Any]] = None,
        increment_balance: bool = True,
        session=None,
    ) -> Debt:
        """
        Insert a debt and raise the debtor's balance by its amount.

        Idempotent on (debtor_type, debtor_id, reference_type, reference_id):
        a second call returns the existing debt and leaves the balance alone.
        """
        amount = round_money(amount)
        if amount <= 0:
            raise ValidationError("Debt amount must be positive")

        existing = await self.debts.find_by_key(debtor_type, debtor_id, reference_type, reference_id, session=session)
        if existing is not None:
            return existing

        if await self.parties.get(debtor_type, debtor_id, session=session) is None:
            raise NotFoundError(debtor_type, debtor_id)

        due_date = to_datetime(due_date)
        debt = Debt(
            debtor_type=debtor_type,
            debtor_id=debtor_id,
            original_amount=amount,
            remaining_amount=amount,
            status=_open_status(due_date),
            due_date=due_date,
            reference_type=reference_type,
            reference_id=reference_id,
            description=description,
            meta=meta or {},
            created_by=created_by,
        )
        try:
            await self.debts.insert(debt, session=session)
        except DuplicateKeyError:
            existing = await self.debts.find_by_key(debtor_type, debtor_id, reference_type, reference_id, session=session)
            if existing is None:
                raise
            return existing

        if increment_balance:
            await self.apply_balance_delta(debtor_type, debtor_id, amount, session=session)
        logger.info("Created %s debt %s of %.2f for %s", debtor_type, debt.id, amount, debtor_id)
        return debt

    async def update_balance(self, debt_id: ObjectId, amount_paid: float, session=None) -> Debt:
        """
        Reduce remaining_amount by amount_paid; a negative amount reopens it.

        Remainders within tolerance settle the debt. The debtor balance moves
        by the change actually applied, after clamping.
        """
        for _ in range(self.settings.COST_UPDATE_RETRIES):
            debt = await self._get(debt_id, session=session)
            if debt.status == DebtStatus.WRITTEN_OFF:
                raise ValidationError("Cannot pay a written-off debt")

            remaining = round_money(debt.remaining_amount - amount_paid)
            if remaining > debt.original_amount + self.tolerance:
                raise ValidationError("Remaining amount cannot exceed the original amount")
            remaining = min(remaining, debt.original_amount)

            if is_settled(remaining, self.tolerance):
                remaining = 0.0
                status = DebtStatus.SETTLED.value
            else:
                status = _open_status(debt.due_date)

            updated = await self.debts.compare_and_set(
                debt_id,
                {"remaining_amount": debt.remaining_amount},
                {"remaining_amount": remaining, "status": status},
                session=session,
            )
            if updated is None:
                continue

            change = round_money(debt.remaining_amount - remaining)
            await self.apply_balance_delta(debt.debtor_type, debt.debtor_id, -change, session=session)
            return updated

        raise ConcurrencyConflictError(f"Debt {debt_id} kept changing during update")

    async def write_off(self, debt_id: ObjectId, reason: str, user_id: Optional[ObjectId] = None, session=None) -> Debt:
        """Terminal. The written-off remainder leaves the debtor's balance."""
        debt = await self._get(debt_id, session=session)
        if debt.status == DebtStatus.SETTLED:
            raise ValidationError("Cannot write off a settled debt")
        if debt.status == DebtStatus.WRITTEN_OFF:
            raise ValidationError("Debt is already written off")

        meta = dict(debt.meta)
        meta.update({
            "write_off_reason": reason,
            "write_off_by": str(user_id) if user_id else None,
            "write_off_date": utcnow(),
        })
        updated = await self.debts.compare_and_set(
            debt_id,
            {"status": debt.status, "remaining_amount": debt.remaining_amount},
            {"status": DebtStatus.WRITTEN_OFF.value, "meta": meta},
            session=session,
        )
        if updated is None:
            raise ConcurrencyConflictError(f"Debt {debt_id} changed during write-off")

        await self.apply_balance_delta(debt.debtor_type, debt.debtor_id, -debt.remaining_amount, session=session)
        await self.debts.cancel_unpaid_schedules(debt_id, session=session)
        logger.info("Wrote off debt %s (%.2f): %s", debt_id, debt.remaining_amount, reason)
        return updated

    async def delete_debt(self, debt_id: ObjectId, session=None) -> Debt:
        """Exact inverse of create_debt: balance back, schedules gone."""
        debt = await self.debts.delete(debt_id, session=session)
        if debt is None:
            raise NotFoundError("Debt", debt_id)

        if debt.status in OPEN_STATUSES:
            await self.apply_balance_delta(debt.debtor_type, debt.debtor_id, -debt.remaining_amount, session=session)
        await self.debts.delete_schedules(debt_id, session=session)
        logger.info("Deleted debt %s", debt_id)
        return debt

    async def update_debt(
        self, debt_id: ObjectId, changes: Dict[str, Any], session=None
    ) -> Tuple[Debt, float, Dict[str, Any]]:
        """
        Manual correction of amounts, due date or description.

        Returns the updated debt, the change in collected amount
        (original - remaining) and the previous values of the changed fields.
        """
        allowed = ("original_amount", "remaining_amount", "due_date", "description")
        changes = {k: v for k, v in changes.items() if k in allowed and v is not None}
        if not changes:
            raise ValidationError("Nothing to update")

        debt = await self._get(debt_id, session=session)
        if debt.status == DebtStatus.WRITTEN_OFF:
            raise ValidationError("Cannot edit a written-off debt")

        previous = {k: getattr(debt, k) for k in changes}
        original = round_money(changes.get("original_amount", debt.original_amount))
        remaining = round_money(changes.get("remaining_amount", debt.remaining_amount))
        due_date = to_datetime(changes.get("due_date", debt.due_date))

        if original <= 0 or remaining < 0:
            raise ValidationError("Amounts must be positive")
        if remaining > original + self.tolerance:
            raise ValidationError("Remaining amount cannot exceed the original amount")

        if is_settled(remaining, self.tolerance):
            remaining = 0.0
            status = DebtStatus.SETTLED.value
        else:
            status = _open_status(due_date)

        updates = {
            "original_amount": original,
            "remaining_amount": min(remaining, original),
            "due_date": due_date,
            "status": status,
        }
        if "description" in changes:
            updates["description"] = changes["description"]

        updated = await self.debts.compare_and_set(
            debt_id,
            {"remaining_amount": debt.remaining_amount, "original_amount": debt.original_amount},
            updates,
            session=session,
        )
        if updated is None:
            raise ConcurrencyConflictError(f"Debt {debt_id} changed during edit")

        old_open = debt.remaining_amount if debt.status in OPEN_STATUSES else 0.0
        new_open = updated.remaining_amount if updated.status in OPEN_STATUSES else 0.0
        await self.apply_balance_delta(debt.debtor_type, debt.debtor_id, new_open - old_open, session=session)

        collected_difference = round_money(updated.collected_amount - debt.collected_amount)
        return updated, collected_difference, previous

    async def create_installment_plan(
        self,
        debt_id: ObjectId,
        installments_count: int,
        interval: str = "monthly",
        start_date: Optional[datetime] = None,
        notes: str = "",
        created_by: Optional[ObjectId] = None,
        session=None,
    ) -> List[PaymentSchedule]:
        """
        Replace the unpaid schedule of a debt with installments_count equal parts.

        Parts are rounded to 2 decimals and the last one absorbs the rounding
        remainder, so they always sum to remaining_amount.
        """
        if installments_count < 1:
            raise ValidationError("At least one installment is required")
        if interval not in INTERVALS:
            raise ValidationError(f"Interval must be one of {', '.join(INTERVALS)}")

        debt = await self._get(debt_id, session=session)
        if debt.status not in OPEN_STATUSES or debt.remaining_amount <= 0:
            raise ValidationError("Only open debts can be scheduled")

        await self.debts.delete_unpaid_schedules(debt_id, session=session)

        start = start_date or utcnow()
        schedules = [
            PaymentSchedule(
                entity_type=debt.debtor_type,
                entity_id=debt.debtor_id,
                debt_id=debt.id,
                sequence=index + 1,
                amount=amount,
                due_date=step_date(start, interval, index),
                notes=notes,
                created_by=created_by,
            )
            for index, amount in enumerate(split_evenly(debt.remaining_amount, installments_count))
        ]
        return await self.debts.insert_schedules(schedules, session=session)

    async def update_schedules_after_payment(
        self, debtor_type: str, debtor_id: ObjectId, amount: float, session=None
    ) -> List[Tuple[ObjectId, float]]:
        """
        Spread a payment over unpaid installments, oldest due first.

        Returns (schedule_id, applied) pairs so the caller can undo them.
        """
        applied = []
        remaining = round_money(amount)
        schedules = await self.debts.find_unpaid_schedules(debtor_type, debtor_id, session=session)
        for schedule in schedules:
            if remaining <= 0:
                break
            portion = round_money(min(remaining, schedule.outstanding))
            if portion <= 0:
                continue
            paid = round_money(schedule.paid_amount + portion)
            updates = {"paid_amount": paid}
            if is_settled(schedule.amount - paid, self.tolerance):
                updates.update({"status": ScheduleStatus.PAID.value, "paid_at": utcnow()})
            await self.debts.update_schedule(schedule.id, updates, session=session)
            applied.append((schedule.id, portion))
            remaining = round_money(remaining - portion)
        return applied

    async def revert_schedule_payments(self, applied: List[Tuple[ObjectId, float]], session=None) -> None:
        for schedule_id, portion in applied:
            schedule = await self.debts.get_schedule(schedule_id, session=session)
            if schedule is None:
                continue
            paid = max(0.0, round_money(schedule.paid_amount - portion))
            status = ScheduleStatus.OVERDUE.value if schedule.due_date < utcnow() else ScheduleStatus.PENDING.value
            await self.debts.update_schedule(
                schedule_id, {"paid_amount": paid, "status": status, "paid_at": None}, session=session
            )

    async def get_aging_data(self, debtor_type: str, now: Optional[datetime] = None) -> AgingReport:
        """Bucket open remainders by whole days past due."""
        now = now or utcnow()
        tiers = AgingTiers()
        total = 0.0
        overdue = 0.0
        for debt in await self.debts.find_open(debtor_type):
            days = days_overdue(debt.due_date, now)
            tier = aging_tier(days)
            setattr(tiers, tier, round_money(getattr(tiers, tier) + debt.remaining_amount))
            total += debt.remaining_amount
            if days > 0:
                overdue += debt.remaining_amount

        return AgingReport(
            debtor_type=debtor_type,
            total=round_money(total),
            overdue=round_money(overdue),
            collected=round_money(await self.debts.sum_collected(debtor_type)),
            tiers=tiers,
        )

    @staticmethod
    def calculate_risk(report: AgingReport) -> str:
        if report.total <= 0:
            return "HEALTHY"
        share = report.tiers.tier3 / report.total
        if share > 0.4:
            return "CRITICAL"
        if share > 0.2:
            return "WARNING"
        return "HEALTHY"

    async def get_debt_overview(self, now: Optional[datetime] = None) -> DebtOverview:
        receivables = await self.get_aging_data(DebtorType.CUSTOMER.value, now)
        payables = await self.get_aging_data(DebtorType.SUPPLIER.value, now)
        return DebtOverview(
            receivables=receivables,
            payables=payables,
            total_net=round_money(receivables.total - payables.total),
            risk_score=self.calculate_risk(receivables),
        )

    async def mark_overdue(self, now: Optional[datetime] = None) -> int:
        count = await self.debts.mark_overdue(now or utcnow())
        if count:
            logger.info("Marked %d debts overdue", count)
        return count

    async def get_debts(self, filters: Optional[Dict[str, Any]] = None, page: int = 1, limit: int = 20) -> dict:
        query = {}
        for key in ("debtor_type", "debtor_id", "status", "reference_type"):
            if filters and filters.get(key) is not None:
                query[key] = filters[key]
        total = await self.debts.count(query)
        return {
            "debts": await self.debts.find_page(query, page, limit),
            "total": total,
            "page": page,
            "pages": ceil(total / limit) if limit else 1,
        }

    async def get_debt_by_id(self, debt_id: ObjectId) -> Debt:
        return await self._get(debt_id)

    async def find_debt(self, debt_id: ObjectId, session=None) -> Optional[Debt]:
        return await self.debts.get(debt_id, session=session)

    async def get_installments(self, debt_id: ObjectId) -> List[PaymentSchedule]:
        return await self.debts.find_schedules(debt_id)

    async def find_by_reference(
        self, reference_type: Optional[str], reference_id: ObjectId, debtor_type: Optional[str] = None, session=None
    ) -> Optional[Debt]:
        return await self.debts.find_by_reference(reference_type, reference_id, debtor_type, session=session)

    async def find_open(self, debtor_type: str, debtor_id: ObjectId, session=None) -> List[Debt]:
        return await self.debts.find_open(debtor_type, debtor_id, session=session)

    async def uncovered_balance(self, debtor_type: str, debtor_id: ObjectId, session=None) -> float:
        """Part of the debtor's balance that no open debt backs."""
        party = await self.parties.get(debtor_type, debtor_id, session=session)
        if party is None:
            raise NotFoundError(debtor_type, debtor_id)
        backed = await self.debts.sum_open_remaining(debtor_type, debtor_id, session=session)
        return max(0.0, round_money(party.balance - backed))

    async def sync_debts(
        self, debtor_type: str, debtor_id: ObjectId, user_id: Optional[ObjectId] = None, session=None
    ) -> Optional[Debt]:
        """
        Materialize a legacy balance that no debt backs as one Manual debt.

        The balance already contains the amount, so it is not incremented again.
        """
        gap = await self.uncovered_balance(debtor_type, debtor_id, session=session)
        if gap <= self.tolerance:
            return None

        reference_type = ReferenceType.MANUAL.value
        existing = await self.debts.find_by_key(debtor_type, debtor_id, reference_type, debtor_id, session=session)
        if existing is None:
            return await self.create_debt(
                debtor_type,
                debtor_id,
                gap,
                add_days(utcnow(), self.settings.DEFAULT_SUPPLIER_TERMS_DAYS),
                reference_type,
                debtor_id,
                description="Opening balance",
                created_by=user_id,
                increment_balance=False,
                session=session,
            )

        remaining = round_money(existing.remaining_amount + gap if existing.status in OPEN_STATUSES else gap)
        updated = await self.debts.compare_and_set(
            existing.id,
            {"remaining_amount": existing.remaining_amount, "status": existing.status},
            {
                "original_amount": round_money(existing.original_amount + gap),
                "remaining_amount": remaining,
                "status": _open_status(existing.due_date),
            },
            session=session,
        )
        if updated is None:
            raise ConcurrencyConflictError(f"Debt {existing.id} changed during sync")
        return updated

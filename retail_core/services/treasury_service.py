"""
TreasuryService - Cash & treasury ledger.

Every transaction folds into one daily cashbox row, either into the
accumulator picked by (type, method) or into the manual income/expense
lists. The transaction keeps a backlink to that exact effect, so undo never
has to search by amount or description.
"""

import logging
from datetime import datetime
from math import ceil
from typing import Any, Dict, List, Optional

from bson import ObjectId

from retail_core.core.config import Settings
from retail_core.core.errors import NotFoundError, ValidationError
from retail_core.models.treasury import (
    EXPENSE_FIELDS,
    INCOME_FIELDS,
    CashboxDaily,
    ManualEntry,
    TransactionType,
    TreasuryReferenceType,
    TreasuryTransaction,
    accumulator_field,
    normalize_method,
)
from retail_core.repositories.treasury_repo import TreasuryRepository
from retail_core.utils.dates import DateLike, day_key, to_datetime, utcnow
from retail_core.utils.money import round_money

logger = logging.getLogger("retail_core.treasury")

ACCUMULATOR_FIELDS = set(INCOME_FIELDS.values()) | set(EXPENSE_FIELDS.values())


def _manual_list(tx_type: str) -> str:
    return "manual_income" if tx_type == TransactionType.INCOME else "manual_expenses"


class TreasuryService:
    def __init__(self, treasury: TreasuryRepository, settings: Settings):
        self.treasury = treasury
        self.settings = settings

    async def next_receipt_number(self, session=None) -> str:
        seq = await self.treasury.next_sequence(self.settings.RECEIPT_COUNTER, session=session)
        return f"{self.settings.RECEIPT_PREFIX}{seq}"

    async def _ensure_cashbox(self, day: str, session=None) -> CashboxDaily:
        """Find or create the day's row, opening where the latest earlier day closed."""
        row = await self.treasury.get_cashbox(day, session=session)
        if row is not None:
            return row

        previous = await self.treasury.latest_before(day, session=session)
        opening = previous.closing_balance if previous else 0.0
        seed = CashboxDaily(day=day, opening_balance=opening, closing_balance=opening)
        await self.treasury.insert_cashbox_if_missing(seed, session=session)
        return await self.treasury.get_cashbox(day, session=session)

    async def _refresh_totals(self, day: str, session=None) -> CashboxDaily:
        row = await self.treasury.get_cashbox(day, session=session)
        if row is None:
            raise NotFoundError("Cashbox day", day)
        return await self.treasury.set_fields(day, row.derived_totals(), session=session)

    async def update_daily_cashbox(
        self, day: DateLike, deltas: Optional[Dict[str, float]] = None, session=None
    ) -> CashboxDaily:
        """Apply accumulator deltas to a day and recompute its totals."""
        day = day_key(day)
        deltas = {k: round_money(v) for k, v in (deltas or {}).items() if v}
        unknown = set(deltas) - ACCUMULATOR_FIELDS
        if unknown:
            raise ValidationError(f"Unknown cashbox fields: {', '.join(sorted(unknown))}")

        await self._ensure_cashbox(day, session=session)
        if deltas:
            await self.treasury.increment_fields(day, deltas, session=session)
        return await self._refresh_totals(day, session=session)

    async def record_transaction(
        self,
        tx_type: str,
        amount: float,
        method: Optional[str] = "cash",
        reference_type: str = TreasuryReferenceType.MANUAL.value,
        reference_id: Optional[ObjectId] = None,
        description: str = "",
        partner_id: Optional[ObjectId] = None,
        category: Optional[str] = None,
        date: Optional[datetime] = None,
        user_id: Optional[ObjectId] = None,
        meta: Optional[Dict[str, Any]] = None,
        manual: bool = False,
        session=None,
    ) -> TreasuryTransaction:
        amount = round_money(amount)
        if amount <= 0:
            raise ValidationError("Transaction amount must be positive")
        if tx_type not in (TransactionType.INCOME, TransactionType.EXPENSE):
            raise ValidationError(f"Unknown transaction type: {tx_type}")
        try:
            method = normalize_method(method)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        when = to_datetime(date) if date is not None else utcnow()
        day = day_key(when)
        contribution_id = ObjectId()
        field = None if manual else accumulator_field(tx_type, method)

        receipt_number = None
        if tx_type == TransactionType.INCOME:
            receipt_number = await self.next_receipt_number(session=session)

        tx = TreasuryTransaction(
            type=tx_type,
            amount=amount,
            method=method,
            description=description,
            receipt_number=receipt_number,
            reference_type=reference_type,
            reference_id=reference_id,
            partner_id=partner_id,
            category=category,
            date=when,
            created_by=user_id,
            meta=meta or {},
            cashbox_day=day,
            cashbox_contribution_id=contribution_id,
            cashbox_field=field,
        )
        await self.treasury.insert_transaction(tx, session=session)

        try:
            await self._ensure_cashbox(day, session=session)
            if manual:
                entry = ManualEntry(
                    _id=contribution_id,
                    amount=amount,
                    reason=description,
                    category=category or "other",
                    created_by=user_id,
                    timestamp=when,
                )
                await self.treasury.push_manual_entry(day, _manual_list(tx_type), entry, session=session)
            else:
                await self.treasury.apply_contribution(day, field, amount, contribution_id, session=session)
            await self._refresh_totals(day, session=session)
        except Exception:
            logger.error("Cashbox update failed for transaction %s, removing it", tx.id, exc_info=True)
            await self._revert_effect(tx, session=session)
            await self.treasury.delete_transaction(tx.id, session=session)
            raise

        logger.info("Recorded %s %.2f (%s) ref %s/%s", tx_type, amount, method, reference_type, reference_id)
        return tx

    async def _revert_effect(self, tx: TreasuryTransaction, session=None) -> bool:
        """Take back the cashbox effect of tx. False when it is not on the cashbox."""
        if tx.cashbox_field is None:
            return await self.treasury.pull_manual_entry(
                tx.cashbox_day, _manual_list(tx.type), tx.cashbox_contribution_id, session=session
            )
        return await self.treasury.revert_contribution(
            tx.cashbox_day, tx.cashbox_field, tx.amount, tx.cashbox_contribution_id, session=session
        )

    async def undo_transaction(self, transaction_id: ObjectId, session=None) -> TreasuryTransaction:
        """
        Remove a transaction and exactly the cashbox effect it created.

        Safe to call again after a partial failure: the cashbox effect is
        reverted at most once, and the delete comes last.
        """
        tx = await self.treasury.get_transaction(transaction_id, session=session)
        if tx is None:
            raise NotFoundError("Treasury transaction", transaction_id)

        await self._revert_effect(tx, session=session)
        if await self.treasury.get_cashbox(tx.cashbox_day, session=session) is not None:
            await self._refresh_totals(tx.cashbox_day, session=session)

        await self.treasury.delete_transaction(tx.id, session=session)
        logger.info("Undid treasury transaction %s", tx.id)
        return tx

    async def delete_transactions_by_reference(
        self, reference_type: str, reference_id: ObjectId, session=None
    ) -> List[TreasuryTransaction]:
        removed = []
        for tx in await self.treasury.find_by_reference(reference_type, reference_id, session=session):
            removed.append(await self.undo_transaction(tx.id, session=session))
        return removed

    async def reconcile_cashbox(
        self,
        day: DateLike,
        actual_closing_balance: float,
        user_id: Optional[ObjectId] = None,
        notes: Optional[str] = None,
        session=None,
    ) -> CashboxDaily:
        """Freeze the counted closing balance; difference keeps the counting error."""
        day = day_key(day)
        row = await self._ensure_cashbox(day, session=session)
        if row.is_reconciled:
            raise ValidationError(f"Cashbox {day} is already reconciled")

        row.closing_balance = round_money(actual_closing_balance)
        row.is_reconciled = True
        updates = {
            "closing_balance": row.closing_balance,
            "is_reconciled": True,
            "reconciled_by": user_id,
            "reconciled_at": utcnow(),
            "reconciliation_notes": notes,
        }
        updates.update(row.derived_totals())
        reconciled = await self.treasury.set_fields(day, updates, session=session)
        logger.info("Reconciled cashbox %s with difference %.2f", day, reconciled.difference)
        return reconciled

    async def get_current_balance(self) -> float:
        latest = await self.treasury.latest()
        if latest is None:
            return 0.0
        if latest.is_reconciled:
            return latest.closing_balance
        return latest.expected_closing

    async def add_manual_income(
        self, date: Optional[DateLike], amount: float, reason: str, category: str = "other",
        user_id: Optional[ObjectId] = None, method: str = "cash", session=None,
    ) -> TreasuryTransaction:
        return await self.record_transaction(
            TransactionType.INCOME.value, amount, method, description=reason, category=category,
            date=date, user_id=user_id, manual=True, session=session,
        )

    async def add_manual_expense(
        self, date: Optional[DateLike], amount: float, reason: str, category: str = "other",
        user_id: Optional[ObjectId] = None, method: str = "cash", session=None,
    ) -> TreasuryTransaction:
        return await self.record_transaction(
            TransactionType.EXPENSE.value, amount, method, description=reason, category=category,
            date=date, user_id=user_id, manual=True, session=session,
        )

    async def get_daily_cashbox(self, day: DateLike) -> CashboxDaily:
        day = day_key(day)
        await self._ensure_cashbox(day)
        return await self._refresh_totals(day)

    async def get_cashbox_history(
        self, start: Optional[DateLike] = None, end: Optional[DateLike] = None
    ) -> List[CashboxDaily]:
        return await self.treasury.history(
            day_key(start) if start else None,
            day_key(end) if end else None,
        )

    async def get_transactions(self, filters: Optional[Dict[str, Any]] = None, page: int = 1, limit: int = 50) -> dict:
        query = {}
        for key in ("type", "method", "reference_type", "reference_id", "partner_id", "category"):
            if filters and filters.get(key) is not None:
                query[key] = filters[key]
        total = await self.treasury.count_transactions(query)
        return {
            "transactions": await self.treasury.find_transactions(query, page, limit),
            "total": total,
            "page": page,
            "pages": ceil(total / limit) if limit else 1,
        }

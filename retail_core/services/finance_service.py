"""
FinanceService - Transaction coordinator.

Each compound operation calls the ledgers in a fixed order through the
OperationRunner, then writes one audit entry. Reversals call the same
ledgers with inverse effects in reverse order and record every finished
step on the document, so an interrupted reversal resumes where it stopped.

Payments against several debts are applied oldest due date first. Whatever
is left reduces the part of the debtor's balance no open debt backs, and
anything beyond that becomes customer credit.
"""

import logging
from typing import Any, Callable, Optional

from bson import ObjectId

from retail_core.core.config import Settings
from retail_core.core.errors import (
    ConcurrencyConflictError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)
from retail_core.models.debt import Debt, DebtorType, OPEN_STATUSES, ReferenceType
from retail_core.models.invoice import (
    DocumentPayment,
    Invoice,
    PaymentStatus,
    PurchaseOrder,
    PurchaseStatus,
    RefundMethod,
    ReturnItem,
    SalesReturn,
)
from retail_core.models.treasury import TransactionType, TreasuryReferenceType, normalize_method
from retail_core.repositories.invoice_repo import InvoiceRepository
from retail_core.repositories.party_repo import PartyRepository
from retail_core.schemas.finance import (
    DebtAdjustmentRequest,
    ManualEntryRequest,
    SaleReturnRequest,
    SettleDebtRequest,
)
from retail_core.schemas.operation import OperationResult
from retail_core.services.daily_sales_service import DailySalesService
from retail_core.services.debt_service import DebtService
from retail_core.services.log_service import LogService
from retail_core.services.operation_runner import OperationRunner, OperationUnit
from retail_core.services.stock_service import StockService
from retail_core.services.treasury_service import TreasuryService
from retail_core.utils.dates import add_days, utcnow
from retail_core.utils.money import payment_status, round_money

logger = logging.getLogger("retail_core.finance")

CUSTOMER = DebtorType.CUSTOMER.value
SUPPLIER = DebtorType.SUPPLIER.value
ON_ACCOUNT = ("credit", "partial")


class FinanceService:
    def __init__(
        self,
        runner: OperationRunner,
        stock: StockService,
        debts: DebtService,
        treasury: TreasuryService,
        daily_sales: DailySalesService,
        logs: LogService,
        parties: PartyRepository,
        invoices: InvoiceRepository,
        settings: Settings,
    ):
        self.runner = runner
        self.stock = stock
        self.debts = debts
        self.treasury = treasury
        self.daily_sales = daily_sales
        self.logs = logs
        self.parties = parties
        self.invoices = invoices
        self.settings = settings

    @property
    def tolerance(self) -> float:
        return self.settings.SETTLEMENT_TOLERANCE

    # Lookups and shared steps

    @staticmethod
    def _method(method: Optional[str]) -> str:
        try:
            return normalize_method(method)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    @staticmethod
    def _positive(amount: float) -> float:
        amount = round_money(amount or 0)
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        return amount

    async def _get_invoice(self, invoice_id: ObjectId, session=None) -> Invoice:
        invoice = await self.invoices.get_invoice(invoice_id, session=session)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice

    async def _get_purchase_order(self, po_id: ObjectId, session=None) -> PurchaseOrder:
        po = await self.invoices.get_purchase_order(po_id, session=session)
        if po is None:
            raise NotFoundError("Purchase order", po_id)
        return po

    async def _balance_of(self, debtor_type: str, debtor_id: Optional[ObjectId], session=None) -> Optional[float]:
        if debtor_id is None:
            return None
        party = await self.parties.get(debtor_type, debtor_id, session=session)
        return party.balance if party else None

    async def _take_credit(self, customer_id: ObjectId, amount: float, session=None):
        customer = await self.parties.take_credit(customer_id, amount, session=session)
        if customer is None:
            current = await self.parties.get(CUSTOMER, customer_id, session=session)
            if current is None:
                raise NotFoundError(CUSTOMER, customer_id)
            raise InsufficientBalanceError(
                "Customer credit does not cover the amount used", required=amount, available=current.credit_balance
            )
        return customer

    async def _delete_reference_debt(self, reference_type: str, reference_id: ObjectId, session=None):
        debt = await self.debts.find_by_reference(reference_type, reference_id, session=session)
        if debt is None:
            return None
        return await self.debts.delete_debt(debt.id, session=session)

    async def _pay_debt(self, unit: OperationUnit, name: str, debt: Debt, amount: float) -> Debt:
        """update_balance as a step; compensation restores exactly the change applied."""
        updated = None

        async def undo(session):
            change = round_money(debt.remaining_amount - updated.remaining_amount)
            await self.debts.update_balance(debt.id, -change, session=session)

        updated = await unit.step(name, lambda s: self.debts.update_balance(debt.id, amount, session=s), undo)
        return updated

    async def _move_balance(self, unit: OperationUnit, name: str, debtor_type: str, debtor_id: ObjectId, delta: float):
        return await unit.step(
            name,
            lambda s: self.debts.apply_balance_delta(debtor_type, debtor_id, delta, session=s),
            lambda s: self.debts.apply_balance_delta(debtor_type, debtor_id, -delta, session=s),
        )

    async def _apply_unbacked(self, unit: OperationUnit, debtor_type: str, debtor_id: ObjectId, amount: float) -> float:
        """
        Apply a payment no open debt takes. It reduces the part of the balance
        no open debt backs; a customer keeps the rest as credit. Returns the
        credit added.
        """
        uncovered = await self.debts.uncovered_balance(debtor_type, debtor_id, session=unit.session)
        to_balance = round_money(min(amount, uncovered))
        excess = round_money(amount - to_balance)
        if debtor_type == SUPPLIER and excess > self.tolerance:
            raise ValidationError(f"Payment exceeds what is owed to the supplier by {excess:.2f}")
        if to_balance > 0:
            await self._move_balance(unit, "reduce_balance", debtor_type, debtor_id, -to_balance)
        if debtor_type != CUSTOMER or excess <= 0:
            return 0.0
        await unit.step(
            "add_credit",
            lambda s: self.parties.inc_credit(debtor_id, excess, session=s),
            lambda s: self.parties.inc_credit(debtor_id, -excess, session=s),
        )
        return excess

    async def _update_schedules(self, unit: OperationUnit, debtor_type: str, debtor_id: ObjectId, amount: float):
        applied = []

        async def apply(session):
            applied.extend(await self.debts.update_schedules_after_payment(debtor_type, debtor_id, amount, session=session))
            return applied

        return await unit.step(
            "update_schedules", apply, lambda s: self.debts.revert_schedule_payments(applied, session=s)
        )

    async def _record_treasury(self, unit: OperationUnit, name: str, **kwargs):
        tx = None

        async def undo(session):
            await self.treasury.undo_transaction(tx.id, session=session)

        tx = await unit.step(name, lambda s: self.treasury.record_transaction(session=s, **kwargs), undo)
        return tx

    async def _add_payment(self, kind: str, doc_id: ObjectId, payment: DocumentPayment, session=None, required=True):
        """Push a payment and raise paid_amount, guarded against concurrent payments."""
        if kind == "invoice":
            doc = await self.invoices.get_invoice(doc_id, session=session)
            update, total_attr = self.invoices.update_invoice, "total"
        else:
            doc = await self.invoices.get_purchase_order(doc_id, session=session)
            update, total_attr = self.invoices.update_purchase_order, "total_cost"
        if doc is None:
            if required:
                raise NotFoundError(kind, doc_id)
            return None

        total = getattr(doc, total_attr)
        paid = min(round_money(doc.paid_amount + payment.amount), total)
        updated = await update(
            doc_id,
            {"paid_amount": paid, "payment_status": payment_status(paid, total)},
            expected={"paid_amount": doc.paid_amount},
            push={"payments": self.invoices.payment_doc(payment)},
            session=session,
        )
        if updated is None:
            raise ConcurrencyConflictError(f"Payments on {kind} {doc_id} changed concurrently")
        return updated

    async def _remove_payment(self, kind: str, doc_id: ObjectId, payment: DocumentPayment, session=None):
        if kind == "invoice":
            doc = await self.invoices.get_invoice(doc_id, session=session)
            update, total_attr = self.invoices.update_invoice, "total"
        else:
            doc = await self.invoices.get_purchase_order(doc_id, session=session)
            update, total_attr = self.invoices.update_purchase_order, "total_cost"
        if doc is None or not any(p.id == payment.id for p in doc.payments):
            return None

        paid = max(0.0, round_money(doc.paid_amount - payment.amount))
        return await update(
            doc_id,
            {"paid_amount": paid, "payment_status": payment_status(paid, getattr(doc, total_attr))},
            pull={"payments": {"_id": payment.id}},
            session=session,
        )

    async def _payment_step(self, unit: OperationUnit, name: str, kind: str, doc_id: ObjectId, payment, required=True):
        return await unit.step(
            name,
            lambda s: self._add_payment(kind, doc_id, payment, session=s, required=required),
            lambda s: self._remove_payment(kind, doc_id, payment, session=s),
        )

    @staticmethod
    async def _resumable(unit: OperationUnit, done: set, mark: Callable, name: str, apply: Callable) -> Any:
        """Reversal step that is skipped when an earlier attempt already finished it."""
        if name in done:
            return None

        async def run(session):
            result = await apply(session)
            await mark(name, session)
            return result

        return await unit.step(name, run)

    # Sales

    async def _prepare_invoice(self, invoice: Invoice, user_id: Optional[ObjectId]) -> Invoice:
        if invoice.paid_amount > invoice.total + self.tolerance:
            raise ValidationError("Paid amount exceeds the invoice total")
        if invoice.used_credit_balance > invoice.paid_amount + self.tolerance:
            raise ValidationError("Used credit cannot exceed the paid amount")
        remainder = round_money(invoice.total - invoice.paid_amount)
        if (remainder > self.tolerance or invoice.used_credit_balance > 0) and invoice.customer_id is None:
            raise ValidationError("A customer is required for credit sales")
        if await self.invoices.get_invoice(invoice.id) is not None:
            raise ValidationError(f"Invoice {invoice.number} is already recorded")

        total_cost = 0.0
        for item in invoice.items:
            if not item.total:
                item.total = round_money(item.qty * item.unit_price)
            if not item.is_service and item.product_id is not None and item.cost_price is None:
                product = await self.stock.get_product(item.product_id)
                item.cost_price = product.buy_price
            cost = round_money(item.qty * (item.cost_price or 0))
            item.profit = round_money(item.total - cost)
            total_cost += cost

        if not invoice.subtotal:
            invoice.subtotal = round_money(sum(item.total for item in invoice.items))
        invoice.total_cost = round_money(total_cost)
        invoice.profit = round_money(invoice.total - invoice.total_cost)
        invoice.payment_status = payment_status(invoice.paid_amount, invoice.total)
        invoice.created_by = invoice.created_by or user_id
        if remainder > self.tolerance and invoice.due_date is None:
            invoice.due_date = add_days(utcnow(), self.settings.DEFAULT_CUSTOMER_TERMS_DAYS)
        if invoice.paid_amount > 0 and not invoice.payments:
            invoice.payments = [DocumentPayment(
                amount=invoice.paid_amount, method=self._sale_method(invoice.payment_type), recorded_by=user_id
            )]
        return invoice

    def _sale_method(self, payment_type: str) -> str:
        if payment_type in ON_ACCOUNT:
            return "cash"
        return self._method(payment_type)

    async def record_sale(self, invoice: Invoice, user_id: Optional[ObjectId] = None) -> OperationResult:
        """
        Steps: save invoice, consume customer credit, reduce stock, treasury
        income for cash received, debt for the credit remainder, daily stats,
        customer lifetime total.
        """
        invoice = await self._prepare_invoice(invoice, user_id)
        ref = str(invoice.id)
        customer_id = invoice.customer_id
        remainder = round_money(invoice.total - invoice.paid_amount)
        net_cash = round_money(invoice.paid_amount - invoice.used_credit_balance)

        async def body(unit: OperationUnit):
            await unit.step(
                "save_invoice",
                lambda s: self.invoices.insert_invoice(invoice, session=s),
                lambda s: self.invoices.delete_invoice(invoice.id, session=s),
            )
            if invoice.used_credit_balance > 0:
                await unit.step(
                    "consume_credit",
                    lambda s: self._take_credit(customer_id, invoice.used_credit_balance, session=s),
                    lambda s: self.parties.inc_credit(customer_id, invoice.used_credit_balance, session=s),
                )
            await unit.step(
                "reduce_stock",
                lambda s: self.stock.reduce_stock_for_sale(invoice.items, ref, user_id, session=s),
                lambda s: self.stock.restock_sale_lines(invoice.items, ref, user_id, session=s),
            )

            tx = None
            if net_cash > 0:
                number = invoice.number
                if invoice.used_credit_balance > 0:
                    number = f"{number} (after credit)"
                tx = await self._record_treasury(
                    unit,
                    "record_income",
                    tx_type=TransactionType.INCOME.value,
                    amount=net_cash,
                    method=self._sale_method(invoice.payment_type),
                    reference_type=TreasuryReferenceType.INVOICE.value,
                    reference_id=invoice.id,
                    description=f"Sales invoice #{number}",
                    partner_id=customer_id,
                    user_id=user_id,
                )

            debt = None
            if remainder > self.tolerance:
                debt = await unit.step(
                    "create_debt",
                    lambda s: self.debts.create_debt(
                        CUSTOMER,
                        customer_id,
                        remainder,
                        invoice.due_date,
                        ReferenceType.INVOICE.value,
                        invoice.id,
                        description=f"Sales invoice #{invoice.number}",
                        created_by=user_id,
                        session=s,
                    ),
                    lambda s: self.debts.delete_debt(debt.id, session=s),
                )

            await unit.step(
                "daily_sales",
                lambda s: self.daily_sales.apply_invoice(invoice, session=s),
                lambda s: self.daily_sales.reverse_invoice(invoice, session=s),
            )
            if customer_id is not None:
                await unit.step(
                    "customer_totals",
                    lambda s: self.parties.record_purchase(CUSTOMER, customer_id, invoice.total, utcnow(), session=s),
                    lambda s: self.parties.record_purchase(CUSTOMER, customer_id, -invoice.total, session=s),
                )
            return {"invoice": invoice, "debt": debt, "transaction": tx}

        result = await self.runner.run("record_sale", body)
        await self.logs.log_action(
            user_id, "CREATE_INVOICE", "Invoice", invoice.id,
            diff={"total": invoice.total, "payment_type": invoice.payment_type, "atomic": result.atomic},
            note=f"Invoice #{invoice.number} recorded",
        )
        return result

    async def reverse_sale(self, invoice_id: ObjectId, user_id: Optional[ObjectId] = None) -> OperationResult:
        """
        Steps: delete debt, reverse stats, decrement customer total, delete
        treasury entries, credit back unified collections, restock, restore
        used credit, delete invoice.
        """
        invoice = await self._get_invoice(invoice_id)
        done = set(invoice.reversed_steps)
        if done:
            logger.info("Resuming reversal of invoice %s after %s", invoice.id, ", ".join(sorted(done)))
        ref = str(invoice.id)
        customer_id = invoice.customer_id
        collected = round_money(sum(p.amount for p in invoice.payments if p.collection_reference))

        async def mark(step, session):
            await self.invoices.mark_reversal_step(invoice.id, step, session=session)

        async def body(unit: OperationUnit):
            debt = await self._resumable(
                unit, done, mark, "delete_debt",
                lambda s: self._delete_reference_debt(ReferenceType.INVOICE.value, invoice.id, session=s),
            )
            await self._resumable(
                unit, done, mark, "reverse_daily_sales",
                lambda s: self.daily_sales.reverse_invoice(invoice, session=s),
            )
            if customer_id is not None:
                await self._resumable(
                    unit, done, mark, "customer_totals",
                    lambda s: self.parties.record_purchase(CUSTOMER, customer_id, -invoice.total, session=s),
                )
            removed = await self._resumable(
                unit, done, mark, "delete_treasury",
                lambda s: self.treasury.delete_transactions_by_reference(
                    TreasuryReferenceType.INVOICE.value, invoice.id, session=s
                ),
            )
            # Cash booked under a unified collection stays in the cashbox
            if collected > 0 and customer_id is not None:
                await self._resumable(
                    unit, done, mark, "refund_collections",
                    lambda s: self.parties.inc_credit(customer_id, collected, session=s),
                )
            await self._resumable(
                unit, done, mark, "restock",
                lambda s: self.stock.restock_sale_lines(invoice.items, ref, user_id, session=s),
            )
            if invoice.used_credit_balance > 0:
                await self._resumable(
                    unit, done, mark, "restore_credit",
                    lambda s: self.parties.inc_credit(customer_id, invoice.used_credit_balance, session=s),
                )
            await unit.step("delete_invoice", lambda s: self.invoices.delete_invoice(invoice.id, session=s))
            return {"invoice": invoice, "debt": debt, "transactions": removed or [], "credit_restored": collected}

        result = await self.runner.run("reverse_sale", body)
        await self.logs.log_action(
            user_id, "REVERSE_INVOICE", "Invoice", invoice.id,
            diff={"total": invoice.total}, note=f"Invoice #{invoice.number} cancelled and reversed",
        )
        return result

    # Purchases

    async def record_purchase_receive(
        self, po_id: ObjectId, payment_type: str = "cash", user_id: Optional[ObjectId] = None
    ) -> OperationResult:
        """
        Steps: increase stock (AVCO), mark received, then a treasury expense
        when paid or a supplier debt on credit, supplier lifetime total.
        """
        po = await self._get_purchase_order(po_id)
        if po.status != PurchaseStatus.PENDING:
            raise ValidationError(f"Purchase order {po.po_number} is {po.status}")

        payment_type = (payment_type or "cash").lower()
        on_credit = payment_type == "credit"
        method = None if on_credit else self._method(payment_type)
        if on_credit and po.supplier_id is None:
            raise ValidationError("Credit purchases need a supplier")

        ref = str(po.id)
        supplier_id = po.supplier_id
        total = round_money(po.total_cost or sum(item.qty * item.cost_price for item in po.items))
        previous = {
            "status": po.status,
            "received_date": po.received_date,
            "payment_type": po.payment_type,
            "paid_amount": po.paid_amount,
            "payment_status": po.payment_status,
        }

        async def mark_received(session):
            received = await self.invoices.update_purchase_order(
                po.id,
                {
                    "status": PurchaseStatus.RECEIVED.value,
                    "received_date": utcnow(),
                    "payment_type": payment_type,
                    "total_cost": total,
                    "paid_amount": 0.0 if on_credit else total,
                    "payment_status": PaymentStatus.PENDING.value if on_credit else PaymentStatus.PAID.value,
                },
                expected={"status": PurchaseStatus.PENDING.value},
                session=session,
            )
            if received is None:
                raise ValidationError(f"Purchase order {po.po_number} was received concurrently")
            return received

        async def body(unit: OperationUnit):
            await unit.step(
                "increase_stock",
                lambda s: self.stock.increase_stock_for_purchase(po.items, ref, user_id, session=s),
                lambda s: self.stock.decrease_stock_for_purchase_reversal(po.items, ref, user_id, session=s),
            )
            received = await unit.step(
                "mark_received",
                mark_received,
                lambda s: self.invoices.update_purchase_order(po.id, previous, session=s),
            )

            tx = debt = None
            if total > 0 and not on_credit:
                tx = await self._record_treasury(
                    unit,
                    "record_expense",
                    tx_type=TransactionType.EXPENSE.value,
                    amount=total,
                    method=method,
                    reference_type=TreasuryReferenceType.PURCHASE_ORDER.value,
                    reference_id=po.id,
                    description=f"Purchase order #{po.po_number}",
                    partner_id=supplier_id,
                    user_id=user_id,
                )
            elif total > 0:
                due = po.expected_date or add_days(utcnow(), self.settings.DEFAULT_SUPPLIER_TERMS_DAYS)
                debt = await unit.step(
                    "create_debt",
                    lambda s: self.debts.create_debt(
                        SUPPLIER,
                        supplier_id,
                        total,
                        due,
                        ReferenceType.PURCHASE_ORDER.value,
                        po.id,
                        description=f"Purchase order #{po.po_number}",
                        created_by=user_id,
                        session=s,
                    ),
                    lambda s: self.debts.delete_debt(debt.id, session=s),
                )

            if supplier_id is not None:
                await unit.step(
                    "supplier_totals",
                    lambda s: self.parties.record_purchase(SUPPLIER, supplier_id, total, utcnow(), session=s),
                    lambda s: self.parties.record_purchase(SUPPLIER, supplier_id, -total, session=s),
                )
            return {"purchase_order": received, "debt": debt, "transaction": tx}

        result = await self.runner.run("record_purchase_receive", body)
        await self.logs.log_action(
            user_id, "RECEIVE_PURCHASE", "PurchaseOrder", po.id,
            diff={"total_cost": total, "payment_type": payment_type}, note=f"PO #{po.po_number} received",
        )
        return result

    async def reverse_purchase_receive(self, po_id: ObjectId, user_id: Optional[ObjectId] = None) -> OperationResult:
        """
        Undo a receipt: delete the supplier debt or the treasury expense,
        supplier total, take the stock back out and unwind its cost, reopen
        the order. Refused once supplier payments were recorded against it.
        """
        po = await self._get_purchase_order(po_id)
        if po.status != PurchaseStatus.RECEIVED:
            raise ValidationError(f"Purchase order {po.po_number} is not received")
        if po.payments:
            raise ValidationError(f"Purchase order {po.po_number} has supplier payments recorded")
        debt = await self.debts.find_by_reference(ReferenceType.PURCHASE_ORDER.value, po.id, SUPPLIER)
        if debt is not None and debt.collected_amount > self.tolerance:
            raise ValidationError(f"Purchase order {po.po_number} has supplier payments recorded")

        done = set(po.reversed_steps)
        ref = str(po.id)
        supplier_id = po.supplier_id

        async def mark(step, session):
            await self.invoices.mark_purchase_reversal_step(po.id, step, session=session)

        async def body(unit: OperationUnit):
            await self._resumable(
                unit, done, mark, "delete_debt",
                lambda s: self._delete_reference_debt(ReferenceType.PURCHASE_ORDER.value, po.id, session=s),
            )
            await self._resumable(
                unit, done, mark, "delete_treasury",
                lambda s: self.treasury.delete_transactions_by_reference(
                    TreasuryReferenceType.PURCHASE_ORDER.value, po.id, session=s
                ),
            )
            if supplier_id is not None:
                await self._resumable(
                    unit, done, mark, "supplier_totals",
                    lambda s: self.parties.record_purchase(SUPPLIER, supplier_id, -po.total_cost, session=s),
                )
            await self._resumable(
                unit, done, mark, "remove_stock",
                lambda s: self.stock.decrease_stock_for_purchase_reversal(po.items, ref, user_id, session=s),
            )
            reopened = await unit.step(
                "reopen_order",
                lambda s: self.invoices.update_purchase_order(
                    po.id,
                    {
                        "status": PurchaseStatus.PENDING.value,
                        "received_date": None,
                        "paid_amount": 0.0,
                        "payment_status": PaymentStatus.PENDING.value,
                        "reversed_steps": [],
                    },
                    session=s,
                ),
            )
            return {"purchase_order": reopened}

        result = await self.runner.run("reverse_purchase_receive", body)
        await self.logs.log_action(
            user_id, "REVERSE_PURCHASE", "PurchaseOrder", po.id,
            diff={"total_cost": po.total_cost}, note=f"PO #{po.po_number} receipt reversed",
        )
        return result

    # Payments

    async def record_customer_payment(
        self, invoice_id: ObjectId, amount: float, method: str = "cash", note: str = "",
        user_id: Optional[ObjectId] = None,
    ) -> OperationResult:
        """Steps: invoice payment, installments, invoice debt or balance, treasury income."""
        amount = self._positive(amount)
        method = self._method(method)
        invoice = await self._get_invoice(invoice_id)
        remaining = round_money(invoice.total - invoice.paid_amount)
        if amount > remaining + self.tolerance:
            raise ValidationError(f"Payment exceeds the remaining {remaining:.2f} on invoice {invoice.number}")
        customer_id = invoice.customer_id

        async def body(unit: OperationUnit):
            payment = DocumentPayment(amount=amount, method=method, note=note, recorded_by=user_id)
            updated = await self._payment_step(unit, "record_payment", "invoice", invoice.id, payment)

            debt = None
            credit_added = 0.0
            if customer_id is not None:
                existing = await self.debts.find_by_reference(
                    ReferenceType.INVOICE.value, invoice.id, CUSTOMER, session=unit.session
                )
                if existing is not None and existing.status in OPEN_STATUSES:
                    debt = await self._pay_debt(unit, "apply_to_debt", existing, amount)
                else:
                    credit_added = await self._apply_unbacked(unit, CUSTOMER, customer_id, amount)
                scheduled = round_money(amount - credit_added)
                if scheduled > 0:
                    await self._update_schedules(unit, CUSTOMER, customer_id, scheduled)

            balance_after = await self._balance_of(CUSTOMER, customer_id, session=unit.session)
            tx = await self._record_treasury(
                unit,
                "record_income",
                tx_type=TransactionType.INCOME.value,
                amount=amount,
                method=method,
                reference_type=TreasuryReferenceType.INVOICE.value,
                reference_id=invoice.id,
                description=f"Payment for invoice #{invoice.number}" + (f" - {note}" if note else ""),
                partner_id=customer_id,
                user_id=user_id,
                meta={"customer_balance_after": balance_after},
            )
            return {"invoice": updated, "debt": debt, "credit_added": credit_added, "transaction": tx}

        result = await self.runner.run("record_customer_payment", body)
        await self.logs.log_action(
            user_id, "COLLECT_PAYMENT", "Invoice", invoice.id,
            diff={"amount": amount, "method": method}, note=note,
        )
        return result

    async def record_total_customer_payment(
        self, customer_id: ObjectId, amount: float, method: str = "cash", note: str = "",
        user_id: Optional[ObjectId] = None,
    ) -> OperationResult:
        """One collection spread over all open debts of a customer, oldest due first."""
        amount = self._positive(amount)
        method = self._method(method)
        customer = await self.parties.get(CUSTOMER, customer_id)
        if customer is None:
            raise NotFoundError(CUSTOMER, customer_id)
        if not await self.debts.find_open(CUSTOMER, customer_id) and customer.balance <= self.tolerance:
            raise ValidationError("No outstanding debts for this customer")

        async def body(unit: OperationUnit):
            left = amount
            applied_payments = []
            for debt in await self.debts.find_open(CUSTOMER, customer_id, session=unit.session):
                if left <= 0:
                    break
                portion = round_money(min(debt.remaining_amount, left))
                if portion <= 0:
                    continue
                await self._pay_debt(unit, f"apply_debt:{debt.id}", debt, portion)
                if debt.reference_type == ReferenceType.INVOICE:
                    payment = DocumentPayment(
                        amount=portion, method=method, note=note, recorded_by=user_id,
                        collection_reference=TreasuryReferenceType.UNIFIED_COLLECTION.value,
                    )
                    await self._payment_step(
                        unit, f"invoice_payment:{debt.reference_id}", "invoice", debt.reference_id, payment,
                        required=False,
                    )
                left = round_money(left - portion)
                applied_payments.append({
                    "debt_id": debt.id,
                    "reference_type": debt.reference_type,
                    "reference_id": debt.reference_id,
                    "amount_applied": portion,
                })

            to_credit = 0.0
            if left > 0:
                to_credit = await self._apply_unbacked(unit, CUSTOMER, customer_id, left)

            scheduled = round_money(amount - to_credit)
            if scheduled > 0:
                await self._update_schedules(unit, CUSTOMER, customer_id, scheduled)

            balance_after = await self._balance_of(CUSTOMER, customer_id, session=unit.session)
            tx = await self._record_treasury(
                unit,
                "record_income",
                tx_type=TransactionType.INCOME.value,
                amount=amount,
                method=method,
                reference_type=TreasuryReferenceType.UNIFIED_COLLECTION.value,
                reference_id=customer_id,
                description=note or f"Collection across {len(applied_payments)} debts",
                partner_id=customer_id,
                user_id=user_id,
                meta={"customer_balance_after": balance_after, "applied_payments_count": len(applied_payments)},
            )
            return {
                "applied_payments": applied_payments,
                "credit_added": to_credit,
                "balance_after": balance_after,
                "transaction": tx,
            }

        result = await self.runner.run("record_total_customer_payment", body)
        await self.logs.log_action(
            user_id, "COLLECT_TOTAL_PAYMENT", "Customer", customer_id,
            diff={"amount": amount, "method": method, "applied": len(result["applied_payments"])}, note=note,
        )
        return result

    async def record_supplier_payment(
        self, po_id: ObjectId, amount: float, method: str = "cash", note: str = "",
        user_id: Optional[ObjectId] = None,
    ) -> OperationResult:
        """Steps: PO payment, installments, PO debt or balance, treasury expense."""
        amount = self._positive(amount)
        method = self._method(method)
        po = await self._get_purchase_order(po_id)
        remaining = round_money(po.total_cost - po.paid_amount)
        if amount > remaining + self.tolerance:
            raise ValidationError(f"Payment exceeds the remaining {remaining:.2f} on PO {po.po_number}")
        supplier_id = po.supplier_id

        async def body(unit: OperationUnit):
            payment = DocumentPayment(amount=amount, method=method, note=note, recorded_by=user_id)
            updated = await self._payment_step(unit, "record_payment", "purchase_order", po.id, payment)

            debt = None
            if supplier_id is not None:
                existing = await self.debts.find_by_reference(
                    ReferenceType.PURCHASE_ORDER.value, po.id, SUPPLIER, session=unit.session
                )
                if existing is not None and existing.status in OPEN_STATUSES:
                    debt = await self._pay_debt(unit, "apply_to_debt", existing, amount)
                else:
                    await self._apply_unbacked(unit, SUPPLIER, supplier_id, amount)
                await self._update_schedules(unit, SUPPLIER, supplier_id, amount)

            balance_after = await self._balance_of(SUPPLIER, supplier_id, session=unit.session)
            tx = await self._record_treasury(
                unit,
                "record_expense",
                tx_type=TransactionType.EXPENSE.value,
                amount=amount,
                method=method,
                reference_type=TreasuryReferenceType.PURCHASE_ORDER.value,
                reference_id=po.id,
                description=f"Payment for PO #{po.po_number}" + (f" - {note}" if note else ""),
                partner_id=supplier_id,
                user_id=user_id,
                meta={"supplier_balance_after": balance_after},
            )
            return {"purchase_order": updated, "debt": debt, "transaction": tx}

        result = await self.runner.run("record_supplier_payment", body)
        await self.logs.log_action(
            user_id, "PAY_SUPPLIER", "PurchaseOrder", po.id,
            diff={"amount": amount, "method": method}, note=note,
        )
        return result

    async def record_manual_debt_payment(
        self, debt_id: ObjectId, amount: float, method: str = "cash", note: str = "",
        user_id: Optional[ObjectId] = None,
    ) -> OperationResult:
        """Pay a debt directly: installments, debt remainder, treasury income or expense."""
        amount = self._positive(amount)
        method = self._method(method)
        debt = await self.debts.get_debt_by_id(debt_id)
        if debt.status not in OPEN_STATUSES:
            raise ValidationError(f"Debt is {debt.status}")
        if amount > debt.remaining_amount + self.tolerance:
            raise ValidationError(f"Payment exceeds the remaining {debt.remaining_amount:.2f}")
        is_customer = debt.debtor_type == DebtorType.CUSTOMER

        async def body(unit: OperationUnit):
            await self._update_schedules(unit, debt.debtor_type, debt.debtor_id, amount)
            updated = await self._pay_debt(unit, "apply_to_debt", debt, amount)
            balance_after = await self._balance_of(debt.debtor_type, debt.debtor_id, session=unit.session)
            if is_customer:
                description = f"Collection of earlier debt: {debt.description}"
            else:
                description = "Payment of earlier supplier debt"
            tx = await self._record_treasury(
                unit,
                "record_transaction",
                tx_type=TransactionType.INCOME.value if is_customer else TransactionType.EXPENSE.value,
                amount=amount,
                method=method,
                reference_type=TreasuryReferenceType.DEBT.value,
                reference_id=debt.id,
                description=description + (f" - {note}" if note else ""),
                partner_id=debt.debtor_id,
                user_id=user_id,
                meta={"balance_after": balance_after},
            )
            return {"debt": updated, "transaction": tx}

        result = await self.runner.run("record_manual_debt_payment", body)
        await self.logs.log_action(
            user_id, "PAY_DEBT", "Debt", debt.id, diff={"amount": amount, "method": method}, note=note,
        )
        return result

    async def settle_debt(self, request: SettleDebtRequest, user_id: Optional[ObjectId] = None) -> OperationResult:
        """
        Route a settlement: receivable ids are invoices or customer debts,
        payable ids are purchase orders or supplier debts.
        """
        if request.type == "receivable":
            if await self.invoices.get_invoice(request.id) is not None:
                return await self.record_customer_payment(request.id, request.amount, request.method, request.note, user_id)
            debtor_type = CUSTOMER
        elif request.type == "payable":
            if await self.invoices.get_purchase_order(request.id) is not None:
                return await self.record_supplier_payment(request.id, request.amount, request.method, request.note, user_id)
            debtor_type = SUPPLIER
        else:
            raise ValidationError(f"Unknown settlement type: {request.type}")

        debt = await self.debts.find_debt(request.id)
        if debt is None:
            debt = await self.debts.find_by_reference(None, request.id, debtor_type)
        if debt is None or debt.debtor_type != debtor_type:
            raise NotFoundError("Invoice, purchase order or debt", request.id)
        return await self.record_manual_debt_payment(debt.id, request.amount, request.method, request.note, user_id)

    # Returns

    async def process_sale_return(
        self, invoice_id: ObjectId, request: SaleReturnRequest, user_id: Optional[ObjectId] = None
    ) -> OperationResult:
        """
        Steps: rewrite invoice lines and totals, create the SalesReturn,
        restock to the shop, refund in cash or to the customer's account,
        customer lifetime total.

        A refund to the customer's account first reduces what is still owed
        on this invoice, then the uncovered part of the balance, and the rest
        becomes credit.
        """
        invoice = await self._get_invoice(invoice_id)
        refund_method = request.refund_method
        if refund_method not in (RefundMethod.CASH, RefundMethod.CUSTOMER_BALANCE):
            raise ValidationError(f"Unknown refund method: {refund_method}")
        customer_id = invoice.customer_id
        if refund_method == RefundMethod.CUSTOMER_BALANCE and customer_id is None:
            raise ValidationError("Refund to balance needs a customer")
        if not request.items:
            raise ValidationError("Nothing to return")

        lines = [item.model_copy() for item in invoice.items]
        return_items = []
        for wanted in request.items:
            line = next(
                (
                    candidate for candidate in lines
                    if (wanted.invoice_item_id is not None and candidate.item_id == wanted.invoice_item_id)
                    or (wanted.invoice_item_id is None and wanted.product_id is not None and candidate.product_id == wanted.product_id)
                ),
                None,
            )
            if line is None:
                raise ValidationError("Returned item is not on the invoice")
            if wanted.qty > line.qty + 1e-9:
                raise ValidationError(f"Cannot return {wanted.qty} of {line.product_name}, only {line.qty} sold")
            line.qty = line.qty - wanted.qty
            return_items.append(ReturnItem(
                invoice_item_id=line.item_id,
                product_id=line.product_id,
                product_name=line.product_name,
                qty=wanted.qty,
                unit_price=line.unit_price,
                refund_amount=round_money(wanted.qty * line.unit_price),
                is_service=line.is_service,
            ))

        kept = []
        for line in lines:
            if line.qty <= 1e-9:
                continue
            line.total = round_money(line.qty * line.unit_price)
            line.profit = round_money(line.total - line.qty * (line.cost_price or 0))
            kept.append(line)

        subtotal = round_money(sum(line.total for line in kept))
        total = round_money(subtotal + invoice.tax)
        total_cost = round_money(sum(line.qty * (line.cost_price or 0) for line in kept))
        reduction = round_money(invoice.total - total)
        refund = round_money(
            request.total_refund if request.total_refund is not None else sum(i.refund_amount for i in return_items)
        )
        if refund < 0:
            raise ValidationError("Refund cannot be negative")

        debt = None
        if customer_id is not None:
            debt = await self.debts.find_by_reference(ReferenceType.INVOICE.value, invoice.id, CUSTOMER)
            if debt is not None and debt.status not in OPEN_STATUSES:
                debt = None
        open_remaining = debt.remaining_amount if debt else 0.0

        if refund_method == RefundMethod.CASH:
            if refund > invoice.paid_amount + self.tolerance:
                raise InsufficientBalanceError(
                    "Cash refund exceeds the amount paid", required=refund, available=invoice.paid_amount
                )
            new_paid = max(0.0, round_money(invoice.paid_amount - refund))
            still_owed = max(0.0, round_money(total - new_paid))
            debt_part = round_money(max(0.0, open_remaining - still_owed))
            to_account = 0.0
        else:
            debt_part = round_money(min(refund, open_remaining))
            to_account = round_money(refund - debt_part)
            new_paid = max(0.0, round_money(invoice.paid_amount - to_account))

        previous = {
            "items": [item.model_dump() for item in invoice.items],
            "subtotal": invoice.subtotal,
            "total": invoice.total,
            "total_cost": invoice.total_cost,
            "profit": invoice.profit,
            "paid_amount": invoice.paid_amount,
            "payment_status": invoice.payment_status,
            "has_returns": invoice.has_returns,
        }
        sales_return = SalesReturn(
            return_number=f"RET-{utcnow():%Y%m%d%H%M%S%f}",
            original_invoice_id=invoice.id,
            customer_id=customer_id,
            items=return_items,
            total_refund=refund,
            refund_method=refund_method,
            customer_balance_added=refund if refund_method == RefundMethod.CUSTOMER_BALANCE else 0.0,
            treasury_deducted=refund if refund_method == RefundMethod.CASH else 0.0,
            created_by=user_id,
        )

        async def rewrite(session):
            updated = await self.invoices.update_invoice(
                invoice.id,
                {
                    "items": [line.model_dump() for line in kept],
                    "subtotal": subtotal,
                    "total": total,
                    "total_cost": total_cost,
                    "profit": round_money(total - total_cost),
                    "paid_amount": new_paid,
                    "payment_status": payment_status(new_paid, total),
                    "has_returns": True,
                },
                expected={"paid_amount": invoice.paid_amount, "total": invoice.total},
                session=session,
            )
            if updated is None:
                raise ConcurrencyConflictError(f"Invoice {invoice.number} changed during return")
            return updated

        async def body(unit: OperationUnit):
            updated = await unit.step(
                "rewrite_invoice", rewrite,
                lambda s: self.invoices.update_invoice(invoice.id, previous, session=s),
            )
            await unit.step(
                "create_return",
                lambda s: self.invoices.insert_return(sales_return, session=s),
                lambda s: self.invoices.delete_return(sales_return.id, session=s),
            )
            await unit.step(
                "restock",
                lambda s: self.stock.increase_stock_for_return(return_items, sales_return.return_number, user_id, session=s),
                lambda s: self.stock.revert_return_stock(return_items, sales_return.return_number, user_id, session=s),
            )

            tx = None
            if debt_part > 0:
                await self._pay_debt(unit, "refund_to_debt", debt, debt_part)
            if refund_method == RefundMethod.CASH and refund > 0:
                tx = await self._record_treasury(
                    unit,
                    "refund_cash",
                    tx_type=TransactionType.EXPENSE.value,
                    amount=refund,
                    method="cash",
                    reference_type=TreasuryReferenceType.SALES_RETURN.value,
                    reference_id=sales_return.id,
                    description=f"Refund for return {sales_return.return_number} of invoice #{invoice.number}",
                    partner_id=customer_id,
                    user_id=user_id,
                )
            elif to_account > 0:
                uncovered = await self.debts.uncovered_balance(CUSTOMER, customer_id, session=unit.session)
                to_balance = round_money(min(to_account, uncovered))
                to_credit = round_money(to_account - to_balance)
                if to_balance > 0:
                    await self._move_balance(unit, "refund_to_balance", CUSTOMER, customer_id, -to_balance)
                if to_credit > 0:
                    await unit.step(
                        "refund_to_credit",
                        lambda s: self.parties.inc_credit(customer_id, to_credit, session=s),
                        lambda s: self.parties.inc_credit(customer_id, -to_credit, session=s),
                    )

            if customer_id is not None and reduction > 0:
                await unit.step(
                    "customer_totals",
                    lambda s: self.parties.record_purchase(CUSTOMER, customer_id, -reduction, session=s),
                    lambda s: self.parties.record_purchase(CUSTOMER, customer_id, reduction, session=s),
                )
            return {"sales_return": sales_return, "invoice": updated, "transaction": tx}

        result = await self.runner.run("process_sale_return", body)
        await self.logs.log_action(
            user_id, "SALE_RETURN", "Invoice", invoice.id,
            diff={"refund": refund, "refund_method": refund_method, "return_number": sales_return.return_number},
        )
        return result

    # Manual treasury entries

    async def _manual_entry(self, tx_type: str, request: ManualEntryRequest, user_id, action: str) -> OperationResult:
        amount = self._positive(request.amount)
        if not request.reason:
            raise ValidationError("A reason is required")
        method = self._method(request.method)
        add = self.treasury.add_manual_income if tx_type == TransactionType.INCOME else self.treasury.add_manual_expense

        async def body(unit: OperationUnit):
            tx = None

            async def undo(session):
                await self.treasury.undo_transaction(tx.id, session=session)

            tx = await unit.step(
                "manual_entry",
                lambda s: add(request.date, amount, request.reason, request.category, user_id, method, session=s),
                undo,
            )
            return {"transaction": tx}

        result = await self.runner.run(action.lower(), body)
        await self.logs.log_action(
            user_id, action, "Treasury", result["transaction"].id,
            diff={"amount": amount, "category": request.category, "reason": request.reason},
            note=f"{tx_type.title()} recorded: {request.reason}",
        )
        return result

    async def record_expense(self, request: ManualEntryRequest, user_id: Optional[ObjectId] = None) -> OperationResult:
        return await self._manual_entry(TransactionType.EXPENSE.value, request, user_id, "CREATE_EXPENSE")

    async def record_income(self, request: ManualEntryRequest, user_id: Optional[ObjectId] = None) -> OperationResult:
        return await self._manual_entry(TransactionType.INCOME.value, request, user_id, "CREATE_INCOME")

    async def undo_treasury_transaction(
        self, transaction_id: ObjectId, user_id: Optional[ObjectId] = None
    ) -> OperationResult:
        async def body(unit: OperationUnit):
            tx = await unit.step("undo_transaction", lambda s: self.treasury.undo_transaction(transaction_id, session=s))
            return {"transaction": tx}

        result = await self.runner.run("undo_treasury_transaction", body)
        tx = result["transaction"]
        await self.logs.log_action(
            user_id, "UNDO_TRANSACTION", "Treasury", transaction_id,
            diff={"type": tx.type, "amount": tx.amount, "method": tx.method},
        )
        return result

    # Debt corrections

    async def adjust_debt(
        self, debt_id: ObjectId, request: DebtAdjustmentRequest, user_id: Optional[ObjectId] = None
    ) -> OperationResult:
        """
        Manual debt correction. A change in collected amount is booked as an
        adjustment line: for customers collecting more is income, for
        suppliers paying more is an expense.
        """
        changes = request.model_dump(exclude_none=True)

        async def body(unit: OperationUnit):
            previous = {}

            async def undo(session):
                await self.debts.update_debt(debt_id, previous, session=session)

            updated, difference, before = await unit.step(
                "update_debt", lambda s: self.debts.update_debt(debt_id, changes, session=s), undo
            )
            previous.update(before)

            tx = None
            if abs(difference) > self.tolerance:
                is_customer = updated.debtor_type == DebtorType.CUSTOMER
                gained = difference > 0
                tx_type = TransactionType.INCOME if is_customer == gained else TransactionType.EXPENSE
                tx = await self._record_treasury(
                    unit,
                    "record_adjustment",
                    tx_type=tx_type.value,
                    amount=abs(difference),
                    method="adjustment",
                    reference_type=TreasuryReferenceType.DEBT.value,
                    reference_id=updated.id,
                    description=(
                        f"{'Collection' if is_customer else 'Payment'} adjustment "
                        f"{'increase' if gained else 'decrease'}: {abs(difference):.2f}"
                    ),
                    partner_id=updated.debtor_id,
                    category="debt_adjustment",
                    user_id=user_id,
                    meta={"is_adjustment": True, "difference": difference},
                )
            return {"debt": updated, "collected_difference": difference, "transaction": tx}

        result = await self.runner.run("adjust_debt", body)
        await self.logs.log_action(
            user_id, "ADJUST_DEBT", "Debt", debt_id, diff=dict(changes, collected_difference=result["collected_difference"]),
        )
        return result

"""
Tests for sales, sale reversal and sales returns through the coordinator.

Covers:
- Cash, partial and credit-balance sales across stock, treasury and debts
- Compensation when a later step fails
- Reversal, including resuming an interrupted one
- Returns refunded in cash or to the customer's account
"""

import pytest

from retail_core.core.errors import (
    InsufficientBalanceError,
    InsufficientStockError,
    PartialApplicationError,
    ValidationError,
)
from retail_core.models.debt import DebtStatus
from retail_core.schemas.finance import ReturnLineRequest, SaleReturnRequest
from retail_core.utils.dates import day_key


async def _stock(container, product):
    return await container.products.get(product.id)


async def _balance(container, customer):
    return await container.parties.get("Customer", customer.id)


async def _invoice_transactions(container, invoice):
    return await container.treasury.treasury.find_by_reference("Invoice", invoice.id)


@pytest.mark.asyncio
class TestRecordSale:
    async def test_cash_sale(self, container, product, make_invoice):
        invoice = make_invoice([(product, 2, 9.0)])

        result = await container.finance.record_sale(invoice)

        assert result.atomic is False
        assert result.completed_steps == ["save_invoice", "reduce_stock", "record_income", "daily_sales"]
        assert (await _stock(container, product)).shop_qty == 3

        stored = await container.invoices.get_invoice(invoice.id)
        assert stored.payment_status == "paid"
        assert stored.total_cost == 10.0
        assert stored.profit == 8.0
        assert stored.items[0].cost_price == 5.0

        transactions = await _invoice_transactions(container, invoice)
        assert [(tx.type, tx.amount, tx.method) for tx in transactions] == [("INCOME", 18.0, "cash")]

        stats = await container.daily_sales.get_day(invoice.date)
        assert stats.total_revenue == 18.0
        assert stats.total_profit == 8.0
        assert stats.invoice_count == 1

        history = await container.logs.get_entity_history("Invoice", invoice.id)
        assert [entry.action for entry in history] == ["CREATE_INVOICE"]

    async def test_partial_sale_creates_debt(self, container, product, customer, make_invoice):
        invoice = make_invoice([(product, 5, 60.0)], paid=100.0, customer=customer, payment_type="partial")

        result = await container.finance.record_sale(invoice)

        debt = result["debt"]
        assert debt.original_amount == 200.0
        assert debt.reference_type == "Invoice"
        assert debt.reference_id == invoice.id

        party = await _balance(container, customer)
        assert party.balance == 200.0
        assert party.total_purchases == 300.0
        assert party.last_purchase_date is not None

        transactions = await _invoice_transactions(container, invoice)
        assert [tx.amount for tx in transactions] == [100.0]
        stored = await container.invoices.get_invoice(invoice.id)
        assert stored.payment_status == "partial"
        assert stored.due_date is not None

    async def test_credit_sale_needs_customer(self, container, product, make_invoice):
        invoice = make_invoice([(product, 1, 9.0)], paid=0.0, payment_type="credit")

        with pytest.raises(ValidationError):
            await container.finance.record_sale(invoice)

    async def test_paid_above_total_rejected(self, container, product, make_invoice):
        invoice = make_invoice([(product, 1, 9.0)], paid=12.0)

        with pytest.raises(ValidationError):
            await container.finance.record_sale(invoice)

    async def test_sale_using_customer_credit(self, container, product, customer, make_invoice):
        await container.parties.inc_credit(customer.id, 50.0)
        invoice = make_invoice([(product, 1, 100.0)], customer=customer, used_credit_balance=50.0)

        await container.finance.record_sale(invoice)

        party = await _balance(container, customer)
        assert party.credit_balance == 0.0
        assert party.balance == 0.0
        transactions = await _invoice_transactions(container, invoice)
        assert [tx.amount for tx in transactions] == [50.0]
        assert "(after credit)" in transactions[0].description

    async def test_insufficient_credit_compensates(self, container, product, customer, make_invoice):
        await container.parties.inc_credit(customer.id, 10.0)
        invoice = make_invoice([(product, 1, 100.0)], customer=customer, used_credit_balance=50.0)

        with pytest.raises(InsufficientBalanceError):
            await container.finance.record_sale(invoice)

        assert await container.invoices.get_invoice(invoice.id) is None
        assert (await _balance(container, customer)).credit_balance == 10.0
        assert (await _stock(container, product)).shop_qty == 5

    async def test_insufficient_stock_compensates(self, container, product, customer, make_invoice):
        await container.parties.inc_credit(customer.id, 20.0)
        invoice = make_invoice([(product, 6, 10.0)], customer=customer, used_credit_balance=20.0)

        with pytest.raises(InsufficientStockError):
            await container.finance.record_sale(invoice)

        assert await container.invoices.get_invoice(invoice.id) is None
        assert (await _balance(container, customer)).credit_balance == 20.0
        assert await _invoice_transactions(container, invoice) == []
        assert (await _stock(container, product)).shop_qty == 5


@pytest.mark.asyncio
class TestReverseSale:
    async def test_reversal_restores_every_ledger(self, container, product, customer, make_invoice):
        invoice = make_invoice([(product, 5, 60.0)], paid=100.0, customer=customer, payment_type="partial")
        await container.finance.record_sale(invoice)

        result = await container.finance.reverse_sale(invoice.id)

        assert result["debt"].original_amount == 200.0
        assert await container.invoices.get_invoice(invoice.id) is None
        assert await container.debts.find_by_reference("Invoice", invoice.id) is None

        party = await _balance(container, customer)
        assert party.balance == 0.0
        assert party.total_purchases == 0.0
        assert (await _stock(container, product)).shop_qty == 5
        assert await _invoice_transactions(container, invoice) == []

        stats = await container.daily_sales.get_day(day_key(invoice.date))
        assert stats.total_revenue == 0.0
        assert stats.invoice_count == 0

        cashbox = await container.treasury.get_daily_cashbox(invoice.date)
        assert cashbox.total_income == 0.0

    async def test_reversal_after_payment(self, container, product, customer, make_invoice):
        invoice = make_invoice([(product, 5, 60.0)], paid=100.0, customer=customer, payment_type="partial")
        await container.finance.record_sale(invoice)
        await container.finance.record_customer_payment(invoice.id, 50.0)

        await container.finance.reverse_sale(invoice.id)

        assert (await _balance(container, customer)).balance == 0.0
        assert await _invoice_transactions(container, invoice) == []

    async def test_reversal_credits_unified_collections(self, container, product, customer, make_invoice):
        invoice = make_invoice([(product, 5, 60.0)], paid=100.0, customer=customer, payment_type="partial")
        await container.finance.record_sale(invoice)
        await container.finance.record_total_customer_payment(customer.id, 150.0)

        result = await container.finance.reverse_sale(invoice.id)

        assert "refund_collections" in result.completed_steps
        assert result["credit_restored"] == 150.0
        party = await _balance(container, customer)
        assert party.balance == 0.0
        assert party.credit_balance == 150.0
        cashbox = await container.treasury.get_daily_cashbox(invoice.date)
        assert cashbox.total_income == 150.0

    async def test_reversal_restores_used_credit(self, container, product, customer, make_invoice):
        await container.parties.inc_credit(customer.id, 30.0)
        invoice = make_invoice([(product, 1, 30.0)], customer=customer, used_credit_balance=30.0)
        await container.finance.record_sale(invoice)

        await container.finance.reverse_sale(invoice.id)

        assert (await _balance(container, customer)).credit_balance == 30.0

    async def test_interrupted_reversal_resumes(self, container, product, customer, make_invoice, monkeypatch):
        invoice = make_invoice([(product, 5, 60.0)], paid=100.0, customer=customer, payment_type="partial")
        await container.finance.record_sale(invoice)

        async def broken_restock(*args, **kwargs):
            raise ValidationError("warehouse offline")

        monkeypatch.setattr(container.stock, "restock_sale_lines", broken_restock)
        with pytest.raises(PartialApplicationError) as exc_info:
            await container.finance.reverse_sale(invoice.id)

        assert exc_info.value.failed_step == "restock"
        assert exc_info.value.outstanding_steps == [
            "delete_debt", "reverse_daily_sales", "customer_totals", "delete_treasury"
        ]
        pending = await container.invoices.get_invoice(invoice.id)
        assert pending.reversed_steps == ["delete_debt", "reverse_daily_sales", "customer_totals", "delete_treasury"]

        monkeypatch.undo()
        result = await container.finance.reverse_sale(invoice.id)

        assert result.completed_steps == ["restock", "delete_invoice"]
        party = await _balance(container, customer)
        assert party.balance == 0.0
        assert party.total_purchases == 0.0
        assert (await _stock(container, product)).shop_qty == 5
        assert await container.invoices.get_invoice(invoice.id) is None


@pytest.mark.asyncio
class TestSaleReturn:
    async def test_cash_refund(self, container, product, make_invoice):
        invoice = make_invoice([(product, 2, 9.0)])
        await container.finance.record_sale(invoice)

        result = await container.finance.process_sale_return(
            invoice.id, SaleReturnRequest(items=[ReturnLineRequest(product_id=product.id, qty=1)])
        )

        sales_return = result["sales_return"]
        assert sales_return.total_refund == 9.0
        assert sales_return.treasury_deducted == 9.0
        assert sales_return.return_number.startswith("RET-")

        stored = await container.invoices.get_invoice(invoice.id)
        assert stored.total == 9.0
        assert stored.paid_amount == 9.0
        assert stored.items[0].qty == 1
        assert stored.has_returns is True
        assert (await _stock(container, product)).shop_qty == 4

        refunds = await container.treasury.treasury.find_by_reference("SalesReturn", sales_return.id)
        assert [(tx.type, tx.amount) for tx in refunds] == [("EXPENSE", 9.0)]
        assert [r.id for r in await container.invoices.find_returns(invoice.id)] == [sales_return.id]

    async def test_refund_to_balance_reduces_invoice_debt(self, container, product, customer, make_invoice):
        invoice = make_invoice([(product, 5, 60.0)], paid=100.0, customer=customer, payment_type="partial")
        await container.finance.record_sale(invoice)
        item_id = invoice.items[0].item_id

        result = await container.finance.process_sale_return(
            invoice.id,
            SaleReturnRequest(
                items=[ReturnLineRequest(invoice_item_id=item_id, qty=2)], refund_method="customerBalance"
            ),
        )

        assert result["sales_return"].customer_balance_added == 120.0
        debt = await container.debts.find_by_reference("Invoice", invoice.id)
        assert debt.remaining_amount == 80.0
        assert debt.status == DebtStatus.ACTIVE

        party = await _balance(container, customer)
        assert party.balance == 80.0
        assert party.credit_balance == 0.0
        assert party.total_purchases == 180.0

        stored = await container.invoices.get_invoice(invoice.id)
        assert stored.total == 180.0
        assert stored.paid_amount == 100.0
        assert (await _stock(container, product)).shop_qty == 2

    async def test_refund_to_balance_beyond_debt_becomes_credit(self, container, product, customer, make_invoice):
        invoice = make_invoice([(product, 2, 50.0)], customer=customer)
        await container.finance.record_sale(invoice)

        await container.finance.process_sale_return(
            invoice.id,
            SaleReturnRequest(items=[ReturnLineRequest(product_id=product.id, qty=1)], refund_method="customerBalance"),
        )

        party = await _balance(container, customer)
        assert party.credit_balance == 50.0
        assert party.balance == 0.0
        stored = await container.invoices.get_invoice(invoice.id)
        assert stored.paid_amount == 50.0

    async def test_cannot_return_more_than_sold(self, container, product, make_invoice):
        invoice = make_invoice([(product, 2, 9.0)])
        await container.finance.record_sale(invoice)

        with pytest.raises(ValidationError):
            await container.finance.process_sale_return(
                invoice.id, SaleReturnRequest(items=[ReturnLineRequest(product_id=product.id, qty=3)])
            )

        assert (await container.invoices.get_invoice(invoice.id)).total == 18.0

    async def test_cash_refund_cannot_exceed_paid(self, container, product, customer, make_invoice):
        invoice = make_invoice([(product, 2, 50.0)], paid=20.0, customer=customer, payment_type="partial")
        await container.finance.record_sale(invoice)

        with pytest.raises(InsufficientBalanceError):
            await container.finance.process_sale_return(
                invoice.id, SaleReturnRequest(items=[ReturnLineRequest(product_id=product.id, qty=1)])
            )

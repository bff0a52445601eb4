import logging
from typing import Optional

from retail_core.models.audit import DailySales, DailySalesEntry
from retail_core.models.invoice import Invoice
from retail_core.repositories.daily_sales_repo import DailySalesRepository
from retail_core.utils.dates import DateLike, day_key
from retail_core.utils.money import round_money

logger = logging.getLogger("retail_core.daily_sales")


class DailySalesService:
    """Per-day sales statistics, one contribution per invoice."""

    def __init__(self, daily_sales: DailySalesRepository):
        self.daily_sales = daily_sales

    @staticmethod
    def entry_for(invoice: Invoice) -> DailySalesEntry:
        paid = min(invoice.paid_amount, invoice.total)
        return DailySalesEntry(
            invoice_id=invoice.id,
            revenue=round_money(invoice.total),
            cost=round_money(invoice.total_cost),
            profit=round_money(invoice.total - invoice.total_cost),
            items_sold=sum(item.qty for item in invoice.items),
            cash_sales=round_money(paid),
            credit_sales=round_money(invoice.total - paid),
        )

    async def apply_invoice(self, invoice: Invoice, session=None) -> bool:
        day = day_key(invoice.date)
        await self.daily_sales.ensure_day(day, session=session)
        return await self.daily_sales.add_entry(day, self.entry_for(invoice), session=session)

    async def reverse_invoice(self, invoice: Invoice, session=None) -> bool:
        """Subtract exactly what the invoice added, even if it changed since."""
        day = day_key(invoice.date)
        entry = await self.daily_sales.find_entry(day, invoice.id, session=session)
        if entry is None:
            logger.info("Invoice %s has no daily sales contribution on %s", invoice.id, day)
            return False
        return await self.daily_sales.remove_entry(day, entry, session=session)

    async def get_day(self, day: DateLike) -> Optional[DailySales]:
        return await self.daily_sales.get(day_key(day))

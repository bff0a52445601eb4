"""
StockService - Inventory costing ledger.

Owns product quantities per location and the moving weighted-average cost.

Rules:
1. Sales decrement with a conditional update (qty >= requested), never read-then-write
2. Purchases always land in the warehouse and re-average cost exactly once per unit
3. Returns land in the shop at unchanged cost
4. Every change appends a movement; mistakes are undone by a compensating movement
"""

import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Iterable, List, Optional

from bson import ObjectId

from retail_core.core.config import Settings
from retail_core.core.errors import (
    ConcurrencyConflictError,
    InsufficientStockError,
    NotFoundError,
    ValidationError,
)
from retail_core.models.product import (
    MovementType,
    Product,
    StockLine,
    StockLocation,
    StockMovement,
    StockSnapshot,
)
from retail_core.repositories.product_repo import ProductRepository
from retail_core.utils.money import round_money

logger = logging.getLogger("retail_core.stock")

QTY_FIELDS = {
    StockLocation.SHOP.value: "shop_qty",
    StockLocation.WAREHOUSE.value: "warehouse_qty",
}


def weighted_average_cost(old_qty: float, old_cost: float, recv_qty: float, recv_cost: float) -> float:
    """(old_qty*old_cost + recv_qty*recv_cost) / (old_qty + recv_qty); unchanged when that is not positive."""
    denominator = old_qty + recv_qty
    if denominator <= 0:
        return old_cost
    return round_money((old_qty * old_cost + recv_qty * recv_cost) / denominator)


def unwind_average_cost(qty: float, cost: float, removed_qty: float, removed_cost: float) -> float:
    """Inverse of weighted_average_cost for a reversed receipt."""
    denominator = qty - removed_qty
    if denominator <= 0:
        return cost
    return max(0.0, round_money((qty * cost - removed_qty * removed_cost) / denominator))


def to_stock_lines(items: Iterable[Any]) -> List[StockLine]:
    lines = []
    for item in items:
        data = item if isinstance(item, dict) else item.model_dump()
        lines.append(StockLine.model_validate(data))
    return lines


def _deltas(location: str, qty: float):
    """(warehouse_delta, shop_delta) for qty at location."""
    if location == StockLocation.WAREHOUSE:
        return qty, 0.0
    return 0.0, qty


class StockService:
    def __init__(self, products: ProductRepository, settings: Settings):
        self.products = products
        self.settings = settings

    async def _get_product(self, product_id: ObjectId, session=None) -> Product:
        product = await self.products.get(product_id, session=session)
        if product is None:
            raise NotFoundError("Product", product_id)
        return product

    async def get_product(self, product_id: ObjectId, session=None) -> Product:
        return await self._get_product(product_id, session=session)

    async def _record(
        self,
        product: Product,
        kind: str,
        qty: float,
        warehouse_delta: float = 0.0,
        shop_delta: float = 0.0,
        note: str = "",
        ref_id: Optional[str] = None,
        user_id: Optional[ObjectId] = None,
        session=None,
    ) -> StockMovement:
        movement = StockMovement(
            product_id=product.id,
            type=kind,
            qty=abs(qty),
            warehouse_delta=warehouse_delta,
            shop_delta=shop_delta,
            note=note,
            ref_id=str(ref_id) if ref_id is not None else None,
            created_by=user_id,
            snapshot=StockSnapshot(warehouse_qty=product.warehouse_qty, shop_qty=product.shop_qty),
        )
        return await self.products.insert_movement(movement, session=session)

    @staticmethod
    def _tracked(lines: List[StockLine]) -> List[StockLine]:
        return [line for line in lines if not line.is_service and line.product_id is not None]

    async def validate_stock_availability(self, items: Iterable[Any], session=None) -> List[dict]:
        """
        Report every (product, location) whose quantity cannot cover the
        aggregated demand of items. Empty list means the sale can proceed.
        """
        demand = OrderedDict()
        for line in self._tracked(to_stock_lines(items)):
            key = (line.product_id, line.source)
            demand[key] = demand.get(key, 0.0) + line.qty

        shortages = []
        for (product_id, location), required in demand.items():
            product = await self._get_product(product_id, session=session)
            available = product.qty_at(location)
            if available < required:
                shortages.append({
                    "product_id": product_id,
                    "product_name": product.name,
                    "location": location,
                    "required": required,
                    "available": available,
                })
        return shortages

    async def reduce_stock_for_sale(
        self, items: Iterable[Any], ref_id=None, user_id: Optional[ObjectId] = None, session=None
    ) -> List[StockMovement]:
        """
        Deduct every tracked line from its source location, all or nothing.

        Availability is checked for the whole call before any write. Each line
        is then a conditional decrement; losing a race to a concurrent sale
        puts back the lines already taken and raises ConcurrencyConflictError.
        """
        lines = self._tracked(to_stock_lines(items))
        shortages = await self.validate_stock_availability(lines, session=session)
        if shortages:
            first = shortages[0]
            raise InsufficientStockError(first["product_name"], first["required"], first["available"], first["location"])

        applied: List[StockLine] = []
        movements = []
        try:
            for line in lines:
                field = QTY_FIELDS[line.source]
                warehouse_delta, shop_delta = _deltas(line.source, -line.qty)
                product = await self.products.apply_deltas(
                    line.product_id,
                    warehouse_delta,
                    shop_delta,
                    guard={field: {"$gte": line.qty}},
                    session=session,
                )
                if product is None:
                    raise ConcurrencyConflictError(
                        f"Stock for product {line.product_id} changed during sale {ref_id}"
                    )
                applied.append(line)
                movements.append(await self._record(
                    product, MovementType.SALE, line.qty, warehouse_delta, shop_delta,
                    note=f"Sale {ref_id}", ref_id=ref_id, user_id=user_id, session=session,
                ))
        except Exception:
            if applied:
                logger.warning("Rolling back %d stock lines of sale %s", len(applied), ref_id)
                await self.restock_sale_lines(applied, ref_id, user_id, note=f"Rollback of sale {ref_id}", session=session)
            raise
        return movements

    async def restock_sale_lines(
        self, items: Iterable[Any], ref_id=None, user_id: Optional[ObjectId] = None, note: Optional[str] = None,
        session=None,
    ) -> List[StockMovement]:
        """Put sold lines back where they were taken from."""
        movements = []
        for line in self._tracked(to_stock_lines(items)):
            warehouse_delta, shop_delta = _deltas(line.source, line.qty)
            product = await self.products.apply_deltas(line.product_id, warehouse_delta, shop_delta, session=session)
            if product is None:
                raise NotFoundError("Product", line.product_id)
            movements.append(await self._record(
                product, MovementType.IN, line.qty, warehouse_delta, shop_delta,
                note=note or f"Reversal of sale {ref_id}", ref_id=ref_id, user_id=user_id, session=session,
            ))
        return movements

    async def _receive_line(self, line: StockLine, ref_id, user_id, session) -> StockMovement:
        for _ in range(self.settings.COST_UPDATE_RETRIES):
            product = await self._get_product(line.product_id, session=session)
            recv_cost = line.cost_price if line.cost_price is not None else product.buy_price
            new_cost = weighted_average_cost(product.stock_qty, product.buy_price, line.qty, recv_cost)
            updated = await self.products.compare_and_set_cost(product, line.qty, new_cost, session=session)
            if updated is not None:
                return await self._record(
                    updated, MovementType.IN, line.qty, line.qty, 0.0,
                    note=f"Purchase {ref_id}", ref_id=ref_id, user_id=user_id, session=session,
                )
        raise ConcurrencyConflictError(f"Could not update cost of product {line.product_id}")

    async def _unreceive_line(self, line: StockLine, ref_id, user_id, session) -> StockMovement:
        for _ in range(self.settings.COST_UPDATE_RETRIES):
            product = await self._get_product(line.product_id, session=session)
            if product.warehouse_qty < line.qty:
                raise InsufficientStockError(product.name, line.qty, product.warehouse_qty, StockLocation.WAREHOUSE.value)
            recv_cost = line.cost_price if line.cost_price is not None else product.buy_price
            new_cost = unwind_average_cost(product.stock_qty, product.buy_price, line.qty, recv_cost)
            updated = await self.products.compare_and_set_cost(
                product, -line.qty, new_cost, guard={"warehouse_qty": {"$gte": line.qty}}, session=session,
            )
            if updated is not None:
                return await self._record(
                    updated, MovementType.OUT, line.qty, -line.qty, 0.0,
                    note=f"Reversal of purchase {ref_id}", ref_id=ref_id, user_id=user_id, session=session,
                )
        raise ConcurrencyConflictError(f"Could not update cost of product {line.product_id}")

    async def increase_stock_for_purchase(
        self, items: Iterable[Any], ref_id=None, user_id: Optional[ObjectId] = None, session=None
    ) -> List[StockMovement]:
        """Credit the warehouse and re-average cost line by line, in receipt order."""
        lines = self._tracked(to_stock_lines(items))
        applied: List[StockLine] = []
        movements = []
        try:
            for line in lines:
                movements.append(await self._receive_line(line, ref_id, user_id, session))
                applied.append(line)
        except Exception:
            if applied:
                logger.warning("Rolling back %d received lines of %s", len(applied), ref_id)
                for line in reversed(applied):
                    await self._unreceive_line(line, ref_id, user_id, session)
            raise
        return movements

    async def decrease_stock_for_purchase_reversal(
        self, items: Iterable[Any], ref_id=None, user_id: Optional[ObjectId] = None, session=None
    ) -> List[StockMovement]:
        """Take received quantities back out of the warehouse and unwind their cost, newest line first."""
        lines = self._tracked(to_stock_lines(items))

        demand = OrderedDict()
        for line in lines:
            demand[line.product_id] = demand.get(line.product_id, 0.0) + line.qty
        for product_id, required in demand.items():
            product = await self._get_product(product_id, session=session)
            if product.warehouse_qty < required:
                raise InsufficientStockError(product.name, required, product.warehouse_qty, StockLocation.WAREHOUSE.value)

        applied: List[StockLine] = []
        movements = []
        try:
            for line in reversed(lines):
                movements.append(await self._unreceive_line(line, ref_id, user_id, session))
                applied.append(line)
        except Exception:
            if applied:
                logger.warning("Re-receiving %d lines of %s after failed reversal", len(applied), ref_id)
                for line in reversed(applied):
                    await self._receive_line(line, ref_id, user_id, session)
            raise
        return movements

    async def increase_stock_for_return(
        self, items: Iterable[Any], ref_id=None, user_id: Optional[ObjectId] = None, session=None
    ) -> List[StockMovement]:
        """Returned goods go to the shop; cost basis is untouched."""
        movements = []
        for line in self._tracked(to_stock_lines(items)):
            product = await self.products.apply_deltas(line.product_id, 0.0, line.qty, session=session)
            if product is None:
                raise NotFoundError("Product", line.product_id)
            movements.append(await self._record(
                product, MovementType.IN, line.qty, 0.0, line.qty,
                note=f"Sales return {ref_id}", ref_id=ref_id, user_id=user_id, session=session,
            ))
        return movements

    async def revert_return_stock(
        self, items: Iterable[Any], ref_id=None, user_id: Optional[ObjectId] = None, session=None
    ) -> List[StockMovement]:
        """Compensation for increase_stock_for_return."""
        movements = []
        for line in self._tracked(to_stock_lines(items)):
            movements.append(await self.move_stock(
                line.product_id, line.qty, MovementType.OUT, location=StockLocation.SHOP.value,
                note=f"Rollback of return {ref_id}", ref_id=ref_id, user_id=user_id,
                system_override=True, session=session,
            ))
        return movements

    async def adjust_stock(
        self,
        product_id: ObjectId,
        new_warehouse_qty: float,
        new_shop_qty: float,
        reason: str = "",
        user_id: Optional[ObjectId] = None,
        session=None,
    ) -> StockMovement:
        """Overwrite both locations; one ADJUST movement carries both signed deltas."""
        if new_warehouse_qty < 0 or new_shop_qty < 0:
            raise ValidationError("Stock quantities cannot be negative")

        product = await self._get_product(product_id, session=session)
        warehouse_delta = new_warehouse_qty - product.warehouse_qty
        shop_delta = new_shop_qty - product.shop_qty

        updated = await self.products.overwrite_quantities(product_id, new_warehouse_qty, new_shop_qty, session=session)
        if updated is None:
            raise NotFoundError("Product", product_id)

        logger.info("Adjusted product %s by warehouse %+g shop %+g", product_id, warehouse_delta, shop_delta)
        return await self._record(
            updated, MovementType.ADJUST, abs(warehouse_delta) + abs(shop_delta), warehouse_delta, shop_delta,
            note=reason, user_id=user_id, session=session,
        )

    async def move_stock(
        self,
        product_id: ObjectId,
        qty: float,
        kind: str,
        location: str = StockLocation.WAREHOUSE.value,
        note: str = "",
        ref_id=None,
        user_id: Optional[ObjectId] = None,
        system_override: bool = False,
        session=None,
    ) -> StockMovement:
        """
        Generic movement.

        IN credits location, OUT and SALE debit it, transfers move between
        the two locations. Whatever is debited must be there unless
        system_override is set, which only compensating logic uses.
        """
        if qty <= 0:
            raise ValidationError("Quantity must be positive")

        if kind == MovementType.TRANSFER_TO_SHOP:
            warehouse_delta, shop_delta, source = -qty, qty, StockLocation.WAREHOUSE.value
        elif kind == MovementType.TRANSFER_TO_WAREHOUSE:
            warehouse_delta, shop_delta, source = qty, -qty, StockLocation.SHOP.value
        elif kind == MovementType.IN:
            (warehouse_delta, shop_delta), source = _deltas(location, qty), None
        elif kind in (MovementType.OUT, MovementType.SALE):
            (warehouse_delta, shop_delta), source = _deltas(location, -qty), location
        else:
            raise ValidationError(f"Unsupported movement type: {kind}")

        guard = None
        if source is not None and not system_override:
            product = await self._get_product(product_id, session=session)
            available = product.qty_at(source)
            if available < qty:
                raise InsufficientStockError(product.name, qty, available, source)
            guard = {QTY_FIELDS[source]: {"$gte": qty}}

        updated = await self.products.apply_deltas(product_id, warehouse_delta, shop_delta, guard=guard, session=session)
        if updated is None:
            if guard is None:
                raise NotFoundError("Product", product_id)
            raise ConcurrencyConflictError(f"Stock for product {product_id} changed during {kind}")

        return await self._record(
            updated, kind, qty, warehouse_delta, shop_delta,
            note=note, ref_id=ref_id, user_id=user_id, session=session,
        )

    async def transfer_to_shop(self, product_id: ObjectId, qty: float, note: str = "", user_id=None, session=None):
        return await self.move_stock(
            product_id, qty, MovementType.TRANSFER_TO_SHOP, note=note, user_id=user_id, session=session
        )

    async def transfer_to_warehouse(self, product_id: ObjectId, qty: float, note: str = "", user_id=None, session=None):
        return await self.move_stock(
            product_id, qty, MovementType.TRANSFER_TO_WAREHOUSE, note=note, user_id=user_id, session=session
        )

    async def register_initial_balance(
        self,
        product_id: ObjectId,
        warehouse_qty: float,
        shop_qty: float,
        buy_price: float,
        user_id: Optional[ObjectId] = None,
        session=None,
    ) -> StockMovement:
        """Opening stock for a product that has no movement history yet."""
        if warehouse_qty < 0 or shop_qty < 0 or buy_price < 0:
            raise ValidationError("Opening quantities and cost cannot be negative")

        product = await self._get_product(product_id, session=session)
        if await self.products.count_movements(product_id, session=session):
            raise ValidationError(f"Product {product.name} already has stock movements")

        updated = await self.products.overwrite_quantities(
            product_id,
            warehouse_qty,
            shop_qty,
            extra={
                "buy_price": round_money(buy_price),
                "opening_warehouse_qty": warehouse_qty,
                "opening_shop_qty": shop_qty,
                "opening_buy_price": round_money(buy_price),
            },
            session=session,
        )
        return await self._record(
            updated, MovementType.INITIAL_BALANCE, warehouse_qty + shop_qty, warehouse_qty, shop_qty,
            note="Opening balance", user_id=user_id, session=session,
        )

    async def get_product_history(self, product_id: ObjectId, limit: int = 50) -> List[StockMovement]:
        return await self.products.find_movements(product_id=product_id, limit=limit)

    async def get_movements(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None, kind: Optional[str] = None,
        limit: int = 200,
    ) -> List[StockMovement]:
        return await self.products.find_movements(start=start, end=end, kind=kind, limit=limit)

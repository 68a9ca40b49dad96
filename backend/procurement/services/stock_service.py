"""
Warehouse Stock Posting

Adds the accepted quantity of completed goods receipts to warehouse stock
and records a StockMovement for every change. Runs inside the caller's
transaction so a failed completion posts nothing.
"""

import logging
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from procurement.core.rbac import OperationContext
from procurement.models.goods_receipt import GoodsReceipt
from procurement.models.stock import MovementReason, StockMovement, StockOnHand
from procurement.services.common import round_quantity

logger = logging.getLogger(__name__)


class WarehouseStockService:
    """Stock on hand per warehouse and product."""

    def __init__(self, db: Session):
        self.db = db

    def list_on_hand(
        self,
        ctx: OperationContext,
        warehouse_id: Optional[int] = None,
        product_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> Tuple[List[StockOnHand], int]:
        stmt = select(StockOnHand).where(StockOnHand.company_id == ctx.company_id)
        if warehouse_id:
            stmt = stmt.where(StockOnHand.warehouse_id == warehouse_id)
        if product_id:
            stmt = stmt.where(StockOnHand.product_id == product_id)

        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rows = self.db.execute(
            stmt.order_by(StockOnHand.warehouse_id, StockOnHand.product_id).offset(skip).limit(limit)
        ).scalars().all()
        return list(rows), total

    def post_receipt(self, grn: GoodsReceipt, user_id: Optional[int]) -> int:
        """Add every accepted line of *grn* to its warehouse. Returns lines posted."""
        if grn.warehouse_id is None:
            logger.warning(f"Goods receipt {grn.grn_number} has no warehouse; stock not posted")
            return 0

        posted = 0
        for item in grn.items:
            if item.accepted_quantity <= 0:
                continue
            stock = self._lock_or_create(grn.company_id, grn.warehouse_id, item.product_id)
            old_qty = stock.qty
            stock.qty = round_quantity(old_qty + item.accepted_quantity)
            self.db.add(StockMovement(
                company_id=grn.company_id,
                warehouse_id=grn.warehouse_id,
                product_id=item.product_id,
                qty_delta=item.accepted_quantity,
                reason=MovementReason.PURCHASE.value,
                ref_type="goods_receipt",
                ref_id=grn.id,
                notes=f"GRN {grn.grn_number}",
                created_by=user_id,
            ))
            posted += 1
            logger.debug(
                f"Stock of product {item.product_id} in warehouse {grn.warehouse_id}: "
                f"{old_qty} -> {stock.qty}"
            )

        self.db.flush()
        return posted

    def _lock_or_create(self, company_id: int, warehouse_id: int, product_id: int) -> StockOnHand:
        stock = self.db.execute(
            select(StockOnHand)
            .where(StockOnHand.warehouse_id == warehouse_id, StockOnHand.product_id == product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if stock is None:
            # A concurrent first posting hits the unique constraint and is retried
            stock = StockOnHand(
                company_id=company_id,
                warehouse_id=warehouse_id,
                product_id=product_id,
                qty=Decimal("0"),
            )
            self.db.add(stock)
            self.db.flush()
        return stock

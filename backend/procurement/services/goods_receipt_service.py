"""Goods Receipt Engine.

Records receipts of goods against approved or ordered purchase orders and
reconciles them into the PO line accumulators.

GRN lifecycle:
    pending -> received -> completed

Each line splits the received quantity into accepted and rejected after
inspection. Only the accepted quantity counts against the PO line and is
posted to warehouse stock. A receipt can be edited while it is pending.

Only completion touches ``PurchaseOrderItem.received_quantity``. It runs in
one transaction:
1. Claim the GRN with a conditional UPDATE on (status, version); a second
   completer matches zero rows and gets AlreadyCompletedError.
2. For every referenced PO line, check the new total against the ordered
   quantity in Decimal and write it with a conditional UPDATE on the
   previous value; a violation rolls everything back.
3. Post the accepted quantities to warehouse stock.
4. Move the PO approved -> ordered on its first completed receipt.
"""

import logging
from collections import OrderedDict
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from procurement.core.config import settings
from procurement.core.exceptions import (
    AlreadyCompletedError,
    ConcurrencyConflictError,
    ConflictError,
    QuantityExceededError,
    ValidationError,
)
from procurement.core.rbac import OperationContext, Role, require_any_role
from procurement.models.goods_receipt import GRNStatus, GoodsReceipt, GoodsReceiptItem
from procurement.models.purchase_order import POStatus, PurchaseOrder, PurchaseOrderItem
from procurement.models.tenant import Warehouse
from procurement.schemas.goods_receipt import (
    GoodsReceiptCreate,
    GoodsReceiptUpdate,
    GRNItemCreate,
)
from procurement.services.common import (
    atomic,
    compare_and_set_status,
    get_scoped,
    line_amounts,
    next_document_number,
    retry_on_conflict,
    round_quantity,
)
from procurement.services.purchase_order_service import (
    RECEIVABLE_STATUSES,
    PurchaseOrderService,
)
from procurement.services.stock_service import WarehouseStockService
from procurement.services.transition_guard import DocumentType, require_transition

logger = logging.getLogger(__name__)


def locked_po_items(db: Session, po_id: int) -> Dict[int, PurchaseOrderItem]:
    """Fresh, row-locked lines of one purchase order keyed by id."""
    rows = db.execute(
        select(PurchaseOrderItem)
        .where(PurchaseOrderItem.purchase_order_id == po_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    return {row.id: row for row in rows}


def split_inspection(item: GRNItemCreate) -> Tuple[Decimal, Decimal]:
    """Return ``(accepted, rejected)`` for one received line.

    A missing side is the received quantity minus the other side. Both
    sides must be non-negative and add up to the received quantity.
    """
    received = item.received_quantity
    accepted, rejected = item.accepted_quantity, item.rejected_quantity
    if accepted is None and rejected is None:
        accepted, rejected = received, Decimal("0")
    elif accepted is None:
        accepted = received - rejected
    elif rejected is None:
        rejected = received - accepted

    if accepted < 0 or rejected < 0 or accepted + rejected != received:
        raise ValidationError(
            f"Accepted ({accepted}) and rejected ({rejected}) quantities must add up to "
            f"the received quantity ({received}) for item {item.purchase_order_item_id}"
        )
    return accepted, rejected


class GoodsReceiptService:
    """Service for goods receipts and their reconciliation into purchase orders."""

    def __init__(self, db: Session):
        self.db = db
        self.purchase_orders = PurchaseOrderService(db)
        self.stock = WarehouseStockService(db)

    def get(self, ctx: OperationContext, grn_id: int, for_update: bool = False) -> GoodsReceipt:
        return get_scoped(self.db, GoodsReceipt, grn_id, ctx.company_id, "Goods receipt", for_update)

    def list(
        self,
        ctx: OperationContext,
        status: Optional[GRNStatus] = None,
        purchase_order_id: Optional[int] = None,
        warehouse_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> Tuple[List[GoodsReceipt], int]:
        stmt = select(GoodsReceipt).where(GoodsReceipt.company_id == ctx.company_id)
        if status:
            stmt = stmt.where(GoodsReceipt.status == status)
        if purchase_order_id:
            stmt = stmt.where(GoodsReceipt.purchase_order_id == purchase_order_id)
        if warehouse_id:
            stmt = stmt.where(GoodsReceipt.warehouse_id == warehouse_id)

        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rows = self.db.execute(
            stmt.order_by(GoodsReceipt.id.desc()).offset(skip).limit(limit)
        ).scalars().all()
        return list(rows), total

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _receivable_po(self, ctx: OperationContext, po_id: int) -> PurchaseOrder:
        po = self.purchase_orders.get(ctx, po_id, for_update=True)
        if po.status not in RECEIVABLE_STATUSES:
            raise ConflictError(
                f"Goods can only be received against approved or ordered purchase orders; "
                f"{po.po_number} is '{po.status.value}'"
            )
        return po

    def _check_warehouse(self, ctx: OperationContext, warehouse_id: int) -> None:
        exists = self.db.execute(
            select(Warehouse.id).where(
                Warehouse.id == warehouse_id, Warehouse.company_id == ctx.company_id
            )
        ).scalar_one_or_none()
        if exists is None:
            raise ValidationError(f"Warehouse {warehouse_id} does not exist in this company")

    def _build_items(
        self, po: PurchaseOrder, items: List[GRNItemCreate]
    ) -> Tuple[List[GoodsReceiptItem], Decimal]:
        """Validate requested lines against the PO and build GRN lines plus their total.

        Accepted quantities for the same PO line are summed before the
        remaining-quantity check; nothing is clamped.
        """
        po_items = locked_po_items(self.db, po.id)
        accepted_by_line: "OrderedDict[int, Decimal]" = OrderedDict()
        grn_items = []
        total = Decimal("0")

        for item in items:
            if item.received_quantity <= 0:
                raise ValidationError("Received quantity must be greater than zero")
            po_item = po_items.get(item.purchase_order_item_id)
            if po_item is None:
                raise ValidationError(
                    f"Item {item.purchase_order_item_id} does not belong to purchase order "
                    f"{po.po_number}"
                )
            accepted, rejected = split_inspection(item)
            accepted_by_line[po_item.id] = accepted_by_line.get(po_item.id, Decimal("0")) + accepted

            _, _, line_total = line_amounts(accepted, po_item.unit_price, po_item.tax_percentage)
            total += line_total
            grn_items.append(GoodsReceiptItem(
                purchase_order_item_id=po_item.id,
                product_id=po_item.product_id,
                received_quantity=item.received_quantity,
                accepted_quantity=accepted,
                rejected_quantity=rejected,
                condition_notes=item.condition_notes,
                unit_price=po_item.unit_price,
                tax_percentage=po_item.tax_percentage,
            ))

        for po_item_id, accepted in accepted_by_line.items():
            po_item = po_items[po_item_id]
            remaining = po_item.quantity - po_item.received_quantity
            if accepted > remaining:
                raise QuantityExceededError(po_item.id, accepted, remaining)

        return grn_items, total

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @retry_on_conflict
    def create_receipt(self, ctx: OperationContext, data: GoodsReceiptCreate) -> GoodsReceipt:
        """Create a pending GRN against an approved or ordered PO.

        Each accepted quantity must fit in what the PO line still has open.
        """
        require_any_role(ctx, [Role.WAREHOUSE_MANAGER], "create goods receipts")

        with atomic(self.db):
            po = self._receivable_po(ctx, data.purchase_order_id)
            if data.warehouse_id is not None:
                self._check_warehouse(ctx, data.warehouse_id)
            grn_items, total = self._build_items(po, data.items)

            receipt_date = data.receipt_date or date.today()
            grn = GoodsReceipt(
                company_id=ctx.company_id,
                grn_number=next_document_number(
                    self.db, GoodsReceipt.grn_number, GoodsReceipt.company_id,
                    ctx.company_id, settings.grn_number_prefix, receipt_date,
                ),
                purchase_order_id=po.id,
                warehouse_id=data.warehouse_id or po.warehouse_id,
                status=GRNStatus.PENDING,
                receipt_date=receipt_date,
                total_received_amount=total,
                notes=data.notes,
                received_by=ctx.user_id,
                items=grn_items,
            )
            if data.inspection_notes:
                grn.inspection_notes = data.inspection_notes
                grn.inspected_by = ctx.user_id
                grn.inspected_at = datetime.now(timezone.utc)
            self.db.add(grn)
            self.db.flush()

        self.db.refresh(grn)
        logger.info(
            f"Created goods receipt {grn.grn_number} for {po.po_number} "
            f"(company {ctx.company_id}, {len(grn_items)} items)"
        )
        return grn

    @retry_on_conflict
    def update_receipt(
        self, ctx: OperationContext, grn_id: int, data: GoodsReceiptUpdate
    ) -> GoodsReceipt:
        """Edit a pending GRN. New items replace the old ones and are re-validated."""
        require_any_role(ctx, [Role.WAREHOUSE_MANAGER], "update goods receipts")

        with atomic(self.db):
            grn = self.get(ctx, grn_id, for_update=True)
            if grn.status != GRNStatus.PENDING:
                raise ConflictError(
                    f"Only pending goods receipts can be edited; {grn.grn_number} is "
                    f"'{grn.status.value}'"
                )

            if data.items is not None:
                if grn.purchase_order_id is None:
                    raise ValidationError(
                        f"Goods receipt {grn.grn_number} has no purchase order to receive against"
                    )
                po = self._receivable_po(ctx, grn.purchase_order_id)
                grn_items, total = self._build_items(po, data.items)
                grn.items = grn_items
                grn.total_received_amount = total

            if data.warehouse_id is not None:
                self._check_warehouse(ctx, data.warehouse_id)
                grn.warehouse_id = data.warehouse_id
            if data.receipt_date is not None:
                grn.receipt_date = data.receipt_date
            if data.notes is not None:
                grn.notes = data.notes
            if data.inspection_notes is not None:
                grn.inspection_notes = data.inspection_notes
                grn.inspected_by = ctx.user_id
                grn.inspected_at = datetime.now(timezone.utc)

            grn.increment_version()
            self.db.flush()

        self.db.refresh(grn)
        logger.info(f"Updated goods receipt {grn.grn_number} (company {ctx.company_id})")
        return grn

    def mark_received(self, ctx: OperationContext, grn_id: int) -> GoodsReceipt:
        """pending -> received. No quantity effect."""
        with atomic(self.db):
            grn = self.get(ctx, grn_id, for_update=True)
            require_transition(DocumentType.GOODS_RECEIPT, grn.status, GRNStatus.RECEIVED, ctx.roles)
            compare_and_set_status(self.db, grn, GRNStatus.RECEIVED, received_by=ctx.user_id)

        self.db.refresh(grn)
        logger.info(f"Goods receipt {grn.grn_number} pending -> received (company {ctx.company_id})")
        return grn

    @retry_on_conflict
    def complete(self, ctx: OperationContext, grn_id: int) -> GoodsReceipt:
        """received -> completed, adding every accepted quantity to its PO line and stock."""
        with atomic(self.db):
            grn = self.get(ctx, grn_id, for_update=True)
            if grn.status == GRNStatus.COMPLETED:
                raise AlreadyCompletedError(grn.grn_number)
            require_transition(DocumentType.GOODS_RECEIPT, grn.status, GRNStatus.COMPLETED, ctx.roles)

            po = None
            if grn.purchase_order_id is not None:
                po = self.purchase_orders.get(ctx, grn.purchase_order_id, for_update=True)
                if po.status not in RECEIVABLE_STATUSES:
                    raise ConflictError(
                        f"Cannot complete {grn.grn_number}: purchase order {po.po_number} "
                        f"is '{po.status.value}'"
                    )

            self._claim_completion(ctx, grn)

            accepted_by_line: "OrderedDict[int, Decimal]" = OrderedDict()
            for item in grn.items:
                if item.purchase_order_item_id is not None and item.accepted_quantity > 0:
                    accepted_by_line[item.purchase_order_item_id] = (
                        accepted_by_line.get(item.purchase_order_item_id, Decimal("0"))
                        + item.accepted_quantity
                    )
            for po_item_id, accepted in accepted_by_line.items():
                self._add_received(po_item_id, accepted)

            self.stock.post_receipt(grn, ctx.user_id)

            if po is not None and po.status == POStatus.APPROVED:
                self.purchase_orders.mark_ordered(po)

        self.db.refresh(grn)
        logger.info(
            f"Goods receipt {grn.grn_number} received -> completed "
            f"(company {ctx.company_id}, user {ctx.user_id})"
        )
        return grn

    def _claim_completion(self, ctx: OperationContext, grn: GoodsReceipt) -> None:
        try:
            compare_and_set_status(
                self.db, grn, GRNStatus.COMPLETED,
                completed_by=ctx.user_id,
                completed_at=datetime.now(timezone.utc),
            )
        except ConcurrencyConflictError:
            current = self.db.execute(
                select(GoodsReceipt.status).where(GoodsReceipt.id == grn.id)
            ).scalar_one()
            if current == GRNStatus.COMPLETED:
                raise AlreadyCompletedError(grn.grn_number)
            raise

    def _add_received(self, po_item_id: int, quantity: Decimal) -> None:
        po_item = self.db.execute(
            select(PurchaseOrderItem)
            .where(PurchaseOrderItem.id == po_item_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()
        received = po_item.received_quantity
        remaining = po_item.quantity - received
        if quantity > remaining:
            logger.warning(
                f"Receipt of {quantity} rejected for PO item {po_item_id}: "
                f"{received} of {po_item.quantity} already received"
            )
            raise QuantityExceededError(po_item_id, quantity, remaining)

        result = self.db.execute(
            update(PurchaseOrderItem)
            .where(
                PurchaseOrderItem.id == po_item_id,
                PurchaseOrderItem.received_quantity == received,
            )
            .values(received_quantity=round_quantity(received + quantity))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrencyConflictError(
                f"Received quantity of PO item {po_item_id} changed concurrently"
            )
        self.db.expire(po_item, ["received_quantity"])

    def delete(self, ctx: OperationContext, grn_id: int) -> None:
        """Delete a GRN that is still pending."""
        require_any_role(ctx, [Role.WAREHOUSE_MANAGER], "delete goods receipts")

        with atomic(self.db):
            grn = self.get(ctx, grn_id, for_update=True)
            if grn.status != GRNStatus.PENDING:
                raise ConflictError(
                    f"Only pending goods receipts can be deleted; {grn.grn_number} is "
                    f"'{grn.status.value}'"
                )
            grn_number = grn.grn_number
            self.db.delete(grn)

        logger.info(f"Deleted goods receipt {grn_number} (company {ctx.company_id})")

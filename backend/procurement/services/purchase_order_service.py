"""Purchase Order Manager - creation, editing and the PO status machine.

PO lifecycle:
    draft -> pending -> approved -> ordered
    draft | pending | approved (no receipts yet) -> cancelled

``approved -> ordered`` is never requested by a user; the goods receipt
engine fires it when the first receipt against the PO completes.
"""

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from procurement.core.config import settings
from procurement.core.exceptions import ConflictError, ProcurementError, ValidationError
from procurement.core.rbac import OperationContext, Role, require_any_role
from procurement.models.goods_receipt import GoodsReceipt
from procurement.models.purchase_order import POStatus, PurchaseOrder, PurchaseOrderItem
from procurement.models.tenant import Product, Supplier, Warehouse
from procurement.schemas.purchase_order import (
    POItemCreate,
    PurchaseOrderCreate,
    PurchaseOrderUpdate,
)
from procurement.services.common import (
    atomic,
    compare_and_set_status,
    get_scoped,
    line_amounts,
    next_document_number,
    retry_on_conflict,
)
from procurement.services.transition_guard import DocumentType, require_transition

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = (POStatus.DRAFT, POStatus.PENDING)
RECEIVABLE_STATUSES = (POStatus.APPROVED, POStatus.ORDERED)


class PurchaseOrderService:
    """Service for purchase order creation and status changes."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, ctx: OperationContext, po_id: int, for_update: bool = False) -> PurchaseOrder:
        return get_scoped(self.db, PurchaseOrder, po_id, ctx.company_id, "Purchase order", for_update)

    def list(
        self,
        ctx: OperationContext,
        status: Optional[POStatus] = None,
        supplier_id: Optional[int] = None,
        warehouse_id: Optional[int] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> Tuple[List[PurchaseOrder], int]:
        stmt = select(PurchaseOrder).where(PurchaseOrder.company_id == ctx.company_id)
        if status:
            stmt = stmt.where(PurchaseOrder.status == status)
        if supplier_id:
            stmt = stmt.where(PurchaseOrder.supplier_id == supplier_id)
        if warehouse_id:
            stmt = stmt.where(PurchaseOrder.warehouse_id == warehouse_id)
        if search:
            stmt = stmt.where(PurchaseOrder.po_number.ilike(f"%{search}%"))

        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rows = self.db.execute(
            stmt.order_by(PurchaseOrder.id.desc()).offset(skip).limit(limit)
        ).scalars().all()
        return list(rows), total

    def has_goods_receipts(self, po_id: int) -> bool:
        return self.db.execute(
            select(func.count(GoodsReceipt.id)).where(GoodsReceipt.purchase_order_id == po_id)
        ).scalar_one() > 0

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    def _require_reference(self, ctx: OperationContext, model, entity_id: int, label: str) -> None:
        exists = self.db.execute(
            select(model.id).where(model.id == entity_id, model.company_id == ctx.company_id)
        ).scalar_one_or_none()
        if exists is None:
            raise ValidationError(f"{label} {entity_id} does not exist in this company")

    def _build_items(self, ctx: OperationContext, items: List[POItemCreate]) -> List[PurchaseOrderItem]:
        if not items:
            raise ValidationError("A purchase order needs at least one item")

        product_ids = {item.product_id for item in items}
        found = set(self.db.execute(
            select(Product.id).where(Product.id.in_(product_ids), Product.company_id == ctx.company_id)
        ).scalars().all())
        missing = product_ids - found
        if missing:
            raise ValidationError(f"Unknown products for this company: {sorted(missing)}")

        lines = []
        for item in items:
            if item.quantity <= 0:
                raise ValidationError("Item quantity must be greater than zero")
            if item.unit_price < 0:
                raise ValidationError("Item unit price cannot be negative")
            _, _, line_total = line_amounts(item.quantity, item.unit_price, item.tax_percentage)
            lines.append(PurchaseOrderItem(
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                tax_percentage=item.tax_percentage,
                line_total=line_total,
                received_quantity=Decimal("0"),
            ))
        return lines

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @retry_on_conflict
    def create(self, ctx: OperationContext, data: PurchaseOrderCreate) -> PurchaseOrder:
        """Create a draft purchase order with a fresh PO number."""
        require_any_role(ctx, [Role.WAREHOUSE_MANAGER], "create purchase orders")

        with atomic(self.db):
            self._require_reference(ctx, Supplier, data.supplier_id, "Supplier")
            self._require_reference(ctx, Warehouse, data.warehouse_id, "Warehouse")
            lines = self._build_items(ctx, data.items)

            order_date = data.order_date or date.today()
            po = PurchaseOrder(
                company_id=ctx.company_id,
                po_number=next_document_number(
                    self.db, PurchaseOrder.po_number, PurchaseOrder.company_id,
                    ctx.company_id, settings.po_number_prefix, order_date,
                ),
                supplier_id=data.supplier_id,
                warehouse_id=data.warehouse_id,
                status=POStatus.DRAFT,
                order_date=order_date,
                expected_delivery_date=data.expected_delivery_date,
                total_amount=sum((line.line_total for line in lines), Decimal("0")),
                notes=data.notes,
                terms_conditions=data.terms_conditions,
                created_by=ctx.user_id,
                items=lines,
            )
            self.db.add(po)
            self.db.flush()

        self.db.refresh(po)
        logger.info(
            f"Created purchase order {po.po_number} (company {ctx.company_id}, "
            f"total {po.total_amount}, {len(lines)} items)"
        )
        return po

    def update(self, ctx: OperationContext, po_id: int, data: PurchaseOrderUpdate) -> PurchaseOrder:
        """Edit a draft or pending PO. Admin only; replacing items recomputes totals."""
        require_any_role(ctx, [Role.ADMIN], "edit purchase orders")

        with atomic(self.db):
            po = self.get(ctx, po_id, for_update=True)
            po.check_version(data.version)
            if po.status not in EDITABLE_STATUSES:
                raise ConflictError(
                    f"Purchase order {po.po_number} cannot be edited in status '{po.status.value}'"
                )

            if data.supplier_id is not None:
                self._require_reference(ctx, Supplier, data.supplier_id, "Supplier")
                po.supplier_id = data.supplier_id
            if data.warehouse_id is not None:
                self._require_reference(ctx, Warehouse, data.warehouse_id, "Warehouse")
                po.warehouse_id = data.warehouse_id
            for field in ("expected_delivery_date", "notes", "terms_conditions"):
                if field in data.model_fields_set:
                    setattr(po, field, getattr(data, field))

            if data.items is not None:
                lines = self._build_items(ctx, data.items)
                po.items.clear()
                self.db.flush()
                po.items.extend(lines)
                po.total_amount = sum((line.line_total for line in lines), Decimal("0"))

            po.increment_version()

        self.db.refresh(po)
        logger.info(f"Updated purchase order {po.po_number} (company {ctx.company_id})")
        return po

    def submit(self, ctx: OperationContext, po_id: int) -> PurchaseOrder:
        return self._transition(ctx, po_id, POStatus.PENDING)

    def approve(self, ctx: OperationContext, po_id: int) -> PurchaseOrder:
        return self._transition(
            ctx, po_id, POStatus.APPROVED,
            approved_by=ctx.user_id,
            approved_at=datetime.now(timezone.utc),
        )

    def cancel(self, ctx: OperationContext, po_id: int) -> PurchaseOrder:
        """Cancel a PO. Rejected once any goods receipt references it."""
        with atomic(self.db):
            po = self.get(ctx, po_id, for_update=True)
            if po.status in RECEIVABLE_STATUSES and self.has_goods_receipts(po.id):
                raise ConflictError(
                    f"Purchase order {po.po_number} has goods receipts and cannot be cancelled"
                )
            require_transition(DocumentType.PURCHASE_ORDER, po.status, POStatus.CANCELLED, ctx.roles)
            previous = po.status
            compare_and_set_status(
                self.db, po, POStatus.CANCELLED, cancelled_at=datetime.now(timezone.utc)
            )

        self.db.refresh(po)
        logger.info(
            f"Purchase order {po.po_number} {previous.value} -> cancelled "
            f"(company {ctx.company_id}, user {ctx.user_id})"
        )
        return po

    def mark_ordered(self, po: PurchaseOrder) -> bool:
        """Fire the system edge approved -> ordered inside the caller's transaction.

        Returns True when the status changed; an already ordered PO is left alone.
        """
        if po.status == POStatus.ORDERED:
            return False
        require_transition(
            DocumentType.PURCHASE_ORDER, po.status, POStatus.ORDERED, [Role.SYSTEM]
        )
        compare_and_set_status(self.db, po, POStatus.ORDERED)
        logger.info(f"Purchase order {po.po_number} approved -> ordered (company {po.company_id})")
        return True

    def _transition(self, ctx: OperationContext, po_id: int, target: POStatus, **values) -> PurchaseOrder:
        with atomic(self.db):
            po = self.get(ctx, po_id, for_update=True)
            previous = po.status
            try:
                require_transition(DocumentType.PURCHASE_ORDER, previous, target, ctx.roles)
            except ProcurementError:
                logger.warning(
                    f"Rejected purchase order {po.po_number} {previous.value} -> {target.value} "
                    f"for user {ctx.user_id} roles {sorted(ctx.roles)}"
                )
                raise
            compare_and_set_status(self.db, po, target, **values)

        self.db.refresh(po)
        logger.info(
            f"Purchase order {po.po_number} {previous.value} -> {target.value} "
            f"(company {ctx.company_id}, user {ctx.user_id})"
        )
        return po

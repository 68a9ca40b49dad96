"""Invoice Engine - supplier invoices against purchase orders.

Invoices are created manually or derived from a completed goods receipt.
After every ``paid_amount`` change the status is re-derived from the
balance alone:

    cancelled (sticky) > paid > partial > pending

Overdue is set only by the scheduled sweep, which moves pending or partial
invoices past their due date. A later payment re-derives from the balance,
so a partly paid overdue invoice becomes partial until the next sweep.

Only cancellation is a user action. Every other status change is fired by
the engine through the guard's system edges.
"""

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from procurement.core.config import settings
from procurement.core.exceptions import (
    ConcurrencyConflictError,
    ConflictError,
    GRNNotCompletedError,
    QuantityExceededError,
    ValidationError,
)
from procurement.core.rbac import OperationContext, Role, require_any_role
from procurement.models.goods_receipt import GRNStatus, GoodsReceipt
from procurement.models.purchase_invoice import (
    InvoiceStatus,
    PurchaseInvoice,
    PurchaseInvoiceItem,
)
from procurement.models.purchase_order import PurchaseOrder
from procurement.schemas.purchase_invoice import (
    InvoiceFromGRNCreate,
    InvoiceHeaderFields,
    PurchaseInvoiceCreate,
)
from procurement.services.common import (
    atomic,
    compare_and_set_status,
    get_scoped,
    line_amounts,
    money,
    next_document_number,
    retry_on_conflict,
    round_quantity,
)
from procurement.services.goods_receipt_service import locked_po_items
from procurement.services.purchase_order_service import RECEIVABLE_STATUSES, PurchaseOrderService
from procurement.services.transition_guard import DocumentType, require_transition

logger = logging.getLogger(__name__)

OPEN_STATUSES = (InvoiceStatus.PENDING, InvoiceStatus.PARTIAL)


def derive_invoice_status(
    current: InvoiceStatus, paid_amount: Decimal, total_amount: Decimal
) -> InvoiceStatus:
    """Status implied by the balance. Cancelled invoices stay cancelled."""
    if current == InvoiceStatus.CANCELLED:
        return InvoiceStatus.CANCELLED
    if paid_amount > 0 and paid_amount >= total_amount:
        return InvoiceStatus.PAID
    if paid_amount == 0:
        return InvoiceStatus.PENDING
    return InvoiceStatus.PARTIAL


def is_overdue(
    current: InvoiceStatus,
    paid_amount: Decimal,
    total_amount: Decimal,
    due_date: date,
    today: Optional[date] = None,
) -> bool:
    """True when an open invoice with an unpaid balance is past its due date."""
    return (
        current in OPEN_STATUSES
        and paid_amount < total_amount
        and due_date < (today or date.today())
    )


def _move_invoice(db: Session, invoice: PurchaseInvoice, target: InvoiceStatus) -> None:
    previous = invoice.status
    require_transition(DocumentType.PURCHASE_INVOICE, previous, target, [Role.SYSTEM])
    compare_and_set_status(db, invoice, target)
    logger.info(
        f"Invoice {invoice.invoice_number} {previous.value} -> {target.value} "
        f"(paid {invoice.paid_amount} of {invoice.total_amount})"
    )


def refresh_invoice_status(db: Session, invoice: PurchaseInvoice) -> bool:
    """Apply ``derive_invoice_status`` inside the caller's transaction.

    Returns True when the status changed.
    """
    target = derive_invoice_status(invoice.status, invoice.paid_amount, invoice.total_amount)
    if target == invoice.status:
        return False
    _move_invoice(db, invoice, target)
    return True


class PurchaseInvoiceService:
    """Service for purchase invoices."""

    def __init__(self, db: Session):
        self.db = db
        self.purchase_orders = PurchaseOrderService(db)

    def get(self, ctx: OperationContext, invoice_id: int, for_update: bool = False) -> PurchaseInvoice:
        return get_scoped(
            self.db, PurchaseInvoice, invoice_id, ctx.company_id, "Purchase invoice", for_update
        )

    def list(
        self,
        ctx: OperationContext,
        status: Optional[InvoiceStatus] = None,
        purchase_order_id: Optional[int] = None,
        overdue_only: bool = False,
        skip: int = 0,
        limit: int = 100,
    ) -> Tuple[List[PurchaseInvoice], int]:
        stmt = select(PurchaseInvoice).where(PurchaseInvoice.company_id == ctx.company_id)
        if status:
            stmt = stmt.where(PurchaseInvoice.status == status)
        if purchase_order_id:
            stmt = stmt.where(PurchaseInvoice.purchase_order_id == purchase_order_id)
        if overdue_only:
            stmt = stmt.where(PurchaseInvoice.status == InvoiceStatus.OVERDUE)

        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rows = self.db.execute(
            stmt.order_by(PurchaseInvoice.id.desc()).offset(skip).limit(limit)
        ).scalars().all()
        return list(rows), total

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def invoiced_quantities(self, po_item_ids) -> Dict[int, Decimal]:
        """Quantity already invoiced per PO line on non-cancelled invoices."""
        rows = self.db.execute(
            select(PurchaseInvoiceItem.purchase_order_item_id, func.sum(PurchaseInvoiceItem.quantity))
            .join(PurchaseInvoice, PurchaseInvoice.id == PurchaseInvoiceItem.purchase_invoice_id)
            .where(
                PurchaseInvoiceItem.purchase_order_item_id.in_(list(po_item_ids)),
                PurchaseInvoice.status != InvoiceStatus.CANCELLED,
            )
            .group_by(PurchaseInvoiceItem.purchase_order_item_id)
        ).all()
        # SQLite sums REAL columns in binary floating point
        return {item_id: round_quantity(qty or 0) for item_id, qty in rows}

    def _check_invoiceable(self, po: PurchaseOrder, requested: Dict[int, Decimal]) -> None:
        po_items = locked_po_items(self.db, po.id)
        unknown = set(requested) - set(po_items)
        if unknown:
            raise ValidationError(
                f"Items {sorted(unknown)} do not belong to purchase order {po.po_number}"
            )
        already = self.invoiced_quantities(requested.keys())
        for item_id, quantity in requested.items():
            remaining = po_items[item_id].quantity - already.get(item_id, Decimal("0"))
            if quantity > remaining:
                raise QuantityExceededError(item_id, quantity, remaining, what="invoice")

    @staticmethod
    def _due_date(header: InvoiceHeaderFields, invoice_date: date, po: PurchaseOrder) -> date:
        if header.due_date:
            if header.due_date < invoice_date:
                raise ValidationError("Due date cannot be before the invoice date")
            return header.due_date
        if po.expected_delivery_date and po.expected_delivery_date > invoice_date:
            return po.expected_delivery_date
        return invoice_date + timedelta(days=settings.default_invoice_due_days)

    def _persist(
        self,
        ctx: OperationContext,
        po: PurchaseOrder,
        header: InvoiceHeaderFields,
        lines: List[PurchaseInvoiceItem],
        goods_receipt_id: Optional[int] = None,
        notes: Optional[str] = None,
    ) -> PurchaseInvoice:
        subtotal = sum((money(l.quantity * l.unit_price) for l in lines), Decimal("0"))
        tax_amount = sum((l.tax_amount for l in lines), Decimal("0"))
        discount = money(header.discount_amount or 0)
        if discount > subtotal + tax_amount:
            raise ValidationError("Discount cannot exceed the invoice amount")

        invoice_date = header.invoice_date or date.today()
        invoice = PurchaseInvoice(
            company_id=ctx.company_id,
            invoice_number=next_document_number(
                self.db, PurchaseInvoice.invoice_number, PurchaseInvoice.company_id,
                ctx.company_id, settings.invoice_number_prefix, invoice_date,
            ),
            supplier_invoice_number=header.supplier_invoice_number,
            purchase_order_id=po.id,
            goods_receipt_id=goods_receipt_id,
            status=InvoiceStatus.PENDING,
            invoice_date=invoice_date,
            due_date=self._due_date(header, invoice_date, po),
            subtotal=subtotal,
            tax_amount=tax_amount,
            discount_amount=discount,
            total_amount=subtotal + tax_amount - discount,
            paid_amount=Decimal("0"),
            notes=notes,
            created_by=ctx.user_id,
            items=lines,
        )
        self.db.add(invoice)
        self.db.flush()
        return invoice

    @staticmethod
    def _line(po_item_id, product_id, quantity, unit_price, tax_percentage, grn_item_id=None):
        _, tax, line_total = line_amounts(quantity, unit_price, tax_percentage)
        return PurchaseInvoiceItem(
            purchase_order_item_id=po_item_id,
            goods_receipt_item_id=grn_item_id,
            product_id=product_id,
            quantity=quantity,
            unit_price=unit_price,
            tax_percentage=tax_percentage,
            tax_amount=tax,
            line_total=line_total,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @retry_on_conflict
    def create_manual(self, ctx: OperationContext, data: PurchaseInvoiceCreate) -> PurchaseInvoice:
        """Create an invoice from explicit lines of one purchase order."""
        require_any_role(ctx, [Role.ACCOUNTS], "create purchase invoices")

        with atomic(self.db):
            po = self.purchase_orders.get(ctx, data.purchase_order_id, for_update=True)
            if po.status not in RECEIVABLE_STATUSES:
                raise ConflictError(
                    f"Purchase order {po.po_number} is '{po.status.value}' and cannot be invoiced"
                )

            requested: Dict[int, Decimal] = {}
            for item in data.items:
                requested[item.purchase_order_item_id] = (
                    requested.get(item.purchase_order_item_id, Decimal("0")) + item.quantity
                )
            self._check_invoiceable(po, requested)

            po_items = {item.id: item for item in po.items}
            lines = []
            for item in data.items:
                po_item = po_items[item.purchase_order_item_id]
                lines.append(self._line(
                    po_item.id,
                    po_item.product_id,
                    item.quantity,
                    item.unit_price if item.unit_price is not None else po_item.unit_price,
                    item.tax_percentage if item.tax_percentage is not None else po_item.tax_percentage,
                ))

            invoice = self._persist(ctx, po, data, lines, notes=data.notes)

        self.db.refresh(invoice)
        logger.info(
            f"Created invoice {invoice.invoice_number} for {po.po_number} "
            f"(company {ctx.company_id}, total {invoice.total_amount})"
        )
        return invoice

    @retry_on_conflict
    def create_from_grn(self, ctx: OperationContext, data: InvoiceFromGRNCreate) -> PurchaseInvoice:
        """Derive an invoice from a completed goods receipt. One invoice per receipt."""
        require_any_role(ctx, [Role.ACCOUNTS], "create purchase invoices")

        with atomic(self.db):
            grn = get_scoped(
                self.db, GoodsReceipt, data.goods_receipt_id, ctx.company_id, "Goods receipt",
                for_update=True,
            )
            if grn.status != GRNStatus.COMPLETED:
                raise GRNNotCompletedError(grn.grn_number, grn.status.value)
            if grn.purchase_order_id is None:
                raise ValidationError(
                    f"Goods receipt {grn.grn_number} has no purchase order to invoice against"
                )

            existing = self.db.execute(
                select(PurchaseInvoice.invoice_number).where(
                    PurchaseInvoice.goods_receipt_id == grn.id
                )
            ).scalar_one_or_none()
            if existing:
                raise ConflictError(
                    f"Goods receipt {grn.grn_number} is already invoiced ({existing})"
                )

            po = self.purchase_orders.get(ctx, grn.purchase_order_id, for_update=True)

            # Rejected goods are not billed
            accepted_items = [item for item in grn.items if item.accepted_quantity > 0]
            if not accepted_items:
                raise ValidationError(
                    f"Goods receipt {grn.grn_number} has no accepted quantity to invoice"
                )

            requested: Dict[int, Decimal] = {}
            for item in accepted_items:
                requested[item.purchase_order_item_id] = (
                    requested.get(item.purchase_order_item_id, Decimal("0")) + item.accepted_quantity
                )
            self._check_invoiceable(po, requested)

            lines = [
                self._line(
                    item.purchase_order_item_id,
                    item.product_id,
                    item.accepted_quantity,
                    item.unit_price,
                    item.tax_percentage,
                    grn_item_id=item.id,
                )
                for item in accepted_items
            ]
            invoice = self._persist(
                ctx, po, data, lines,
                goods_receipt_id=grn.id,
                notes=data.notes or f"Auto-generated from GRN {grn.grn_number}",
            )

        self.db.refresh(invoice)
        logger.info(
            f"Created invoice {invoice.invoice_number} from {grn.grn_number} "
            f"(company {ctx.company_id}, total {invoice.total_amount})"
        )
        return invoice

    def cancel(self, ctx: OperationContext, invoice_id: int) -> PurchaseInvoice:
        """Cancel an invoice that has received no payments."""
        with atomic(self.db):
            invoice = self.get(ctx, invoice_id, for_update=True)
            if invoice.paid_amount > 0:
                raise ConflictError(
                    f"Invoice {invoice.invoice_number} has payments of {invoice.paid_amount} "
                    "and cannot be cancelled"
                )
            previous = invoice.status
            require_transition(
                DocumentType.PURCHASE_INVOICE, previous, InvoiceStatus.CANCELLED, ctx.roles
            )
            compare_and_set_status(self.db, invoice, InvoiceStatus.CANCELLED)

        self.db.refresh(invoice)
        logger.info(
            f"Invoice {invoice.invoice_number} {previous.value} -> cancelled "
            f"(company {ctx.company_id}, user {ctx.user_id})"
        )
        return invoice

    def attach_file(self, ctx: OperationContext, invoice_id: int, url: str) -> PurchaseInvoice:
        """Record where the scanned invoice is stored. Does not affect status."""
        require_any_role(ctx, [Role.ACCOUNTS], "attach invoice files")

        with atomic(self.db):
            invoice = self.get(ctx, invoice_id, for_update=True)
            invoice.invoice_file_url = url
            invoice.increment_version()

        self.db.refresh(invoice)
        logger.info(f"Attached file to invoice {invoice.invoice_number} (company {ctx.company_id})")
        return invoice

    def mark_overdue(self, today: Optional[date] = None, company_id: Optional[int] = None) -> int:
        """Flip open invoices past their due date to overdue. Returns how many changed.

        Rows changed concurrently are skipped; the next sweep picks them up.
        """
        today = today or date.today()
        stmt = select(PurchaseInvoice.id).where(
            PurchaseInvoice.status.in_(OPEN_STATUSES),
            PurchaseInvoice.due_date < today,
            PurchaseInvoice.paid_amount < PurchaseInvoice.total_amount,
        )
        if company_id is not None:
            stmt = stmt.where(PurchaseInvoice.company_id == company_id)
        invoice_ids = self.db.execute(stmt).scalars().all()

        changed = 0
        for invoice_id in invoice_ids:
            try:
                with atomic(self.db):
                    invoice = self.db.execute(
                        select(PurchaseInvoice)
                        .where(PurchaseInvoice.id == invoice_id)
                        .with_for_update()
                        .execution_options(populate_existing=True)
                    ).scalar_one()
                    if is_overdue(
                        invoice.status, invoice.paid_amount, invoice.total_amount,
                        invoice.due_date, today,
                    ):
                        _move_invoice(self.db, invoice, InvoiceStatus.OVERDUE)
                        changed += 1
            except ConcurrencyConflictError:
                logger.debug(f"Overdue sweep skipped invoice {invoice_id}: changed concurrently")

        if changed:
            logger.info(f"Overdue sweep marked {changed} invoice(s) overdue")
        return changed

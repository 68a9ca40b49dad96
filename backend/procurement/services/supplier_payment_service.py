"""
Supplier Payment Ledger

Records payments against purchase invoices and keeps
``PurchaseInvoice.paid_amount`` equal to the sum of its pending and
completed payments.

MONEY-CRITICAL: ``paid_amount`` only changes through ``_apply_delta``. It
checks ``0 <= paid_amount <= total_amount`` in Decimal on the locked
invoice, then writes the new amount with a conditional UPDATE guarded by
the invoice version. A payment that would overdraw the invoice is
rejected, never clamped.
"""

import logging
from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from procurement.core.config import settings
from procurement.core.exceptions import (
    ConcurrencyConflictError,
    ConflictError,
    OverpaymentError,
    ValidationError,
)
from procurement.core.rbac import OperationContext, Role, require_any_role
from procurement.models.purchase_invoice import InvoiceStatus, PurchaseInvoice
from procurement.models.purchase_order import PurchaseOrder
from procurement.models.supplier_payment import (
    PaymentMethod,
    PaymentStatus,
    SupplierPayment,
)
from procurement.schemas.supplier_payment import SupplierPaymentCreate, SupplierPaymentUpdate
from procurement.services.common import (
    atomic,
    compare_and_set_status,
    get_scoped,
    money,
    next_document_number,
    retry_on_conflict,
)
from procurement.services.purchase_invoice_service import refresh_invoice_status
from procurement.services.transition_guard import DocumentType, require_transition

logger = logging.getLogger(__name__)

RELEASING_STATUSES = (PaymentStatus.CANCELLED, PaymentStatus.FAILED)


class SupplierPaymentService:
    """Service for supplier payments and invoice balances."""

    def __init__(self, db: Session):
        self.db = db

    def get(self, ctx: OperationContext, payment_id: int, for_update: bool = False) -> SupplierPayment:
        return get_scoped(
            self.db, SupplierPayment, payment_id, ctx.company_id, "Supplier payment", for_update
        )

    def list(
        self,
        ctx: OperationContext,
        status: Optional[PaymentStatus] = None,
        purchase_invoice_id: Optional[int] = None,
        supplier_id: Optional[int] = None,
        payment_method: Optional[PaymentMethod] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> Tuple[List[SupplierPayment], int]:
        stmt = select(SupplierPayment).where(SupplierPayment.company_id == ctx.company_id)
        if status:
            stmt = stmt.where(SupplierPayment.status == status)
        if purchase_invoice_id:
            stmt = stmt.where(SupplierPayment.purchase_invoice_id == purchase_invoice_id)
        if supplier_id:
            stmt = stmt.where(SupplierPayment.supplier_id == supplier_id)
        if payment_method:
            stmt = stmt.where(SupplierPayment.payment_method == payment_method)
        if date_from:
            stmt = stmt.where(SupplierPayment.payment_date >= date_from)
        if date_to:
            stmt = stmt.where(SupplierPayment.payment_date <= date_to)

        total = self.db.execute(select(func.count()).select_from(stmt.subquery())).scalar_one()
        rows = self.db.execute(
            stmt.order_by(SupplierPayment.payment_date.desc(), SupplierPayment.id.desc())
            .offset(skip).limit(limit)
        ).scalars().all()
        return list(rows), total

    # ------------------------------------------------------------------
    # Balance
    # ------------------------------------------------------------------

    def _lock_invoice(self, ctx: OperationContext, invoice_id: int) -> PurchaseInvoice:
        return get_scoped(
            self.db, PurchaseInvoice, invoice_id, ctx.company_id, "Purchase invoice", for_update=True
        )

    def _apply_delta(self, invoice: PurchaseInvoice, delta: Decimal) -> None:
        """Add *delta* (may be negative) to the invoice's paid amount, then re-derive status.

        The bound is checked in Decimal against the amounts read, and the new
        absolute amount is written only if the invoice version is unchanged.
        """
        if delta == 0:
            return
        if invoice.status == InvoiceStatus.CANCELLED:
            raise ConflictError(f"Invoice {invoice.invoice_number} is cancelled")
        new_paid = money(invoice.paid_amount + delta)
        if new_paid > invoice.total_amount:
            raise OverpaymentError(invoice.id, delta, invoice.total_amount - invoice.paid_amount)
        if new_paid < 0:
            raise ConflictError(
                f"Invoice {invoice.invoice_number} paid amount cannot drop below zero"
            )

        result = self.db.execute(
            update(PurchaseInvoice)
            .where(
                PurchaseInvoice.id == invoice.id,
                PurchaseInvoice.version == invoice.version,
                PurchaseInvoice.status != InvoiceStatus.CANCELLED,
            )
            .values(paid_amount=new_paid, version=PurchaseInvoice.version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            paid, total, status = self.db.execute(
                select(
                    PurchaseInvoice.paid_amount,
                    PurchaseInvoice.total_amount,
                    PurchaseInvoice.status,
                ).where(PurchaseInvoice.id == invoice.id)
            ).one()
            if status == InvoiceStatus.CANCELLED:
                raise ConflictError(f"Invoice {invoice.invoice_number} is cancelled")
            if delta > 0 and paid + delta > total:
                raise OverpaymentError(invoice.id, delta, total - paid)
            raise ConcurrencyConflictError(
                f"Invoice {invoice.invoice_number} balance changed concurrently"
            )

        self.db.expire(invoice, ["paid_amount", "version", "status"])
        refresh_invoice_status(self.db, invoice)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @retry_on_conflict
    def record_payment(self, ctx: OperationContext, data: SupplierPaymentCreate) -> SupplierPayment:
        """Record a payment and add it to the invoice balance.

        Instant-settlement methods (``settings.instant_settlement_methods``)
        are recorded as completed; everything else starts pending.
        """
        require_any_role(ctx, [Role.ACCOUNTS], "record supplier payments")
        amount = money(data.amount)
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than zero")

        with atomic(self.db):
            invoice = self._lock_invoice(ctx, data.purchase_invoice_id)
            if invoice.status == InvoiceStatus.CANCELLED:
                raise ConflictError(f"Invoice {invoice.invoice_number} is cancelled")
            remaining = invoice.total_amount - invoice.paid_amount
            if amount > remaining:
                logger.warning(
                    f"Rejected payment of {amount} on invoice {invoice.invoice_number}: "
                    f"remaining {remaining}"
                )
                raise OverpaymentError(invoice.id, amount, remaining)

            self._apply_delta(invoice, amount)

            method = PaymentMethod(data.payment_method)
            payment_date = data.payment_date or date.today()
            payment = SupplierPayment(
                company_id=ctx.company_id,
                payment_number=next_document_number(
                    self.db, SupplierPayment.payment_number, SupplierPayment.company_id,
                    ctx.company_id, settings.payment_number_prefix, payment_date,
                ),
                purchase_invoice_id=invoice.id,
                supplier_id=self.db.execute(
                    select(PurchaseOrder.supplier_id).where(
                        PurchaseOrder.id == invoice.purchase_order_id
                    )
                ).scalar_one_or_none(),
                amount=amount,
                payment_method=method,
                payment_date=payment_date,
                reference_number=data.reference_number,
                notes=data.notes,
                status=(
                    PaymentStatus.COMPLETED
                    if method.value in settings.instant_settlement_methods_set
                    else PaymentStatus.PENDING
                ),
                created_by=ctx.user_id,
            )
            self.db.add(payment)
            self.db.flush()

        self.db.refresh(payment)
        self.db.refresh(invoice)
        logger.info(
            f"Recorded payment {payment.payment_number} of {amount} on invoice "
            f"{invoice.invoice_number} (company {ctx.company_id}, invoice now "
            f"{invoice.status.value}, paid {invoice.paid_amount} of {invoice.total_amount})"
        )
        return payment

    @retry_on_conflict
    def update_payment(
        self, ctx: OperationContext, payment_id: int, data: SupplierPaymentUpdate
    ) -> SupplierPayment:
        """Edit a pending payment.

        An amount change re-applies the difference to the invoice balance.
        Moving to cancelled or failed releases the whole amount.
        """
        require_any_role(ctx, [Role.ACCOUNTS], "update supplier payments")

        with atomic(self.db):
            payment = self.get(ctx, payment_id, for_update=True)
            if payment.status != PaymentStatus.PENDING:
                raise ConflictError(
                    f"Payment {payment.payment_number} is '{payment.status.value}' "
                    "and can no longer be modified"
                )
            target = data.status if data.status != payment.status else None
            if target is not None:
                require_transition(DocumentType.SUPPLIER_PAYMENT, payment.status, target, ctx.roles)

            invoice = self._lock_invoice(ctx, payment.purchase_invoice_id)

            if target in RELEASING_STATUSES:
                self._apply_delta(invoice, -payment.amount)
            elif data.amount is not None:
                new_amount = money(data.amount)
                available = invoice.total_amount - invoice.paid_amount + payment.amount
                if new_amount > available:
                    raise OverpaymentError(invoice.id, new_amount, available)
                self._apply_delta(invoice, new_amount - payment.amount)
                payment.amount = new_amount

            for field in ("payment_method", "payment_date", "reference_number", "notes"):
                if field in data.model_fields_set and getattr(data, field) is not None:
                    setattr(payment, field, getattr(data, field))

            if target is not None:
                compare_and_set_status(self.db, payment, target)
            else:
                payment.increment_version()

        self.db.refresh(payment)
        logger.info(
            f"Updated payment {payment.payment_number} (company {ctx.company_id}, "
            f"status {payment.status.value}, amount {payment.amount})"
        )
        return payment

    def cancel_payment(self, ctx: OperationContext, payment_id: int) -> SupplierPayment:
        """Cancel a pending payment and release its amount from the invoice."""
        return self.update_payment(
            ctx, payment_id, SupplierPaymentUpdate(status=PaymentStatus.CANCELLED)
        )

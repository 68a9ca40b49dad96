"""Supplier payment model."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint, Date, Enum as SQLEnum, ForeignKey, Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from procurement.db.base import Base, TenantMixin, TimestampMixin, VersionMixin


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    CARD = "card"
    UPI = "upi"


# Payments in these states count towards the invoice's paid_amount
ACTIVE_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.COMPLETED)


class SupplierPayment(Base, TenantMixin, TimestampMixin, VersionMixin):
    """A payment made to a supplier against exactly one invoice."""

    __tablename__ = "supplier_payments"
    __table_args__ = (
        UniqueConstraint("company_id", "payment_number", name="uq_supplier_payments_company_number"),
        CheckConstraint("amount > 0", name="ck_supplier_payments_amount_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    payment_number: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    purchase_invoice_id: Mapped[int] = mapped_column(
        ForeignKey("purchase_invoices.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    supplier_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("suppliers.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payment_method: Mapped[PaymentMethod] = mapped_column(SQLEnum(PaymentMethod), nullable=False)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    reference_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False, index=True
    )
    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    # Relationships
    purchase_invoice: Mapped["PurchaseInvoice"] = relationship(
        "PurchaseInvoice", back_populates="payments"
    )


# Forward references
from procurement.models.purchase_invoice import PurchaseInvoice  # noqa: E402

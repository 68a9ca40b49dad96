"""Purchase invoice models."""

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


class InvoiceStatus(str, Enum):
    """Status of a purchase invoice. Derived from the balance except CANCELLED."""

    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class PurchaseInvoice(Base, TenantMixin, TimestampMixin, VersionMixin):
    """A supplier's bill for goods ordered on a purchase order."""

    __tablename__ = "purchase_invoices"
    __table_args__ = (
        UniqueConstraint("company_id", "invoice_number", name="uq_purchase_invoices_company_number"),
        # One invoice per goods receipt
        UniqueConstraint("goods_receipt_id", name="uq_purchase_invoices_goods_receipt"),
        CheckConstraint(
            "paid_amount >= 0 AND paid_amount <= total_amount",
            name="ck_purchase_invoices_paid_bounds",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    supplier_invoice_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    purchase_order_id: Mapped[int] = mapped_column(
        ForeignKey("purchase_orders.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    goods_receipt_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("goods_receipts.id", ondelete="RESTRICT"), nullable=True
    )
    status: Mapped[InvoiceStatus] = mapped_column(
        SQLEnum(InvoiceStatus), default=InvoiceStatus.PENDING, nullable=False, index=True
    )
    invoice_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)

    subtotal: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), server_default="0", nullable=False
    )

    invoice_file_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    # Relationships
    purchase_order: Mapped["PurchaseOrder"] = relationship("PurchaseOrder")
    goods_receipt: Mapped[Optional["GoodsReceipt"]] = relationship("GoodsReceipt")
    items: Mapped[list["PurchaseInvoiceItem"]] = relationship(
        "PurchaseInvoiceItem",
        back_populates="purchase_invoice",
        cascade="all, delete-orphan",
        order_by="PurchaseInvoiceItem.id",
    )
    payments: Mapped[list["SupplierPayment"]] = relationship(
        "SupplierPayment", back_populates="purchase_invoice"
    )

    @property
    def balance_due(self) -> Decimal:
        return self.total_amount - self.paid_amount


class PurchaseInvoiceItem(Base):
    __tablename__ = "purchase_invoice_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_invoice_items_quantity_positive"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    purchase_invoice_id: Mapped[int] = mapped_column(
        ForeignKey("purchase_invoices.id", ondelete="CASCADE"), nullable=False, index=True
    )
    purchase_order_item_id: Mapped[int] = mapped_column(
        ForeignKey("purchase_order_items.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    goods_receipt_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("goods_receipt_items.id", ondelete="RESTRICT"), nullable=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), default=Decimal("0"), nullable=False)
    line_total: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    # Relationships
    purchase_invoice: Mapped["PurchaseInvoice"] = relationship(
        "PurchaseInvoice", back_populates="items"
    )


# Forward references
from procurement.models.purchase_order import PurchaseOrder  # noqa: E402
from procurement.models.goods_receipt import GoodsReceipt  # noqa: E402
from procurement.models.supplier_payment import SupplierPayment  # noqa: E402

"""Goods receipt (GRN) models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    CheckConstraint, Date, DateTime, Enum as SQLEnum, ForeignKey, Numeric, String, Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from procurement.db.base import Base, TenantMixin, TimestampMixin, VersionMixin


class GRNStatus(str, Enum):
    """Status of a goods receipt."""

    PENDING = "pending"
    RECEIVED = "received"
    COMPLETED = "completed"


class GoodsReceipt(Base, TenantMixin, TimestampMixin, VersionMixin):
    """Physical receipt of goods, usually against a purchase order."""

    __tablename__ = "goods_receipts"
    __table_args__ = (
        UniqueConstraint("company_id", "grn_number", name="uq_goods_receipts_company_number"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    grn_number: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    # Nullable for ad hoc receipts
    purchase_order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("purchase_orders.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    warehouse_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("warehouses.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    status: Mapped[GRNStatus] = mapped_column(
        SQLEnum(GRNStatus), default=GRNStatus.PENDING, nullable=False, index=True
    )
    receipt_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_received_amount: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    inspection_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    inspected_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    inspected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    received_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    completed_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    purchase_order: Mapped[Optional["PurchaseOrder"]] = relationship(
        "PurchaseOrder", back_populates="goods_receipts"
    )
    items: Mapped[list["GoodsReceiptItem"]] = relationship(
        "GoodsReceiptItem",
        back_populates="goods_receipt",
        cascade="all, delete-orphan",
        order_by="GoodsReceiptItem.id",
    )


class GoodsReceiptItem(Base):
    """One received line. Only the accepted quantity is reconciled into the PO."""

    __tablename__ = "goods_receipt_items"
    __table_args__ = (
        CheckConstraint("received_quantity > 0", name="ck_grn_items_quantity_positive"),
        CheckConstraint("accepted_quantity >= 0", name="ck_grn_items_accepted_non_negative"),
        CheckConstraint("rejected_quantity >= 0", name="ck_grn_items_rejected_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    goods_receipt_id: Mapped[int] = mapped_column(
        ForeignKey("goods_receipts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    purchase_order_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("purchase_order_items.id", ondelete="RESTRICT"), nullable=True, index=True
    )
    product_id: Mapped[int] = mapped_column(
        ForeignKey("products.id", ondelete="RESTRICT"), nullable=False
    )
    received_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    accepted_quantity: Mapped[Decimal] = mapped_column(Numeric(12, 3), nullable=False)
    rejected_quantity: Mapped[Decimal] = mapped_column(
        Numeric(12, 3), default=Decimal("0"), nullable=False
    )
    condition_notes: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    tax_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)

    # Relationships
    goods_receipt: Mapped["GoodsReceipt"] = relationship("GoodsReceipt", back_populates="items")
    purchase_order_item: Mapped[Optional["PurchaseOrderItem"]] = relationship("PurchaseOrderItem")


# Forward references
from procurement.models.purchase_order import PurchaseOrder, PurchaseOrderItem  # noqa: E402

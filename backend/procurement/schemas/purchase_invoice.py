"""Purchase invoice schemas."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from procurement.models.purchase_invoice import InvoiceStatus


class InvoiceItemCreate(BaseModel):
    """Manual invoice line. Price and tax default to the PO line's."""

    purchase_order_item_id: int
    quantity: Decimal = Field(gt=0)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    tax_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)


class InvoiceHeaderFields(BaseModel):
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    discount_amount: Decimal = Field(default=Decimal("0"), ge=0)
    supplier_invoice_number: Optional[str] = None
    notes: Optional[str] = None


class PurchaseInvoiceCreate(InvoiceHeaderFields):
    purchase_order_id: int
    items: List[InvoiceItemCreate] = Field(min_length=1)


class InvoiceFromGRNCreate(InvoiceHeaderFields):
    goods_receipt_id: int


class InvoiceFileAttach(BaseModel):
    invoice_file_url: str = Field(min_length=1, max_length=1000)


class InvoiceItemResponse(BaseModel):
    id: int
    purchase_order_item_id: int
    goods_receipt_item_id: Optional[int] = None
    product_id: int
    quantity: Decimal
    unit_price: Decimal
    tax_percentage: Decimal
    tax_amount: Decimal
    line_total: Decimal

    model_config = {"from_attributes": True}


class PurchaseInvoiceResponse(BaseModel):
    id: int
    company_id: int
    invoice_number: str
    supplier_invoice_number: Optional[str] = None
    purchase_order_id: int
    goods_receipt_id: Optional[int] = None
    status: InvoiceStatus
    invoice_date: date
    due_date: date
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_due: Decimal
    invoice_file_url: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[int] = None
    version: int
    items: List[InvoiceItemResponse] = []
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

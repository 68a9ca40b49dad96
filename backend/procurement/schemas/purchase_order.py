"""Purchase order schemas."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from procurement.models.purchase_order import POStatus


class POItemCreate(BaseModel):
    """Purchase order line input."""

    product_id: int
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    tax_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)


class PurchaseOrderCreate(BaseModel):
    supplier_id: int
    warehouse_id: int
    items: List[POItemCreate] = Field(min_length=1)
    order_date: Optional[date] = None
    expected_delivery_date: Optional[date] = None
    notes: Optional[str] = None
    terms_conditions: Optional[str] = None


class PurchaseOrderUpdate(BaseModel):
    """Editable fields of a draft or pending PO. ``items`` replaces every line."""

    supplier_id: Optional[int] = None
    warehouse_id: Optional[int] = None
    expected_delivery_date: Optional[date] = None
    notes: Optional[str] = None
    terms_conditions: Optional[str] = None
    items: Optional[List[POItemCreate]] = Field(default=None, min_length=1)
    # Optimistic lock; rejected if the PO changed since it was read
    version: Optional[int] = None


class POItemResponse(BaseModel):
    id: int
    product_id: int
    quantity: Decimal
    unit_price: Decimal
    tax_percentage: Decimal
    line_total: Decimal
    received_quantity: Decimal

    model_config = {"from_attributes": True}


class PurchaseOrderResponse(BaseModel):
    id: int
    company_id: int
    po_number: str
    supplier_id: int
    warehouse_id: int
    status: POStatus
    order_date: date
    expected_delivery_date: Optional[date] = None
    total_amount: Decimal
    notes: Optional[str] = None
    terms_conditions: Optional[str] = None
    created_by: Optional[int] = None
    approved_by: Optional[int] = None
    approved_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    is_fully_received: bool
    version: int
    items: List[POItemResponse] = []
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

"""Goods receipt schemas."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, Field

from procurement.models.goods_receipt import GRNStatus


class GRNItemCreate(BaseModel):
    """One received line. Accepted defaults to received minus rejected."""

    purchase_order_item_id: int
    received_quantity: Decimal = Field(gt=0)
    accepted_quantity: Optional[Decimal] = Field(default=None, ge=0)
    rejected_quantity: Optional[Decimal] = Field(default=None, ge=0)
    condition_notes: Optional[str] = Field(default=None, max_length=500)


class GoodsReceiptCreate(BaseModel):
    purchase_order_id: int
    items: List[GRNItemCreate] = Field(min_length=1)
    receipt_date: Optional[date] = None
    warehouse_id: Optional[int] = None
    notes: Optional[str] = None
    inspection_notes: Optional[str] = None


class GoodsReceiptUpdate(BaseModel):
    """Edit of a pending receipt. ``items`` replaces every line when given."""

    items: Optional[List[GRNItemCreate]] = Field(default=None, min_length=1)
    receipt_date: Optional[date] = None
    warehouse_id: Optional[int] = None
    notes: Optional[str] = None
    inspection_notes: Optional[str] = None


class GRNItemResponse(BaseModel):
    id: int
    purchase_order_item_id: Optional[int] = None
    product_id: int
    received_quantity: Decimal
    accepted_quantity: Decimal
    rejected_quantity: Decimal
    condition_notes: Optional[str] = None
    unit_price: Decimal
    tax_percentage: Decimal

    model_config = {"from_attributes": True}


class GoodsReceiptResponse(BaseModel):
    id: int
    company_id: int
    grn_number: str
    purchase_order_id: Optional[int] = None
    warehouse_id: Optional[int] = None
    status: GRNStatus
    receipt_date: date
    total_received_amount: Decimal
    notes: Optional[str] = None
    inspection_notes: Optional[str] = None
    inspected_by: Optional[int] = None
    inspected_at: Optional[datetime] = None
    received_by: Optional[int] = None
    completed_by: Optional[int] = None
    completed_at: Optional[datetime] = None
    version: int
    items: List[GRNItemResponse] = []

    model_config = {"from_attributes": True}

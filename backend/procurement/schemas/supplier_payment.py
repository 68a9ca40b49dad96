"""Supplier payment schemas."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from procurement.models.supplier_payment import PaymentMethod, PaymentStatus


class SupplierPaymentCreate(BaseModel):
    purchase_invoice_id: int
    amount: Decimal = Field(gt=0)
    payment_method: PaymentMethod
    payment_date: Optional[date] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None


class SupplierPaymentUpdate(BaseModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)
    status: Optional[PaymentStatus] = None
    payment_method: Optional[PaymentMethod] = None
    payment_date: Optional[date] = None
    reference_number: Optional[str] = None
    notes: Optional[str] = None


class SupplierPaymentResponse(BaseModel):
    id: int
    company_id: int
    payment_number: str
    purchase_invoice_id: int
    supplier_id: Optional[int] = None
    amount: Decimal
    payment_method: PaymentMethod
    payment_date: date
    reference_number: Optional[str] = None
    notes: Optional[str] = None
    status: PaymentStatus
    created_by: Optional[int] = None
    version: int
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

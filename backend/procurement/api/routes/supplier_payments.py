"""Supplier Payments API routes."""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Query, Request, status

from procurement.core.rate_limit import limiter
from procurement.core.rbac import CurrentContext
from procurement.core.responses import list_response, success_response
from procurement.db.session import DbSession
from procurement.models.supplier_payment import PaymentMethod, PaymentStatus, SupplierPayment
from procurement.schemas.supplier_payment import (
    SupplierPaymentCreate,
    SupplierPaymentResponse,
    SupplierPaymentUpdate,
)
from procurement.services.supplier_payment_service import SupplierPaymentService

router = APIRouter()


def _serialize(payment: SupplierPayment) -> dict:
    return SupplierPaymentResponse.model_validate(payment).model_dump(mode="json")


@router.get("/")
@limiter.limit("60/minute")
def list_supplier_payments(
    request: Request,
    db: DbSession,
    ctx: CurrentContext,
    status: Optional[PaymentStatus] = None,
    purchase_invoice_id: Optional[int] = None,
    supplier_id: Optional[int] = None,
    payment_method: Optional[PaymentMethod] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    items, total = SupplierPaymentService(db).list(
        ctx, status=status, purchase_invoice_id=purchase_invoice_id, supplier_id=supplier_id,
        payment_method=payment_method, date_from=date_from, date_to=date_to,
        skip=skip, limit=limit,
    )
    return list_response([_serialize(p) for p in items], total)


@router.get("/{payment_id}")
@limiter.limit("60/minute")
def get_supplier_payment(request: Request, payment_id: int, db: DbSession, ctx: CurrentContext):
    return success_response(_serialize(SupplierPaymentService(db).get(ctx, payment_id)))


@router.post("/", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def record_supplier_payment(
    request: Request, payload: SupplierPaymentCreate, db: DbSession, ctx: CurrentContext
):
    """Record a payment against a purchase invoice."""
    payment = SupplierPaymentService(db).record_payment(ctx, payload)
    return success_response(_serialize(payment), "Payment recorded")


@router.put("/{payment_id}")
@limiter.limit("30/minute")
def update_supplier_payment(
    request: Request, payment_id: int, payload: SupplierPaymentUpdate, db: DbSession, ctx: CurrentContext
):
    payment = SupplierPaymentService(db).update_payment(ctx, payment_id, payload)
    return success_response(_serialize(payment), "Payment updated")


@router.delete("/{payment_id}")
@limiter.limit("30/minute")
def cancel_supplier_payment(request: Request, payment_id: int, db: DbSession, ctx: CurrentContext):
    """Cancel a pending payment and release its amount from the invoice."""
    payment = SupplierPaymentService(db).cancel_payment(ctx, payment_id)
    return success_response(_serialize(payment), "Payment cancelled")

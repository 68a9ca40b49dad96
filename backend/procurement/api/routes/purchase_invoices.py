"""Purchase Invoices API routes."""

from typing import Optional

from fastapi import APIRouter, Query, Request, status

from procurement.core.rate_limit import limiter
from procurement.core.rbac import CurrentContext, Role, require_any_role
from procurement.core.responses import list_response, success_response
from procurement.db.session import DbSession
from procurement.models.purchase_invoice import InvoiceStatus, PurchaseInvoice
from procurement.schemas.purchase_invoice import (
    InvoiceFileAttach,
    InvoiceFromGRNCreate,
    PurchaseInvoiceCreate,
    PurchaseInvoiceResponse,
)
from procurement.services.purchase_invoice_service import PurchaseInvoiceService

router = APIRouter()


def _serialize(invoice: PurchaseInvoice) -> dict:
    return PurchaseInvoiceResponse.model_validate(invoice).model_dump(mode="json")


@router.get("/")
@limiter.limit("60/minute")
def list_purchase_invoices(
    request: Request,
    db: DbSession,
    ctx: CurrentContext,
    status: Optional[InvoiceStatus] = None,
    purchase_order_id: Optional[int] = None,
    overdue_only: bool = False,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    items, total = PurchaseInvoiceService(db).list(
        ctx, status=status, purchase_order_id=purchase_order_id,
        overdue_only=overdue_only, skip=skip, limit=limit,
    )
    return list_response([_serialize(invoice) for invoice in items], total)


@router.post("/overdue-sweep")
@limiter.limit("5/minute")
def run_overdue_sweep(request: Request, db: DbSession, ctx: CurrentContext):
    """Mark this company's past-due invoices overdue now (admin only)."""
    require_any_role(ctx, [Role.ADMIN], "run the overdue sweep")
    changed = PurchaseInvoiceService(db).mark_overdue(company_id=ctx.company_id)
    return success_response({"marked_overdue": changed})


@router.get("/{invoice_id}")
@limiter.limit("60/minute")
def get_purchase_invoice(request: Request, invoice_id: int, db: DbSession, ctx: CurrentContext):
    return success_response(_serialize(PurchaseInvoiceService(db).get(ctx, invoice_id)))


@router.post("/", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_purchase_invoice(
    request: Request, payload: PurchaseInvoiceCreate, db: DbSession, ctx: CurrentContext
):
    """Create an invoice from explicit purchase order lines."""
    invoice = PurchaseInvoiceService(db).create_manual(ctx, payload)
    return success_response(_serialize(invoice), "Purchase invoice created")


@router.post("/from-grn", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_invoice_from_grn(
    request: Request, payload: InvoiceFromGRNCreate, db: DbSession, ctx: CurrentContext
):
    """Derive an invoice from a completed goods receipt."""
    invoice = PurchaseInvoiceService(db).create_from_grn(ctx, payload)
    return success_response(_serialize(invoice), "Purchase invoice created from goods receipt")


@router.post("/{invoice_id}/cancel")
@limiter.limit("30/minute")
def cancel_purchase_invoice(request: Request, invoice_id: int, db: DbSession, ctx: CurrentContext):
    invoice = PurchaseInvoiceService(db).cancel(ctx, invoice_id)
    return success_response(_serialize(invoice), "Purchase invoice cancelled")


@router.put("/{invoice_id}/file")
@limiter.limit("30/minute")
def attach_invoice_file(
    request: Request, invoice_id: int, payload: InvoiceFileAttach, db: DbSession, ctx: CurrentContext
):
    invoice = PurchaseInvoiceService(db).attach_file(ctx, invoice_id, payload.invoice_file_url)
    return success_response(_serialize(invoice), "Invoice file attached")

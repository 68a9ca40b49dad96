"""Purchase Orders API routes."""

from typing import Optional

from fastapi import APIRouter, Query, Request, status

from procurement.core.rate_limit import limiter
from procurement.core.rbac import CurrentContext
from procurement.core.responses import list_response, success_response
from procurement.db.session import DbSession
from procurement.models.purchase_order import POStatus, PurchaseOrder
from procurement.schemas.purchase_order import (
    PurchaseOrderCreate,
    PurchaseOrderResponse,
    PurchaseOrderUpdate,
)
from procurement.services.purchase_order_service import PurchaseOrderService

router = APIRouter()


def _serialize(po: PurchaseOrder) -> dict:
    return PurchaseOrderResponse.model_validate(po).model_dump(mode="json")


@router.get("/")
@limiter.limit("60/minute")
def list_purchase_orders(
    request: Request,
    db: DbSession,
    ctx: CurrentContext,
    status: Optional[POStatus] = None,
    supplier_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    search: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    """List purchase orders in the caller's company."""
    items, total = PurchaseOrderService(db).list(
        ctx, status=status, supplier_id=supplier_id, warehouse_id=warehouse_id,
        search=search, skip=skip, limit=limit,
    )
    return list_response([_serialize(po) for po in items], total)


@router.get("/{po_id}")
@limiter.limit("60/minute")
def get_purchase_order(request: Request, po_id: int, db: DbSession, ctx: CurrentContext):
    return success_response(_serialize(PurchaseOrderService(db).get(ctx, po_id)))


@router.post("/", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_purchase_order(
    request: Request, payload: PurchaseOrderCreate, db: DbSession, ctx: CurrentContext
):
    """Create a draft purchase order."""
    po = PurchaseOrderService(db).create(ctx, payload)
    return success_response(_serialize(po), "Purchase order created")


@router.put("/{po_id}")
@limiter.limit("30/minute")
def update_purchase_order(
    request: Request, po_id: int, payload: PurchaseOrderUpdate, db: DbSession, ctx: CurrentContext
):
    """Edit a draft or pending purchase order (admin only)."""
    po = PurchaseOrderService(db).update(ctx, po_id, payload)
    return success_response(_serialize(po), "Purchase order updated")


@router.post("/{po_id}/submit")
@limiter.limit("30/minute")
def submit_purchase_order(request: Request, po_id: int, db: DbSession, ctx: CurrentContext):
    po = PurchaseOrderService(db).submit(ctx, po_id)
    return success_response(_serialize(po), "Purchase order submitted for approval")


@router.post("/{po_id}/approve")
@limiter.limit("30/minute")
def approve_purchase_order(request: Request, po_id: int, db: DbSession, ctx: CurrentContext):
    po = PurchaseOrderService(db).approve(ctx, po_id)
    return success_response(_serialize(po), "Purchase order approved")


@router.delete("/{po_id}")
@limiter.limit("30/minute")
def cancel_purchase_order(request: Request, po_id: int, db: DbSession, ctx: CurrentContext):
    """Cancel a purchase order. Purchase orders are never physically deleted."""
    po = PurchaseOrderService(db).cancel(ctx, po_id)
    return success_response(_serialize(po), "Purchase order cancelled")

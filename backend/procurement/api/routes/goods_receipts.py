"""Goods Receipts (GRN) API routes."""

from typing import Optional

from fastapi import APIRouter, Query, Request, status

from procurement.core.rate_limit import limiter
from procurement.core.rbac import CurrentContext
from procurement.core.responses import list_response, success_response
from procurement.db.session import DbSession
from procurement.models.goods_receipt import GRNStatus, GoodsReceipt
from procurement.schemas.goods_receipt import (
    GoodsReceiptCreate,
    GoodsReceiptResponse,
    GoodsReceiptUpdate,
)
from procurement.services.goods_receipt_service import GoodsReceiptService

router = APIRouter()


def _serialize(grn: GoodsReceipt) -> dict:
    return GoodsReceiptResponse.model_validate(grn).model_dump(mode="json")


@router.get("/")
@limiter.limit("60/minute")
def list_goods_receipts(
    request: Request,
    db: DbSession,
    ctx: CurrentContext,
    status: Optional[GRNStatus] = None,
    purchase_order_id: Optional[int] = None,
    warehouse_id: Optional[int] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    items, total = GoodsReceiptService(db).list(
        ctx, status=status, purchase_order_id=purchase_order_id,
        warehouse_id=warehouse_id, skip=skip, limit=limit,
    )
    return list_response([_serialize(grn) for grn in items], total)


@router.get("/{grn_id}")
@limiter.limit("60/minute")
def get_goods_receipt(request: Request, grn_id: int, db: DbSession, ctx: CurrentContext):
    return success_response(_serialize(GoodsReceiptService(db).get(ctx, grn_id)))


@router.post("/", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_goods_receipt(
    request: Request, payload: GoodsReceiptCreate, db: DbSession, ctx: CurrentContext
):
    """Create a pending goods receipt against an approved or ordered PO."""
    grn = GoodsReceiptService(db).create_receipt(ctx, payload)
    return success_response(_serialize(grn), "Goods receipt created")


@router.put("/{grn_id}")
@limiter.limit("30/minute")
def update_goods_receipt(
    request: Request, grn_id: int, payload: GoodsReceiptUpdate, db: DbSession, ctx: CurrentContext
):
    """Edit a pending goods receipt, including its inspection split."""
    grn = GoodsReceiptService(db).update_receipt(ctx, grn_id, payload)
    return success_response(_serialize(grn), "Goods receipt updated")


@router.post("/{grn_id}/receive")
@limiter.limit("30/minute")
def receive_goods_receipt(request: Request, grn_id: int, db: DbSession, ctx: CurrentContext):
    grn = GoodsReceiptService(db).mark_received(ctx, grn_id)
    return success_response(_serialize(grn), "Goods receipt marked as received")


@router.post("/{grn_id}/complete")
@limiter.limit("30/minute")
def complete_goods_receipt(request: Request, grn_id: int, db: DbSession, ctx: CurrentContext):
    """Complete a receipt and add its quantities to the purchase order."""
    grn = GoodsReceiptService(db).complete(ctx, grn_id)
    return success_response(_serialize(grn), "Goods receipt completed")


@router.delete("/{grn_id}")
@limiter.limit("30/minute")
def delete_goods_receipt(request: Request, grn_id: int, db: DbSession, ctx: CurrentContext):
    GoodsReceiptService(db).delete(ctx, grn_id)
    return success_response(None, "Goods receipt deleted")

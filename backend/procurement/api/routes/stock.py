"""Warehouse stock API routes."""

from typing import Optional

from fastapi import APIRouter, Query, Request

from procurement.core.rate_limit import limiter
from procurement.core.rbac import CurrentContext
from procurement.core.responses import list_response
from procurement.db.session import DbSession
from procurement.schemas.stock import StockOnHandResponse
from procurement.services.stock_service import WarehouseStockService

router = APIRouter()


@router.get("/")
@limiter.limit("60/minute")
def list_stock_on_hand(
    request: Request,
    db: DbSession,
    ctx: CurrentContext,
    warehouse_id: Optional[int] = None,
    product_id: Optional[int] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
):
    """Stock on hand per warehouse and product, as posted by completed receipts."""
    items, total = WarehouseStockService(db).list_on_hand(
        ctx, warehouse_id=warehouse_id, product_id=product_id, skip=skip, limit=limit
    )
    return list_response(
        [StockOnHandResponse.model_validate(row).model_dump(mode="json") for row in items], total
    )

"""API routes."""

from fastapi import APIRouter

from procurement.api.routes import (
    purchase_orders,
    goods_receipts,
    purchase_invoices,
    supplier_payments,
    stock,
)

api_router = APIRouter()

api_router.include_router(purchase_orders.router, prefix="/purchase-orders", tags=["purchase-orders"])
api_router.include_router(goods_receipts.router, prefix="/goods-receipts", tags=["goods-receipts"])
api_router.include_router(
    purchase_invoices.router, prefix="/purchase-invoices", tags=["purchase-invoices"]
)
api_router.include_router(
    supplier_payments.router, prefix="/supplier-payments", tags=["supplier-payments"]
)
api_router.include_router(stock.router, prefix="/stock", tags=["stock"])

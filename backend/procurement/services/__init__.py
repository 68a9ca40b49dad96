"""Business logic services."""

from procurement.services.purchase_order_service import PurchaseOrderService
from procurement.services.goods_receipt_service import GoodsReceiptService
from procurement.services.purchase_invoice_service import PurchaseInvoiceService
from procurement.services.supplier_payment_service import SupplierPaymentService
from procurement.services.stock_service import WarehouseStockService
from procurement.services.tenant_context import RoleResolver, role_resolver

__all__ = [
    "PurchaseOrderService",
    "GoodsReceiptService",
    "PurchaseInvoiceService",
    "SupplierPaymentService",
    "WarehouseStockService",
    "RoleResolver",
    "role_resolver",
]

"""SQLAlchemy models."""

from procurement.models.tenant import (
    Company,
    User,
    UserCompanyRole,
    Supplier,
    Warehouse,
    Product,
)
from procurement.models.purchase_order import PurchaseOrder, PurchaseOrderItem, POStatus
from procurement.models.goods_receipt import GoodsReceipt, GoodsReceiptItem, GRNStatus
from procurement.models.purchase_invoice import (
    PurchaseInvoice,
    PurchaseInvoiceItem,
    InvoiceStatus,
)
from procurement.models.supplier_payment import (
    SupplierPayment,
    PaymentStatus,
    PaymentMethod,
    ACTIVE_PAYMENT_STATUSES,
)
from procurement.models.stock import StockOnHand, StockMovement, MovementReason

__all__ = [
    "Company",
    "User",
    "UserCompanyRole",
    "Supplier",
    "Warehouse",
    "Product",
    "PurchaseOrder",
    "PurchaseOrderItem",
    "POStatus",
    "GoodsReceipt",
    "GoodsReceiptItem",
    "GRNStatus",
    "PurchaseInvoice",
    "PurchaseInvoiceItem",
    "InvoiceStatus",
    "SupplierPayment",
    "PaymentStatus",
    "PaymentMethod",
    "ACTIVE_PAYMENT_STATUSES",
    "StockOnHand",
    "StockMovement",
    "MovementReason",
]

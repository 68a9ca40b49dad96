"""Domain exceptions for procurement operations.

Every error carries the HTTP status it maps to and a short machine-readable
code; ``procurement.main`` renders them as the standard error envelope.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, Optional


class ProcurementError(Exception):
    """Base class for all procurement domain errors."""

    status_code: int = 400
    code: str = "procurement_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(ProcurementError):
    """Malformed input or a violated business precondition."""

    status_code = 400
    code = "validation_error"


class AuthenticationError(ProcurementError):
    status_code = 401
    code = "authentication_error"


class AuthorizationError(ProcurementError):
    """Actor is authenticated but lacks a required role."""

    status_code = 403
    code = "authorization_error"

    def __init__(self, message: str, required_roles: Iterable[str] = ()):
        self.required_roles = sorted(required_roles)
        details = {"required_roles": self.required_roles} if self.required_roles else None
        super().__init__(message, details)


class NotFoundError(ProcurementError):
    """Document missing or not visible in the caller's tenant."""

    status_code = 404
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": entity_id})


class ConflictError(ProcurementError):
    """Operation is not permitted in the document's current state."""

    status_code = 409
    code = "conflict"


class TransitionDeniedError(ConflictError):
    """Requested status change is not an edge of the document's state machine."""

    code = "invalid_transition"

    def __init__(
        self,
        document_type: str,
        current_status: str,
        target_status: str,
        allowed: Iterable[str] = (),
        reason: Optional[str] = None,
    ):
        self.document_type = document_type
        self.current_status = current_status
        self.target_status = target_status
        self.allowed = sorted(allowed)
        message = reason or (
            f"Cannot move {document_type} from '{current_status}' to '{target_status}'"
        )
        super().__init__(message)
        self.details = {
            "document_type": document_type,
            "current_status": current_status,
            "attempted_status": target_status,
            "allowed_statuses": self.allowed,
        }


class QuantityExceededError(ConflictError):
    """Requested quantity would push an accumulator past its bound."""

    code = "quantity_exceeded"

    def __init__(self, item_id: int, requested: Decimal, remaining: Decimal, what: str = "receive"):
        self.item_id = item_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Cannot {what} {requested} for item {item_id}: only {remaining} remaining",
        )
        self.details = {
            "purchase_order_item_id": item_id,
            "requested": str(requested),
            "remaining": str(remaining),
        }


class OverpaymentError(ConflictError):
    """Payment would exceed the invoice's outstanding balance."""

    code = "overpayment"

    def __init__(self, invoice_id: int, amount: Decimal, remaining: Decimal):
        self.invoice_id = invoice_id
        self.amount = amount
        self.remaining = remaining
        super().__init__(
            f"Payment of {amount} exceeds remaining balance {remaining} on invoice {invoice_id}",
        )
        self.details = {
            "purchase_invoice_id": invoice_id,
            "amount": str(amount),
            "remaining": str(remaining),
        }


class AlreadyCompletedError(ConflictError):
    code = "already_completed"

    def __init__(self, grn_number: str):
        self.grn_number = grn_number
        super().__init__(f"Goods receipt {grn_number} is already completed")


class GRNNotCompletedError(ConflictError):
    code = "grn_not_completed"

    def __init__(self, grn_number: str, status: str):
        self.grn_number = grn_number
        super().__init__(
            f"Goods receipt {grn_number} must be completed before invoicing (status: {status})",
            {"grn_number": grn_number, "status": status},
        )


class ConcurrencyConflictError(ConflictError):
    """Lost an optimistic-lock race; safe to retry."""

    code = "concurrency_conflict"

"""
Transition Guard

Single source of truth for every document status change. Each document type
has a directed graph of permitted edges; each edge names the roles that may
fire it, or is marked as a system edge that only the engine fires itself.

The guard is pure: it never touches the database or mutates a document.
Services call ``require_transition`` before every status write.
"""

from dataclasses import dataclass, field
from enum import Enum
from itertools import permutations
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from procurement.core.exceptions import AuthorizationError, TransitionDeniedError
from procurement.core.rbac import Role, has_any_role
from procurement.models.goods_receipt import GRNStatus
from procurement.models.purchase_invoice import InvoiceStatus
from procurement.models.purchase_order import POStatus
from procurement.models.supplier_payment import PaymentStatus


class DocumentType(str, Enum):
    PURCHASE_ORDER = "purchase_order"
    GOODS_RECEIPT = "goods_receipt"
    PURCHASE_INVOICE = "purchase_invoice"
    SUPPLIER_PAYMENT = "supplier_payment"


@dataclass(frozen=True)
class Transition:
    """One permitted edge of a document state machine."""

    action: str
    roles: FrozenSet[str] = frozenset()
    system: bool = False


@dataclass(frozen=True)
class GuardDecision:
    allowed: bool
    reason: str = ""
    # "ok", "invalid_transition", "system_only" or "forbidden"
    code: str = "ok"
    allowed_targets: Tuple[str, ...] = field(default_factory=tuple)
    required_roles: FrozenSet[str] = frozenset()


def _roles(*roles: Role) -> FrozenSet[str]:
    return frozenset(r.value for r in roles)


WAREHOUSE = _roles(Role.WAREHOUSE_MANAGER, Role.ADMIN)
ACCOUNTS = _roles(Role.ACCOUNTS, Role.ADMIN)
ADMIN_ONLY = _roles(Role.ADMIN)


# =============================================================================
# TRANSITION RULES
# =============================================================================

PO_TRANSITIONS: Dict[Tuple[str, str], Transition] = {
    (POStatus.DRAFT, POStatus.PENDING): Transition("submit", WAREHOUSE),
    (POStatus.PENDING, POStatus.APPROVED): Transition("approve", ACCOUNTS),
    # Fired when the first goods receipt against the PO completes
    (POStatus.APPROVED, POStatus.ORDERED): Transition("mark ordered", system=True),
    (POStatus.DRAFT, POStatus.CANCELLED): Transition("cancel", ADMIN_ONLY),
    (POStatus.PENDING, POStatus.CANCELLED): Transition("cancel", ADMIN_ONLY),
    # Only while no goods receipt exists; enforced by the PO manager
    (POStatus.APPROVED, POStatus.CANCELLED): Transition("cancel", ADMIN_ONLY),
}

GRN_TRANSITIONS: Dict[Tuple[str, str], Transition] = {
    (GRNStatus.PENDING, GRNStatus.RECEIVED): Transition("mark received", WAREHOUSE),
    (GRNStatus.RECEIVED, GRNStatus.COMPLETED): Transition("complete", ACCOUNTS),
}

_DERIVED_INVOICE_STATUSES = (
    InvoiceStatus.PENDING,
    InvoiceStatus.PARTIAL,
    InvoiceStatus.PAID,
    InvoiceStatus.OVERDUE,
)

INVOICE_TRANSITIONS: Dict[Tuple[str, str], Transition] = {
    # Balance-derived moves, fired after every paid_amount change or by the overdue sweep
    **{
        (src, dst): Transition("derive status", system=True)
        for src, dst in permutations(_DERIVED_INVOICE_STATUSES, 2)
    },
    (InvoiceStatus.PENDING, InvoiceStatus.CANCELLED): Transition("cancel", ADMIN_ONLY),
    (InvoiceStatus.PARTIAL, InvoiceStatus.CANCELLED): Transition("cancel", ADMIN_ONLY),
    (InvoiceStatus.OVERDUE, InvoiceStatus.CANCELLED): Transition("cancel", ADMIN_ONLY),
}

PAYMENT_TRANSITIONS: Dict[Tuple[str, str], Transition] = {
    (PaymentStatus.PENDING, PaymentStatus.COMPLETED): Transition("complete", ACCOUNTS),
    (PaymentStatus.PENDING, PaymentStatus.CANCELLED): Transition("cancel", ACCOUNTS),
    (PaymentStatus.PENDING, PaymentStatus.FAILED): Transition("mark failed", ACCOUNTS),
}

TRANSITIONS: Dict[DocumentType, Dict[Tuple[str, str], Transition]] = {
    DocumentType.PURCHASE_ORDER: PO_TRANSITIONS,
    DocumentType.GOODS_RECEIPT: GRN_TRANSITIONS,
    DocumentType.PURCHASE_INVOICE: INVOICE_TRANSITIONS,
    DocumentType.SUPPLIER_PAYMENT: PAYMENT_TRANSITIONS,
}


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _value(status) -> str:
    return status.value if isinstance(status, Enum) else str(status)


def _graph(document_type) -> Dict[Tuple[str, str], Transition]:
    graph = TRANSITIONS[DocumentType(document_type)]
    return {(_value(src), _value(dst)): edge for (src, dst), edge in graph.items()}


def get_transition(document_type, current_status, target_status) -> Optional[Transition]:
    return _graph(document_type).get((_value(current_status), _value(target_status)))


def allowed_transitions(document_type, current_status, roles: Optional[Iterable] = None) -> List[str]:
    """Targets reachable from *current_status*, optionally only those *roles* may fire."""
    current = _value(current_status)
    targets = []
    for (src, dst), edge in _graph(document_type).items():
        if src != current:
            continue
        if roles is not None and (edge.system or not has_any_role(roles, edge.roles)):
            continue
        targets.append(dst)
    return sorted(targets)


def authorize(document_type, current_status, target_status, roles: Iterable) -> GuardDecision:
    """Decide whether an actor holding *roles* may move a document between two statuses.

    Admin satisfies every human edge. System edges only pass for the
    ``system`` role, which is never granted to a user.
    """
    roles = {_value(r) for r in roles}
    current = _value(current_status)
    target = _value(target_status)
    doc = DocumentType(document_type).value

    edge = get_transition(document_type, current, target)
    if edge is None:
        return GuardDecision(
            allowed=False,
            reason=f"Cannot move {doc} from '{current}' to '{target}'",
            code="invalid_transition",
            allowed_targets=tuple(allowed_transitions(document_type, current)),
        )

    if edge.system:
        if Role.SYSTEM.value in roles:
            return GuardDecision(allowed=True)
        return GuardDecision(
            allowed=False,
            reason=f"{doc} transition '{current}' -> '{target}' is performed automatically",
            code="system_only",
            allowed_targets=tuple(allowed_transitions(document_type, current, roles)),
        )

    if not has_any_role(roles, edge.roles):
        return GuardDecision(
            allowed=False,
            reason=f"Insufficient permissions to {edge.action} {doc}",
            code="forbidden",
            required_roles=edge.roles,
        )

    return GuardDecision(allowed=True)


def require_transition(document_type, current_status, target_status, roles: Iterable) -> Transition:
    """Like ``authorize`` but raises on denial.

    Raises:
        TransitionDeniedError: the edge does not exist or is system-only.
        AuthorizationError: the edge exists but the actor lacks its roles.
    """
    decision = authorize(document_type, current_status, target_status, roles)
    if decision.allowed:
        return get_transition(document_type, current_status, target_status)

    if decision.code == "forbidden":
        raise AuthorizationError(decision.reason, required_roles=decision.required_roles)

    raise TransitionDeniedError(
        DocumentType(document_type).value,
        _value(current_status),
        _value(target_status),
        allowed=decision.allowed_targets,
        reason=decision.reason,
    )

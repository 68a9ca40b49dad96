"""Role-Based Access Control (RBAC) utilities.

Roles are granted per company. A request is resolved into an
``OperationContext`` that every service call receives explicitly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, FrozenSet, Iterable, Optional

from fastapi import Depends, Request

from procurement.core.exceptions import AuthenticationError, AuthorizationError, ValidationError
from procurement.core.security import decode_access_token
from procurement.db.session import DbSession

logger = logging.getLogger(__name__)

COMPANY_HEADER = "X-Company-ID"


class Role(str, Enum):
    """Company roles for RBAC."""

    ADMIN = "admin"
    ACCOUNTS = "accounts"
    WAREHOUSE_MANAGER = "warehouse_manager"
    USER = "user"
    # Never granted to a person; used for engine-fired transitions
    SYSTEM = "system"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller, before tenant resolution."""

    user_id: int
    email: str
    company_id: Optional[int] = None


@dataclass(frozen=True)
class OperationContext:
    """Who is acting, in which company, with which roles.

    Attributes:
        user_id: The acting user's database ID (None for system jobs).
        email: The acting user's email address.
        company_id: Tenant every read and write is scoped to.
        roles: Roles the user holds in ``company_id``.
    """

    user_id: Optional[int]
    email: str
    company_id: int
    roles: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN.value in self.roles

    @property
    def is_system(self) -> bool:
        return Role.SYSTEM.value in self.roles

    @classmethod
    def system(cls, company_id: int) -> "OperationContext":
        """Context for scheduled jobs acting inside one company."""
        return cls(
            user_id=None,
            email="system",
            company_id=company_id,
            roles=frozenset({Role.SYSTEM.value}),
        )


def _role_values(roles: Iterable) -> set:
    return {r.value if isinstance(r, Role) else str(r) for r in roles}


def has_any_role(roles: Iterable, required: Iterable) -> bool:
    """True when *roles* intersects *required*; admin satisfies any requirement."""
    held = _role_values(roles)
    if Role.ADMIN.value in held:
        return True
    return bool(held & _role_values(required))


def require_any_role(ctx: OperationContext, required: Iterable, action: str) -> None:
    """Raise AuthorizationError unless the context holds one of *required*."""
    needed = _role_values(required)
    if not has_any_role(ctx.roles, needed):
        logger.warning(
            f"Denied {action} for user {ctx.user_id} in company {ctx.company_id}: "
            f"has {sorted(ctx.roles)}, needs one of {sorted(needed)}"
        )
        raise AuthorizationError(
            f"Insufficient permissions to {action}",
            required_roles=needed,
        )


def authenticate(token: Optional[str]) -> Principal:
    """Turn a bearer token into a Principal or raise AuthenticationError."""
    if not token:
        raise AuthenticationError("Not authenticated")

    payload = decode_access_token(token)
    if payload is None:
        raise AuthenticationError("Invalid or expired token")

    user_id = payload.get("sub")
    email = payload.get("email")
    if user_id is None or email is None:
        raise AuthenticationError("Invalid token payload")

    company_id = payload.get("company_id")
    try:
        return Principal(
            user_id=int(user_id),
            email=email,
            company_id=int(company_id) if company_id is not None else None,
        )
    except (TypeError, ValueError):
        raise AuthenticationError("Invalid token payload")


def _bearer_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1] or None
    return None


def _requested_company(request: Request, principal: Principal) -> int:
    raw = request.headers.get(COMPANY_HEADER)
    if raw is None:
        if principal.company_id is None:
            raise ValidationError(f"Missing {COMPANY_HEADER} header")
        return principal.company_id
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f"Invalid {COMPANY_HEADER} header: {raw!r}")


def get_current_principal(request: Request) -> Principal:
    """Get the authenticated principal from the Authorization header."""
    return authenticate(_bearer_token(request))


def get_operation_context(
    request: Request,
    db: DbSession,
    principal: Annotated[Principal, Depends(get_current_principal)],
) -> OperationContext:
    """Resolve the principal's roles in the requested company.

    The company comes from the ``X-Company-ID`` header, falling back to the
    ``company_id`` token claim. A user with no role in that company is denied.
    """
    from procurement.services.tenant_context import role_resolver

    company_id = _requested_company(request, principal)
    roles = role_resolver.resolve_roles(db, principal.user_id, company_id)
    if not roles:
        logger.warning(f"User {principal.user_id} has no role in company {company_id}")
        raise AuthorizationError("No access to this company")

    return OperationContext(
        user_id=principal.user_id,
        email=principal.email,
        company_id=company_id,
        roles=frozenset(roles),
    )


CurrentContext = Annotated[OperationContext, Depends(get_operation_context)]

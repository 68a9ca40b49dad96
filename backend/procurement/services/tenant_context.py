"""Tenant role resolution with a TTL cache."""

import logging
from typing import FrozenSet, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from procurement.core.cache import CacheKeys, SimpleCache
from procurement.core.config import settings
from procurement.core.rbac import has_any_role
from procurement.models.tenant import User, UserCompanyRole

logger = logging.getLogger(__name__)


class RoleResolver:
    """Reads a user's roles in a company, caching results per ``(user, company)``.

    Inactive users resolve to no roles. Call ``invalidate_roles`` after
    granting or revoking a role so the change is visible before the TTL.
    """

    def __init__(self, cache: Optional[SimpleCache] = None, ttl_seconds: Optional[int] = None):
        self.ttl_seconds = settings.role_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self.cache = cache or SimpleCache(default_ttl_seconds=self.ttl_seconds)

    @staticmethod
    def _key(user_id: int, company_id: int) -> str:
        return f"{CacheKeys.ROLES}:{user_id}:{company_id}"

    def resolve_roles(self, db: Session, user_id: int, company_id: int) -> FrozenSet[str]:
        key = self._key(user_id, company_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        rows = db.execute(
            select(UserCompanyRole.role)
            .join(User, User.id == UserCompanyRole.user_id)
            .where(
                UserCompanyRole.user_id == user_id,
                UserCompanyRole.company_id == company_id,
                User.is_active.is_(True),
            )
        ).scalars().all()
        roles = frozenset(r.value for r in rows)

        self.cache.set(key, roles, self.ttl_seconds)
        logger.debug(f"Resolved roles for user {user_id} in company {company_id}: {sorted(roles)}")
        return roles

    def has_any_role(self, db: Session, user_id: int, company_id: int, required: Iterable) -> bool:
        return has_any_role(self.resolve_roles(db, user_id, company_id), required)

    def invalidate_roles(self, user_id: int, company_id: Optional[int] = None) -> None:
        """Drop cached roles for one company, or for every company when omitted."""
        if company_id is None:
            self.cache.clear_prefix(f"{CacheKeys.ROLES}:{user_id}:")
        else:
            self.cache.delete(self._key(user_id, company_id))


role_resolver = RoleResolver()

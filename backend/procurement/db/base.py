"""SQLAlchemy declarative base and common utilities."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Integer, func
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TimestampMixin:
    """Mixin for created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class TenantMixin:
    """Scopes a row to one company (tenant)."""

    @declared_attr
    def company_id(cls) -> Mapped[int]:
        return mapped_column(
            ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True
        )


class VersionMixin:
    """Optimistic locking via a version counter.

    Models using this mixin gain a ``version`` column that starts at 1.
    Services bump it in the same conditional ``UPDATE`` that changes a
    status or accumulator, so a writer holding a stale version matches
    zero rows instead of overwriting a concurrent change.
    """

    version: Mapped[int] = mapped_column(Integer, default=1, server_default="1", nullable=False)

    def check_version(self, expected: int | None) -> None:
        """Raise ConcurrencyConflictError if *expected* doesn't match current version."""
        if expected is not None and expected != self.version:
            from procurement.core.exceptions import ConcurrencyConflictError

            raise ConcurrencyConflictError(
                f"Version conflict: expected {expected}, current {self.version}"
            )

    def increment_version(self) -> None:
        """Increment the version counter after a successful update."""
        self.version += 1

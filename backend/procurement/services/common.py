"""Shared helpers for the procurement services: money rounding, tenant-scoped
loads, document numbering and the transaction / retry wrappers."""

import logging
from contextlib import contextmanager
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from functools import wraps
from typing import Optional, Type, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from procurement.core.config import settings
from procurement.core.exceptions import ConcurrencyConflictError, NotFoundError, ProcurementError

logger = logging.getLogger(__name__)

T = TypeVar("T")

CENT = Decimal("0.01")
MILLI = Decimal("0.001")
HUNDRED = Decimal("100")


def money(value) -> Decimal:
    """Round to cents, half up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def round_quantity(value) -> Decimal:
    """Round to the three decimals quantity columns store."""
    return Decimal(str(value)).quantize(MILLI, rounding=ROUND_HALF_UP)


def line_amounts(quantity: Decimal, unit_price: Decimal, tax_percentage: Decimal):
    """Return ``(net, tax, line_total)`` for one document line."""
    net = money(Decimal(quantity) * Decimal(unit_price))
    tax = money(net * Decimal(tax_percentage) / HUNDRED)
    return net, tax, net + tax


def get_scoped(
    db: Session,
    model: Type[T],
    entity_id: int,
    company_id: int,
    entity_name: Optional[str] = None,
    for_update: bool = False,
) -> T:
    """Load *model* by id inside one tenant, or raise NotFoundError.

    With ``for_update`` the row is locked (``SELECT ... FOR UPDATE`` on
    backends that support it) and the identity map is refreshed from the
    database so the caller never decides on stale state.
    """
    stmt = select(model).where(model.id == entity_id, model.company_id == company_id)
    if for_update:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    obj = db.execute(stmt).scalar_one_or_none()
    if obj is None:
        raise NotFoundError(entity_name or model.__name__, entity_id)
    return obj


def next_document_number(
    db: Session,
    column,
    company_id_column,
    company_id: int,
    prefix: str,
    today: Optional[date] = None,
) -> str:
    """Next ``{prefix}-{YYYY}-{seq:03d}`` number for a company.

    Two concurrent creators can compute the same number; the per-company
    unique constraint turns the loser into a retryable conflict.
    """
    stem = f"{prefix}-{(today or date.today()).year}-"
    existing = db.execute(
        select(column).where(company_id_column == company_id, column.like(f"{stem}%"))
    ).scalars().all()
    seq = max(
        (int(n[len(stem):]) for n in existing if n[len(stem):].isdigit()),
        default=0,
    )
    return f"{stem}{seq + 1:03d}"


def compare_and_set_status(db: Session, obj, target, *extra_where, **values) -> None:
    """Move *obj* to *target* only if its status and version are still what we read.

    Bumps the version in the same statement. Raises ConcurrencyConflictError
    when another writer got there first.
    """
    model = type(obj)
    result = db.execute(
        update(model)
        .where(
            model.id == obj.id,
            model.status == obj.status,
            model.version == obj.version,
            *extra_where,
        )
        .values(status=target, version=model.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConcurrencyConflictError(
            f"{model.__name__} {obj.id} changed while moving to '{getattr(target, 'value', target)}'"
        )
    db.expire(obj, ["status", "version", *values.keys()])


@contextmanager
def atomic(db: Session):
    """Commit on success; roll back and re-raise on any error.

    ORM stale-row and uniqueness races surface as ConcurrencyConflictError.
    """
    try:
        yield
        db.commit()
    except ProcurementError:
        db.rollback()
        raise
    except StaleDataError as e:
        db.rollback()
        raise ConcurrencyConflictError("Document was modified concurrently") from e
    except IntegrityError as e:
        db.rollback()
        logger.warning(f"Integrity conflict, treating as concurrent write: {e.orig}")
        raise ConcurrencyConflictError("Conflicting concurrent write") from e
    except Exception:
        db.rollback()
        raise


def retry_on_conflict(func):
    """Re-run a service method after a lost optimistic-lock race.

    The number of retries comes from ``settings.conflict_retries``. The
    wrapped method must own its transaction (see ``atomic``).
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        retries_left = settings.conflict_retries
        while True:
            try:
                return func(self, *args, **kwargs)
            except ConcurrencyConflictError:
                if retries_left <= 0:
                    raise
                retries_left -= 1
                self.db.rollback()
                logger.info(f"Retrying {func.__qualname__} after concurrency conflict")

    return wrapper

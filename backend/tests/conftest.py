"""Pytest configuration and fixtures."""

import os

# Must be set before procurement.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key-0123456789-abcdefghijkl")
os.environ.setdefault("OVERDUE_SWEEP_ENABLED", "false")

import pytest
from datetime import date
from decimal import Decimal
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from procurement.core.rbac import OperationContext, Role
from procurement.core.security import create_access_token
from procurement.db.base import Base
from procurement.db.session import get_db
from procurement.main import app
# Import all models to ensure they're registered with Base.metadata
from procurement.models import *
from procurement.schemas.goods_receipt import GoodsReceiptCreate, GRNItemCreate
from procurement.schemas.purchase_invoice import InvoiceFromGRNCreate
from procurement.schemas.purchase_order import POItemCreate, PurchaseOrderCreate
from procurement.services import (
    GoodsReceiptService,
    PurchaseInvoiceService,
    PurchaseOrderService,
)
from procurement.services.tenant_context import role_resolver

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clear_role_cache():
    """Row ids repeat across in-memory databases; never reuse cached roles."""
    role_resolver.cache.clear()
    yield
    role_resolver.cache.clear()


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiting during tests to avoid flaky failures
    from procurement.core.rate_limit import limiter
    limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    limiter.enabled = True
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Tenants, users and roles
# ---------------------------------------------------------------------------

@pytest.fixture
def company(db_session: Session) -> Company:
    company = Company(name="Acme Trading", slug="acme")
    db_session.add(company)
    db_session.commit()
    db_session.refresh(company)
    return company


@pytest.fixture
def other_company(db_session: Session) -> Company:
    company = Company(name="Globex", slug="globex")
    db_session.add(company)
    db_session.commit()
    db_session.refresh(company)
    return company


def _user_with_role(db_session: Session, company: Company, email: str, role: Role) -> User:
    user = User(email=email, name=email.split("@")[0], is_active=True)
    db_session.add(user)
    db_session.flush()
    db_session.add(UserCompanyRole(user_id=user.id, company_id=company.id, role=role))
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def admin_user(db_session: Session, company: Company) -> User:
    return _user_with_role(db_session, company, "admin@acme.test", Role.ADMIN)


@pytest.fixture
def accounts_user(db_session: Session, company: Company) -> User:
    return _user_with_role(db_session, company, "accounts@acme.test", Role.ACCOUNTS)


@pytest.fixture
def warehouse_user(db_session: Session, company: Company) -> User:
    return _user_with_role(db_session, company, "warehouse@acme.test", Role.WAREHOUSE_MANAGER)


@pytest.fixture
def plain_user(db_session: Session, company: Company) -> User:
    return _user_with_role(db_session, company, "user@acme.test", Role.USER)


def make_ctx(user: User, company: Company, *roles: Role) -> OperationContext:
    return OperationContext(
        user_id=user.id,
        email=user.email,
        company_id=company.id,
        roles=frozenset(r.value for r in roles),
    )


@pytest.fixture
def admin_ctx(admin_user, company) -> OperationContext:
    return make_ctx(admin_user, company, Role.ADMIN)


@pytest.fixture
def accounts_ctx(accounts_user, company) -> OperationContext:
    return make_ctx(accounts_user, company, Role.ACCOUNTS)


@pytest.fixture
def warehouse_ctx(warehouse_user, company) -> OperationContext:
    return make_ctx(warehouse_user, company, Role.WAREHOUSE_MANAGER)


@pytest.fixture
def user_ctx(plain_user, company) -> OperationContext:
    return make_ctx(plain_user, company, Role.USER)


def token_headers(user: User, company: Company = None) -> dict:
    """Bearer headers for *user*, optionally scoped to *company*."""
    token = create_access_token({"sub": str(user.id), "email": user.email})
    headers = {"Authorization": f"Bearer {token}"}
    if company is not None:
        headers["X-Company-ID"] = str(company.id)
    return headers


# ---------------------------------------------------------------------------
# Reference data
# ---------------------------------------------------------------------------

@pytest.fixture
def supplier(db_session: Session, company: Company) -> Supplier:
    supplier = Supplier(company_id=company.id, name="Fresh Foods Ltd", contact_email="sales@fresh.test")
    db_session.add(supplier)
    db_session.commit()
    db_session.refresh(supplier)
    return supplier


@pytest.fixture
def warehouse(db_session: Session, company: Company) -> Warehouse:
    warehouse = Warehouse(company_id=company.id, name="Main Warehouse", code="WH1")
    db_session.add(warehouse)
    db_session.commit()
    db_session.refresh(warehouse)
    return warehouse


@pytest.fixture
def product(db_session: Session, company: Company) -> Product:
    product = Product(company_id=company.id, name="Olive Oil 1L", sku="OIL-1L")
    db_session.add(product)
    db_session.commit()
    db_session.refresh(product)
    return product


@pytest.fixture
def second_product(db_session: Session, company: Company) -> Product:
    product = Product(company_id=company.id, name="Flour 25kg", sku="FLR-25")
    db_session.add(product)
    db_session.commit()
    db_session.refresh(product)
    return product


# ---------------------------------------------------------------------------
# Document builders
# ---------------------------------------------------------------------------

@pytest.fixture
def make_po(db_session, supplier, warehouse, product, warehouse_ctx):
    """Build a purchase order: ``make_po(quantity, unit_price, tax, status=...)``."""

    def _make(
        quantity="100",
        unit_price="10",
        tax_percentage="0",
        status: POStatus = POStatus.DRAFT,
        approver_ctx: OperationContext = None,
        expected_delivery_date: date = None,
    ) -> PurchaseOrder:
        service = PurchaseOrderService(db_session)
        po = service.create(warehouse_ctx, PurchaseOrderCreate(
            supplier_id=supplier.id,
            warehouse_id=warehouse.id,
            expected_delivery_date=expected_delivery_date,
            items=[POItemCreate(
                product_id=product.id,
                quantity=Decimal(quantity),
                unit_price=Decimal(unit_price),
                tax_percentage=Decimal(tax_percentage),
            )],
        ))
        if status in (POStatus.PENDING, POStatus.APPROVED):
            po = service.submit(warehouse_ctx, po.id)
        if status == POStatus.APPROVED:
            approver = approver_ctx or OperationContext(
                user_id=None, email="approver", company_id=warehouse_ctx.company_id,
                roles=frozenset({Role.ACCOUNTS.value}),
            )
            po = service.approve(approver, po.id)
        return po

    return _make


@pytest.fixture
def approved_po(make_po) -> PurchaseOrder:
    """Approved PO: 100 units at 10.00, no tax (total 1000.00)."""
    return make_po(status=POStatus.APPROVED)


@pytest.fixture
def receive_goods(db_session, warehouse_ctx, accounts_ctx):
    """Create, receive and complete a GRN: ``receive_goods(po, quantity)``."""

    def _receive(po: PurchaseOrder, quantity="100", complete=True) -> GoodsReceipt:
        service = GoodsReceiptService(db_session)
        grn = service.create_receipt(warehouse_ctx, GoodsReceiptCreate(
            purchase_order_id=po.id,
            items=[GRNItemCreate(
                purchase_order_item_id=po.items[0].id,
                received_quantity=Decimal(quantity),
            )],
        ))
        grn = service.mark_received(warehouse_ctx, grn.id)
        if complete:
            grn = service.complete(accounts_ctx, grn.id)
        return grn

    return _receive


@pytest.fixture
def invoice(db_session, approved_po, receive_goods, accounts_ctx) -> PurchaseInvoice:
    """Pending invoice of 1000.00 derived from a full receipt."""
    grn = receive_goods(approved_po)
    return PurchaseInvoiceService(db_session).create_from_grn(
        accounts_ctx, InvoiceFromGRNCreate(goods_receipt_id=grn.id)
    )


@pytest.fixture
def admin_headers(admin_user, company) -> dict:
    return token_headers(admin_user, company)


@pytest.fixture
def accounts_headers(accounts_user, company) -> dict:
    return token_headers(accounts_user, company)


@pytest.fixture
def warehouse_headers(warehouse_user, company) -> dict:
    return token_headers(warehouse_user, company)


@pytest.fixture
def headers_for():
    """``headers_for(user, company)`` for users outside the default company."""
    return token_headers

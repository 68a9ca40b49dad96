"""Lost-update and double-apply races, replayed with two sessions on one file database."""

from decimal import Decimal

import pytest
from sqlalchemy.orm import sessionmaker

from procurement.core.config import settings
from procurement.core.exceptions import (
    AlreadyCompletedError,
    ConcurrencyConflictError,
    OverpaymentError,
)
from procurement.db.base import Base
from procurement.db.session import build_engine
from procurement.models import Company, GoodsReceipt, POStatus, PurchaseInvoice, PurchaseOrder
from procurement.schemas.supplier_payment import SupplierPaymentCreate
from procurement.services.common import atomic, compare_and_set_status
from procurement.services.goods_receipt_service import GoodsReceiptService
from procurement.services.purchase_order_service import PurchaseOrderService
from procurement.services.supplier_payment_service import SupplierPaymentService


@pytest.fixture
def db_engine(tmp_path):
    """File-backed engine so each session gets its own connection."""
    engine = build_engine(f"sqlite:///{tmp_path / 'procurement.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def other_session(db_engine):
    session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)()
    yield session
    session.close()


class TestGoodsReceiptRaces:

    def test_stale_completion_is_rejected_once(
        self, db_session, other_session, approved_po, receive_goods, accounts_ctx
    ):
        grn = receive_goods(approved_po, "40", complete=False)

        # Second worker reads the receipt while it is still "received"
        stale = other_session.get(GoodsReceipt, grn.id)
        assert stale.status.value == "received"
        assert len(stale.items) == 1

        GoodsReceiptService(db_session).complete(accounts_ctx, grn.id)

        with pytest.raises(AlreadyCompletedError):
            GoodsReceiptService(other_session)._claim_completion(accounts_ctx, stale)
        other_session.rollback()

        db_session.refresh(approved_po.items[0])
        assert approved_po.items[0].received_quantity == Decimal("40")

    def test_completion_from_fresh_session_after_race(
        self, db_session, other_session, approved_po, receive_goods, accounts_ctx
    ):
        grn = receive_goods(approved_po, "40", complete=False)
        GoodsReceiptService(db_session).complete(accounts_ctx, grn.id)

        with pytest.raises(AlreadyCompletedError):
            GoodsReceiptService(other_session).complete(accounts_ctx, grn.id)

        db_session.refresh(approved_po.items[0])
        assert approved_po.items[0].received_quantity == Decimal("40")


class TestPurchaseOrderRaces:

    def test_stale_status_change_matches_no_rows(
        self, db_session, other_session, make_po, warehouse_ctx, accounts_ctx
    ):
        po = make_po(status=POStatus.PENDING)
        stale = other_session.get(PurchaseOrder, po.id)
        stale_version = stale.version

        PurchaseOrderService(db_session).approve(accounts_ctx, po.id)

        with pytest.raises(ConcurrencyConflictError):
            compare_and_set_status(other_session, stale, POStatus.CANCELLED)
        other_session.rollback()

        db_session.refresh(po)
        assert po.status == POStatus.APPROVED
        assert po.version == stale_version + 1


class TestInvoiceBalanceRaces:

    def test_stale_payment_that_no_longer_fits_is_overpayment(
        self, db_session, other_session, invoice, accounts_ctx
    ):
        stale = other_session.get(PurchaseInvoice, invoice.id)
        assert stale.paid_amount == Decimal("0")

        SupplierPaymentService(db_session).record_payment(accounts_ctx, SupplierPaymentCreate(
            purchase_invoice_id=invoice.id, amount=Decimal("600"), payment_method="bank_transfer",
        ))

        with pytest.raises(OverpaymentError) as exc_info:
            SupplierPaymentService(other_session)._apply_delta(stale, Decimal("500"))
        other_session.rollback()
        assert exc_info.value.remaining == Decimal("400")

        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("600.00")

    def test_stale_payment_that_still_fits_is_a_conflict(
        self, db_session, other_session, invoice, accounts_ctx
    ):
        stale = other_session.get(PurchaseInvoice, invoice.id)

        SupplierPaymentService(db_session).record_payment(accounts_ctx, SupplierPaymentCreate(
            purchase_invoice_id=invoice.id, amount=Decimal("600"), payment_method="bank_transfer",
        ))

        with pytest.raises(ConcurrencyConflictError):
            SupplierPaymentService(other_session)._apply_delta(stale, Decimal("100"))
        other_session.rollback()

        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("600.00")


class TestRetryOnConflict:

    def test_record_payment_retried_once(self, db_session, invoice, accounts_ctx, monkeypatch):
        original = SupplierPaymentService._apply_delta
        calls = []

        def flaky(self, inv, delta):
            calls.append(delta)
            if len(calls) == 1:
                raise ConcurrencyConflictError("simulated lost race")
            return original(self, inv, delta)

        monkeypatch.setattr(SupplierPaymentService, "_apply_delta", flaky)
        payment = SupplierPaymentService(db_session).record_payment(accounts_ctx, SupplierPaymentCreate(
            purchase_invoice_id=invoice.id, amount=Decimal("250"), payment_method="cash",
        ))

        assert len(calls) == 2
        assert payment.amount == Decimal("250.00")
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("250.00")

    def test_conflict_surfaces_when_retries_disabled(
        self, db_session, invoice, accounts_ctx, monkeypatch
    ):
        def always_conflict(self, inv, delta):
            raise ConcurrencyConflictError("simulated lost race")

        monkeypatch.setattr(SupplierPaymentService, "_apply_delta", always_conflict)
        monkeypatch.setattr(settings, "conflict_retries", 0)

        with pytest.raises(ConcurrencyConflictError):
            SupplierPaymentService(db_session).record_payment(accounts_ctx, SupplierPaymentCreate(
                purchase_invoice_id=invoice.id, amount=Decimal("250"), payment_method="cash",
            ))
        db_session.refresh(invoice)
        assert invoice.paid_amount == Decimal("0")


class TestAtomic:

    def test_integrity_error_becomes_conflict(self, db_session, company):
        with pytest.raises(ConcurrencyConflictError):
            with atomic(db_session):
                db_session.add(Company(name="Duplicate", slug=company.slug))
                db_session.flush()
        assert db_session.query(Company).count() == 1

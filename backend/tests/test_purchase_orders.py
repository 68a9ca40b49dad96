"""Tests for the purchase order manager."""

from decimal import Decimal

import pytest

from procurement.core.exceptions import (
    AuthorizationError,
    ConcurrencyConflictError,
    ConflictError,
    NotFoundError,
    TransitionDeniedError,
    ValidationError,
)
from procurement.models import POStatus, Supplier
from procurement.schemas.purchase_order import (
    POItemCreate,
    PurchaseOrderCreate,
    PurchaseOrderUpdate,
)
from procurement.services.purchase_order_service import PurchaseOrderService


class TestCreatePurchaseOrder:

    def test_create_computes_totals_and_number(
        self, db_session, warehouse_ctx, supplier, warehouse, product, second_product
    ):
        """Line totals include tax; PO total is the sum of lines."""
        po = PurchaseOrderService(db_session).create(warehouse_ctx, PurchaseOrderCreate(
            supplier_id=supplier.id,
            warehouse_id=warehouse.id,
            items=[
                POItemCreate(product_id=product.id, quantity=Decimal("10"),
                             unit_price=Decimal("12.50"), tax_percentage=Decimal("20")),
                POItemCreate(product_id=second_product.id, quantity=Decimal("4"),
                             unit_price=Decimal("5")),
            ],
        ))

        assert po.status == POStatus.DRAFT
        assert po.po_number.startswith(f"PO-{po.order_date.year}-")
        assert po.po_number.endswith("-001")
        assert po.items[0].line_total == Decimal("150.00")
        assert po.items[1].line_total == Decimal("20.00")
        assert po.total_amount == Decimal("170.00")
        assert all(item.received_quantity == 0 for item in po.items)
        assert po.created_by == warehouse_ctx.user_id

    def test_numbers_increment_per_company(self, make_po):
        first = make_po()
        second = make_po()
        assert first.po_number[-3:] == "001"
        assert second.po_number[-3:] == "002"

    def test_accounts_cannot_create(self, db_session, accounts_ctx, supplier, warehouse, product):
        with pytest.raises(AuthorizationError):
            PurchaseOrderService(db_session).create(accounts_ctx, PurchaseOrderCreate(
                supplier_id=supplier.id,
                warehouse_id=warehouse.id,
                items=[POItemCreate(product_id=product.id, quantity=1, unit_price=1)],
            ))

    def test_supplier_from_other_company_rejected(
        self, db_session, warehouse_ctx, other_company, warehouse, product
    ):
        foreign = Supplier(company_id=other_company.id, name="Foreign Supplier")
        db_session.add(foreign)
        db_session.commit()

        with pytest.raises(ValidationError):
            PurchaseOrderService(db_session).create(warehouse_ctx, PurchaseOrderCreate(
                supplier_id=foreign.id,
                warehouse_id=warehouse.id,
                items=[POItemCreate(product_id=product.id, quantity=1, unit_price=1)],
            ))

    def test_unknown_product_rejected(self, db_session, warehouse_ctx, supplier, warehouse):
        with pytest.raises(ValidationError):
            PurchaseOrderService(db_session).create(warehouse_ctx, PurchaseOrderCreate(
                supplier_id=supplier.id,
                warehouse_id=warehouse.id,
                items=[POItemCreate(product_id=9999, quantity=1, unit_price=1)],
            ))


class TestPurchaseOrderTransitions:

    def test_submit_and_approve(self, db_session, make_po, warehouse_ctx, accounts_ctx):
        service = PurchaseOrderService(db_session)
        po = make_po()
        po = service.submit(warehouse_ctx, po.id)
        assert po.status == POStatus.PENDING

        po = service.approve(accounts_ctx, po.id)
        assert po.status == POStatus.APPROVED
        assert po.approved_by == accounts_ctx.user_id
        assert po.approved_at is not None

    def test_warehouse_manager_cannot_approve(self, db_session, make_po, warehouse_ctx):
        po = make_po(status=POStatus.PENDING)
        with pytest.raises(AuthorizationError):
            PurchaseOrderService(db_session).approve(warehouse_ctx, po.id)
        db_session.refresh(po)
        assert po.status == POStatus.PENDING

    def test_admin_can_approve(self, db_session, make_po, admin_ctx):
        po = make_po(status=POStatus.PENDING)
        po = PurchaseOrderService(db_session).approve(admin_ctx, po.id)
        assert po.status == POStatus.APPROVED

    def test_approve_draft_is_invalid_transition(self, db_session, make_po, accounts_ctx):
        po = make_po()
        with pytest.raises(TransitionDeniedError) as exc_info:
            PurchaseOrderService(db_session).approve(accounts_ctx, po.id)
        assert exc_info.value.details["attempted_status"] == "approved"

    def test_version_increments_on_each_transition(self, db_session, make_po, warehouse_ctx):
        po = make_po()
        assert po.version == 1
        po = PurchaseOrderService(db_session).submit(warehouse_ctx, po.id)
        assert po.version == 2

    def test_other_company_cannot_see_po(self, db_session, make_po, other_company, admin_user):
        from procurement.core.rbac import OperationContext

        po = make_po()
        foreign_ctx = OperationContext(
            user_id=admin_user.id, email=admin_user.email,
            company_id=other_company.id, roles=frozenset({"admin"}),
        )
        with pytest.raises(NotFoundError):
            PurchaseOrderService(db_session).get(foreign_ctx, po.id)


class TestCancelPurchaseOrder:

    def test_admin_cancels_draft(self, db_session, make_po, admin_ctx):
        po = PurchaseOrderService(db_session).cancel(admin_ctx, make_po().id)
        assert po.status == POStatus.CANCELLED
        assert po.cancelled_at is not None

    def test_non_admin_cannot_cancel(self, db_session, make_po, warehouse_ctx):
        with pytest.raises(AuthorizationError):
            PurchaseOrderService(db_session).cancel(warehouse_ctx, make_po().id)

    def test_approved_without_receipts_can_be_cancelled(self, db_session, approved_po, admin_ctx):
        po = PurchaseOrderService(db_session).cancel(admin_ctx, approved_po.id)
        assert po.status == POStatus.CANCELLED

    def test_po_with_goods_receipt_cannot_be_cancelled(
        self, db_session, approved_po, receive_goods, admin_ctx
    ):
        receive_goods(approved_po, "10", complete=False)
        with pytest.raises(ConflictError):
            PurchaseOrderService(db_session).cancel(admin_ctx, approved_po.id)

    def test_cancelled_po_cannot_be_cancelled_again(self, db_session, make_po, admin_ctx):
        service = PurchaseOrderService(db_session)
        po = service.cancel(admin_ctx, make_po().id)
        with pytest.raises(TransitionDeniedError):
            service.cancel(admin_ctx, po.id)


class TestUpdatePurchaseOrder:

    def test_admin_replaces_items(self, db_session, make_po, admin_ctx, product):
        po = make_po()
        po = PurchaseOrderService(db_session).update(admin_ctx, po.id, PurchaseOrderUpdate(
            notes="Rush order",
            items=[POItemCreate(product_id=product.id, quantity=Decimal("3"), unit_price=Decimal("7"))],
        ))
        assert po.notes == "Rush order"
        assert len(po.items) == 1
        assert po.items[0].quantity == Decimal("3")
        assert po.total_amount == Decimal("21.00")
        assert po.version == 2

    def test_update_requires_admin(self, db_session, make_po, warehouse_ctx):
        with pytest.raises(AuthorizationError):
            PurchaseOrderService(db_session).update(
                warehouse_ctx, make_po().id, PurchaseOrderUpdate(notes="x")
            )

    def test_approved_po_is_not_editable(self, db_session, approved_po, admin_ctx):
        with pytest.raises(ConflictError):
            PurchaseOrderService(db_session).update(
                admin_ctx, approved_po.id, PurchaseOrderUpdate(notes="too late")
            )

    def test_stale_version_rejected(self, db_session, make_po, admin_ctx):
        po = make_po()
        with pytest.raises(ConcurrencyConflictError):
            PurchaseOrderService(db_session).update(
                admin_ctx, po.id, PurchaseOrderUpdate(notes="x", version=po.version + 5)
            )

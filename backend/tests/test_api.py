"""API endpoint tests."""

from decimal import Decimal

from fastapi.testclient import TestClient

from procurement.core.security import create_access_token

API = "/api/v1"


def _data(response):
    body = response.json()
    assert body["success"] is True, body
    return body["data"]


def _create_po(client, headers, supplier, warehouse, product, quantity="100", unit_price="10"):
    response = client.post(f"{API}/purchase-orders/", headers=headers, json={
        "supplier_id": supplier.id,
        "warehouse_id": warehouse.id,
        "items": [{"product_id": product.id, "quantity": quantity, "unit_price": unit_price}],
    })
    assert response.status_code == 201, response.json()
    return _data(response)


class TestHealthCheck:
    """Test health check endpoint."""

    def test_health_check(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestProcurementLifecycle:
    """PO -> GRN -> invoice -> payments over HTTP."""

    def test_full_lifecycle(
        self, client: TestClient, warehouse_headers, accounts_headers,
        supplier, warehouse, product,
    ):
        po = _create_po(client, warehouse_headers, supplier, warehouse, product)
        assert po["status"] == "draft"
        assert Decimal(po["total_amount"]) == Decimal("1000")

        response = client.post(f"{API}/purchase-orders/{po['id']}/submit", headers=warehouse_headers)
        assert _data(response)["status"] == "pending"
        response = client.post(f"{API}/purchase-orders/{po['id']}/approve", headers=accounts_headers)
        assert _data(response)["status"] == "approved"

        response = client.post(f"{API}/goods-receipts/", headers=warehouse_headers, json={
            "purchase_order_id": po["id"],
            "items": [{"purchase_order_item_id": po["items"][0]["id"], "received_quantity": "100"}],
        })
        assert response.status_code == 201
        grn = _data(response)
        assert grn["status"] == "pending"

        response = client.post(f"{API}/goods-receipts/{grn['id']}/receive", headers=warehouse_headers)
        assert _data(response)["status"] == "received"
        response = client.post(f"{API}/goods-receipts/{grn['id']}/complete", headers=accounts_headers)
        assert _data(response)["status"] == "completed"

        po = _data(client.get(f"{API}/purchase-orders/{po['id']}", headers=accounts_headers))
        assert po["status"] == "ordered"
        assert po["is_fully_received"] is True

        stock = client.get(f"{API}/stock/", headers=warehouse_headers, params={"product_id": product.id})
        assert stock.json()["total"] == 1
        assert Decimal(stock.json()["data"][0]["qty"]) == Decimal("100")

        response = client.post(
            f"{API}/purchase-invoices/from-grn", headers=accounts_headers,
            json={"goods_receipt_id": grn["id"]},
        )
        assert response.status_code == 201
        invoice = _data(response)
        assert invoice["status"] == "pending"
        assert Decimal(invoice["total_amount"]) == Decimal("1000")

        response = client.post(f"{API}/supplier-payments/", headers=accounts_headers, json={
            "purchase_invoice_id": invoice["id"], "amount": "400", "payment_method": "bank_transfer",
        })
        assert response.status_code == 201
        assert _data(response)["status"] == "pending"
        invoice = _data(client.get(f"{API}/purchase-invoices/{invoice['id']}", headers=accounts_headers))
        assert invoice["status"] == "partial"
        assert Decimal(invoice["balance_due"]) == Decimal("600")

        response = client.post(f"{API}/supplier-payments/", headers=accounts_headers, json={
            "purchase_invoice_id": invoice["id"], "amount": "600", "payment_method": "cash",
        })
        assert _data(response)["status"] == "completed"
        invoice = _data(client.get(f"{API}/purchase-invoices/{invoice['id']}", headers=accounts_headers))
        assert invoice["status"] == "paid"

        response = client.get(
            f"{API}/supplier-payments/", headers=accounts_headers,
            params={"purchase_invoice_id": invoice["id"]},
        )
        assert response.json()["total"] == 2

    def test_edit_pending_receipt_with_inspection(
        self, client: TestClient, warehouse_headers, approved_po
    ):
        response = client.post(f"{API}/goods-receipts/", headers=warehouse_headers, json={
            "purchase_order_id": approved_po.id,
            "items": [{"purchase_order_item_id": approved_po.items[0].id, "received_quantity": "20"}],
        })
        grn = _data(response)

        response = client.put(f"{API}/goods-receipts/{grn['id']}", headers=warehouse_headers, json={
            "inspection_notes": "Seals broken on two bottles",
            "items": [{
                "purchase_order_item_id": approved_po.items[0].id,
                "received_quantity": "20",
                "rejected_quantity": "2",
            }],
        })
        assert response.status_code == 200
        grn = _data(response)
        assert Decimal(grn["items"][0]["accepted_quantity"]) == Decimal("18")
        assert grn["inspection_notes"] == "Seals broken on two bottles"

        client.post(f"{API}/goods-receipts/{grn['id']}/receive", headers=warehouse_headers)
        response = client.put(
            f"{API}/goods-receipts/{grn['id']}", headers=warehouse_headers, json={"notes": "late"}
        )
        assert response.status_code == 409

    def test_list_is_scoped_to_company(
        self, client: TestClient, warehouse_headers, admin_user, other_company,
        supplier, warehouse, product, db_session, headers_for,
    ):
        from procurement.core.rbac import Role
        from procurement.models import UserCompanyRole

        _create_po(client, warehouse_headers, supplier, warehouse, product)
        db_session.add(UserCompanyRole(user_id=admin_user.id, company_id=other_company.id, role=Role.ADMIN))
        db_session.commit()

        response = client.get(f"{API}/purchase-orders/", headers=headers_for(admin_user, other_company))
        assert response.status_code == 200
        assert response.json()["total"] == 0


class TestErrorEnvelopes:

    def test_missing_token_is_401(self, client: TestClient, company):
        response = client.get(f"{API}/purchase-orders/", headers={"X-Company-ID": str(company.id)})
        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "authentication_error"

    def test_garbage_token_is_401(self, client: TestClient, company):
        response = client.get(
            f"{API}/purchase-orders/",
            headers={"Authorization": "Bearer not-a-jwt", "X-Company-ID": str(company.id)},
        )
        assert response.status_code == 401

    def test_missing_role_is_403(
        self, client: TestClient, warehouse_headers, supplier, warehouse, product
    ):
        po = _create_po(client, warehouse_headers, supplier, warehouse, product)
        client.post(f"{API}/purchase-orders/{po['id']}/submit", headers=warehouse_headers)

        response = client.post(f"{API}/purchase-orders/{po['id']}/approve", headers=warehouse_headers)
        assert response.status_code == 403
        body = response.json()
        assert body["error"] == "authorization_error"

        po = _data(client.get(f"{API}/purchase-orders/{po['id']}", headers=warehouse_headers))
        assert po["status"] == "pending"

    def test_no_role_in_company_is_403(
        self, client: TestClient, admin_user, other_company, headers_for
    ):
        response = client.get(f"{API}/purchase-orders/", headers=headers_for(admin_user, other_company))
        assert response.status_code == 403

    def test_unknown_document_is_404(self, client: TestClient, accounts_headers):
        response = client.get(f"{API}/purchase-invoices/9999", headers=accounts_headers)
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_invalid_transition_is_409(
        self, client: TestClient, warehouse_headers, accounts_headers, supplier, warehouse, product
    ):
        po = _create_po(client, warehouse_headers, supplier, warehouse, product)
        response = client.post(f"{API}/purchase-orders/{po['id']}/approve", headers=accounts_headers)
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "invalid_transition"
        assert body["details"]["attempted_status"] == "approved"
        assert set(body["details"]["allowed_statuses"]) == {"pending", "cancelled"}

    def test_request_validation_is_400(self, client: TestClient, warehouse_headers, supplier, warehouse):
        response = client.post(f"{API}/purchase-orders/", headers=warehouse_headers, json={
            "supplier_id": supplier.id, "warehouse_id": warehouse.id, "items": [],
        })
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_overpayment_is_409(self, client: TestClient, invoice, accounts_headers):
        response = client.post(f"{API}/supplier-payments/", headers=accounts_headers, json={
            "purchase_invoice_id": invoice.id, "amount": "1500", "payment_method": "cash",
        })
        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "overpayment"
        assert Decimal(body["details"]["remaining"]) == Decimal("1000")


class TestCompanySelection:

    def test_company_claim_used_without_header(self, client: TestClient, accounts_user, company):
        token = create_access_token(
            {"sub": str(accounts_user.id), "email": accounts_user.email, "company_id": company.id}
        )
        response = client.get(f"{API}/purchase-invoices/", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200

    def test_missing_company_is_400(self, client: TestClient, accounts_user):
        token = create_access_token({"sub": str(accounts_user.id), "email": accounts_user.email})
        response = client.get(f"{API}/purchase-invoices/", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 400


class TestAdminEndpoints:

    def test_scheduler_status_admin_only(self, client: TestClient, admin_headers, accounts_headers):
        assert client.get(f"{API}/scheduler/status", headers=admin_headers).status_code == 200
        assert client.get(f"{API}/scheduler/status", headers=accounts_headers).status_code == 403

    def test_overdue_sweep_endpoint(self, client: TestClient, admin_headers, accounts_headers):
        response = client.post(f"{API}/purchase-invoices/overdue-sweep", headers=admin_headers)
        assert response.status_code == 200
        assert _data(response)["marked_overdue"] == 0
        response = client.post(f"{API}/purchase-invoices/overdue-sweep", headers=accounts_headers)
        assert response.status_code == 403

"""Sales reporting and admin override over HTTP."""
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from app.core.config import settings
from app.db.session import get_db
from app.main import app
from app.services.payments.callback import CallbackService
from app.services.transactions.service import TransactionService


@pytest.fixture
def client(session_factory):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def sale_id(db, cart_item, success_callback):
    TransactionService(db).create_pending(
        checkout_request_id="ws_CO_sale",
        merchant_request_id=None,
        phone_number="254712345678",
        amount=500,
        cart_items=[cart_item(1, 500)],
        user_id="user-1",
    )
    return CallbackService(db).handle_callback(success_callback("ws_CO_sale")).sale_id


class TestSalesRoutes:
    def test_list_and_get(self, client, sale_id):
        listing = client.get("/api/sales").json()
        assert listing["total"] == 1
        assert listing["sales"][0]["id"] == sale_id
        assert listing["sales"][0]["mpesaReceiptNumber"] == "ABC123"

        sale = client.get(f"/api/sales/{sale_id}").json()["sale"]
        assert sale["customerPhone"] == "254712345678"

    def test_get_missing(self, client):
        assert client.get("/api/sales/nope").status_code == 404

    def test_customer(self, client, sale_id):
        assert client.get("/api/sales/customer/254712345678").json()["total"] == 1
        assert client.get("/api/sales/customer/254700000000").json()["total"] == 0

    def test_stats(self, client, sale_id):
        body = client.get("/api/sales/stats", params={"period": "all"}).json()
        assert body["success"] is True
        assert body["stats"]["totalSales"] == 1
        assert body["stats"]["totalRevenue"] == 500.0

    def test_stats_bad_period(self, client):
        assert client.get("/api/sales/stats", params={"period": "forever"}).status_code == 400

    def test_status_override_requires_admin_key(self, client, sale_id):
        with patch.object(settings, "admin_api_key", "admin-key"):
            denied = client.patch(f"/api/sales/{sale_id}/status", json={"status": "refunded"})
            allowed = client.patch(
                f"/api/sales/{sale_id}/status",
                json={"status": "refunded"},
                headers={"X-Admin-Key": "admin-key"},
            )
            invalid = client.patch(
                f"/api/sales/{sale_id}/status",
                json={"status": "lost"},
                headers={"X-Admin-Key": "admin-key"},
            )

        assert denied.status_code == 401
        assert allowed.status_code == 200
        assert invalid.status_code == 400
        assert client.get(f"/api/sales/{sale_id}").json()["sale"]["status"] == "refunded"

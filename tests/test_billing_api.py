import pytest
from fastapi.testclient import TestClient

from app.api.deps import get_db
from app.main import app
from app.models.billing import InvoiceStatus
from app.services.midtrans import MidtransClient, compute_signature

SERVER_KEY = "SB-Mid-server-test"


@pytest.fixture()
def client(db_session):
    app.dependency_overrides[get_db] = lambda: db_session
    try:
        yield TestClient(app, raise_server_exceptions=False)
    finally:
        app.dependency_overrides.pop(get_db, None)


@pytest.fixture()
def headers(tenant):
    return {"X-Tenant-ID": str(tenant.id)}


def test_create_and_list_plans(client):
    response = client.post(
        "/api/v1/billing/plans",
        json={
            "name": "Growth",
            "price": "250000.00",
            "limits": [{"metric_name": "transactions", "max_value": "5000", "unit": "count"}],
        },
    )
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["name"] == "Growth"
    assert body["data"]["limits"][0]["metric_name"] == "transactions"

    listed = client.get("/api/v1/billing/plans").json()["data"]
    assert [plan["name"] for plan in listed] == ["Growth"]


def test_plan_with_negative_limit_is_rejected(client):
    response = client.post(
        "/api/v1/billing/plans",
        json={"name": "Broken", "limits": [{"metric_name": "sms", "max_value": "-5"}]},
    )
    assert response.status_code == 422
    assert response.json()["error"] == "validation_failed"


def test_subscribe_then_duplicate_conflicts(client, headers, plan):
    created = client.post(
        "/api/v1/billing/subscription", json={"plan_id": str(plan.id)}, headers=headers
    )
    assert created.status_code == 201
    assert created.json()["data"]["status"] == "active"

    duplicate = client.post(
        "/api/v1/billing/subscription", json={"plan_id": str(plan.id)}, headers=headers
    )
    assert duplicate.status_code == 409
    assert duplicate.json() == {
        "success": False,
        "error": "tenant_already_subscribed",
        "message": "Tenant already has an open subscription (active)",
    }


def test_missing_tenant_header(client):
    response = client.get("/api/v1/billing/subscription")
    assert response.status_code == 422
    assert response.json()["success"] is False


def test_malformed_tenant_header(client):
    response = client.get("/api/v1/billing/subscription", headers={"X-Tenant-ID": "warung-1"})
    assert response.status_code == 422


def test_subscription_without_one_is_not_found(client, headers):
    response = client.get("/api/v1/billing/subscription", headers=headers)
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_subscription_health_and_cancel(client, headers, subscription):
    health = client.get("/api/v1/billing/subscription/health", headers=headers).json()["data"]
    assert health["status"] == "healthy"

    response = client.delete(
        "/api/v1/billing/subscription",
        params={"at_period_end": "true", "reason": "Moving"},
        headers=headers,
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["cancel_at_period_end"] is True
    assert data["cancel_reason"] == "Moving"


def test_list_and_get_invoices(client, headers, invoice):
    listed = client.get("/api/v1/billing/invoices", headers=headers).json()["data"]
    assert listed["total"] == 1
    assert listed["items"][0]["invoice_number"] == invoice.invoice_number

    single = client.get(f"/api/v1/billing/invoices/{invoice.id}", headers=headers)
    assert single.status_code == 200
    assert single.json()["data"]["status"] == "sent"


def test_void_sent_invoice_conflicts(client, headers, invoice):
    response = client.post(
        f"/api/v1/billing/invoices/{invoice.id}/void", json={"reason": "Typo"}, headers=headers
    )
    assert response.status_code == 409
    assert response.json()["error"] == "invalid_invoice_state"


def test_export_invoices_csv(client, headers, invoice):
    response = client.get(
        "/api/v1/billing/invoices/export", params={"format": "csv"}, headers=headers
    )
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")
    assert response.headers["content-disposition"] == 'attachment; filename="invoices.csv"'
    assert invoice.invoice_number in response.text


def test_export_rejects_unknown_format(client, headers):
    response = client.get(
        "/api/v1/billing/invoices/export", params={"format": "docx"}, headers=headers
    )
    assert response.status_code == 422


def test_pay_invoice_and_settle_by_webhook(client, headers, db_session, invoice, fake_gateway, monkeypatch):
    paid = client.post(
        f"/api/v1/billing/invoices/{invoice.id}/pay",
        json={"provider": "midtrans", "payment_details": {"type": "qris"}},
        headers=headers,
    )
    assert paid.status_code == 200
    data = paid.json()["data"]
    assert data["transaction"]["status"] == "pending"
    order_id = data["transaction"]["provider_transaction_id"]

    monkeypatch.setattr(
        "app.services.billing.providers.get_gateway",
        lambda provider: MidtransClient(server_key=SERVER_KEY),
    )
    notification = {
        "order_id": order_id,
        "status_code": "200",
        "gross_amount": "100000.00",
        "transaction_status": "settlement",
        "payment_type": "qris",
        "signature_key": compute_signature(order_id, "200", "100000.00", SERVER_KEY),
    }
    webhook = client.post("/api/v1/billing/webhooks/midtrans", json=notification)

    assert webhook.status_code == 200
    assert webhook.json()["data"]["status"] == "completed"
    db_session.refresh(invoice)
    assert invoice.status == InvoiceStatus.paid


def test_webhook_with_invalid_signature(client, monkeypatch):
    monkeypatch.setattr(
        "app.services.billing.providers.get_gateway",
        lambda provider: MidtransClient(server_key=SERVER_KEY),
    )
    response = client.post(
        "/api/v1/billing/webhooks/midtrans",
        json={
            "order_id": "INV-202406-000000000000-deadbeef",
            "status_code": "200",
            "gross_amount": "100000.00",
            "transaction_status": "settlement",
            "signature_key": "0" * 128,
        },
    )
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_signature"


def test_track_usage_and_limits(client, headers, subscription):
    created = client.post(
        "/api/v1/billing/usage",
        json={"metric_name": "transactions", "value": "1500"},
        headers=headers,
    )
    assert created.status_code == 201

    limits = client.get("/api/v1/billing/usage/limits", headers=headers).json()["data"]
    assert limits["within_limits"] is False
    assert limits["overages"][0]["overage"] == 500.0


def test_analytics_rejects_unknown_type(client, headers):
    response = client.get(
        "/api/v1/billing/analytics", params={"type": "forecast"}, headers=headers
    )
    assert response.status_code == 422


def test_mrr_analytics(client, headers, subscription):
    response = client.get("/api/v1/billing/analytics", params={"type": "mrr"}, headers=headers)
    assert response.json()["data"]["total_mrr"] == 100000.0


def test_cancel_open_transaction(client, headers, invoice, fake_gateway):
    paid = client.post(
        f"/api/v1/billing/invoices/{invoice.id}/pay",
        json={"provider": "midtrans", "payment_details": {"type": "qris"}},
        headers=headers,
    )
    transaction_id = paid.json()["data"]["transaction"]["id"]

    response = client.post(f"/api/v1/billing/transactions/{transaction_id}/cancel", headers=headers)

    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"
    again = client.post(f"/api/v1/billing/transactions/{transaction_id}/cancel", headers=headers)
    assert again.status_code == 409
    assert again.json()["error"] == "invalid_transaction_state"

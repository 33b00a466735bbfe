from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest

from app.errors import InvalidWebhookSignature, PaymentProviderError, PaymentProviderTimeout
from app.models.billing import PaymentTransactionStatus
from app.services.midtrans import (
    CORE_API_SANDBOX_URL,
    SNAP_SANDBOX_URL,
    MidtransClient,
    compute_signature,
    gross_amount,
    map_status,
)
from app.services.payment_gateway import WebhookEventType
from tests.mocks import FakeHTTPXClient

SERVER_KEY = "SB-Mid-server-test"


def _invoice(total="150000.00"):
    return SimpleNamespace(
        id="3f1c1c55-9b0e-4f8d-9f3b-0d3f4a3c2b10",
        invoice_number="INV-202406-ABCDEF012345",
        total_amount=Decimal(total),
        currency="IDR",
        customer_name="Siti Rahayu",
        customer_email="siti@example.com",
        customer_phone="+628111111111",
        customer_address="Jl. Asia Afrika 1",
    )


@pytest.fixture()
def http(monkeypatch):
    fake = FakeHTTPXClient()
    monkeypatch.setattr("app.services.midtrans.httpx.Client", fake)
    return fake


@pytest.fixture()
def client():
    return MidtransClient(server_key=SERVER_KEY, client_key="SB-Mid-client-test", production=False)


def test_snap_charge_returns_redirect(client, http):
    http.responses.append(
        httpx.Response(201, json={"token": "snap-token", "redirect_url": "https://app.sandbox.midtrans.com/snap/v2/vtweb/snap-token"})
    )

    result = client.charge(order_id="ORDER-1", invoice=_invoice(), payment_details={"type": "gopay"})

    assert result.status == PaymentTransactionStatus.pending
    assert result.client_secret == "snap-token"
    assert result.redirect_url.endswith("/snap-token")
    method, url, payload = http.requests[0]
    assert (method, url) == ("POST", f"{SNAP_SANDBOX_URL}/transactions")
    assert payload["transaction_details"] == {"order_id": "ORDER-1", "gross_amount": 150000}
    assert payload["enabled_payments"] == ["gopay"]
    assert payload["customer_details"]["first_name"] == "Siti"
    assert payload["customer_details"]["last_name"] == "Rahayu"


def test_card_token_charge_uses_core_api(client, http):
    http.responses.append(
        httpx.Response(
            200,
            json={
                "status_code": "200",
                "order_id": "ORDER-2",
                "transaction_status": "capture",
                "fraud_status": "accept",
                "payment_type": "credit_card",
            },
        )
    )

    result = client.charge(
        order_id="ORDER-2",
        invoice=_invoice(),
        payment_details={"type": "credit_card", "token_id": "481111-1114-abc"},
    )

    assert result.status == PaymentTransactionStatus.completed
    assert result.payment_method == "credit_card"
    method, url, payload = http.requests[0]
    assert url == f"{CORE_API_SANDBOX_URL}/charge"
    assert payload["credit_card"]["token_id"] == "481111-1114-abc"


def test_business_error_in_body_raises(client, http):
    http.responses.append(
        httpx.Response(
            200,
            json={"status_code": "406", "error_messages": ["Duplicate order ID"]},
        )
    )
    with pytest.raises(PaymentProviderError) as exc_info:
        client.query_status("ORDER-3")
    assert "Duplicate order ID" in exc_info.value.message
    assert exc_info.value.provider_detail["status_code"] == "406"


def test_http_error_raises_provider_error(client, http):
    http.responses.append(httpx.Response(401, json={"status_message": "Unauthorized"}))
    with pytest.raises(PaymentProviderError) as exc_info:
        client.query_status("ORDER-4")
    assert not isinstance(exc_info.value, PaymentProviderTimeout)
    assert exc_info.value.provider_detail == {"status_message": "Unauthorized"}


def test_timeout_raises_provider_timeout(client, http):
    http.responses.append(httpx.ReadTimeout("timed out"))
    with pytest.raises(PaymentProviderTimeout):
        client.charge(order_id="ORDER-5", invoice=_invoice(), payment_details={})


def test_query_status_maps_settlement(client, http):
    http.responses.append(
        httpx.Response(
            200,
            json={"status_code": "200", "transaction_status": "settlement", "payment_type": "qris"},
        )
    )
    result = client.query_status("ORDER-6")
    assert result.status == PaymentTransactionStatus.completed
    assert result.payment_method == "qris"
    assert http.requests[0][:2] == ("GET", f"{CORE_API_SANDBOX_URL}/ORDER-6/status")


def test_approve_releases_challenged_capture(client, http):
    http.responses.append(
        httpx.Response(
            200,
            json={
                "status_code": "200",
                "transaction_status": "capture",
                "fraud_status": "accept",
                "payment_type": "credit_card",
            },
        )
    )
    result = client.approve("ORDER-8")
    assert result.status == PaymentTransactionStatus.completed
    assert http.requests[0][:2] == ("POST", f"{CORE_API_SANDBOX_URL}/ORDER-8/approve")


def test_cancel_maps_cancelled(client, http):
    http.responses.append(
        httpx.Response(200, json={"status_code": "200", "transaction_status": "cancel"})
    )
    result = client.cancel("ORDER-9")
    assert result.status == PaymentTransactionStatus.cancelled
    assert http.requests[0][:2] == ("POST", f"{CORE_API_SANDBOX_URL}/ORDER-9/cancel")


@pytest.mark.parametrize(
    "raw,fraud,expected",
    [
        ("capture", "accept", PaymentTransactionStatus.completed),
        ("capture", "challenge", PaymentTransactionStatus.pending),
        ("deny", None, PaymentTransactionStatus.failed),
        ("expire", None, PaymentTransactionStatus.expired),
        ("cancel", None, PaymentTransactionStatus.cancelled),
        ("authorize", None, PaymentTransactionStatus.pending),
    ],
)
def test_map_status(raw, fraud, expected):
    assert map_status(raw, fraud) == expected


def test_refund_sends_whole_rupiah(client, http):
    http.responses.append(
        httpx.Response(
            200,
            json={"status_code": "200", "refund_chargeback_id": 77, "refund_amount": "5000.00"},
        )
    )
    result = client.refund("ORDER-7", Decimal("5000.40"), "IDR", reason="Duplicate charge")

    assert result.provider_refund_id == "77"
    assert result.amount == Decimal("5000.00")
    assert result.status == PaymentTransactionStatus.completed
    assert http.requests[0][2] == {"amount": 5000, "reason": "Duplicate charge"}


def test_gross_amount_rounds_half_up():
    assert gross_amount(Decimal("100000.50")) == 100001
    assert gross_amount("99.49") == 99


def test_webhook_signature_verification(client):
    notification = {
        "order_id": "ORDER-8",
        "status_code": "200",
        "gross_amount": "150000.00",
        "transaction_status": "settlement",
    }
    notification["signature_key"] = compute_signature("ORDER-8", "200", "150000.00", SERVER_KEY)

    event = client.verify_and_parse_webhook(notification)

    assert event.type == WebhookEventType.success
    assert event.provider_transaction_id == "ORDER-8"
    assert event.amount == Decimal("150000.00")


def test_webhook_with_tampered_amount_is_rejected(client):
    notification = {
        "order_id": "ORDER-9",
        "status_code": "200",
        "gross_amount": "1.00",
        "transaction_status": "settlement",
        "signature_key": compute_signature("ORDER-9", "200", "150000.00", SERVER_KEY),
    }
    with pytest.raises(InvalidWebhookSignature):
        client.verify_and_parse_webhook(notification)


def test_malformed_webhook_body_is_rejected(client):
    with pytest.raises(InvalidWebhookSignature):
        client.verify_and_parse_webhook(b"not json")


def test_unknown_webhook_status_is_unhandled(client):
    notification = {"order_id": "ORDER-10", "status_code": "201", "gross_amount": "10.00",
                    "transaction_status": "authorize"}
    notification["signature_key"] = compute_signature("ORDER-10", "201", "10.00", SERVER_KEY)
    event = client.verify_and_parse_webhook(notification)
    assert event.type == WebhookEventType.unhandled
    assert event.raw_type == "authorize"


def test_available_payment_methods_are_copies(client):
    methods = client.available_payment_methods()
    methods[0]["name"] = "Changed"
    assert client.available_payment_methods()[0]["name"] == "Credit Card"

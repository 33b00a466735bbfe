import json
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
import stripe

from app.errors import InvalidWebhookSignature, PaymentProviderError, PaymentProviderTimeout
from app.models.billing import PaymentTransactionStatus
from app.services.payment_gateway import WebhookEventType
from app.services.stripe_gateway import (
    StripeGateway,
    from_minor_units,
    map_intent_status,
    to_minor_units,
)


def _invoice():
    return SimpleNamespace(
        id="8d7c3f0e-4a51-4c8b-9a3b-6b2f1e0d9c21",
        invoice_number="INV-202406-0123456789AB",
        total_amount=Decimal("49.99"),
        currency="USD",
        customer_email="owner@example.com",
    )


@pytest.fixture()
def gateway():
    return StripeGateway(secret_key="sk_test_123", webhook_secret="whsec_test")


@pytest.fixture()
def stripe_client(gateway):
    client = MagicMock()
    with patch.object(gateway, "_get_stripe", return_value=client):
        yield client


def test_minor_units():
    assert to_minor_units(Decimal("49.99"), "usd") == 4999
    assert to_minor_units(Decimal("150000"), "jpy") == 150000
    assert from_minor_units(4999, "usd") == Decimal("49.99")
    assert from_minor_units(500, "JPY") == Decimal("500")
    assert from_minor_units(None, "usd") is None


def test_intent_status_map():
    assert map_intent_status("succeeded") == PaymentTransactionStatus.completed
    assert map_intent_status("requires_capture") == PaymentTransactionStatus.processing
    assert map_intent_status("something_new") == PaymentTransactionStatus.pending


def test_card_charge_creates_payment_intent(gateway, stripe_client):
    stripe_client.PaymentIntent.create.return_value = {
        "id": "pi_123",
        "status": "succeeded",
        "client_secret": "pi_123_secret",
    }

    result = gateway.charge(
        order_id="ORDER-1",
        invoice=_invoice(),
        payment_details={"type": "card", "payment_method_id": "pm_card_visa", "customer_id": "cus_1"},
    )

    assert result.provider_transaction_id == "pi_123"
    assert result.status == PaymentTransactionStatus.completed
    assert result.client_secret == "pi_123_secret"
    kwargs = stripe_client.PaymentIntent.create.call_args.kwargs
    assert kwargs["amount"] == 4999
    assert kwargs["currency"] == "usd"
    assert kwargs["confirm"] is True
    assert kwargs["customer"] == "cus_1"
    assert kwargs["idempotency_key"] == "ORDER-1"
    assert kwargs["metadata"]["order_id"] == "ORDER-1"


def test_other_methods_use_checkout(gateway, stripe_client):
    stripe_client.checkout.Session.create.return_value = {
        "id": "cs_test_1",
        "url": "https://checkout.stripe.com/c/pay/cs_test_1",
    }

    result = gateway.charge(order_id="ORDER-2", invoice=_invoice(), payment_details={"type": "link"})

    assert result.provider_transaction_id == "cs_test_1"
    assert result.status == PaymentTransactionStatus.pending
    assert result.redirect_url.endswith("cs_test_1")
    kwargs = stripe_client.checkout.Session.create.call_args.kwargs
    assert kwargs["client_reference_id"] == "ORDER-2"
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 4999


def test_connection_error_is_a_timeout(gateway, stripe_client):
    stripe_client.PaymentIntent.create.side_effect = stripe.APIConnectionError("network down")
    with pytest.raises(PaymentProviderTimeout):
        gateway.charge(order_id="ORDER-3", invoice=_invoice(), payment_details={})


def test_card_error_is_a_provider_error(gateway, stripe_client):
    stripe_client.PaymentIntent.create.side_effect = stripe.CardError(
        "Your card was declined.", None, "card_declined"
    )
    with pytest.raises(PaymentProviderError) as exc_info:
        gateway.charge(order_id="ORDER-4", invoice=_invoice(), payment_details={})
    assert not isinstance(exc_info.value, PaymentProviderTimeout)
    assert "declined" in exc_info.value.message


def test_query_status_searches_by_order_id(gateway, stripe_client):
    stripe_client.PaymentIntent.search.return_value = {
        "data": [{"id": "pi_found", "status": "succeeded"}]
    }

    result = gateway.query_status("INV-202406-0123456789AB-1a2b3c4d")

    assert result.provider_transaction_id == "pi_found"
    assert result.status == PaymentTransactionStatus.completed
    query = stripe_client.PaymentIntent.search.call_args.kwargs["query"]
    assert query == "metadata['order_id']:'INV-202406-0123456789AB-1a2b3c4d'"


def test_query_status_for_checkout_session(gateway, stripe_client):
    stripe_client.checkout.Session.retrieve.return_value = {"payment_status": "unpaid", "status": "expired"}
    result = gateway.query_status("cs_test_2")
    assert result.status == PaymentTransactionStatus.expired
    assert result.provider_reference is None


def test_approve_captures_payment_intent(gateway, stripe_client):
    stripe_client.PaymentIntent.capture.return_value = {"id": "pi_hold", "status": "succeeded"}

    result = gateway.approve("pi_hold")

    assert result.status == PaymentTransactionStatus.completed
    stripe_client.PaymentIntent.capture.assert_called_once_with("pi_hold")


def test_approve_checkout_session_captures_its_intent(gateway, stripe_client):
    stripe_client.checkout.Session.retrieve.return_value = {"payment_intent": "pi_behind"}
    stripe_client.PaymentIntent.capture.return_value = {"id": "pi_behind", "status": "succeeded"}

    gateway.approve("cs_test_3")

    stripe_client.PaymentIntent.capture.assert_called_once_with("pi_behind")


def test_cancel_checkout_session_expires_it(gateway, stripe_client):
    stripe_client.checkout.Session.expire.return_value = {"id": "cs_test_4", "payment_intent": None}

    result = gateway.cancel("cs_test_4")

    assert result.status == PaymentTransactionStatus.expired
    stripe_client.checkout.Session.expire.assert_called_once_with("cs_test_4")
    stripe_client.PaymentIntent.cancel.assert_not_called()


def test_cancel_payment_intent(gateway, stripe_client):
    stripe_client.PaymentIntent.cancel.return_value = {"id": "pi_open", "status": "canceled"}
    assert gateway.cancel("pi_open").status == PaymentTransactionStatus.cancelled


def test_refund_converts_amounts(gateway, stripe_client):
    stripe_client.Refund.create.return_value = {"id": "re_1", "status": "succeeded", "amount": 1000}

    result = gateway.refund("pi_123", Decimal("10.00"), "USD", reason="Duplicate")

    assert result.provider_refund_id == "re_1"
    assert result.amount == Decimal("10.00")
    assert result.status == PaymentTransactionStatus.completed
    assert stripe_client.Refund.create.call_args.kwargs["amount"] == 1000


def test_unsigned_webhook_is_rejected(gateway):
    with pytest.raises(InvalidWebhookSignature):
        gateway.verify_and_parse_webhook(b"{}", None)


def test_bad_signature_is_rejected(gateway):
    with patch(
        "app.services.stripe_gateway.stripe.Webhook.construct_event",
        side_effect=stripe.SignatureVerificationError("bad", "t=1,v1=abc"),
    ):
        with pytest.raises(InvalidWebhookSignature):
            gateway.verify_and_parse_webhook(b"{}", "t=1,v1=abc")


def test_payment_intent_failed_webhook(gateway):
    body = json.dumps(
        {
            "type": "payment_intent.payment_failed",
            "data": {
                "object": {
                    "id": "pi_9",
                    "amount": 4999,
                    "currency": "usd",
                    "payment_method_types": ["card"],
                    "last_payment_error": {"message": "Insufficient funds"},
                }
            },
        }
    ).encode()
    with patch("app.services.stripe_gateway.stripe.Webhook.construct_event"):
        event = gateway.verify_and_parse_webhook(body, "t=1,v1=ok")

    assert event.type == WebhookEventType.failed
    assert event.provider_transaction_id == "pi_9"
    assert event.failure_reason == "Insufficient funds"
    assert event.amount == Decimal("49.99")


def test_checkout_completed_webhook_carries_payment_intent(gateway):
    body = json.dumps(
        {
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_test_1",
                    "payment_intent": "pi_test_1",
                    "payment_status": "paid",
                    "amount_total": 4999,
                    "currency": "usd",
                }
            },
        }
    )
    with patch("app.services.stripe_gateway.stripe.Webhook.construct_event"):
        event = gateway.verify_and_parse_webhook(body, "t=1,v1=ok")

    assert event.type == WebhookEventType.success
    assert event.provider_transaction_id == "cs_test_1"
    assert event.provider_reference == "pi_test_1"


def test_charge_refunded_webhook(gateway):
    body = json.dumps(
        {
            "type": "charge.refunded",
            "data": {
                "object": {
                    "payment_intent": "pi_5",
                    "currency": "usd",
                    "amount_refunded": 2500,
                    "refunds": {"data": [{"id": "re_5", "amount": 2500}]},
                }
            },
        }
    )
    with patch("app.services.stripe_gateway.stripe.Webhook.construct_event"):
        event = gateway.verify_and_parse_webhook(body, "t=1,v1=ok")

    assert event.type == WebhookEventType.refunded
    assert event.refund_id == "re_5"
    assert event.amount == Decimal("25.00")


def test_missing_secret_key_is_a_provider_error():
    with pytest.raises(PaymentProviderError):
        StripeGateway(secret_key="")._get_stripe()

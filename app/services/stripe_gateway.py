"""Stripe payment gateway.

PaymentIntents for card payments (saved method or new card), Checkout
Sessions for everything else. Amounts cross the boundary in minor units.
"""

from __future__ import annotations

import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe

from app.config import settings
from app.errors import InvalidWebhookSignature, PaymentProviderError, PaymentProviderTimeout
from app.models.billing import PaymentTransactionStatus
from app.services.payment_gateway import (
    ChargeResult,
    RefundResult,
    SavedPaymentMethod,
    StatusResult,
    WebhookEvent,
    event_type_for_status,
)

logger = logging.getLogger(__name__)

PROVIDER = "stripe"

ZERO_DECIMAL_CURRENCIES = {
    "bif", "clp", "djf", "gnf", "jpy", "kmf", "krw", "mga",
    "pyg", "rwf", "ugx", "vnd", "vuv", "xaf", "xof", "xpf",
}

INTENT_STATUS_MAP = {
    "succeeded": PaymentTransactionStatus.completed,
    "processing": PaymentTransactionStatus.processing,
    "requires_payment_method": PaymentTransactionStatus.pending,
    "requires_confirmation": PaymentTransactionStatus.pending,
    "requires_action": PaymentTransactionStatus.pending,
    "requires_capture": PaymentTransactionStatus.processing,
    "canceled": PaymentTransactionStatus.cancelled,
}

REFUND_STATUS_MAP = {
    "succeeded": PaymentTransactionStatus.completed,
    "pending": PaymentTransactionStatus.pending,
    "requires_action": PaymentTransactionStatus.pending,
    "failed": PaymentTransactionStatus.failed,
    "canceled": PaymentTransactionStatus.cancelled,
}

WEBHOOK_STATUS_MAP = {
    "payment_intent.succeeded": PaymentTransactionStatus.completed,
    "payment_intent.payment_failed": PaymentTransactionStatus.failed,
    "payment_intent.canceled": PaymentTransactionStatus.cancelled,
    "invoice.payment_succeeded": PaymentTransactionStatus.completed,
    "invoice.payment_failed": PaymentTransactionStatus.failed,
    "charge.refunded": PaymentTransactionStatus.refunded,
}


def to_minor_units(amount: Decimal | int | float | str, currency: str) -> int:
    value = Decimal(str(amount))
    if currency.lower() not in ZERO_DECIMAL_CURRENCIES:
        value = value * 100
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int | None, currency: str | None) -> Decimal | None:
    if amount is None:
        return None
    if (currency or "").lower() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def map_intent_status(status: str | None) -> PaymentTransactionStatus:
    return INTENT_STATUS_MAP.get(status or "", PaymentTransactionStatus.pending)


def _as_dict(obj: Any) -> dict[str, Any]:
    return dict(obj) if obj is not None else {}


class StripeGateway:
    """Stripe adapter over the module-level ``stripe`` client."""

    name = PROVIDER

    def __init__(
        self,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        timeout: float | None = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.stripe_secret_key
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.stripe_webhook_secret
        )
        self.timeout = timeout or settings.payment_provider_timeout

    def _get_stripe(self) -> Any:
        """Configure and return the Stripe library."""
        if not self.secret_key:
            raise PaymentProviderError(PROVIDER, "Stripe secret key is not configured")
        stripe.api_key = self.secret_key
        stripe.api_version = settings.stripe_api_version
        stripe.default_http_client = stripe.RequestsClient(timeout=self.timeout)
        return stripe

    def _call(self, operation: str, func, *args, **kwargs):
        """Run one Stripe API call, translating SDK errors.

        A connection error leaves the outcome unknown, so it surfaces as a
        timeout and the caller reconciles through ``query_status``.
        """
        try:
            return func(*args, **kwargs)
        except stripe.APIConnectionError as e:
            logger.error("Stripe %s connection failure: %s", operation, e, extra={"provider": PROVIDER})
            raise PaymentProviderTimeout(PROVIDER, f"{operation} did not complete") from e
        except stripe.StripeError as e:
            detail = getattr(e, "json_body", None) or {"message": getattr(e, "user_message", None)}
            logger.error("Stripe %s failed: %s", operation, detail, extra={"provider": PROVIDER})
            message = getattr(e, "user_message", None) or str(e) or "Payment failed"
            raise PaymentProviderError(PROVIDER, message, provider_detail=detail) from e

    # -------------------------------------------------------------------------
    # Charges
    # -------------------------------------------------------------------------

    def charge(self, *, order_id: str, invoice, payment_details: dict[str, Any]) -> ChargeResult:
        client = self._get_stripe()
        currency = (invoice.currency or settings.default_currency).lower()
        amount = to_minor_units(invoice.total_amount, currency)
        metadata = {
            "invoice_id": str(invoice.id),
            "invoice_number": invoice.invoice_number,
            "order_id": order_id,
        }
        method_type = payment_details.get("type", "card")

        if method_type == "card":
            params: dict[str, Any] = {
                "amount": amount,
                "currency": currency,
                "metadata": metadata,
                "description": f"Invoice {invoice.invoice_number}",
                "idempotency_key": order_id,
            }
            if payment_details.get("customer_id"):
                params["customer"] = payment_details["customer_id"]
            if payment_details.get("payment_method_id"):
                params.update(
                    payment_method=payment_details["payment_method_id"],
                    confirm=True,
                    automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
                )
            else:
                params["payment_method_types"] = ["card"]
            intent = self._call("create payment intent", client.PaymentIntent.create, **params)
            return ChargeResult(
                provider_transaction_id=intent["id"],
                status=map_intent_status(intent.get("status")),
                payment_method="card",
                client_secret=intent.get("client_secret"),
                raw=_as_dict(intent),
            )

        base_url = settings.app_base_url.rstrip("/")
        session = self._call(
            "create checkout session",
            client.checkout.Session.create,
            mode="payment",
            line_items=[
                {
                    "price_data": {
                        "currency": currency,
                        "unit_amount": amount,
                        "product_data": {"name": f"Invoice {invoice.invoice_number}"},
                    },
                    "quantity": 1,
                }
            ],
            success_url=f"{base_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{base_url}/billing/cancel",
            customer_email=invoice.customer_email or None,
            client_reference_id=order_id,
            metadata=metadata,
            payment_intent_data={"metadata": metadata},
            idempotency_key=order_id,
        )
        return ChargeResult(
            provider_transaction_id=session["id"],
            status=PaymentTransactionStatus.pending,
            payment_method=method_type,
            redirect_url=session.get("url"),
            raw=_as_dict(session),
        )

    def query_status(self, provider_transaction_id: str) -> StatusResult:
        client = self._get_stripe()
        if provider_transaction_id.startswith("cs_"):
            session = self._call(
                "retrieve checkout session", client.checkout.Session.retrieve, provider_transaction_id
            )
            if session.get("payment_status") == "paid":
                status = PaymentTransactionStatus.completed
            elif session.get("status") == "expired":
                status = PaymentTransactionStatus.expired
            else:
                status = PaymentTransactionStatus.pending
            return StatusResult(
                provider_transaction_id,
                status,
                provider_reference=session.get("payment_intent"),
                raw=_as_dict(session),
            )

        if not provider_transaction_id.startswith("pi_"):
            # Charge timed out before Stripe returned an id; look it up by order id.
            found = self._call(
                "search payment intents",
                client.PaymentIntent.search,
                query=f"metadata['order_id']:'{provider_transaction_id}'",
                limit=1,
            )
            matches = found.get("data") or []
            if not matches:
                return StatusResult(provider_transaction_id, PaymentTransactionStatus.pending)
            intent = matches[0]
            return StatusResult(
                intent["id"],
                map_intent_status(intent.get("status")),
                payment_method="card",
                raw=_as_dict(intent),
            )

        intent = self._call(
            "retrieve payment intent", client.PaymentIntent.retrieve, provider_transaction_id
        )
        return StatusResult(
            provider_transaction_id,
            map_intent_status(intent.get("status")),
            payment_method="card",
            raw=_as_dict(intent),
        )

    def _intent_id(self, client, provider_transaction_id: str) -> str:
        if not provider_transaction_id.startswith("cs_"):
            return provider_transaction_id
        session = self._call(
            "retrieve checkout session", client.checkout.Session.retrieve, provider_transaction_id
        )
        return session.get("payment_intent")

    def approve(self, provider_transaction_id: str) -> StatusResult:
        """Capture a PaymentIntent authorised with manual capture."""
        client = self._get_stripe()
        intent = self._call(
            "capture payment intent",
            client.PaymentIntent.capture,
            self._intent_id(client, provider_transaction_id),
        )
        return StatusResult(
            provider_transaction_id,
            map_intent_status(intent.get("status")),
            payment_method="card",
            raw=_as_dict(intent),
        )

    def cancel(self, provider_transaction_id: str) -> StatusResult:
        client = self._get_stripe()
        if provider_transaction_id.startswith("cs_"):
            session = self._call(
                "expire checkout session", client.checkout.Session.expire, provider_transaction_id
            )
            return StatusResult(
                provider_transaction_id,
                PaymentTransactionStatus.expired,
                provider_reference=session.get("payment_intent"),
                raw=_as_dict(session),
            )
        intent = self._call(
            "cancel payment intent", client.PaymentIntent.cancel, provider_transaction_id
        )
        return StatusResult(
            provider_transaction_id,
            map_intent_status(intent.get("status")),
            payment_method="card",
            raw=_as_dict(intent),
        )

    def refund(
        self,
        provider_transaction_id: str,
        amount: Decimal,
        currency: str,
        reason: str | None = None,
    ) -> RefundResult:
        client = self._get_stripe()
        refund = self._call(
            "create refund",
            client.Refund.create,
            payment_intent=self._intent_id(client, provider_transaction_id),
            amount=to_minor_units(amount, currency),
            reason="requested_by_customer",
            metadata={"reason": reason} if reason else {},
        )
        return RefundResult(
            provider_refund_id=refund["id"],
            status=REFUND_STATUS_MAP.get(refund.get("status"), PaymentTransactionStatus.pending),
            amount=from_minor_units(refund.get("amount"), currency) or Decimal(str(amount)),
            raw=_as_dict(refund),
        )

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def verify_and_parse_webhook(
        self, body: bytes | str | dict, signature: str | None = None
    ) -> WebhookEvent:
        """Verify a Stripe-signed event and normalise it.

        Raises:
            InvalidWebhookSignature: on a missing secret, malformed payload
                or bad ``Stripe-Signature`` header
        """
        if not self.webhook_secret or not signature or isinstance(body, dict):
            logger.warning("Rejected unsigned Stripe webhook", extra={"provider": PROVIDER})
            raise InvalidWebhookSignature("Invalid Stripe signature")
        try:
            stripe.Webhook.construct_event(
                payload=body, sig_header=signature, secret=self.webhook_secret
            )
        except ValueError as exc:
            raise InvalidWebhookSignature("Malformed Stripe payload") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning("Rejected Stripe webhook with invalid signature", extra={"provider": PROVIDER})
            raise InvalidWebhookSignature("Invalid Stripe signature") from exc

        event = json.loads(body)
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        currency = obj.get("currency")

        if event_type == "checkout.session.completed":
            status = (
                PaymentTransactionStatus.completed
                if obj.get("payment_status") == "paid"
                else PaymentTransactionStatus.pending
            )
            return WebhookEvent(
                type=event_type_for_status(status),
                provider_transaction_id=obj.get("id"),
                provider_reference=obj.get("payment_intent"),
                status=status,
                amount=from_minor_units(obj.get("amount_total"), currency),
                raw_type=event_type,
                raw=event,
            )

        status = WEBHOOK_STATUS_MAP.get(event_type)
        if status is None:
            return WebhookEvent(
                type=event_type_for_status(None),
                provider_transaction_id=obj.get("id"),
                raw_type=event_type,
                raw=event,
            )

        if event_type.startswith("payment_intent."):
            error = obj.get("last_payment_error") or {}
            return WebhookEvent(
                type=event_type_for_status(status),
                provider_transaction_id=obj.get("id"),
                status=status,
                amount=from_minor_units(obj.get("amount_received") or obj.get("amount"), currency),
                payment_method=(obj.get("payment_method_types") or [None])[0],
                failure_reason=error.get("message") or obj.get("cancellation_reason"),
                raw_type=event_type,
                raw=event,
            )

        if event_type == "charge.refunded":
            refunds = (obj.get("refunds") or {}).get("data") or []
            latest = refunds[0] if refunds else {}
            return WebhookEvent(
                type=event_type_for_status(status),
                provider_transaction_id=obj.get("payment_intent"),
                status=status,
                amount=from_minor_units(latest.get("amount", obj.get("amount_refunded")), currency),
                refund_id=latest.get("id"),
                raw_type=event_type,
                raw=event,
            )

        # invoice.payment_succeeded / invoice.payment_failed
        return WebhookEvent(
            type=event_type_for_status(status),
            provider_transaction_id=obj.get("payment_intent"),
            status=status,
            amount=from_minor_units(obj.get("amount_paid") or obj.get("amount_due"), currency),
            raw_type=event_type,
            raw=event,
        )

    # -------------------------------------------------------------------------
    # Payment methods
    # -------------------------------------------------------------------------

    def create_payment_method(self, tenant_id: str, details: dict[str, Any]) -> SavedPaymentMethod:
        client = self._get_stripe()
        if details.get("payment_method_id"):
            method = self._call(
                "retrieve payment method", client.PaymentMethod.retrieve, details["payment_method_id"]
            )
        else:
            method = self._call(
                "create payment method",
                client.PaymentMethod.create,
                type="card",
                card={"token": details.get("token")},
                metadata={"tenant_id": str(tenant_id)},
            )
        if details.get("customer_id"):
            self._call(
                "attach payment method",
                client.PaymentMethod.attach,
                method["id"],
                customer=details["customer_id"],
            )
        card = method.get("card") or {}
        return SavedPaymentMethod(
            provider_method_id=method["id"],
            last4=card.get("last4"),
            brand=card.get("brand"),
            expiry_month=card.get("exp_month"),
            expiry_year=card.get("exp_year"),
        )

    def delete_payment_method(self, provider_method_id: str | None) -> None:
        if not provider_method_id:
            return
        client = self._get_stripe()
        self._call("detach payment method", client.PaymentMethod.detach, provider_method_id)

    def available_payment_methods(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "card",
                "name": "Credit or Debit Card",
                "description": "Visa, Mastercard, American Express",
                "fees": {"percentage": 2.9, "fixed": 0.30},
            },
            {
                "type": "checkout",
                "name": "Stripe Checkout",
                "description": "Hosted payment page",
                "fees": {"percentage": 2.9, "fixed": 0.30},
            },
        ]

"""Midtrans payment gateway client.

Core API (``/v2``) for tokenised card charges and transaction management,
Snap (``/snap/v1/transactions``) for every redirect-based method.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

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

PROVIDER = "midtrans"

CORE_API_URL = "https://api.midtrans.com/v2"
CORE_API_SANDBOX_URL = "https://api.sandbox.midtrans.com/v2"
SNAP_URL = "https://app.midtrans.com/snap/v1"
SNAP_SANDBOX_URL = "https://app.sandbox.midtrans.com/snap/v1"

STATUS_MAP = {
    "capture": PaymentTransactionStatus.completed,
    "settlement": PaymentTransactionStatus.completed,
    "pending": PaymentTransactionStatus.pending,
    "deny": PaymentTransactionStatus.failed,
    "expire": PaymentTransactionStatus.expired,
    "cancel": PaymentTransactionStatus.cancelled,
    "refund": PaymentTransactionStatus.refunded,
    "partial_refund": PaymentTransactionStatus.refunded,
}

AVAILABLE_PAYMENT_METHODS = [
    {
        "type": "credit_card",
        "name": "Credit Card",
        "description": "Visa, Mastercard, JCB, Amex",
        "fees": {"percentage": 2.5},
    },
    {
        "type": "bank_transfer",
        "name": "Bank Transfer",
        "description": "Virtual account transfer",
        "banks": ["bca", "bni", "bri", "mandiri", "permata", "cimb", "other"],
        "fees": {"fixed": 4500},
    },
    {
        "type": "echannel",
        "name": "Mandiri Bill Payment",
        "description": "Mandiri e-channel",
        "fees": {"fixed": 2500},
    },
    {"type": "gopay", "name": "GoPay", "description": "GoPay e-wallet", "fees": {"percentage": 2.0}},
    {
        "type": "shopeepay",
        "name": "ShopeePay",
        "description": "ShopeePay e-wallet",
        "fees": {"percentage": 2.0},
    },
    {"type": "qris", "name": "QRIS", "description": "Any QRIS-enabled app", "fees": {"percentage": 0.7}},
]


def map_status(transaction_status: str | None, fraud_status: str | None = None) -> PaymentTransactionStatus:
    """Translate a Midtrans ``transaction_status`` to the internal status.

    Unknown statuses stay pending so a later status query can settle them.
    """
    if transaction_status == "capture" and fraud_status == "challenge":
        return PaymentTransactionStatus.pending
    return STATUS_MAP.get(transaction_status or "", PaymentTransactionStatus.pending)


def gross_amount(amount: Decimal | int | float | str) -> int:
    """Midtrans takes IDR amounts as whole rupiah."""
    return int(Decimal(str(amount)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_signature(order_id: str, status_code: str, gross: str, server_key: str) -> str:
    raw = f"{order_id}{status_code}{gross}{server_key}"
    return hashlib.sha512(raw.encode()).hexdigest()


class MidtransClient:
    """Client for the Midtrans Core API and Snap."""

    name = PROVIDER

    def __init__(
        self,
        server_key: str | None = None,
        client_key: str | None = None,
        production: bool | None = None,
        timeout: float | None = None,
    ):
        self.server_key = server_key if server_key is not None else settings.midtrans_server_key
        self.client_key = client_key if client_key is not None else settings.midtrans_client_key
        self.production = settings.midtrans_production if production is None else production
        self.timeout = timeout or settings.payment_provider_timeout
        self.base_url = CORE_API_URL if self.production else CORE_API_SANDBOX_URL
        self.snap_url = SNAP_URL if self.production else SNAP_SANDBOX_URL
        token = base64.b64encode(f"{self.server_key or ''}:".encode()).decode()
        self.headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Authorization": f"Basic {token}",
        }

    def _request(
        self,
        method: str,
        url: str,
        json_data: dict | None = None,
    ) -> dict[str, Any]:
        """Make an HTTP request to Midtrans.

        Raises:
            PaymentProviderTimeout: when the request times out; the outcome
                is unknown and must be reconciled with a status query
            PaymentProviderError: on any other transport or API failure
        """
        try:
            with httpx.Client(timeout=self.timeout, headers=self.headers) as client:
                response = client.request(method, url, json=json_data)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            logger.error("Midtrans request timed out: %s %s", method, url, extra={"provider": PROVIDER})
            raise PaymentProviderTimeout(PROVIDER, "Request timed out") from e
        except httpx.HTTPStatusError as e:
            logger.error(
                "Midtrans API error: %s - %s",
                e.response.status_code,
                e.response.text,
                extra={"provider": PROVIDER},
            )
            raise PaymentProviderError(
                PROVIDER,
                f"API error: {e.response.status_code}",
                provider_detail=_error_body(e.response),
            ) from e
        except httpx.RequestError as e:
            logger.error("Midtrans request error: %s", e, extra={"provider": PROVIDER})
            raise PaymentProviderError(PROVIDER, f"Request error: {e}") from e

        # Core API reports business failures with HTTP 200 and a status_code field
        status_code = str(data.get("status_code", "200"))
        if status_code.startswith(("4", "5")):
            logger.error("Midtrans rejected request: %s", data, extra={"provider": PROVIDER})
            messages = data.get("error_messages") or [data.get("status_message") or "Payment failed"]
            raise PaymentProviderError(PROVIDER, "; ".join(messages), provider_detail=data)
        return data

    # -------------------------------------------------------------------------
    # Charges
    # -------------------------------------------------------------------------

    def charge(self, *, order_id: str, invoice, payment_details: dict[str, Any]) -> ChargeResult:
        """Charge an invoice.

        A ``credit_card`` with a ``token_id`` goes through the Core API;
        everything else gets a Snap token and a redirect URL.
        """
        payload = self._build_transaction(order_id, invoice)
        if payment_details.get("type") == "credit_card" and payment_details.get("token_id"):
            payload["payment_type"] = "credit_card"
            payload["credit_card"] = {
                "token_id": payment_details["token_id"],
                "authentication": payment_details.get("authentication", True),
                "save_token_id": bool(payment_details.get("save_token_id", False)),
            }
            data = self._request("POST", f"{self.base_url}/charge", json_data=payload)
            return ChargeResult(
                provider_transaction_id=data.get("order_id", order_id),
                status=map_status(data.get("transaction_status"), data.get("fraud_status")),
                payment_method=data.get("payment_type", "credit_card"),
                redirect_url=data.get("redirect_url"),
                raw=data,
            )

        enabled = payment_details.get("enabled_payments")
        if not enabled and payment_details.get("type"):
            enabled = [payment_details["type"]]
        if enabled:
            payload["enabled_payments"] = enabled
        data = self._request("POST", f"{self.snap_url}/transactions", json_data=payload)
        return ChargeResult(
            provider_transaction_id=order_id,
            status=PaymentTransactionStatus.pending,
            payment_method=payment_details.get("type"),
            redirect_url=data.get("redirect_url"),
            client_secret=data.get("token"),
            raw=data,
        )

    def _build_transaction(self, order_id: str, invoice) -> dict[str, Any]:
        name_parts = (invoice.customer_name or "").split()
        amount = gross_amount(invoice.total_amount)
        return {
            "transaction_details": {"order_id": order_id, "gross_amount": amount},
            "customer_details": {
                "first_name": name_parts[0] if name_parts else "Customer",
                "last_name": " ".join(name_parts[1:]),
                "email": invoice.customer_email or "",
                "phone": invoice.customer_phone or "",
                "billing_address": {
                    "address": invoice.customer_address or "",
                    "country_code": "IDN",
                },
            },
            "item_details": [
                {
                    "id": str(invoice.id),
                    "price": amount,
                    "quantity": 1,
                    "name": f"Invoice {invoice.invoice_number}"[:50],
                    "category": "billing",
                }
            ],
        }

    def query_status(self, provider_transaction_id: str) -> StatusResult:
        data = self._request("GET", f"{self.base_url}/{provider_transaction_id}/status")
        return StatusResult(
            provider_transaction_id=provider_transaction_id,
            status=map_status(data.get("transaction_status"), data.get("fraud_status")),
            payment_method=data.get("payment_type"),
            raw=data,
        )

    def approve(self, provider_transaction_id: str) -> StatusResult:
        """Accept a card capture held for fraud review."""
        data = self._request("POST", f"{self.base_url}/{provider_transaction_id}/approve")
        return StatusResult(
            provider_transaction_id=provider_transaction_id,
            status=map_status(data.get("transaction_status"), data.get("fraud_status")),
            payment_method=data.get("payment_type"),
            raw=data,
        )

    def cancel(self, provider_transaction_id: str) -> StatusResult:
        data = self._request("POST", f"{self.base_url}/{provider_transaction_id}/cancel")
        return StatusResult(
            provider_transaction_id=provider_transaction_id,
            status=map_status(data.get("transaction_status"), data.get("fraud_status")),
            payment_method=data.get("payment_type"),
            raw=data,
        )

    def refund(
        self,
        provider_transaction_id: str,
        amount: Decimal,
        currency: str,
        reason: str | None = None,
    ) -> RefundResult:
        payload: dict[str, Any] = {"amount": gross_amount(amount)}
        if reason:
            payload["reason"] = reason
        data = self._request(
            "POST", f"{self.base_url}/{provider_transaction_id}/refund", json_data=payload
        )
        refund_id = str(
            data.get("refund_chargeback_id") or data.get("refund_key") or provider_transaction_id
        )
        return RefundResult(
            provider_refund_id=refund_id,
            status=PaymentTransactionStatus.completed,
            amount=Decimal(str(data.get("refund_amount", amount))),
            raw=data,
        )

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    def verify_signature(self, notification: dict[str, Any]) -> bool:
        signature = notification.get("signature_key")
        if not signature or not self.server_key:
            return False
        expected = compute_signature(
            str(notification.get("order_id", "")),
            str(notification.get("status_code", "")),
            str(notification.get("gross_amount", "")),
            self.server_key,
        )
        return hmac.compare_digest(expected, str(signature))

    def verify_and_parse_webhook(
        self, body: bytes | str | dict, signature: str | None = None
    ) -> WebhookEvent:
        """Verify a Midtrans notification and normalise it.

        Midtrans signs the notification body itself (``signature_key``), so
        the ``signature`` argument is unused.

        Raises:
            InvalidWebhookSignature: on a malformed body or bad signature
        """
        if isinstance(body, dict):
            notification = body
        else:
            try:
                notification = json.loads(body)
            except (TypeError, ValueError) as exc:
                raise InvalidWebhookSignature("Malformed Midtrans notification") from exc
        if not isinstance(notification, dict) or not self.verify_signature(notification):
            logger.warning(
                "Rejected Midtrans notification with invalid signature",
                extra={"provider": PROVIDER},
            )
            raise InvalidWebhookSignature("Invalid Midtrans signature")

        raw_status = notification.get("transaction_status")
        status = (
            map_status(raw_status, notification.get("fraud_status"))
            if raw_status in STATUS_MAP
            else None
        )
        amount = notification.get("gross_amount")
        refund_id = None
        if status == PaymentTransactionStatus.refunded:
            refunds = notification.get("refunds") or []
            if refunds:
                refund_id = refunds[-1].get("refund_chargeback_id") or refunds[-1].get("refund_key")
                amount = refunds[-1].get("refund_amount", amount)
        return WebhookEvent(
            type=event_type_for_status(status),
            provider_transaction_id=notification.get("order_id"),
            status=status,
            amount=Decimal(str(amount)) if amount is not None else None,
            refund_id=str(refund_id) if refund_id else None,
            payment_method=notification.get("payment_type"),
            raw_type=raw_status,
            raw=notification,
        )

    # -------------------------------------------------------------------------
    # Payment methods
    # -------------------------------------------------------------------------

    def create_payment_method(self, tenant_id: str, details: dict[str, Any]) -> SavedPaymentMethod:
        """Record a card locally; Midtrans keeps saved tokens per charge."""
        card_number = str(details.get("card_number") or "")
        token = details.get("saved_token_id") or details.get("token_id")
        return SavedPaymentMethod(
            provider_method_id=token or f"midtrans_{tenant_id}_{card_number[-4:] or 'manual'}",
            last4=card_number[-4:] or details.get("last4"),
            brand=details.get("brand"),
            expiry_month=details.get("expiry_month"),
            expiry_year=details.get("expiry_year"),
            bank_name=details.get("bank_name"),
        )

    def delete_payment_method(self, provider_method_id: str | None) -> None:
        # Nothing is stored at Midtrans for locally recorded methods.
        return None

    def available_payment_methods(self) -> list[dict[str, Any]]:
        return [dict(method) for method in AVAILABLE_PAYMENT_METHODS]


def _error_body(response: httpx.Response) -> dict | str:
    try:
        return response.json()
    except ValueError:
        return response.text

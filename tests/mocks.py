"""Mock utilities for testing external dependencies."""

import uuid
from decimal import Decimal
from typing import Any

import httpx

from app.models.billing import PaymentTransactionStatus
from app.services.payment_gateway import (
    ChargeResult,
    RefundResult,
    SavedPaymentMethod,
    StatusResult,
    WebhookEvent,
)


class FakeGateway:
    """In-memory payment gateway recording every call."""

    name = "fake"

    def __init__(self):
        self.charge_error: Exception | None = None
        self.charge_status = PaymentTransactionStatus.pending
        self.charge_transaction_id: str | None = None
        self.status_result: StatusResult | None = None
        self.refund_status = PaymentTransactionStatus.completed
        self.charges: list[tuple[str, dict]] = []
        self.refunds: list[tuple[str, Decimal, str | None]] = []
        self.deleted: list[str | None] = []
        self.approved: list[str] = []
        self.cancelled: list[str] = []
        self.webhook_events: list[WebhookEvent] = []

    def charge(self, *, order_id: str, invoice, payment_details: dict[str, Any]) -> ChargeResult:
        self.charges.append((order_id, payment_details))
        if self.charge_error is not None:
            raise self.charge_error
        return ChargeResult(
            provider_transaction_id=self.charge_transaction_id or order_id,
            status=self.charge_status,
            payment_method=payment_details.get("type"),
            redirect_url=f"https://pay.example.com/{order_id}",
            client_secret="tok_test",
        )

    def query_status(self, provider_transaction_id: str) -> StatusResult:
        if self.status_result is not None:
            return self.status_result
        return StatusResult(provider_transaction_id, PaymentTransactionStatus.pending)

    def approve(self, provider_transaction_id: str) -> StatusResult:
        self.approved.append(provider_transaction_id)
        return StatusResult(provider_transaction_id, PaymentTransactionStatus.completed)

    def cancel(self, provider_transaction_id: str) -> StatusResult:
        self.cancelled.append(provider_transaction_id)
        return StatusResult(provider_transaction_id, PaymentTransactionStatus.cancelled)

    def refund(
        self, provider_transaction_id: str, amount: Decimal, currency: str, reason: str | None = None
    ) -> RefundResult:
        self.refunds.append((provider_transaction_id, amount, reason))
        return RefundResult(
            provider_refund_id=f"rf-{len(self.refunds)}",
            status=self.refund_status,
            amount=amount,
        )

    def verify_and_parse_webhook(self, body, signature=None) -> WebhookEvent:
        return self.webhook_events.pop(0)

    def create_payment_method(self, tenant_id: str, details: dict[str, Any]) -> SavedPaymentMethod:
        return SavedPaymentMethod(
            provider_method_id=details.get("token") or f"pm_{uuid.uuid4().hex[:12]}",
            last4=details.get("last4", "4242"),
            brand=details.get("brand", "visa"),
            expiry_month=12,
            expiry_year=2030,
        )

    def delete_payment_method(self, provider_method_id: str | None) -> None:
        self.deleted.append(provider_method_id)

    def available_payment_methods(self) -> list[dict[str, Any]]:
        return [{"type": "card", "name": "Card"}]


class FakeHTTPXClient:
    """Stand-in for ``httpx.Client`` returning canned responses in order."""

    def __init__(self, responses: list[httpx.Response | Exception] | None = None):
        self.responses = list(responses or [])
        self.requests: list[tuple[str, str, dict | None]] = []

    def __call__(self, *args, **kwargs) -> "FakeHTTPXClient":
        return self

    def __enter__(self):
        return self

    def __exit__(self, *args):
        return False

    def request(self, method: str, url: str, json: dict | None = None) -> httpx.Response:
        self.requests.append((method, url, json))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        response.request = httpx.Request(method, url)
        return response

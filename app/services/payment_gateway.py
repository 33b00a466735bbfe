"""Provider-neutral payment gateway contract.

Midtrans and Stripe adapters both return these result types, so the
payment façade never looks at a raw provider payload to decide state.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Protocol

from app.models.billing import PaymentTransactionStatus


class WebhookEventType(enum.Enum):
    success = "payment.success"
    failed = "payment.failed"
    refunded = "payment.refunded"
    pending = "payment.pending"
    unhandled = "payment.unhandled"


_EVENT_FOR_STATUS = {
    PaymentTransactionStatus.completed: WebhookEventType.success,
    PaymentTransactionStatus.failed: WebhookEventType.failed,
    PaymentTransactionStatus.expired: WebhookEventType.failed,
    PaymentTransactionStatus.cancelled: WebhookEventType.failed,
    PaymentTransactionStatus.refunded: WebhookEventType.refunded,
    PaymentTransactionStatus.pending: WebhookEventType.pending,
    PaymentTransactionStatus.processing: WebhookEventType.pending,
}


def event_type_for_status(status: PaymentTransactionStatus | None) -> WebhookEventType:
    if status is None:
        return WebhookEventType.unhandled
    return _EVENT_FOR_STATUS[status]


@dataclass
class ChargeResult:
    provider_transaction_id: str
    status: PaymentTransactionStatus
    payment_method: str | None = None
    redirect_url: str | None = None
    client_secret: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class StatusResult:
    provider_transaction_id: str
    status: PaymentTransactionStatus
    payment_method: str | None = None
    provider_reference: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    provider_refund_id: str
    status: PaymentTransactionStatus
    amount: Decimal
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class WebhookEvent:
    """A verified provider callback in the internal vocabulary."""

    type: WebhookEventType
    provider_transaction_id: str | None
    provider_reference: str | None = None
    status: PaymentTransactionStatus | None = None
    amount: Decimal | None = None
    refund_id: str | None = None
    payment_method: str | None = None
    failure_reason: str | None = None
    raw_type: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class SavedPaymentMethod:
    provider_method_id: str
    last4: str | None = None
    brand: str | None = None
    expiry_month: int | None = None
    expiry_year: int | None = None
    bank_name: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    name: str

    def charge(self, *, order_id: str, invoice, payment_details: dict[str, Any]) -> ChargeResult:
        ...

    def query_status(self, provider_transaction_id: str) -> StatusResult:
        ...

    def approve(self, provider_transaction_id: str) -> StatusResult:
        ...

    def cancel(self, provider_transaction_id: str) -> StatusResult:
        ...

    def refund(
        self, provider_transaction_id: str, amount: Decimal, currency: str, reason: str | None = None
    ) -> RefundResult:
        ...

    def verify_and_parse_webhook(self, body: bytes | str | dict, signature: str | None = None) -> WebhookEvent:
        ...

    def create_payment_method(self, tenant_id: str, details: dict[str, Any]) -> SavedPaymentMethod:
        ...

    def delete_payment_method(self, provider_method_id: str | None) -> None:
        ...

    def available_payment_methods(self) -> list[dict[str, Any]]:
        ...

"""Payment provider façade.

Routes payments, refunds, saved payment methods and webhooks to the
Midtrans or Stripe adapter and keeps transactions, invoices and billing
cycles consistent with the provider's answer.
"""

import logging
from decimal import Decimal
from typing import Any

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.errors import (
    InvalidInvoiceState,
    InvalidTransactionState,
    InvalidWebhookSignature,
    NotFoundError,
    PaymentMethodInUse,
    PaymentProviderError,
    PaymentProviderTimeout,
    ValidationFailed,
)
from app.metrics import record_payment_attempt, record_webhook
from app.models.billing import (
    Invoice,
    InvoiceStatus,
    PaymentMethod,
    PaymentMethodType,
    PaymentProviderType,
    PaymentTransaction,
    PaymentTransactionStatus,
    Subscription,
    TransactionType,
)
from app.models.tenant import Tenant
from app.services.billing._common import (
    BILLABLE_SUBSCRIPTION_STATUSES,
    _now,
    can_transition,
    ensure_transition,
)
from app.services.billing.invoices import Invoices
from app.services.common import (
    apply_pagination,
    coerce_uuid,
    get_or_404,
    round_money,
    to_decimal,
    validate_enum,
)
from app.services.events import emit_event
from app.services.events.types import EventType
from app.services.midtrans import MidtransClient
from app.services.payment_gateway import (
    PaymentGateway,
    StatusResult,
    WebhookEvent,
    WebhookEventType,
)
from app.services.response import list_response
from app.services.stripe_gateway import StripeGateway

logger = logging.getLogger(__name__)

_GATEWAYS = {
    PaymentProviderType.midtrans: MidtransClient,
    PaymentProviderType.stripe: StripeGateway,
}

_PAYABLE_INVOICE_STATUSES = (InvoiceStatus.sent, InvoiceStatus.overdue)
_OPEN_TRANSACTION_STATUSES = (
    PaymentTransactionStatus.pending,
    PaymentTransactionStatus.processing,
)
_FAILED_TRANSACTION_STATUSES = (
    PaymentTransactionStatus.failed,
    PaymentTransactionStatus.expired,
    PaymentTransactionStatus.cancelled,
)


def get_gateway(provider: PaymentProviderType | str) -> PaymentGateway:
    """Return the adapter for a provider."""
    provider = validate_enum(provider, PaymentProviderType, "payment provider")
    return _GATEWAYS[provider]()


def _merge_metadata(transaction: PaymentTransaction, **values) -> None:
    metadata = dict(transaction.metadata_ or {})
    metadata.update({key: value for key, value in values.items() if value is not None})
    transaction.metadata_ = metadata


def _refunded_total(db: Session, parent: PaymentTransaction) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(PaymentTransaction.amount), 0))
        .filter(PaymentTransaction.parent_transaction_id == parent.id)
        .filter(PaymentTransaction.transaction_type == TransactionType.refund)
        .filter(
            PaymentTransaction.status.in_(
                (PaymentTransactionStatus.completed, PaymentTransactionStatus.pending)
            )
        )
        .scalar()
    )
    return to_decimal(total)


def _invoice_refunded_total(db: Session, invoice: Invoice) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(PaymentTransaction.amount), 0))
        .filter(PaymentTransaction.invoice_id == invoice.id)
        .filter(PaymentTransaction.transaction_type == TransactionType.refund)
        .filter(PaymentTransaction.status == PaymentTransactionStatus.completed)
        .scalar()
    )
    return to_decimal(total)


def _apply_status(
    db: Session,
    transaction: PaymentTransaction,
    status: PaymentTransactionStatus,
    failure_reason: str | None = None,
    payment_method: str | None = None,
) -> bool:
    """Move a payment transaction to ``status`` and cascade to its invoice.

    A completed payment marks the invoice (and its billing cycle) paid in
    the same unit of work. The caller commits.
    """
    if not ensure_transition(transaction.status, status):
        return False
    now = _now()
    transaction.status = status
    if payment_method:
        transaction.payment_method = payment_method
    if status not in _OPEN_TRANSACTION_STATUSES:
        transaction.processed_at = now
        if (transaction.metadata_ or {}).get("needs_reconciliation"):
            metadata = dict(transaction.metadata_)
            metadata.pop("needs_reconciliation")
            transaction.metadata_ = metadata

    invoice = transaction.invoice
    if status == PaymentTransactionStatus.completed:
        if can_transition(invoice.status, InvoiceStatus.paid):
            Invoices.mark_paid(
                db,
                invoice,
                paid_at=now,
                provider=transaction.provider,
                payment_method=transaction.payment_method,
                external_id=transaction.provider_transaction_id,
                commit=False,
            )
        else:
            # Money arrived for an invoice that can no longer be paid.
            logger.warning(
                "Payment %s completed for invoice %s in status %s",
                transaction.id,
                invoice.invoice_number,
                invoice.status.value,
            )
            _merge_metadata(transaction, requires_manual_review=True)
        emit_event(
            db,
            EventType.payment_received,
            {
                "provider": transaction.provider.value,
                "amount": str(transaction.amount),
                "provider_transaction_id": transaction.provider_transaction_id,
            },
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
            transaction_id=transaction.id,
        )
    elif status in _FAILED_TRANSACTION_STATUSES:
        transaction.failure_reason = failure_reason or transaction.failure_reason or status.value
        emit_event(
            db,
            EventType.payment_failed,
            {
                "provider": transaction.provider.value,
                "status": status.value,
                "reason": transaction.failure_reason,
            },
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
            transaction_id=transaction.id,
        )
    return True


def _apply_status_result(db: Session, transaction: PaymentTransaction, result: StatusResult) -> None:
    if result.provider_transaction_id:
        transaction.provider_transaction_id = result.provider_transaction_id
    if result.provider_reference:
        transaction.provider_reference = result.provider_reference
    if can_transition(transaction.status, result.status):
        _apply_status(db, transaction, result.status, payment_method=result.payment_method)
    else:
        logger.warning(
            "Ignoring provider status %s for transaction %s in status %s",
            result.status.value,
            transaction.id,
            transaction.status.value,
        )


def _open_payment(db: Session, transaction_id: str, tenant_id: str | None) -> PaymentTransaction:
    transaction = PaymentProviders.get_transaction(db, transaction_id, tenant_id)
    if (
        transaction.transaction_type != TransactionType.payment
        or transaction.status not in _OPEN_TRANSACTION_STATUSES
        or not transaction.provider_transaction_id
    ):
        raise InvalidTransactionState(
            f"Only open payments can be approved or cancelled (status: {transaction.status.value})"
        )
    return transaction


def _settle_refund(db: Session, parent: PaymentTransaction, refund: PaymentTransaction) -> None:
    """Cascade a completed refund to the parent payment and its invoice."""
    invoice = parent.invoice
    if _refunded_total(db, parent) >= to_decimal(parent.amount):
        ensure_transition(parent.status, PaymentTransactionStatus.refunded)
        parent.status = PaymentTransactionStatus.refunded
    if invoice.status == InvoiceStatus.paid and _invoice_refunded_total(db, invoice) >= to_decimal(
        invoice.total_amount
    ):
        invoice.status = InvoiceStatus.refunded
        emit_event(
            db,
            EventType.invoice_refunded,
            {"invoice_number": invoice.invoice_number},
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
        )
    emit_event(
        db,
        EventType.payment_refunded,
        {
            "provider": refund.provider.value,
            "amount": str(refund.amount),
            "provider_refund_id": refund.provider_transaction_id,
        },
        tenant_id=invoice.tenant_id,
        invoice_id=invoice.id,
        transaction_id=refund.id,
    )


def _tenant_method(db: Session, tenant_id: str, payment_method_id: str) -> PaymentMethod:
    method = get_or_404(db, PaymentMethod, payment_method_id, detail="Payment method not found")
    if method.tenant_id != coerce_uuid(tenant_id):
        raise NotFoundError("Payment method not found")
    return method


class PaymentProviders:
    """Provider-neutral payment operations."""

    @staticmethod
    def process_payment(
        db: Session,
        invoice_id: str,
        provider: PaymentProviderType | str,
        payment_details: dict[str, Any] | None = None,
        tenant_id: str | None = None,
    ) -> dict:
        """Charge an invoice through a provider.

        A pending transaction is written before the provider call. A
        timeout leaves it pending and flagged for reconciliation; a
        provider error marks it failed. Both outcomes are committed before
        the error propagates.

        Returns:
            Dictionary with keys:
            - transaction: the PaymentTransaction
            - redirect_url: hosted payment page, when the provider needs one
            - client_secret: client-side confirmation token, when issued
        """
        provider = validate_enum(provider, PaymentProviderType, "payment provider")
        payment_details = payment_details or {}
        invoice = Invoices.get(db, invoice_id, tenant_id)
        if invoice.original_invoice_id is not None:
            raise InvalidInvoiceState("Credit notes cannot be paid")
        if invoice.status not in _PAYABLE_INVOICE_STATUSES:
            raise InvalidInvoiceState(f"Invoice cannot be paid (status: {invoice.status.value})")

        gateway = get_gateway(provider)
        transaction = PaymentTransaction(
            invoice_id=invoice.id,
            transaction_type=TransactionType.payment,
            amount=invoice.total_amount,
            currency=invoice.currency,
            status=PaymentTransactionStatus.pending,
            provider=provider,
            payment_method=payment_details.get("type"),
            metadata_={},
        )
        db.add(transaction)
        db.flush()
        order_id = f"{invoice.invoice_number}-{transaction.id.hex[:8]}"
        transaction.provider_transaction_id = order_id
        _merge_metadata(transaction, order_id=order_id)
        emit_event(
            db,
            EventType.payment_initiated,
            {"provider": provider.value, "amount": str(invoice.total_amount), "order_id": order_id},
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
            transaction_id=transaction.id,
        )

        try:
            result = gateway.charge(
                order_id=order_id, invoice=invoice, payment_details=payment_details
            )
        except PaymentProviderTimeout:
            logger.warning(
                "Payment %s for invoice %s timed out; awaiting reconciliation",
                transaction.id,
                invoice.invoice_number,
            )
            _merge_metadata(transaction, needs_reconciliation=True)
            record_payment_attempt(provider.value, "timeout")
            db.commit()
            raise
        except PaymentProviderError as exc:
            logger.warning(
                "Payment %s for invoice %s failed: %s",
                transaction.id,
                invoice.invoice_number,
                exc.message,
            )
            _apply_status(
                db, transaction, PaymentTransactionStatus.failed, failure_reason=exc.message
            )
            record_payment_attempt(provider.value, "failed")
            db.commit()
            raise

        transaction.provider_transaction_id = result.provider_transaction_id
        _merge_metadata(transaction, redirect_url=result.redirect_url)
        _apply_status(db, transaction, result.status, payment_method=result.payment_method)
        if result.payment_method and not transaction.payment_method:
            transaction.payment_method = result.payment_method
        record_payment_attempt(provider.value, result.status.value)
        db.commit()
        db.refresh(transaction)
        logger.info(
            "Payment %s for invoice %s is %s",
            transaction.id,
            invoice.invoice_number,
            transaction.status.value,
            extra={"provider": provider.value},
        )
        return {
            "transaction": transaction,
            "redirect_url": result.redirect_url,
            "client_secret": result.client_secret,
        }

    @staticmethod
    def get_transaction(
        db: Session, transaction_id: str, tenant_id: str | None = None
    ) -> PaymentTransaction:
        transaction = get_or_404(
            db, PaymentTransaction, transaction_id, detail="Payment transaction not found"
        )
        if tenant_id and transaction.invoice.tenant_id != coerce_uuid(tenant_id):
            raise NotFoundError("Payment transaction not found")
        return transaction

    @staticmethod
    def get_payment_status(
        db: Session, transaction_id: str, tenant_id: str | None = None
    ) -> PaymentTransaction:
        """Return a transaction, asking the provider first while it is open."""
        transaction = PaymentProviders.get_transaction(db, transaction_id, tenant_id)
        if transaction.status not in _OPEN_TRANSACTION_STATUSES:
            return transaction
        if not transaction.provider_transaction_id:
            return transaction

        gateway = get_gateway(transaction.provider)
        result = gateway.query_status(transaction.provider_transaction_id)
        _apply_status_result(db, transaction, result)
        db.commit()
        db.refresh(transaction)
        return transaction

    @staticmethod
    def approve_payment(
        db: Session, transaction_id: str, tenant_id: str | None = None
    ) -> PaymentTransaction:
        """Release a payment the provider is holding.

        Midtrans holds card captures flagged for fraud review; Stripe holds
        PaymentIntents authorised with manual capture.

        Raises:
            InvalidTransactionState: if the payment is no longer open
        """
        transaction = _open_payment(db, transaction_id, tenant_id)
        result = get_gateway(transaction.provider).approve(transaction.provider_transaction_id)
        _apply_status_result(db, transaction, result)
        db.commit()
        db.refresh(transaction)
        logger.info(
            "Approved payment %s (%s)",
            transaction.id,
            transaction.status.value,
            extra={"provider": transaction.provider.value, "transaction_id": str(transaction.id)},
        )
        return transaction

    @staticmethod
    def cancel_payment(
        db: Session, transaction_id: str, tenant_id: str | None = None
    ) -> PaymentTransaction:
        """Cancel an open payment at the provider and locally.

        Raises:
            InvalidTransactionState: if the payment is no longer open
        """
        transaction = _open_payment(db, transaction_id, tenant_id)
        result = get_gateway(transaction.provider).cancel(transaction.provider_transaction_id)
        _apply_status_result(db, transaction, result)
        db.commit()
        db.refresh(transaction)
        logger.info(
            "Cancelled payment %s (%s)",
            transaction.id,
            transaction.status.value,
            extra={"provider": transaction.provider.value, "transaction_id": str(transaction.id)},
        )
        return transaction

    @staticmethod
    def refund_payment(
        db: Session,
        transaction_id: str,
        amount=None,
        reason: str | None = None,
        tenant_id: str | None = None,
    ) -> PaymentTransaction:
        """Refund all or part of a completed payment.

        Raises:
            InvalidTransactionState: if the payment is not completed
            ValidationFailed: if the amount exceeds what is left to refund
        """
        parent = PaymentProviders.get_transaction(db, transaction_id, tenant_id)
        if (
            parent.transaction_type != TransactionType.payment
            or parent.status != PaymentTransactionStatus.completed
        ):
            raise InvalidTransactionState("Only completed payments can be refunded")
        refundable = to_decimal(parent.amount) - _refunded_total(db, parent)
        amount = round_money(amount) if amount is not None else round_money(refundable)
        if amount <= 0:
            raise ValidationFailed("Refund amount must be greater than 0")
        if amount > refundable:
            raise ValidationFailed(f"Refund amount exceeds refundable balance of {refundable}")

        gateway = get_gateway(parent.provider)
        result = gateway.refund(parent.provider_transaction_id, amount, parent.currency, reason)
        refund = PaymentTransaction(
            invoice_id=parent.invoice_id,
            parent_transaction_id=parent.id,
            transaction_type=TransactionType.refund,
            amount=round_money(result.amount),
            currency=parent.currency,
            status=result.status,
            provider=parent.provider,
            provider_transaction_id=result.provider_refund_id,
            payment_method=parent.payment_method,
            processed_at=_now() if result.status == PaymentTransactionStatus.completed else None,
            metadata_={"reason": reason} if reason else {},
        )
        db.add(refund)
        db.flush()
        if refund.status == PaymentTransactionStatus.completed:
            _settle_refund(db, parent, refund)
        record_payment_attempt(parent.provider.value, "refund")
        db.commit()
        db.refresh(refund)
        logger.info(
            "Refunded %s of payment %s (%s)",
            refund.amount,
            parent.id,
            refund.status.value,
            extra={"provider": parent.provider.value},
        )
        return refund

    @staticmethod
    def list_transactions(
        db: Session,
        tenant_id: str,
        status: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict:
        query = (
            db.query(PaymentTransaction)
            .join(Invoice, PaymentTransaction.invoice_id == Invoice.id)
            .filter(Invoice.tenant_id == coerce_uuid(tenant_id))
        )
        if status:
            query = query.filter(
                PaymentTransaction.status
                == validate_enum(status, PaymentTransactionStatus, "transaction status")
            )
        total = query.count()
        items = apply_pagination(
            query.order_by(PaymentTransaction.created_at.desc()), limit, offset
        ).all()
        return list_response(items, limit, offset, total)

    # -------------------------------------------------------------------------
    # Payment methods
    # -------------------------------------------------------------------------

    @staticmethod
    def get_payment_methods(db: Session, tenant_id: str) -> list[PaymentMethod]:
        return (
            db.query(PaymentMethod)
            .filter(PaymentMethod.tenant_id == coerce_uuid(tenant_id))
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
            .all()
        )

    @staticmethod
    def add_payment_method(
        db: Session,
        tenant_id: str,
        provider: PaymentProviderType | str,
        method_type: PaymentMethodType | str = PaymentMethodType.card,
        details: dict[str, Any] | None = None,
        is_default: bool = False,
    ) -> PaymentMethod:
        """Save a payment method with the provider and locally.

        A tenant's first method always becomes the default.
        """
        tenant = get_or_404(db, Tenant, tenant_id, detail="Tenant not found")
        provider = validate_enum(provider, PaymentProviderType, "payment provider")
        method_type = validate_enum(method_type, PaymentMethodType, "payment method type")
        saved = get_gateway(provider).create_payment_method(str(tenant.id), details or {})

        has_methods = (
            db.query(PaymentMethod.id).filter(PaymentMethod.tenant_id == tenant.id).first()
            is not None
        )
        make_default = is_default or not has_methods
        if make_default:
            db.query(PaymentMethod).filter(
                PaymentMethod.tenant_id == tenant.id,
                PaymentMethod.is_default.is_(True),
            ).update({"is_default": False})
        method = PaymentMethod(
            tenant_id=tenant.id,
            method_type=method_type,
            provider=provider,
            provider_method_id=saved.provider_method_id,
            last4=saved.last4,
            brand=saved.brand,
            expiry_month=saved.expiry_month,
            expiry_year=saved.expiry_year,
            bank_name=saved.bank_name,
            is_default=make_default,
            metadata_=saved.metadata or {},
        )
        db.add(method)
        db.commit()
        db.refresh(method)
        return method

    @staticmethod
    def remove_payment_method(db: Session, tenant_id: str, payment_method_id: str) -> None:
        """Delete a saved method unless a live subscription pays with it."""
        method = _tenant_method(db, tenant_id, payment_method_id)
        in_use = (
            db.query(Subscription.id)
            .filter(Subscription.default_payment_method_id == method.id)
            .filter(Subscription.status.in_(BILLABLE_SUBSCRIPTION_STATUSES))
            .first()
        )
        if in_use:
            raise PaymentMethodInUse("Payment method is used by an active subscription")

        get_gateway(method.provider).delete_payment_method(method.provider_method_id)
        db.query(Subscription).filter(
            Subscription.default_payment_method_id == method.id
        ).update({"default_payment_method_id": None})
        db.delete(method)
        db.commit()

    @staticmethod
    def set_default_payment_method(
        db: Session, tenant_id: str, payment_method_id: str
    ) -> PaymentMethod:
        method = _tenant_method(db, tenant_id, payment_method_id)
        db.query(PaymentMethod).filter(
            PaymentMethod.tenant_id == method.tenant_id,
            PaymentMethod.id != method.id,
        ).update({"is_default": False})
        method.is_default = True
        subscriptions = (
            db.query(Subscription)
            .filter(Subscription.tenant_id == method.tenant_id)
            .filter(Subscription.status.in_(BILLABLE_SUBSCRIPTION_STATUSES))
            .all()
        )
        for subscription in subscriptions:
            subscription.default_payment_method_id = method.id
        db.commit()
        db.refresh(method)
        return method

    @staticmethod
    def get_available_payment_methods(provider: PaymentProviderType | str) -> list[dict]:
        return get_gateway(provider).available_payment_methods()

    # -------------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------------

    @staticmethod
    def handle_webhook(
        db: Session,
        provider: PaymentProviderType | str,
        body: bytes | str | dict,
        signature: str | None = None,
    ) -> dict:
        """Verify a provider callback and apply it.

        Nothing is read or written before the signature checks out. Late or
        repeated notifications that would move a transaction backwards are
        logged and ignored.

        Raises:
            InvalidWebhookSignature: when verification fails
        """
        provider = validate_enum(provider, PaymentProviderType, "payment provider")
        gateway = get_gateway(provider)
        try:
            event = gateway.verify_and_parse_webhook(body, signature)
        except InvalidWebhookSignature:
            record_webhook(provider.value, "invalid_signature")
            raise

        summary = {"handled": False, "event": event.type.value, "raw_type": event.raw_type}
        if event.type in (WebhookEventType.unhandled, WebhookEventType.pending):
            logger.info(
                "Ignoring %s webhook %s",
                provider.value,
                event.raw_type,
                extra={"provider": provider.value},
            )
            record_webhook(provider.value, "ignored")
            return summary

        transaction = None
        if event.provider_transaction_id:
            transaction = (
                db.query(PaymentTransaction)
                .filter(PaymentTransaction.provider == provider)
                .filter(PaymentTransaction.transaction_type == TransactionType.payment)
                .filter(
                    or_(
                        PaymentTransaction.provider_transaction_id == event.provider_transaction_id,
                        PaymentTransaction.provider_reference == event.provider_transaction_id,
                    )
                )
                .first()
            )
        if not transaction:
            logger.info(
                "No transaction matches %s webhook for %s",
                provider.value,
                event.provider_transaction_id,
                extra={"provider": provider.value},
            )
            record_webhook(provider.value, "unmatched")
            return summary

        if event.provider_reference and not transaction.provider_reference:
            transaction.provider_reference = event.provider_reference
        if event.type == WebhookEventType.refunded:
            handled = PaymentProviders._apply_webhook_refund(db, transaction, event)
        elif can_transition(transaction.status, event.status):
            handled = _apply_status(
                db,
                transaction,
                event.status,
                failure_reason=event.failure_reason,
                payment_method=event.payment_method,
            )
        else:
            logger.info(
                "Ignoring %s webhook moving transaction %s from %s to %s",
                provider.value,
                transaction.id,
                transaction.status.value,
                event.status.value,
            )
            handled = False
        db.commit()
        record_webhook(provider.value, "processed" if handled else "duplicate")
        summary.update(
            handled=handled,
            transaction_id=str(transaction.id),
            status=transaction.status.value,
        )
        return summary

    @staticmethod
    def _apply_webhook_refund(
        db: Session, parent: PaymentTransaction, event: WebhookEvent
    ) -> bool:
        if event.refund_id:
            existing = (
                db.query(PaymentTransaction.id)
                .filter(PaymentTransaction.parent_transaction_id == parent.id)
                .filter(PaymentTransaction.provider_transaction_id == event.refund_id)
                .first()
            )
            if existing:
                return False
        if parent.status != PaymentTransactionStatus.completed:
            return False
        remaining = to_decimal(parent.amount) - _refunded_total(db, parent)
        if remaining <= 0:
            return False
        amount = round_money(event.amount) if event.amount is not None else remaining
        refund = PaymentTransaction(
            invoice_id=parent.invoice_id,
            parent_transaction_id=parent.id,
            transaction_type=TransactionType.refund,
            amount=min(amount, remaining),
            currency=parent.currency,
            status=PaymentTransactionStatus.completed,
            provider=parent.provider,
            provider_transaction_id=event.refund_id,
            payment_method=parent.payment_method,
            processed_at=_now(),
            metadata_={"source": "webhook"},
        )
        db.add(refund)
        db.flush()
        _settle_refund(db, parent, refund)
        return True

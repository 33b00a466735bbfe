"""Invoice generation, payment state and credit notes."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session, selectinload

from app.errors import InvalidInvoiceState, NotFoundError, ValidationFailed
from app.models.billing import (
    BillingCycle,
    BillingCycleKind,
    BillingCycleStatus,
    Invoice,
    InvoiceItem,
    InvoiceItemType,
    InvoiceStatus,
    PaymentProviderType,
)
from app.schemas.billing import InvoiceItemCreate
from app.services.billing._common import _as_utc, _now, can_transition, ensure_transition
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_or_404,
    round_money,
    to_decimal,
    validate_enum,
)
from app.services.events import emit_event
from app.services.events.types import EventType
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

_STATUS_EVENTS = {
    InvoiceStatus.sent: EventType.invoice_sent,
    InvoiceStatus.overdue: EventType.invoice_overdue,
    InvoiceStatus.cancelled: EventType.invoice_voided,
    InvoiceStatus.refunded: EventType.invoice_refunded,
}

_CYCLE_STATUS_FOR_INVOICE = {
    InvoiceStatus.overdue: BillingCycleStatus.overdue,
    InvoiceStatus.cancelled: BillingCycleStatus.cancelled,
}

_SETTLED_STATUSES = (InvoiceStatus.paid, InvoiceStatus.cancelled, InvoiceStatus.refunded)


def invoice_number_for_cycle(cycle: BillingCycle, issued: datetime) -> str:
    """Deterministic invoice number; a retry for the same cycle gets the same one."""
    return f"INV-{issued:%Y%m}-{cycle.id.hex[:12].upper()}"


def _money(value) -> float:
    return float(round_money(to_decimal(value)))


def _iso(value: datetime | None) -> str | None:
    return _as_utc(value).isoformat() if value else None


def _merge_metadata(invoice: Invoice, metadata: dict | None) -> None:
    if metadata:
        invoice.metadata_ = {**(invoice.metadata_ or {}), **metadata}


def _sync_cycle_status(invoice: Invoice, status: InvoiceStatus) -> None:
    cycle = invoice.billing_cycle
    target = _CYCLE_STATUS_FOR_INVOICE.get(status)
    if cycle is None or target is None:
        return
    if can_transition(cycle.status, target):
        cycle.status = target


def _cycle_line_description(cycle: BillingCycle, plan_name: str) -> str:
    if cycle.kind == BillingCycleKind.proration:
        return cycle.description or f"Prorated upgrade to {plan_name}"
    start = _as_utc(cycle.period_start)
    end = _as_utc(cycle.period_end)
    return f"{plan_name} subscription ({start:%Y-%m-%d} - {end:%Y-%m-%d})"


class Invoices(ListResponseMixin):
    @staticmethod
    def _filtered(db: Session, tenant_id, status, date_from, date_to):
        query = db.query(Invoice)
        if tenant_id:
            query = query.filter(Invoice.tenant_id == coerce_uuid(tenant_id))
        if status:
            query = query.filter(
                Invoice.status == validate_enum(status, InvoiceStatus, "invoice status")
            )
        if date_from:
            query = query.filter(Invoice.issued_date >= date_from)
        if date_to:
            query = query.filter(Invoice.issued_date <= date_to)
        return query

    @staticmethod
    def list(
        db: Session,
        tenant_id: str | None,
        status: str | None,
        date_from: datetime | None,
        date_to: datetime | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[Invoice]:
        query = Invoices._filtered(db, tenant_id, status, date_from, date_to).options(
            selectinload(Invoice.items)
        )
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {
                "issued_date": Invoice.issued_date,
                "due_date": Invoice.due_date,
                "total_amount": Invoice.total_amount,
                "created_at": Invoice.created_at,
            },
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def count(
        db: Session,
        tenant_id: str | None,
        status: str | None,
        date_from: datetime | None,
        date_to: datetime | None,
        order_by: str,
        order_dir: str,
    ) -> int:
        return Invoices._filtered(db, tenant_id, status, date_from, date_to).count()

    @staticmethod
    def get(db: Session, invoice_id: str, tenant_id: str | None = None) -> Invoice:
        invoice = get_or_404(db, Invoice, invoice_id, detail="Invoice not found")
        if tenant_id and invoice.tenant_id != coerce_uuid(tenant_id):
            # Another tenant's invoice is indistinguishable from a missing one.
            raise NotFoundError("Invoice not found")
        return invoice

    @staticmethod
    def generate_invoice(
        db: Session,
        billing_cycle: BillingCycle,
        due_days: int | None = None,
        notes: str | None = None,
        commit: bool = True,
    ) -> Invoice:
        """Issue the invoice for a billing cycle.

        Idempotent per cycle: a second call returns the invoice already
        issued. The invoice goes straight to ``sent`` and the cycle follows.
        """
        existing = db.query(Invoice).filter(Invoice.billing_cycle_id == billing_cycle.id).first()
        if existing:
            logger.info(
                "Invoice %s already issued for billing cycle %s",
                existing.invoice_number,
                billing_cycle.id,
                extra={"invoice_id": str(existing.id), "billing_cycle_id": str(billing_cycle.id)},
            )
            return existing

        subscription = billing_cycle.subscription
        tenant = subscription.tenant
        plan = subscription.plan
        now = _now()
        if due_days is None:
            due_date = _as_utc(billing_cycle.due_date)
        else:
            due_date = now + timedelta(days=due_days)

        base = round_money(billing_cycle.base_amount)
        overage = round_money(billing_cycle.overage_amount)
        tax = round_money(billing_cycle.tax_amount)
        discount = round_money(billing_cycle.discount_amount)
        subtotal = base + overage

        invoice = Invoice(
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            billing_cycle_id=billing_cycle.id,
            invoice_number=invoice_number_for_cycle(billing_cycle, now),
            status=InvoiceStatus.sent,
            issued_date=now,
            due_date=due_date,
            subtotal=subtotal,
            tax_amount=tax,
            discount_amount=discount,
            total_amount=subtotal + tax - discount,
            currency=billing_cycle.currency,
            customer_name=tenant.business_name if tenant else None,
            customer_email=tenant.business_email if tenant else None,
            customer_phone=tenant.business_phone if tenant else None,
            customer_address=tenant.business_address if tenant else None,
            notes=notes,
            metadata_={"billing_cycle_kind": billing_cycle.kind.value},
        )

        lines = [
            (
                _cycle_line_description(billing_cycle, plan.name),
                base,
                InvoiceItemType.proration
                if billing_cycle.kind == BillingCycleKind.proration
                else InvoiceItemType.subscription,
            )
        ]
        if overage > 0:
            lines.append(("Usage overage charges", overage, InvoiceItemType.overage))
        if tax > 0:
            lines.append(("Tax", tax, InvoiceItemType.tax))
        if discount > 0:
            lines.append(("Discount", -discount, InvoiceItemType.discount))
        for position, (description, amount, item_type) in enumerate(lines):
            invoice.items.append(
                InvoiceItem(
                    position=position,
                    description=description,
                    quantity=Decimal("1"),
                    unit_price=amount,
                    amount=amount,
                    item_type=item_type,
                )
            )
        db.add(invoice)

        if ensure_transition(billing_cycle.status, BillingCycleStatus.sent):
            billing_cycle.status = BillingCycleStatus.sent
        db.flush()

        emit_event(
            db,
            EventType.invoice_created,
            {
                "invoice_number": invoice.invoice_number,
                "total_amount": str(invoice.total_amount),
                "billing_cycle_id": str(billing_cycle.id),
            },
            tenant_id=invoice.tenant_id,
            subscription_id=subscription.id,
            invoice_id=invoice.id,
        )
        logger.info(
            "Issued invoice %s for %s %s",
            invoice.invoice_number,
            invoice.total_amount,
            invoice.currency,
            extra={
                "tenant_id": str(invoice.tenant_id),
                "invoice_id": str(invoice.id),
                "billing_cycle_id": str(billing_cycle.id),
            },
        )
        if commit:
            db.commit()
            db.refresh(invoice)
        return invoice

    @staticmethod
    def mark_paid(
        db: Session,
        invoice: Invoice,
        paid_at: datetime | None = None,
        provider: PaymentProviderType | None = None,
        payment_method: str | None = None,
        external_id: str | None = None,
        commit: bool = True,
    ) -> Invoice:
        """Mark an invoice paid together with its billing cycle.

        This is the only code path that moves an invoice to ``paid``; the
        linked cycle becomes ``paid`` with ``processed_at`` in the same
        unit of work. Paying an already paid invoice is a no-op.
        """
        if invoice.status == InvoiceStatus.paid:
            return invoice
        ensure_transition(invoice.status, InvoiceStatus.paid)
        paid_at = paid_at or _now()
        invoice.status = InvoiceStatus.paid
        invoice.paid_date = paid_at
        if provider is not None:
            invoice.payment_provider = provider
        if payment_method:
            invoice.payment_method = payment_method
        if external_id:
            invoice.external_id = external_id

        cycle = invoice.billing_cycle
        if cycle is not None and ensure_transition(cycle.status, BillingCycleStatus.paid):
            cycle.status = BillingCycleStatus.paid
            cycle.processed_at = paid_at

        emit_event(
            db,
            EventType.invoice_paid,
            {"invoice_number": invoice.invoice_number, "total_amount": str(invoice.total_amount)},
            tenant_id=invoice.tenant_id,
            subscription_id=invoice.subscription_id,
            invoice_id=invoice.id,
        )
        if commit:
            db.commit()
            db.refresh(invoice)
        return invoice

    @staticmethod
    def update_invoice_status(
        db: Session, invoice_id: str, status, metadata: dict | None = None
    ) -> Invoice:
        invoice = Invoices.get(db, invoice_id)
        target = validate_enum(status, InvoiceStatus, "invoice status")
        if target == InvoiceStatus.paid:
            _merge_metadata(invoice, metadata)
            return Invoices.mark_paid(db, invoice)
        if not ensure_transition(invoice.status, target):
            return invoice
        invoice.status = target
        _merge_metadata(invoice, metadata)
        _sync_cycle_status(invoice, target)
        event_type = _STATUS_EVENTS.get(target)
        if event_type:
            emit_event(
                db,
                event_type,
                {"invoice_number": invoice.invoice_number, "status": target.value},
                tenant_id=invoice.tenant_id,
                invoice_id=invoice.id,
            )
        db.commit()
        db.refresh(invoice)
        return invoice

    @staticmethod
    def send_invoice(db: Session, invoice_id: str, channels: list[str] | None = None) -> Invoice:
        """Record delivery of an invoice; a draft becomes ``sent``."""
        invoice = Invoices.get(db, invoice_id)
        if invoice.status not in (InvoiceStatus.draft, InvoiceStatus.sent, InvoiceStatus.overdue):
            raise InvalidInvoiceState(
                f"Cannot send an invoice with status {invoice.status.value}"
            )
        if invoice.status == InvoiceStatus.draft:
            invoice.status = InvoiceStatus.sent
        deliveries = list((invoice.metadata_ or {}).get("deliveries", []))
        deliveries.append({"channels": channels or ["email"], "sent_at": _now().isoformat()})
        _merge_metadata(invoice, {"deliveries": deliveries})
        emit_event(
            db,
            EventType.invoice_sent,
            {"invoice_number": invoice.invoice_number, "channels": channels or ["email"]},
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
        )
        db.commit()
        db.refresh(invoice)
        return invoice

    @staticmethod
    def void_invoice(db: Session, invoice_id: str, reason: str) -> Invoice:
        """Void a draft invoice.

        Raises:
            InvalidInvoiceState: for any status other than ``draft``
        """
        invoice = Invoices.get(db, invoice_id)
        if invoice.status != InvoiceStatus.draft:
            raise InvalidInvoiceState(
                f"Only draft invoices can be voided (status: {invoice.status.value})"
            )
        invoice.status = InvoiceStatus.cancelled
        note = f"VOIDED: {reason}"
        invoice.notes = f"{invoice.notes}\n{note}" if invoice.notes else note
        _sync_cycle_status(invoice, InvoiceStatus.cancelled)
        emit_event(
            db,
            EventType.invoice_voided,
            {"invoice_number": invoice.invoice_number, "reason": reason},
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
        )
        db.commit()
        db.refresh(invoice)
        return invoice

    @staticmethod
    def create_credit_note(
        db: Session,
        invoice_id: str,
        items: list[InvoiceItemCreate | dict],
        reason: str | None = None,
    ) -> Invoice:
        """Issue a credit note against a paid invoice.

        The credit note carries the negated item amounts, so its total is
        minus the sum of ``items``.

        Raises:
            InvalidInvoiceState: unless the invoice is ``paid``
            ValidationFailed: listing every invalid item
        """
        invoice = Invoices.get(db, invoice_id)
        if invoice.status != InvoiceStatus.paid:
            raise InvalidInvoiceState(
                f"Credit notes can only be issued for paid invoices (status: {invoice.status.value})"
            )

        errors = []
        lines = []
        for index, raw in enumerate(items, start=1):
            item = raw if isinstance(raw, InvoiceItemCreate) else None
            if item is None:
                try:
                    item = InvoiceItemCreate.model_validate(raw)
                except ValueError:
                    errors.append(f"Item {index}: description, quantity and unit_price are required")
                    continue
            amount = round_money(
                item.amount if item.amount is not None else item.quantity * item.unit_price
            )
            if amount <= 0:
                errors.append(f"Item {index}: amount must be greater than zero")
                continue
            lines.append((item, amount))
        if not items:
            errors.append("At least one item is required")
        credit_total = sum((amount for _, amount in lines), Decimal("0"))
        if credit_total > to_decimal(invoice.total_amount):
            errors.append(
                f"Credit total {credit_total} exceeds invoice total {invoice.total_amount}"
            )
        if errors:
            raise ValidationFailed(errors)

        previous = db.query(Invoice).filter(Invoice.original_invoice_id == invoice.id).count()
        number = f"CN-{invoice.invoice_number}"
        if previous:
            number = f"{number}-{previous + 1}"
        now = _now()
        credit_note = Invoice(
            tenant_id=invoice.tenant_id,
            subscription_id=invoice.subscription_id,
            original_invoice_id=invoice.id,
            invoice_number=number,
            status=InvoiceStatus.draft,
            issued_date=now,
            due_date=now,
            subtotal=-credit_total,
            tax_amount=Decimal("0.00"),
            discount_amount=Decimal("0.00"),
            total_amount=-credit_total,
            currency=invoice.currency,
            customer_name=invoice.customer_name,
            customer_email=invoice.customer_email,
            customer_phone=invoice.customer_phone,
            customer_address=invoice.customer_address,
            notes=reason,
            metadata_={"original_invoice_number": invoice.invoice_number},
        )
        for position, (item, amount) in enumerate(lines):
            credit_note.items.append(
                InvoiceItem(
                    position=position,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=-round_money(amount / item.quantity),
                    amount=-amount,
                    item_type=InvoiceItemType.credit,
                )
            )
        db.add(credit_note)
        db.flush()
        emit_event(
            db,
            EventType.credit_note_created,
            {
                "invoice_number": credit_note.invoice_number,
                "original_invoice_number": invoice.invoice_number,
                "total_amount": str(credit_note.total_amount),
            },
            tenant_id=invoice.tenant_id,
            invoice_id=credit_note.id,
        )
        db.commit()
        db.refresh(credit_note)
        return credit_note

    @staticmethod
    def get_overdue_invoices(
        db: Session, tenant_id: str | None = None, now: datetime | None = None
    ) -> list[dict]:
        """Unsettled invoices past their due date, with ``days_overdue``."""
        now = _as_utc(now) if now else _now()
        query = (
            db.query(Invoice)
            .filter(Invoice.status.notin_(_SETTLED_STATUSES))
            .filter(Invoice.original_invoice_id.is_(None))
            .filter(Invoice.due_date < now)
        )
        if tenant_id:
            query = query.filter(Invoice.tenant_id == coerce_uuid(tenant_id))
        overdue = []
        for invoice in query.order_by(Invoice.due_date.asc()).all():
            data = Invoices.format_invoice(invoice)
            seconds = (now - _as_utc(invoice.due_date)).total_seconds()
            data["days_overdue"] = math.ceil(seconds / 86400)
            overdue.append(data)
        return overdue

    @staticmethod
    def mark_overdue_invoices(db: Session, now: datetime | None = None) -> int:
        """Move sent invoices past their due date to ``overdue``."""
        now = _as_utc(now) if now else _now()
        invoices = (
            db.query(Invoice)
            .filter(Invoice.status == InvoiceStatus.sent)
            .filter(Invoice.original_invoice_id.is_(None))
            .filter(Invoice.due_date < now)
            .all()
        )
        for invoice in invoices:
            invoice.status = InvoiceStatus.overdue
            _sync_cycle_status(invoice, InvoiceStatus.overdue)
            emit_event(
                db,
                EventType.invoice_overdue,
                {"invoice_number": invoice.invoice_number},
                tenant_id=invoice.tenant_id,
                invoice_id=invoice.id,
            )
        db.commit()
        if invoices:
            logger.info("Marked %d invoice(s) overdue", len(invoices))
        return len(invoices)

    @staticmethod
    def format_invoice(invoice: Invoice) -> dict:
        return {
            "id": str(invoice.id),
            "invoice_number": invoice.invoice_number,
            "tenant_id": str(invoice.tenant_id),
            "subscription_id": str(invoice.subscription_id) if invoice.subscription_id else None,
            "billing_cycle_id": str(invoice.billing_cycle_id) if invoice.billing_cycle_id else None,
            "original_invoice_id": (
                str(invoice.original_invoice_id) if invoice.original_invoice_id else None
            ),
            "is_credit_note": invoice.is_credit_note,
            "status": invoice.status.value,
            "issued_date": _iso(invoice.issued_date),
            "due_date": _iso(invoice.due_date),
            "paid_date": _iso(invoice.paid_date),
            "subtotal": _money(invoice.subtotal),
            "tax_amount": _money(invoice.tax_amount),
            "discount_amount": _money(invoice.discount_amount),
            "total_amount": _money(invoice.total_amount),
            "currency": invoice.currency,
            "payment_provider": invoice.payment_provider.value if invoice.payment_provider else None,
            "payment_method": invoice.payment_method,
            "customer": {
                "name": invoice.customer_name,
                "email": invoice.customer_email,
                "phone": invoice.customer_phone,
                "address": invoice.customer_address,
            },
            "notes": invoice.notes,
            "items": [
                {
                    "description": item.description,
                    "quantity": float(item.quantity),
                    "unit_price": _money(item.unit_price),
                    "amount": _money(item.amount),
                    "item_type": item.item_type.value,
                }
                for item in invoice.items
            ],
        }

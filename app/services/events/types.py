"""Event types and data structures for billing domain events."""

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4


class EventType(enum.Enum):
    """Billing event types.

    Event naming convention: {entity}.{action}
    """

    # Subscription events
    subscription_created = "subscription.created"
    subscription_activated = "subscription.activated"
    subscription_paused = "subscription.paused"
    subscription_resumed = "subscription.resumed"
    subscription_canceled = "subscription.canceled"
    subscription_reactivated = "subscription.reactivated"
    subscription_upgraded = "subscription.upgraded"
    subscription_downgrade_scheduled = "subscription.downgrade_scheduled"
    subscription_plan_changed = "subscription.plan_changed"
    subscription_renewed = "subscription.renewed"

    # Billing cycle events
    billing_cycle_created = "billing_cycle.created"
    dunning_cancelled = "dunning.cancelled"

    # Invoice events
    invoice_created = "invoice.created"
    invoice_sent = "invoice.sent"
    invoice_paid = "invoice.paid"
    invoice_overdue = "invoice.overdue"
    invoice_voided = "invoice.voided"
    invoice_refunded = "invoice.refunded"
    credit_note_created = "credit_note.created"

    # Payment events
    payment_initiated = "payment.initiated"
    payment_received = "payment.received"
    payment_failed = "payment.failed"
    payment_refunded = "payment.refunded"

    # Usage events
    usage_recorded = "usage.recorded"

    # Plan events
    plan_created = "plan.created"
    plan_deactivated = "plan.deactivated"


@dataclass
class Event:
    """Represents a billing event that occurred in the system."""

    event_type: EventType
    payload: dict[str, Any]
    event_id: UUID = field(default_factory=uuid4)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    actor: str | None = None
    tenant_id: UUID | None = None
    subscription_id: UUID | None = None
    invoice_id: UUID | None = None
    transaction_id: UUID | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for JSON serialization."""
        def _serialize(value: Any) -> Any:
            if isinstance(value, UUID):
                return str(value)
            if isinstance(value, datetime):
                return value.isoformat()
            if isinstance(value, enum.Enum):
                return value.value
            if isinstance(value, dict):
                return {key: _serialize(val) for key, val in value.items()}
            if isinstance(value, (list, tuple)):
                return [_serialize(item) for item in value]
            return value

        return {
            "event_id": str(self.event_id),
            "event_type": self.event_type.value,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": _serialize(self.payload),
            "context": {
                "actor": self.actor,
                "tenant_id": str(self.tenant_id) if self.tenant_id else None,
                "subscription_id": str(self.subscription_id) if self.subscription_id else None,
                "invoice_id": str(self.invoice_id) if self.invoice_id else None,
                "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            },
        }

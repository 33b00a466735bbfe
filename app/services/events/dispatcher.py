"""Central event dispatcher for billing domain events.

Emitted events are added to the caller's session as ``EventStore`` rows, so
they commit or roll back together with the billing change that raised them.
Registered handlers are then called in sequence; a failing handler is
recorded on the row and never aborts the caller's work.
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from app.services.events.types import Event, EventType

logger = logging.getLogger(__name__)


class LoggingHandler:
    """Writes every event to the ``billing.events`` logger with its context."""

    _logger = logging.getLogger("billing.events")

    def handle(self, db: Session, event: Event) -> None:
        self._logger.info(
            "%s %s",
            event.event_type.value,
            event.to_dict()["payload"],
            extra={
                "event_type": event.event_type.value,
                "tenant_id": str(event.tenant_id) if event.tenant_id else None,
                "subscription_id": str(event.subscription_id) if event.subscription_id else None,
                "invoice_id": str(event.invoice_id) if event.invoice_id else None,
                "transaction_id": str(event.transaction_id) if event.transaction_id else None,
            },
        )


class EventDispatcher:
    """Routes events to registered handlers after persisting them."""

    def __init__(self):
        self._handlers: list = []

    def register_handler(self, handler):
        """Register an event handler."""
        self._handlers.append(handler)

    def dispatch(self, db: Session, event: Event) -> None:
        """Persist the event in the current transaction and run handlers.

        Args:
            db: Database session owning the current unit of work
            event: The event to dispatch
        """
        from app.models.event_store import EventStatus, EventStore

        logger.debug("Dispatching event %s (id=%s)", event.event_type.value, event.event_id)

        record = EventStore(
            event_id=event.event_id,
            event_type=event.event_type.value,
            payload=event.to_dict()["payload"],
            status=EventStatus.pending,
            actor=event.actor,
            tenant_id=event.tenant_id,
            subscription_id=event.subscription_id,
            invoice_id=event.invoice_id,
            transaction_id=event.transaction_id,
        )
        db.add(record)

        errors: list[str] = []
        for handler in self._handlers:
            try:
                handler.handle(db, event)
            except Exception as exc:
                logger.exception(
                    "Handler %s failed for event %s",
                    handler.__class__.__name__,
                    event.event_type.value,
                )
                errors.append(f"{handler.__class__.__name__}: {exc}")

        record.status = EventStatus.failed if errors else EventStatus.completed
        record.error = "; ".join(errors) if errors else None
        record.processed_at = datetime.now(timezone.utc)


_dispatcher: EventDispatcher | None = None


def get_dispatcher() -> EventDispatcher:
    """Get the global event dispatcher, initializing handlers if needed."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = EventDispatcher()
        _dispatcher.register_handler(LoggingHandler())
    return _dispatcher


def emit_event(
    db: Session,
    event_type: EventType,
    payload: dict[str, Any],
    *,
    actor: str | None = None,
    tenant_id: UUID | str | None = None,
    subscription_id: UUID | str | None = None,
    invoice_id: UUID | str | None = None,
    transaction_id: UUID | str | None = None,
) -> Event:
    """Emit a billing event.

    The event row is only flushed with the caller's session; the caller
    still owns the commit.

    Example:
        emit_event(
            db,
            EventType.invoice_paid,
            {"invoice_number": invoice.invoice_number},
            tenant_id=invoice.tenant_id,
            invoice_id=invoice.id,
        )
    """
    def to_uuid(value: UUID | str | None) -> UUID | None:
        if value is None:
            return None
        if isinstance(value, UUID):
            return value
        return UUID(str(value))

    event = Event(
        event_type=event_type,
        payload=payload,
        actor=actor,
        tenant_id=to_uuid(tenant_id),
        subscription_id=to_uuid(subscription_id),
        invoice_id=to_uuid(invoice_id),
        transaction_id=to_uuid(transaction_id),
    )
    get_dispatcher().dispatch(db, event)
    return event

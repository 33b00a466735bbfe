"""Billing event system.

Usage:
    from app.services.events import emit_event
    from app.services.events.types import EventType

    emit_event(
        db,
        EventType.subscription_created,
        {"plan_id": str(sub.plan_id), "status": sub.status.value},
        tenant_id=sub.tenant_id,
        subscription_id=sub.id,
    )
"""

from app.services.events.dispatcher import emit_event, get_dispatcher
from app.services.events.types import Event, EventType

__all__ = ["emit_event", "get_dispatcher", "Event", "EventType"]

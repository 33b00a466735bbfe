"""Shared helpers for billing services.

Time handling, the reporting period vocabulary, and the legal status
transitions of every billing entity live here.
"""

from __future__ import annotations

import enum
import math
from datetime import UTC, datetime, timedelta
from typing import NamedTuple
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from app.config import settings
from app.errors import (
    InvalidInvoiceState,
    InvalidStateError,
    InvalidSubscriptionState,
    InvalidTransactionState,
    NotFoundError,
    ValidationFailed,
)
from app.models.billing import (
    BillingCycleStatus,
    BillingInterval,
    InvoiceStatus,
    PaymentTransactionStatus,
    Subscription,
    SubscriptionStatus,
)
from app.services.common import coerce_uuid

PERIOD_DAYS = {
    BillingInterval.monthly: 30,
    BillingInterval.yearly: 365,
}

OPEN_SUBSCRIPTION_STATUSES = (
    SubscriptionStatus.trial,
    SubscriptionStatus.active,
    SubscriptionStatus.past_due,
)
BILLABLE_SUBSCRIPTION_STATUSES = (SubscriptionStatus.trial, SubscriptionStatus.active)


def _now() -> datetime:
    return datetime.now(UTC)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def period_length(interval: BillingInterval) -> timedelta:
    return timedelta(days=PERIOD_DAYS.get(interval, 30))


def remaining_days(period_end: datetime, now: datetime | None = None) -> int:
    """Whole days left in a period, counting a partial day as a full one."""
    delta = _as_utc(period_end) - _as_utc(now or _now())
    if delta.total_seconds() <= 0:
        return 0
    return math.ceil(delta.total_seconds() / 86400)


class ReportPeriod(enum.Enum):
    """Named reporting windows accepted by every analytics operation."""

    today = "today"
    week = "week"
    month = "month"
    year = "year"
    current_month = "current_month"
    last_month = "last_month"
    current_year = "current_year"
    last_30_days = "last_30_days"
    last_90_days = "last_90_days"


_PERIOD_ALIASES = {
    ReportPeriod.month: ReportPeriod.current_month,
    ReportPeriod.year: ReportPeriod.current_year,
}


class DateRange(NamedTuple):
    start: datetime
    end: datetime

    @property
    def days(self) -> int:
        return max(1, math.ceil((self.end - self.start).total_seconds() / 86400))

    def as_utc(self) -> "DateRange":
        return DateRange(_as_utc(self.start), _as_utc(self.end))


def parse_period(period: str | ReportPeriod | None, default: ReportPeriod = ReportPeriod.current_month) -> ReportPeriod:
    if period is None or period == "":
        return default
    if isinstance(period, ReportPeriod):
        return period
    try:
        return ReportPeriod(period)
    except ValueError as exc:
        allowed = ", ".join(member.value for member in ReportPeriod)
        raise ValidationFailed(f"Unknown period '{period}' (allowed: {allowed})") from exc


def _start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _end_of_day(value: datetime) -> datetime:
    return value.replace(hour=23, minute=59, second=59, microsecond=999000)


def get_date_range(period: str | ReportPeriod | None, now: datetime | None = None) -> DateRange:
    """Resolve a period keyword to an explicit range in the billing timezone.

    ``start`` is normalized to 00:00:00.000 and ``end`` to 23:59:59.999.
    ``today`` and ``week`` are trailing windows ending today (1 and 7 days);
    ``month``/``year`` mean the current calendar month/year.
    """
    resolved = parse_period(period)
    resolved = _PERIOD_ALIASES.get(resolved, resolved)
    tz = ZoneInfo(settings.billing_timezone)
    local_now = (_as_utc(now) if now else _now()).astimezone(tz)
    today = _start_of_day(local_now)

    if resolved == ReportPeriod.today:
        return DateRange(today, _end_of_day(today))
    if resolved == ReportPeriod.week:
        return DateRange(today - timedelta(days=6), _end_of_day(today))
    if resolved == ReportPeriod.current_month:
        start = today.replace(day=1)
        next_month = (start + timedelta(days=32)).replace(day=1)
        return DateRange(start, _end_of_day(next_month - timedelta(days=1)))
    if resolved == ReportPeriod.last_month:
        end = today.replace(day=1) - timedelta(days=1)
        return DateRange(end.replace(day=1), _end_of_day(end))
    if resolved == ReportPeriod.current_year:
        return DateRange(
            today.replace(month=1, day=1),
            _end_of_day(today.replace(month=12, day=31)),
        )
    if resolved == ReportPeriod.last_30_days:
        return DateRange(today - timedelta(days=30), _end_of_day(today))
    return DateRange(today - timedelta(days=90), _end_of_day(today))


# Legal status transitions per entity. Staying in the same status is a no-op.
SUBSCRIPTION_TRANSITIONS = {
    SubscriptionStatus.trial: {
        SubscriptionStatus.active,
        SubscriptionStatus.past_due,
        SubscriptionStatus.cancelled,
    },
    SubscriptionStatus.active: {SubscriptionStatus.past_due, SubscriptionStatus.cancelled},
    SubscriptionStatus.past_due: {SubscriptionStatus.active, SubscriptionStatus.cancelled},
    # only through reactivation
    SubscriptionStatus.cancelled: {SubscriptionStatus.active},
}

BILLING_CYCLE_TRANSITIONS = {
    BillingCycleStatus.pending: {
        BillingCycleStatus.processing,
        BillingCycleStatus.sent,
        BillingCycleStatus.paid,
        BillingCycleStatus.overdue,
        BillingCycleStatus.cancelled,
    },
    BillingCycleStatus.processing: {
        BillingCycleStatus.sent,
        BillingCycleStatus.paid,
        BillingCycleStatus.overdue,
        BillingCycleStatus.cancelled,
    },
    BillingCycleStatus.sent: {
        BillingCycleStatus.paid,
        BillingCycleStatus.overdue,
        BillingCycleStatus.cancelled,
    },
    BillingCycleStatus.overdue: {BillingCycleStatus.paid, BillingCycleStatus.cancelled},
    BillingCycleStatus.paid: set(),
    BillingCycleStatus.cancelled: set(),
}

INVOICE_TRANSITIONS = {
    InvoiceStatus.draft: {InvoiceStatus.sent, InvoiceStatus.paid, InvoiceStatus.cancelled},
    InvoiceStatus.sent: {InvoiceStatus.paid, InvoiceStatus.overdue, InvoiceStatus.cancelled},
    InvoiceStatus.overdue: {InvoiceStatus.paid, InvoiceStatus.cancelled},
    InvoiceStatus.paid: {InvoiceStatus.refunded},
    InvoiceStatus.cancelled: set(),
    InvoiceStatus.refunded: set(),
}

PAYMENT_TRANSACTION_TRANSITIONS = {
    PaymentTransactionStatus.pending: {
        PaymentTransactionStatus.processing,
        PaymentTransactionStatus.completed,
        PaymentTransactionStatus.failed,
        PaymentTransactionStatus.expired,
        PaymentTransactionStatus.cancelled,
    },
    PaymentTransactionStatus.processing: {
        PaymentTransactionStatus.completed,
        PaymentTransactionStatus.failed,
        PaymentTransactionStatus.expired,
        PaymentTransactionStatus.cancelled,
    },
    PaymentTransactionStatus.completed: {PaymentTransactionStatus.refunded},
    PaymentTransactionStatus.failed: set(),
    PaymentTransactionStatus.expired: set(),
    PaymentTransactionStatus.cancelled: set(),
    PaymentTransactionStatus.refunded: set(),
}

_TRANSITIONS: dict[type, tuple[dict, type[InvalidStateError], str]] = {
    SubscriptionStatus: (SUBSCRIPTION_TRANSITIONS, InvalidSubscriptionState, "subscription"),
    BillingCycleStatus: (BILLING_CYCLE_TRANSITIONS, InvalidStateError, "billing cycle"),
    InvoiceStatus: (INVOICE_TRANSITIONS, InvalidInvoiceState, "invoice"),
    PaymentTransactionStatus: (
        PAYMENT_TRANSACTION_TRANSITIONS,
        InvalidTransactionState,
        "payment transaction",
    ),
}


def can_transition(current, target) -> bool:
    table, _, _ = _TRANSITIONS[type(target)]
    return current == target or target in table.get(current, set())


def ensure_transition(current, target) -> bool:
    """Check a status change against its entity's transition table.

    Returns True when the status actually changes, False for a no-op.

    Raises:
        InvalidStateError: (entity-specific subclass) when the move is illegal
    """
    table, error_cls, label = _TRANSITIONS[type(target)]
    if current == target:
        return False
    if target not in table.get(current, set()):
        current_label = current.value if current is not None else "none"
        raise error_cls(f"Cannot change {label} status from {current_label} to {target.value}")
    return True


def lock_subscription(db: Session, subscription_id) -> Subscription:
    """Load a subscription with a row lock for a lifecycle change."""
    subscription = (
        db.query(Subscription)
        .filter(Subscription.id == coerce_uuid(subscription_id))
        .with_for_update()
        .populate_existing()
        .first()
    )
    if not subscription:
        raise NotFoundError("Subscription not found")
    return subscription


def bump_version(subscription: Subscription) -> None:
    subscription.version = (subscription.version or 0) + 1

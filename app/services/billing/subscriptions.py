"""Subscription lifecycle: create, plan changes, cancel, pause and health."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import settings
from app.errors import (
    InvalidSubscriptionState,
    NotFoundError,
    TenantAlreadySubscribed,
    ValidationFailed,
)
from app.models.billing import (
    BillingCycle,
    BillingCycleKind,
    BillingCycleStatus,
    InvoiceStatus,
    PaymentMethod,
    Subscription,
    SubscriptionStatus,
)
from app.models.tenant import Tenant
from app.services.billing._common import (
    OPEN_SUBSCRIPTION_STATUSES,
    _as_utc,
    _now,
    bump_version,
    can_transition,
    ensure_transition,
    get_date_range,
    lock_subscription,
    period_length,
    remaining_days,
)
from app.services.billing.cycles import BillingCycles
from app.services.billing.invoices import Invoices
from app.services.billing.plans import Plans
from app.services.billing.reporting import BillingReporting
from app.services.billing.usage import Usage
from app.services.common import coerce_uuid, get_or_404, round_money, to_decimal
from app.services.events import emit_event
from app.services.events.types import EventType

logger = logging.getLogger(__name__)

# Proration always uses a 30-day month, whatever the plan interval.
PRORATION_DAYS = Decimal("30")

HEALTH_PAST_DUE_PENALTY = 30
HEALTH_OVERAGE_PENALTY = 10
HEALTH_CANCELLING_PENALTY = 20
HEALTH_CANCELLING_WINDOW_DAYS = 7


def calculate_proration(old_price, period_end: datetime, now: datetime | None = None) -> Decimal:
    """``old_price / 30 * remaining days``, rounded to the cent."""
    days = remaining_days(period_end, now)
    return round_money(to_decimal(old_price) / PRORATION_DAYS * days)


def _open_subscription(db: Session, tenant_id) -> Subscription | None:
    return (
        db.query(Subscription)
        .filter(Subscription.tenant_id == coerce_uuid(tenant_id))
        .filter(Subscription.status.in_(OPEN_SUBSCRIPTION_STATUSES))
        .first()
    )


def _active_plan(db: Session, plan_id):
    plan = Plans.get(db, plan_id)
    if not plan.is_active:
        raise ValidationFailed(f"Plan '{plan.name}' is not available")
    return plan


class Subscriptions:
    @staticmethod
    def create_subscription(
        db: Session,
        tenant_id: str,
        plan_id: str,
        trial_days: int | None = None,
        payment_method_id: str | None = None,
        metadata: dict | None = None,
    ) -> Subscription:
        """Start a subscription.

        With ``trial_days`` the subscription is a ``trial`` whose first
        period ends with the trial. Otherwise it is ``active`` and its first
        period is billed right away.

        Raises:
            TenantAlreadySubscribed: the tenant already has an open subscription
        """
        tenant = get_or_404(db, Tenant, tenant_id, detail="Tenant not found")
        plan = _active_plan(db, plan_id)
        existing = _open_subscription(db, tenant.id)
        if existing:
            raise TenantAlreadySubscribed(
                f"Tenant already has an open subscription ({existing.status.value})"
            )
        payment_method = None
        if payment_method_id:
            payment_method = get_or_404(
                db, PaymentMethod, payment_method_id, detail="Payment method not found"
            )
            if payment_method.tenant_id != tenant.id:
                raise NotFoundError("Payment method not found")

        now = _now()
        if trial_days:
            status = SubscriptionStatus.trial
            trial_ends_at = now + timedelta(days=trial_days)
            period_end = trial_ends_at
        else:
            status = SubscriptionStatus.active
            trial_ends_at = None
            period_end = now + period_length(plan.billing_interval)

        subscription = Subscription(
            tenant=tenant,
            plan=plan,
            status=status,
            trial_ends_at=trial_ends_at,
            started_at=now,
            current_period_start=now,
            current_period_end=period_end,
            default_payment_method=payment_method,
            metadata_=metadata or {},
        )
        db.add(subscription)
        try:
            db.flush()
        except IntegrityError as exc:
            db.rollback()
            raise TenantAlreadySubscribed("Tenant already has an open subscription") from exc

        invoice = None
        if status == SubscriptionStatus.active:
            cycle = BillingCycles.create_billing_cycle(
                db,
                subscription,
                kind=BillingCycleKind.initial,
                description=f"Initial period for {plan.name}",
                commit=False,
            )
            invoice = Invoices.generate_invoice(db, cycle, commit=False)

        emit_event(
            db,
            EventType.subscription_created,
            {
                "plan_id": str(plan.id),
                "status": status.value,
                "trial_days": trial_days or 0,
                "invoice_number": invoice.invoice_number if invoice else None,
            },
            tenant_id=tenant.id,
            subscription_id=subscription.id,
        )
        db.commit()
        db.refresh(subscription)
        logger.info(
            "Created %s subscription on plan %s",
            status.value,
            plan.name,
            extra={"tenant_id": str(tenant.id), "subscription_id": str(subscription.id)},
        )
        return subscription

    @staticmethod
    def get(db: Session, subscription_id: str) -> Subscription:
        return get_or_404(db, Subscription, subscription_id, detail="Subscription not found")

    @staticmethod
    def get_tenant_subscription(db: Session, tenant_id: str) -> Subscription | None:
        """The tenant's open subscription, else its most recent one."""
        subscription = _open_subscription(db, tenant_id)
        if subscription:
            return subscription
        return (
            db.query(Subscription)
            .filter(Subscription.tenant_id == coerce_uuid(tenant_id))
            .order_by(Subscription.created_at.desc())
            .first()
        )

    @staticmethod
    def update_subscription_plan(
        db: Session,
        subscription_id: str,
        new_plan_id: str,
        immediate: bool = False,
        prorate: bool = True,
    ) -> Subscription:
        """Move a subscription to another plan.

        An immediate upgrade switches now and, with ``prorate``, invoices
        the old price for the days left in the period. A downgrade is only
        scheduled for the end of the period. Anything else switches now
        without a charge.
        """
        subscription = lock_subscription(db, subscription_id)
        if subscription.status == SubscriptionStatus.cancelled:
            raise InvalidSubscriptionState("Cannot change the plan of a cancelled subscription")
        new_plan = _active_plan(db, new_plan_id)
        old_plan = subscription.plan
        if new_plan.id == old_plan.id:
            raise ValidationFailed("Subscription is already on this plan")

        old_price = to_decimal(old_plan.price)
        new_price = to_decimal(new_plan.price)
        now = _now()
        payload = {"from_plan_id": str(old_plan.id), "to_plan_id": str(new_plan.id)}

        if immediate and new_price > old_price:
            cycle = None
            if prorate:
                amount = calculate_proration(old_price, subscription.current_period_end, now)
                payload["proration_amount"] = str(amount)
            if prorate and amount > 0:
                cycle = BillingCycles.create_billing_cycle(
                    db,
                    subscription,
                    base_amount=amount,
                    period_start=now,
                    period_end=_as_utc(subscription.current_period_end),
                    kind=BillingCycleKind.proration,
                    description=f"Upgrade proration: {old_plan.name} to {new_plan.name}",
                    commit=False,
                )
            subscription.plan = new_plan
            subscription.pending_plan = None
            subscription.plan_change_date = None
            if cycle is not None:
                invoice = Invoices.generate_invoice(db, cycle, commit=False)
                payload["invoice_number"] = invoice.invoice_number
            event_type = EventType.subscription_upgraded
        elif new_price < old_price:
            subscription.pending_plan = new_plan
            subscription.plan_change_date = subscription.current_period_end
            payload["effective_at"] = _as_utc(subscription.current_period_end).isoformat()
            event_type = EventType.subscription_downgrade_scheduled
        else:
            subscription.plan = new_plan
            subscription.pending_plan = None
            subscription.plan_change_date = None
            event_type = EventType.subscription_plan_changed

        bump_version(subscription)
        emit_event(
            db,
            event_type,
            payload,
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
        )
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def cancel_subscription(
        db: Session,
        subscription_id: str,
        at_period_end: bool = False,
        reason: str | None = None,
    ) -> Subscription:
        """Cancel now, or flag the subscription to end with its period.

        Cancelling now also cancels every unpaid cycle and its invoice.
        """
        subscription = lock_subscription(db, subscription_id)
        if subscription.status == SubscriptionStatus.cancelled:
            raise InvalidSubscriptionState("Subscription is already cancelled")
        subscription.cancel_reason = reason
        if at_period_end:
            subscription.cancel_at_period_end = True
        else:
            ensure_transition(subscription.status, SubscriptionStatus.cancelled)
            now = _now()
            subscription.status = SubscriptionStatus.cancelled
            subscription.cancelled_at = now
            subscription.cancel_at_period_end = False
            subscription.pending_plan = None
            subscription.plan_change_date = None
            # unpaid cycles close with the subscription
            open_cycles = (
                db.query(BillingCycle)
                .filter(BillingCycle.subscription_id == subscription.id)
                .filter(
                    BillingCycle.status.notin_(
                        [BillingCycleStatus.paid, BillingCycleStatus.cancelled]
                    )
                )
                .all()
            )
            for cycle in open_cycles:
                cycle.status = BillingCycleStatus.cancelled
                invoice = cycle.invoice
                if invoice is not None and can_transition(invoice.status, InvoiceStatus.cancelled):
                    invoice.status = InvoiceStatus.cancelled
        bump_version(subscription)
        emit_event(
            db,
            EventType.subscription_canceled,
            {"at_period_end": at_period_end, "reason": reason},
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
        )
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def reactivate_subscription(db: Session, subscription_id: str) -> Subscription:
        """Bring a cancelled subscription back with a fresh, billed period."""
        subscription = lock_subscription(db, subscription_id)
        if subscription.status != SubscriptionStatus.cancelled:
            raise InvalidSubscriptionState("Only cancelled subscriptions can be reactivated")
        if not subscription.plan.is_active:
            raise ValidationFailed(f"Plan '{subscription.plan.name}' is no longer available")
        other = _open_subscription(db, subscription.tenant_id)
        if other is not None:
            raise TenantAlreadySubscribed(
                f"Tenant already has an open subscription ({other.status.value})"
            )
        ensure_transition(subscription.status, SubscriptionStatus.active)
        now = _now()
        subscription.status = SubscriptionStatus.active
        subscription.current_period_start = now
        subscription.current_period_end = now + period_length(subscription.plan.billing_interval)
        subscription.cancelled_at = None
        subscription.cancel_reason = None
        subscription.cancel_at_period_end = False
        cycle = BillingCycles.create_billing_cycle(
            db,
            subscription,
            kind=BillingCycleKind.reactivation,
            description=f"Reactivation of {subscription.plan.name}",
            commit=False,
        )
        invoice = Invoices.generate_invoice(db, cycle, commit=False)
        bump_version(subscription)
        emit_event(
            db,
            EventType.subscription_reactivated,
            {"invoice_number": invoice.invoice_number},
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            invoice_id=invoice.id,
        )
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def pause_subscription(
        db: Session,
        subscription_id: str,
        reason: str | None = None,
        resume_date: datetime | None = None,
    ) -> Subscription:
        subscription = lock_subscription(db, subscription_id)
        if subscription.status != SubscriptionStatus.active:
            raise InvalidSubscriptionState("Only active subscriptions can be paused")
        ensure_transition(subscription.status, SubscriptionStatus.past_due)
        subscription.status = SubscriptionStatus.past_due
        metadata = dict(subscription.metadata_ or {})
        metadata["pause"] = {
            "reason": reason,
            "paused_at": _now().isoformat(),
            "resume_date": _as_utc(resume_date).isoformat() if resume_date else None,
        }
        subscription.metadata_ = metadata
        bump_version(subscription)
        emit_event(
            db,
            EventType.subscription_paused,
            {"reason": reason},
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
        )
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def resume_subscription(db: Session, subscription_id: str) -> Subscription:
        subscription = lock_subscription(db, subscription_id)
        if subscription.status != SubscriptionStatus.past_due:
            raise InvalidSubscriptionState("Only paused (past due) subscriptions can be resumed")
        ensure_transition(subscription.status, SubscriptionStatus.active)
        subscription.status = SubscriptionStatus.active
        metadata = dict(subscription.metadata_ or {})
        metadata.pop("pause", None)
        subscription.metadata_ = metadata
        bump_version(subscription)
        emit_event(
            db,
            EventType.subscription_resumed,
            {},
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
        )
        db.commit()
        db.refresh(subscription)
        return subscription

    @staticmethod
    def get_expiring_subscriptions(
        db: Session, days: int | None = None, now: datetime | None = None
    ) -> list[Subscription]:
        """Open subscriptions whose period ends within ``days``."""
        now = _as_utc(now) if now else _now()
        horizon = now + timedelta(days=days or settings.expiring_window_days)
        return (
            db.query(Subscription)
            .filter(Subscription.status.in_(OPEN_SUBSCRIPTION_STATUSES))
            .filter(Subscription.current_period_end >= now)
            .filter(Subscription.current_period_end <= horizon)
            .order_by(Subscription.current_period_end.asc())
            .all()
        )

    @staticmethod
    def calculate_subscription_health(
        db: Session, subscription: Subscription, now: datetime | None = None
    ) -> dict:
        """Score a subscription from 0 to 100.

        Starts at 100; past due costs 30, each metric over its limit 10, and
        a cancellation scheduled within the last 7 days of the period 20.
        80 and above is healthy, 60 and above a warning, anything lower critical.
        """
        score = 100
        issues = []
        if subscription.status == SubscriptionStatus.past_due:
            score -= HEALTH_PAST_DUE_PENALTY
            issues.append("Subscription is past due")

        usage = Usage.check_usage_against_limits(db, subscription.tenant_id, subscription.id)
        for overage in usage["overages"]:
            score -= HEALTH_OVERAGE_PENALTY
            issues.append(f"Usage of {overage['metric']} exceeds plan limit")

        days_left = remaining_days(subscription.current_period_end, now)
        if subscription.cancel_at_period_end and days_left <= HEALTH_CANCELLING_WINDOW_DAYS:
            score -= HEALTH_CANCELLING_PENALTY
            issues.append(f"Subscription ends in {days_left} day(s)")

        score = max(score, 0)
        if score >= 80:
            status = "healthy"
        elif score >= 60:
            status = "warning"
        else:
            status = "critical"
        return {
            "score": score,
            "status": status,
            "issues": issues,
            "days_remaining": days_left,
            "within_limits": usage["within_limits"],
        }

    @staticmethod
    def get_subscription_analytics(db: Session, tenant_id: str, period: str | None = None) -> dict:
        date_range = get_date_range(period)
        subscription = Subscriptions.get_tenant_subscription(db, tenant_id)
        summary = None
        health = None
        if subscription is not None:
            summary = {
                "id": str(subscription.id),
                "status": subscription.status.value,
                "plan": subscription.plan.name,
                "price": float(subscription.plan.price),
                "current_period_end": _as_utc(subscription.current_period_end).isoformat(),
                "cancel_at_period_end": subscription.cancel_at_period_end,
            }
            health = Subscriptions.calculate_subscription_health(db, subscription)
        return {
            "period": {"start": date_range.start.isoformat(), "end": date_range.end.isoformat()},
            "subscription": summary,
            "health": health,
            "usage": Usage.get_usage_analytics(db, tenant_id, period),
            "billing": BillingReporting.get_billing_analytics(db, tenant_id, period),
        }

"""Billing cycle creation and the periodic billing, dunning and plan-change runs.

Every run works subscription by subscription (or cycle by cycle for
dunning): each unit is locked, changed and committed on its own, and a
failure rolls back that unit only and is reported in the run summary.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import BILLING_CYCLE_RESULTS
from app.models.billing import (
    BillingCycle,
    BillingCycleKind,
    BillingCycleStatus,
    InvoiceStatus,
    Subscription,
    SubscriptionStatus,
)
from app.services.billing._common import (
    BILLABLE_SUBSCRIPTION_STATUSES,
    OPEN_SUBSCRIPTION_STATUSES,
    _as_utc,
    _now,
    bump_version,
    can_transition,
    ensure_transition,
    lock_subscription,
    period_length,
)
from app.services.billing.invoices import Invoices
from app.services.billing.usage import Usage
from app.services.common import coerce_uuid, get_or_404, round_money
from app.services.events import emit_event
from app.services.events.types import EventType
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)


def _run_summary(run_at: datetime, results: list[dict]) -> dict:
    succeeded = sum(1 for result in results if result["success"])
    return {
        "run_at": run_at.isoformat(),
        "processed": len(results),
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "results": results,
    }


def apply_pending_plan_change(db: Session, subscription: Subscription, now: datetime) -> bool:
    """Swap in a scheduled downgrade once its change date has passed."""
    if subscription.pending_plan_id is None or subscription.plan_change_date is None:
        return False
    if _as_utc(subscription.plan_change_date) > now:
        return False
    previous_plan_id = subscription.plan_id
    subscription.plan = subscription.pending_plan
    subscription.pending_plan = None
    subscription.plan_change_date = None
    emit_event(
        db,
        EventType.subscription_plan_changed,
        {
            "from_plan_id": str(previous_plan_id),
            "to_plan_id": str(subscription.plan.id),
            "reason": "scheduled_downgrade",
        },
        tenant_id=subscription.tenant_id,
        subscription_id=subscription.id,
    )
    return True


class BillingCycles(ListResponseMixin):
    @staticmethod
    def create_billing_cycle(
        db: Session,
        subscription: Subscription,
        base_amount=None,
        overage_amount=Decimal("0"),
        tax_amount=Decimal("0"),
        discount_amount=Decimal("0"),
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        due_date: datetime | None = None,
        description: str | None = None,
        kind: BillingCycleKind = BillingCycleKind.regular,
        commit: bool = True,
    ) -> BillingCycle:
        """Open a ``pending`` cycle; ``total = base + overage + tax - discount``.

        ``base_amount`` defaults to the plan price and the period to the
        subscription's current period.
        """
        plan = subscription.plan
        base = round_money(plan.price if base_amount is None else base_amount)
        overage = round_money(overage_amount)
        tax = round_money(tax_amount)
        discount = round_money(discount_amount)
        cycle = BillingCycle(
            subscription=subscription,
            kind=kind,
            period_start=period_start or subscription.current_period_start,
            period_end=period_end or subscription.current_period_end,
            base_amount=base,
            overage_amount=overage,
            tax_amount=tax,
            discount_amount=discount,
            total_amount=base + overage + tax - discount,
            currency=plan.currency or settings.default_currency,
            due_date=due_date or _now() + timedelta(days=settings.invoice_due_days),
            status=BillingCycleStatus.pending,
            description=description,
        )
        db.add(cycle)
        db.flush()
        emit_event(
            db,
            EventType.billing_cycle_created,
            {"kind": kind.value, "total_amount": str(cycle.total_amount)},
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
        )
        if commit:
            db.commit()
            db.refresh(cycle)
        return cycle

    @staticmethod
    def get(db: Session, billing_cycle_id: str) -> BillingCycle:
        return get_or_404(db, BillingCycle, billing_cycle_id, detail="Billing cycle not found")

    @staticmethod
    def list(
        db: Session,
        subscription_id: str | None,
        status: BillingCycleStatus | None,
        limit: int,
        offset: int,
    ) -> list[BillingCycle]:
        query = db.query(BillingCycle)
        if subscription_id:
            query = query.filter(BillingCycle.subscription_id == coerce_uuid(subscription_id))
        if status:
            query = query.filter(BillingCycle.status == status)
        return (
            query.order_by(BillingCycle.period_start.desc()).limit(limit).offset(offset).all()
        )

    @staticmethod
    def get_pending_billing_cycles(db: Session, subscription_id: str | None = None) -> list[BillingCycle]:
        query = db.query(BillingCycle).filter(
            BillingCycle.status.in_([BillingCycleStatus.pending, BillingCycleStatus.processing])
        )
        if subscription_id:
            query = query.filter(BillingCycle.subscription_id == coerce_uuid(subscription_id))
        return query.order_by(BillingCycle.due_date.asc()).all()

    @staticmethod
    def get_overdue_billing_cycles(db: Session, now: datetime | None = None) -> list[BillingCycle]:
        now = _as_utc(now) if now else _now()
        return (
            db.query(BillingCycle)
            .filter(
                BillingCycle.status.notin_([BillingCycleStatus.paid, BillingCycleStatus.cancelled])
            )
            .filter(BillingCycle.due_date < now)
            .order_by(BillingCycle.due_date.asc())
            .all()
        )

    @staticmethod
    def _renew(db: Session, subscription: Subscription, now: datetime) -> dict:
        old_start = subscription.current_period_start
        old_end = subscription.current_period_end
        overage = Usage.calculate_overage_charges(db, subscription.tenant_id, old_start, old_end)
        apply_pending_plan_change(db, subscription, now)

        if subscription.cancel_at_period_end:
            ensure_transition(subscription.status, SubscriptionStatus.cancelled)
            subscription.status = SubscriptionStatus.cancelled
            subscription.cancelled_at = now
            cycle_id = invoice_id = None
            if overage > 0:
                # final bill for usage in the closing period
                cycle = BillingCycles.create_billing_cycle(
                    db,
                    subscription,
                    base_amount=Decimal("0"),
                    overage_amount=overage,
                    period_start=old_start,
                    period_end=old_end,
                    description="Final usage charges",
                    commit=False,
                )
                invoice = Invoices.generate_invoice(db, cycle, commit=False)
                cycle_id, invoice_id = str(cycle.id), str(invoice.id)
            emit_event(
                db,
                EventType.subscription_canceled,
                {"reason": subscription.cancel_reason or "cancel_at_period_end"},
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
            )
            return {"action": "cancelled", "billing_cycle_id": cycle_id, "invoice_id": invoice_id}

        length = period_length(subscription.plan.billing_interval)
        new_start = _as_utc(old_end)
        new_end = new_start + length
        while new_end <= now:
            # skip periods missed while the job was not running
            new_start, new_end = new_end, new_end + length
        subscription.current_period_start = new_start
        subscription.current_period_end = new_end

        trial_ends_at = _as_utc(subscription.trial_ends_at)
        if subscription.status == SubscriptionStatus.trial and (
            trial_ends_at is None or trial_ends_at <= now
        ):
            ensure_transition(subscription.status, SubscriptionStatus.active)
            subscription.status = SubscriptionStatus.active
            emit_event(
                db,
                EventType.subscription_activated,
                {"plan_id": str(subscription.plan.id)},
                tenant_id=subscription.tenant_id,
                subscription_id=subscription.id,
            )

        cycle = BillingCycles.create_billing_cycle(
            db,
            subscription,
            overage_amount=overage,
            description=f"Billing period {new_start:%Y-%m-%d} - {new_end:%Y-%m-%d}",
            commit=False,
        )
        invoice = Invoices.generate_invoice(db, cycle, commit=False)
        emit_event(
            db,
            EventType.subscription_renewed,
            {
                "period_start": new_start.isoformat(),
                "period_end": new_end.isoformat(),
                "invoice_number": invoice.invoice_number,
            },
            tenant_id=subscription.tenant_id,
            subscription_id=subscription.id,
            invoice_id=invoice.id,
        )
        return {
            "action": "renewed",
            "billing_cycle_id": str(cycle.id),
            "invoice_id": str(invoice.id),
            "total_amount": float(cycle.total_amount),
        }

    @staticmethod
    def process_billing_cycle(db: Session, run_at: datetime | None = None) -> dict:
        """Renew every trial/active subscription whose period has ended.

        Per subscription, in one transaction: overage for the ended period,
        any due downgrade, cancel-at-period-end, the period advance, the
        trial to active flip, a new cycle and its invoice.
        """
        now = _as_utc(run_at) if run_at else _now()
        due_ids = [
            row.id
            for row in db.query(Subscription.id)
            .filter(Subscription.status.in_(BILLABLE_SUBSCRIPTION_STATUSES))
            .filter(Subscription.current_period_end < now)
            .all()
        ]
        results = []
        for subscription_id in due_ids:
            try:
                subscription = lock_subscription(db, subscription_id)
                # re-check under the lock; another worker may have renewed it
                if subscription.status not in BILLABLE_SUBSCRIPTION_STATUSES or _as_utc(
                    subscription.current_period_end
                ) >= now:
                    db.rollback()
                    continue
                outcome = BillingCycles._renew(db, subscription, now)
                bump_version(subscription)
                db.commit()
                results.append({"subscription_id": str(subscription_id), "success": True, **outcome})
                BILLING_CYCLE_RESULTS.labels(outcome=outcome["action"]).inc()
            except Exception as exc:
                db.rollback()
                logger.exception(
                    "Billing cycle failed for subscription %s",
                    subscription_id,
                    extra={"subscription_id": str(subscription_id)},
                )
                results.append(
                    {"subscription_id": str(subscription_id), "success": False, "error": str(exc)}
                )
                BILLING_CYCLE_RESULTS.labels(outcome="failed").inc()

        summary = _run_summary(now, results)
        logger.info(
            "Billing cycle run: %d processed, %d succeeded, %d failed",
            summary["processed"],
            summary["succeeded"],
            summary["failed"],
        )
        return summary

    @staticmethod
    def process_dunning(db: Session, now: datetime | None = None) -> dict:
        """Cancel subscriptions whose unpaid cycle is past the dunning cutoff.

        A cycle that is neither paid nor cancelled and whose due date is at
        least ``dunning_cutoff_days`` old cancels its subscription, itself
        and its unpaid invoice. There is no retry ladder.
        """
        now = _as_utc(now) if now else _now()
        cutoff = now - timedelta(days=settings.dunning_cutoff_days)
        cycle_ids = [
            row.id
            for row in db.query(BillingCycle.id)
            .filter(
                BillingCycle.status.notin_([BillingCycleStatus.paid, BillingCycleStatus.cancelled])
            )
            .filter(BillingCycle.due_date <= cutoff)
            .order_by(BillingCycle.due_date.asc())
            .all()
        ]
        results = []
        for cycle_id in cycle_ids:
            cycle = db.get(BillingCycle, cycle_id)
            subscription_id = cycle.subscription_id
            try:
                subscription = lock_subscription(db, subscription_id)
                ensure_transition(cycle.status, BillingCycleStatus.cancelled)
                cycle.status = BillingCycleStatus.cancelled
                invoice = cycle.invoice
                if invoice is not None and can_transition(invoice.status, InvoiceStatus.cancelled):
                    invoice.status = InvoiceStatus.cancelled
                if subscription.status != SubscriptionStatus.cancelled:
                    ensure_transition(subscription.status, SubscriptionStatus.cancelled)
                    subscription.status = SubscriptionStatus.cancelled
                    subscription.cancelled_at = now
                    subscription.cancel_reason = "dunning: unpaid billing cycle"
                    bump_version(subscription)
                emit_event(
                    db,
                    EventType.dunning_cancelled,
                    {
                        "billing_cycle_id": str(cycle.id),
                        "days_overdue": (now - _as_utc(cycle.due_date)).days,
                        "amount": str(cycle.total_amount),
                    },
                    tenant_id=subscription.tenant_id,
                    subscription_id=subscription.id,
                )
                db.commit()
                results.append(
                    {
                        "billing_cycle_id": str(cycle_id),
                        "subscription_id": str(subscription_id),
                        "success": True,
                    }
                )
            except Exception as exc:
                db.rollback()
                logger.exception(
                    "Dunning failed for billing cycle %s",
                    cycle_id,
                    extra={"billing_cycle_id": str(cycle_id), "subscription_id": str(subscription_id)},
                )
                results.append(
                    {
                        "billing_cycle_id": str(cycle_id),
                        "subscription_id": str(subscription_id),
                        "success": False,
                        "error": str(exc),
                    }
                )

        summary = _run_summary(now, results)
        if results:
            logger.info(
                "Dunning run: %d cycle(s), %d cancelled, %d failed",
                summary["processed"],
                summary["succeeded"],
                summary["failed"],
            )
        return summary

    @staticmethod
    def apply_pending_plan_changes(db: Session, now: datetime | None = None) -> dict:
        """Apply scheduled downgrades whose change date has passed."""
        now = _as_utc(now) if now else _now()
        due_ids = [
            row.id
            for row in db.query(Subscription.id)
            .filter(Subscription.pending_plan_id.isnot(None))
            .filter(Subscription.plan_change_date <= now)
            .filter(Subscription.status.in_(OPEN_SUBSCRIPTION_STATUSES))
            .all()
        ]
        results = []
        for subscription_id in due_ids:
            try:
                subscription = lock_subscription(db, subscription_id)
                if apply_pending_plan_change(db, subscription, now):
                    bump_version(subscription)
                    db.commit()
                    results.append(
                        {
                            "subscription_id": str(subscription_id),
                            "success": True,
                            "plan_id": str(subscription.plan_id),
                        }
                    )
                else:
                    db.rollback()
            except Exception as exc:
                db.rollback()
                logger.exception(
                    "Plan change failed for subscription %s",
                    subscription_id,
                    extra={"subscription_id": str(subscription_id)},
                )
                results.append(
                    {"subscription_id": str(subscription_id), "success": False, "error": str(exc)}
                )
        return _run_summary(now, results)

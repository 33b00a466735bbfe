"""Billing reporting services.

Read-only revenue and collection figures over named report periods.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from decimal import Decimal

from sqlalchemy import and_, func, or_
from sqlalchemy.orm import Session

from app.models.billing import (
    BillingCycle,
    BillingCycleStatus,
    BillingInterval,
    Invoice,
    InvoiceStatus,
    Subscription,
    SubscriptionStatus,
)
from app.services.billing._common import BILLABLE_SUBSCRIPTION_STATUSES, DateRange, get_date_range
from app.services.common import coerce_uuid, to_decimal

logger = logging.getLogger(__name__)


def _range_dict(date_range: DateRange) -> dict:
    return {"start": date_range.start.isoformat(), "end": date_range.end.isoformat()}


def _pct(part: Decimal | int, whole: Decimal | int) -> float:
    if not whole:
        return 0.0
    return round(float(Decimal(part) / Decimal(whole) * 100), 2)


def monthly_amount(price, interval: BillingInterval) -> Decimal:
    """Monthly equivalent of a plan price; yearly plans count 1/12."""
    price = to_decimal(price)
    if interval == BillingInterval.yearly:
        return price / 12
    return price


class BillingReporting:
    """Service for billing reports and statistics."""

    @staticmethod
    def get_mrr(db: Session, tenant_id: str | None = None) -> dict:
        """Monthly recurring revenue from active subscriptions.

        Returns:
            Dictionary with keys:
            - total_mrr: MRR across all active subscriptions
            - mrr_by_plan: MRR per plan name
            - active_subscriptions: number of active subscriptions
        """
        query = db.query(Subscription).filter(Subscription.status == SubscriptionStatus.active)
        if tenant_id:
            query = query.filter(Subscription.tenant_id == coerce_uuid(tenant_id))
        subscriptions = query.all()

        total = Decimal("0")
        by_plan: dict[str, Decimal] = defaultdict(Decimal)
        for subscription in subscriptions:
            plan = subscription.plan
            amount = monthly_amount(plan.price, plan.billing_interval)
            total += amount
            by_plan[plan.name] += amount

        return {
            "total_mrr": round(float(total), 2),
            "mrr_by_plan": {name: round(float(value), 2) for name, value in by_plan.items()},
            "active_subscriptions": len(subscriptions),
        }

    @staticmethod
    def get_churn_rate(db: Session, period: str | None = None) -> dict:
        """Subscriptions cancelled in the period over those open at its start.

        A subscription counts as open at the start when it had started and
        was not yet cancelled, whatever its status is now.
        """
        date_range = get_date_range(period)
        window = date_range.as_utc()
        cancelled = (
            db.query(func.count(Subscription.id))
            .filter(Subscription.status == SubscriptionStatus.cancelled)
            .filter(Subscription.cancelled_at >= window.start)
            .filter(Subscription.cancelled_at <= window.end)
            .scalar()
        )
        active_at_start = (
            db.query(func.count(Subscription.id))
            .filter(Subscription.started_at <= window.start)
            .filter(
                or_(
                    Subscription.cancelled_at.is_(None),
                    Subscription.cancelled_at >= window.start,
                )
            )
            .scalar()
        )
        return {
            "period": _range_dict(date_range),
            "cancelled_subscriptions": cancelled,
            "active_at_start": active_at_start,
            "churn_rate": _pct(cancelled, active_at_start),
        }

    @staticmethod
    def get_arpu(db: Session, period: str | None = None) -> dict:
        """MRR divided by tenants with a live subscription overlapping the period."""
        date_range = get_date_range(period)
        window = date_range.as_utc()
        mrr = BillingReporting.get_mrr(db)
        active_tenants = (
            db.query(func.count(func.distinct(Subscription.tenant_id)))
            .filter(Subscription.status.in_(BILLABLE_SUBSCRIPTION_STATUSES))
            .filter(
                and_(
                    Subscription.current_period_start <= window.end,
                    Subscription.current_period_end >= window.start,
                )
            )
            .scalar()
        )
        arpu = round(mrr["total_mrr"] / active_tenants, 2) if active_tenants else 0.0
        return {
            "period": _range_dict(date_range),
            "total_mrr": mrr["total_mrr"],
            "active_tenants": active_tenants,
            "arpu": arpu,
        }

    @staticmethod
    def get_billing_analytics(db: Session, tenant_id: str, period: str | None = None) -> dict:
        """Billed, paid and overdue totals for a tenant's cycles starting in the period."""
        date_range = get_date_range(period)
        window = date_range.as_utc()
        cycles = (
            db.query(BillingCycle)
            .join(Subscription, BillingCycle.subscription_id == Subscription.id)
            .filter(Subscription.tenant_id == coerce_uuid(tenant_id))
            .filter(BillingCycle.period_start >= window.start)
            .filter(BillingCycle.period_start <= window.end)
            .all()
        )
        billed = Decimal("0")
        paid = Decimal("0")
        overdue = Decimal("0")
        paid_count = 0
        overdue_count = 0
        for cycle in cycles:
            if cycle.status == BillingCycleStatus.cancelled:
                continue
            amount = to_decimal(cycle.total_amount)
            billed += amount
            if cycle.status == BillingCycleStatus.paid:
                paid += amount
                paid_count += 1
            elif cycle.status == BillingCycleStatus.overdue:
                overdue += amount
                overdue_count += 1

        return {
            "period": _range_dict(date_range),
            "total_billed": float(billed),
            "total_paid": float(paid),
            "total_overdue": float(overdue),
            "outstanding": float(billed - paid),
            "collection_rate": _pct(paid, billed),
            "cycles_processed": len(cycles),
            "cycles_paid": paid_count,
            "cycles_overdue": overdue_count,
        }

    @staticmethod
    def get_invoice_analytics(db: Session, tenant_id: str, period: str | None = None) -> dict:
        """Invoice counts and totals by status for invoices issued in the period."""
        date_range = get_date_range(period)
        window = date_range.as_utc()
        rows = (
            db.query(Invoice.status, func.count(Invoice.id), func.sum(Invoice.total_amount))
            .filter(Invoice.tenant_id == coerce_uuid(tenant_id))
            .filter(Invoice.original_invoice_id.is_(None))
            .filter(Invoice.issued_date >= window.start)
            .filter(Invoice.issued_date <= window.end)
            .group_by(Invoice.status)
            .all()
        )
        by_status = {
            status.value: {"count": count, "total": float(to_decimal(total))}
            for status, count, total in rows
        }
        total_count = sum(item["count"] for item in by_status.values())
        total_amount = sum(item["total"] for item in by_status.values())
        paid = by_status.get(InvoiceStatus.paid.value, {"count": 0, "total": 0.0})
        overdue = by_status.get(InvoiceStatus.overdue.value, {"count": 0, "total": 0.0})
        return {
            "period": _range_dict(date_range),
            "total_invoices": total_count,
            "total_amount": round(total_amount, 2),
            "paid_invoices": paid["count"],
            "paid_amount": paid["total"],
            "overdue_invoices": overdue["count"],
            "overdue_amount": overdue["total"],
            "by_status": by_status,
        }

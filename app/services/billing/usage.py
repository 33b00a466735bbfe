"""Usage metric recording, limit checks and usage analytics."""

import logging
from collections import defaultdict
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.billing import Subscription, UsageMetric
from app.models.tenant import Tenant
from app.services.billing._common import _as_utc, _now, get_date_range
from app.services.common import coerce_uuid, get_or_404, to_decimal
from app.services.events import emit_event
from app.services.events.types import EventType

logger = logging.getLogger(__name__)


class Usage:
    @staticmethod
    def track_usage(
        db: Session,
        tenant_id: str,
        metric_name: str,
        value,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        metadata: dict | None = None,
        billable_overage: bool = False,
    ) -> UsageMetric:
        """Append one usage row; nothing is aggregated at write time."""
        get_or_404(db, Tenant, tenant_id, detail="Tenant not found")
        now = _now()
        metric = UsageMetric(
            tenant_id=coerce_uuid(tenant_id),
            metric_name=metric_name,
            metric_value=to_decimal(value),
            period_start=period_start or now,
            period_end=period_end or period_start or now,
            is_billable_overage=billable_overage,
            metadata_=metadata or {},
        )
        db.add(metric)
        db.flush()
        if billable_overage:
            emit_event(
                db,
                EventType.usage_recorded,
                {"metric_name": metric_name, "value": str(metric.metric_value), "billable_overage": True},
                tenant_id=metric.tenant_id,
            )
        db.commit()
        db.refresh(metric)
        return metric

    @staticmethod
    def list_metrics(
        db: Session,
        tenant_id: str,
        metric_name: str | None = None,
        period_start: datetime | None = None,
        period_end: datetime | None = None,
        limit: int | None = None,
        billable_overage: bool | None = None,
    ) -> list[UsageMetric]:
        query = db.query(UsageMetric).filter(UsageMetric.tenant_id == coerce_uuid(tenant_id))
        if metric_name:
            query = query.filter(UsageMetric.metric_name == metric_name)
        if billable_overage is not None:
            query = query.filter(UsageMetric.is_billable_overage.is_(billable_overage))
        if period_start:
            query = query.filter(UsageMetric.period_start >= period_start)
        if period_end:
            query = query.filter(UsageMetric.period_start <= period_end)
        query = query.order_by(UsageMetric.period_start.desc())
        if limit:
            query = query.limit(limit)
        return query.all()

    @staticmethod
    def check_usage_against_limits(db: Session, tenant_id: str, subscription_id: str) -> dict:
        """Compare current-period usage with the subscription plan's limits.

        Unlimited limits (``max_value == -1``) never produce an overage.
        Billable overage rows are money, not usage, and are left out.
        """
        subscription = get_or_404(db, Subscription, subscription_id, detail="Subscription not found")
        usage = Usage.list_metrics(
            db,
            tenant_id,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            billable_overage=False,
        )
        totals: dict[str, Decimal] = defaultdict(Decimal)
        for metric in usage:
            totals[metric.metric_name] += to_decimal(metric.metric_value)

        overages = []
        for limit in subscription.plan.limits:
            if limit.is_unlimited:
                continue
            current = totals.get(limit.metric_name, Decimal("0"))
            max_value = to_decimal(limit.max_value)
            if current > max_value:
                overages.append(
                    {
                        "metric": limit.metric_name,
                        "current": float(current),
                        "limit": float(max_value),
                        "unit": limit.unit,
                        "overage": float(current - max_value),
                        "is_soft_limit": limit.is_soft_limit,
                    }
                )
        return {
            "within_limits": not overages,
            "overages": overages,
            "usage": [
                {
                    "id": str(metric.id),
                    "metric_name": metric.metric_name,
                    "value": float(metric.metric_value),
                    "period_start": _as_utc(metric.period_start).isoformat(),
                    "period_end": _as_utc(metric.period_end).isoformat(),
                    "metadata": metric.metadata_ or {},
                }
                for metric in usage
            ],
        }

    @staticmethod
    def calculate_overage_charges(
        db: Session, tenant_id: str, period_start: datetime, period_end: datetime
    ) -> Decimal:
        """Monetary overage billed for a window.

        Only rows flagged ``is_billable_overage`` count; raw usage metrics
        are for limit checks.
        """
        total = (
            db.query(func.coalesce(func.sum(UsageMetric.metric_value), 0))
            .filter(UsageMetric.tenant_id == coerce_uuid(tenant_id))
            .filter(UsageMetric.is_billable_overage.is_(True))
            .filter(UsageMetric.period_start >= period_start)
            .filter(UsageMetric.period_end <= period_end)
            .scalar()
        )
        return to_decimal(total)

    @staticmethod
    def get_usage_trends(db: Session, tenant_id: str, period: str | None = None) -> dict:
        """Usage totals per bucket and metric.

        Buckets are days, or ISO weeks (``YYYY-Www``) for windows over 30 days.
        """
        date_range = get_date_range(period)
        by_week = date_range.days > 30
        window = date_range.as_utc()
        rows = Usage.list_metrics(db, tenant_id, period_start=window.start, period_end=window.end)
        trends: dict[str, dict[str, float]] = {}
        for metric in sorted(rows, key=lambda item: _as_utc(item.period_start)):
            started = _as_utc(metric.period_start).astimezone(date_range.start.tzinfo)
            if by_week:
                year, week, _ = started.isocalendar()
                bucket = f"{year}-W{week:02d}"
            else:
                bucket = started.strftime("%Y-%m-%d")
            values = trends.setdefault(bucket, {})
            values[metric.metric_name] = values.get(metric.metric_name, 0.0) + float(metric.metric_value)
        return trends

    @staticmethod
    def get_usage_analytics(db: Session, tenant_id: str, period: str | None = None) -> dict:
        date_range = get_date_range(period)
        window = date_range.as_utc()
        totals = (
            db.query(UsageMetric.metric_name, func.sum(UsageMetric.metric_value))
            .filter(UsageMetric.tenant_id == coerce_uuid(tenant_id))
            .filter(UsageMetric.period_start >= window.start)
            .filter(UsageMetric.period_start <= window.end)
            .group_by(UsageMetric.metric_name)
            .all()
        )
        total_value = sum((to_decimal(value) for _, value in totals), Decimal("0"))
        top_usage = sorted(
            ({"metric": name, "value": float(to_decimal(value))} for name, value in totals),
            key=lambda item: item["value"],
            reverse=True,
        )[:5]
        for item in top_usage:
            item["percentage"] = (
                round(item["value"] / float(total_value) * 100, 2) if total_value else 0.0
            )
        return {
            "period": {"start": date_range.start.isoformat(), "end": date_range.end.isoformat()},
            "total_metrics": len(totals),
            "total_value": float(total_value),
            "top_usage": top_usage,
            "trends": Usage.get_usage_trends(db, tenant_id, period),
        }

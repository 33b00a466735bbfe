"""Subscription plan catalogue and plan recommendation."""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy.orm import Session, selectinload

from app.errors import PlanHasActiveSubscriptions, ValidationFailed
from app.models.billing import Plan, PlanLimit, Subscription
from app.schemas.billing import PlanCreate, PlanLimitCreate, PlanUpdate
from app.services.billing._common import BILLABLE_SUBSCRIPTION_STATUSES
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_or_404,
    to_decimal,
)
from app.services.events import emit_event
from app.services.events.types import EventType
from app.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

# Scoring weights for get_recommended_plan
UTILISATION_WEIGHT = Decimal("10")
OVERAGE_PENALTY = Decimal("20")
PRICE_PIVOT = Decimal("1000")
PRICE_DIVISOR = Decimal("100")


def _limit_rows(plan: Plan, limits: list[PlanLimitCreate]) -> list[PlanLimit]:
    seen: set[str] = set()
    errors = []
    rows = []
    for limit in limits:
        if limit.metric_name in seen:
            errors.append(f"Duplicate limit for metric '{limit.metric_name}'")
            continue
        seen.add(limit.metric_name)
        rows.append(PlanLimit(**limit.model_dump()))
    if errors:
        raise ValidationFailed(errors)
    # the Plan.limits cascade puts these in the session
    plan.limits.extend(rows)
    return rows


class Plans(ListResponseMixin):
    @staticmethod
    def create(db: Session, payload: PlanCreate) -> Plan:
        data = payload.model_dump(exclude={"limits"})
        plan = Plan(**data)
        db.add(plan)
        _limit_rows(plan, payload.limits)
        db.flush()
        emit_event(
            db,
            EventType.plan_created,
            {"name": plan.name, "price": str(plan.price), "limits": len(payload.limits)},
        )
        db.commit()
        db.refresh(plan)
        logger.info("Created plan %s (%s)", plan.name, plan.id)
        return plan

    @staticmethod
    def get(db: Session, plan_id: str) -> Plan:
        return get_or_404(
            db,
            Plan,
            plan_id,
            detail="Plan not found",
            options=[selectinload(Plan.limits)],
        )

    @staticmethod
    def get_available_plans(db: Session) -> list[Plan]:
        """Active plans, cheapest first, each with its limits."""
        return (
            db.query(Plan)
            .options(selectinload(Plan.limits))
            .filter(Plan.is_active.is_(True))
            .order_by(Plan.price.asc(), Plan.sort_order.asc())
            .all()
        )

    @staticmethod
    def list(
        db: Session,
        is_active: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[Plan]:
        query = db.query(Plan).options(selectinload(Plan.limits))
        if is_active is not None:
            query = query.filter(Plan.is_active.is_(is_active))
        query = apply_ordering(
            query,
            order_by,
            order_dir,
            {"price": Plan.price, "name": Plan.name, "sort_order": Plan.sort_order, "created_at": Plan.created_at},
        )
        return apply_pagination(query, limit, offset).all()

    @staticmethod
    def count(db: Session, is_active: bool | None, order_by: str, order_dir: str) -> int:
        query = db.query(Plan)
        if is_active is not None:
            query = query.filter(Plan.is_active.is_(is_active))
        return query.count()

    @staticmethod
    def update(db: Session, plan_id: str, payload: PlanUpdate) -> Plan:
        plan = Plans.get(db, plan_id)
        for key, value in payload.model_dump(exclude_unset=True).items():
            setattr(plan, key, value)
        db.commit()
        db.refresh(plan)
        return plan

    @staticmethod
    def update_plan_limits(db: Session, plan_id: str, limits: list[PlanLimitCreate]) -> Plan:
        """Replace every limit of a plan.

        Limits missing from ``limits`` are removed, not kept.
        """
        plan = Plans.get(db, plan_id)
        plan.limits.clear()
        db.flush()
        _limit_rows(plan, limits)
        db.commit()
        db.refresh(plan)
        return plan

    @staticmethod
    def delete(db: Session, plan_id: str) -> None:
        """Soft-delete a plan.

        Raises:
            PlanHasActiveSubscriptions: while a trial or active subscription uses it
        """
        plan = Plans.get(db, plan_id)
        in_use = (
            db.query(Subscription.id)
            .filter(Subscription.plan_id == plan.id)
            .filter(Subscription.status.in_(BILLABLE_SUBSCRIPTION_STATUSES))
            .count()
        )
        if in_use:
            raise PlanHasActiveSubscriptions(
                f"Plan '{plan.name}' has {in_use} active subscription(s)"
            )
        plan.is_active = False
        emit_event(db, EventType.plan_deactivated, {"name": plan.name})
        db.commit()
        logger.info("Deactivated plan %s", plan.id)

    @staticmethod
    def get_recommended_plan(db: Session, usage_data: dict) -> list[dict]:
        """Rank active plans against observed usage.

        Each metric within its limit adds ``value / limit * 10``; each metric
        over its limit subtracts 20 and records an overage. Cheaper plans
        gain ``(1000 - price) / 100``. Only the final score is floored at 0.
        """
        recommendations = []
        for plan in Plans.get_available_plans(db):
            limits = {limit.metric_name: limit for limit in plan.limits}
            score = Decimal("0")
            overages = []
            for metric, raw_value in usage_data.items():
                limit = limits.get(metric)
                if limit is None or limit.is_unlimited:
                    continue
                value = to_decimal(raw_value)
                max_value = to_decimal(limit.max_value)
                if value > max_value:
                    score -= OVERAGE_PENALTY
                    overages.append(f"{metric}: {value} exceeds limit of {max_value}")
                elif max_value > 0:
                    score += value / max_value * UTILISATION_WEIGHT
            score += (PRICE_PIVOT - to_decimal(plan.price)) / PRICE_DIVISOR
            recommendations.append(
                {
                    "plan": plan,
                    "score": float(round(max(score, Decimal("0")), 2)),
                    "overages": overages,
                }
            )
        recommendations.sort(key=lambda item: item["score"], reverse=True)
        return recommendations

    @staticmethod
    def compare_plans(db: Session, plan_ids: list) -> dict:
        """Side-by-side limit matrix for the given plans."""
        plans = [Plans.get(db, coerce_uuid(plan_id)) for plan_id in plan_ids]
        metrics = sorted({limit.metric_name for plan in plans for limit in plan.limits})
        matrix = {}
        for metric in metrics:
            row = {}
            for plan in plans:
                limit = next((item for item in plan.limits if item.metric_name == metric), None)
                if limit is None:
                    row[str(plan.id)] = None
                elif limit.is_unlimited:
                    row[str(plan.id)] = "unlimited"
                else:
                    row[str(plan.id)] = float(limit.max_value)
            matrix[metric] = row
        return {
            "plans": [
                {
                    "id": str(plan.id),
                    "name": plan.name,
                    "price": float(plan.price),
                    "billing_interval": plan.billing_interval.value,
                }
                for plan in plans
            ],
            "limits": matrix,
        }

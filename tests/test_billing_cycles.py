from datetime import UTC, datetime, timedelta
from decimal import Decimal

from app.models.billing import (
    BillingCycle,
    BillingCycleKind,
    BillingCycleStatus,
    Invoice,
    InvoiceStatus,
    SubscriptionStatus,
    UsageMetric,
)
from app.services import billing as billing_service
from app.services.billing._common import _as_utc
from app.services.common import coerce_uuid


def _end_period(db_session, subscription, now):
    subscription.current_period_start = now - timedelta(days=31)
    subscription.current_period_end = now - timedelta(days=1)
    db_session.commit()


def test_cycle_total_is_base_plus_overage_plus_tax_minus_discount(db_session, subscription):
    cycle = billing_service.billing_cycles.create_billing_cycle(
        db_session,
        subscription,
        base_amount=Decimal("100.00"),
        overage_amount=Decimal("20.50"),
        tax_amount=Decimal("12.05"),
        discount_amount=Decimal("7.55"),
    )
    assert cycle.total_amount == Decimal("125.00")
    assert cycle.status == BillingCycleStatus.pending
    assert cycle.kind == BillingCycleKind.regular


def test_cycle_defaults_to_plan_price_and_current_period(db_session, subscription, plan):
    cycle = billing_service.billing_cycles.create_billing_cycle(db_session, subscription)
    assert cycle.base_amount == plan.price
    assert cycle.total_amount == plan.price
    assert _as_utc(cycle.period_end) == _as_utc(subscription.current_period_end)
    assert cycle.currency == "IDR"


def test_initial_cycle_is_invoiced_on_create(subscription, plan):
    cycles = subscription.billing_cycles
    assert len(cycles) == 1
    assert cycles[0].kind == BillingCycleKind.initial
    assert cycles[0].status == BillingCycleStatus.sent
    assert cycles[0].invoice.total_amount == plan.price
    assert _as_utc(cycles[0].invoice.due_date) == _as_utc(cycles[0].due_date)


def test_billing_run_renews_ended_period_with_overage(db_session, tenant, subscription, plan):
    now = datetime.now(UTC)
    _end_period(db_session, subscription, now)
    used_at = now - timedelta(days=10)
    db_session.add(
        UsageMetric(
            tenant_id=tenant.id,
            metric_name="transactions_overage",
            metric_value=Decimal("7500.00"),
            period_start=used_at,
            period_end=used_at,
            is_billable_overage=True,
        )
    )
    db_session.commit()

    summary = billing_service.billing_cycles.process_billing_cycle(db_session, run_at=now)

    assert summary["processed"] == 1
    assert summary["succeeded"] == 1
    result = summary["results"][0]
    assert result["action"] == "renewed"
    cycle = db_session.get(BillingCycle, coerce_uuid(result["billing_cycle_id"]))
    assert cycle.overage_amount == Decimal("7500.00")
    assert cycle.total_amount == plan.price + Decimal("7500.00")
    assert cycle.invoice.status == InvoiceStatus.sent
    db_session.refresh(subscription)
    assert _as_utc(subscription.current_period_start) == now - timedelta(days=1)
    assert _as_utc(subscription.current_period_end) == now + timedelta(days=29)
    assert subscription.version > 1


def test_billing_run_skips_subscriptions_mid_period(db_session, subscription):
    summary = billing_service.billing_cycles.process_billing_cycle(db_session)
    assert summary["processed"] == 0


def test_billing_run_skips_missed_periods(db_session, subscription):
    now = datetime.now(UTC)
    subscription.current_period_start = now - timedelta(days=95)
    subscription.current_period_end = now - timedelta(days=65)
    db_session.commit()

    billing_service.billing_cycles.process_billing_cycle(db_session, run_at=now)

    db_session.refresh(subscription)
    start = _as_utc(subscription.current_period_start)
    end = _as_utc(subscription.current_period_end)
    assert start <= now < end
    assert end - start == timedelta(days=30)


def test_trial_becomes_active_at_trial_end(db_session, tenant, plan):
    subscription = billing_service.subscriptions.create_subscription(
        db_session, str(tenant.id), str(plan.id), trial_days=14
    )
    assert subscription.status == SubscriptionStatus.trial
    assert subscription.billing_cycles == []

    now = datetime.now(UTC) + timedelta(days=15)
    summary = billing_service.billing_cycles.process_billing_cycle(db_session, run_at=now)

    assert summary["succeeded"] == 1
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.active
    assert len(subscription.billing_cycles) == 1


def test_cancel_at_period_end_cancels_on_renewal(db_session, subscription):
    billing_service.subscriptions.cancel_subscription(
        db_session, str(subscription.id), at_period_end=True, reason="Closing shop"
    )
    now = datetime.now(UTC)
    _end_period(db_session, subscription, now)

    summary = billing_service.billing_cycles.process_billing_cycle(db_session, run_at=now)

    assert summary["results"][0]["action"] == "cancelled"
    assert summary["results"][0]["billing_cycle_id"] is None
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.cancelled
    assert subscription.cancelled_at is not None


def test_dunning_cancels_after_cutoff(db_session, subscription):
    now = datetime.now(UTC)
    cycle = subscription.billing_cycles[0]
    cycle.due_date = now - timedelta(days=31)
    db_session.commit()

    summary = billing_service.billing_cycles.process_dunning(db_session, now=now)

    assert summary["succeeded"] == 1
    db_session.refresh(subscription)
    db_session.refresh(cycle)
    assert subscription.status == SubscriptionStatus.cancelled
    assert subscription.cancel_reason.startswith("dunning")
    assert cycle.status == BillingCycleStatus.cancelled
    assert cycle.invoice.status == InvoiceStatus.cancelled


def test_dunning_leaves_recent_cycles_alone(db_session, subscription):
    now = datetime.now(UTC)
    cycle = subscription.billing_cycles[0]
    cycle.due_date = now - timedelta(days=29)
    db_session.commit()

    summary = billing_service.billing_cycles.process_dunning(db_session, now=now)

    assert summary["processed"] == 0
    db_session.refresh(subscription)
    db_session.refresh(cycle)
    assert subscription.status == SubscriptionStatus.active
    assert cycle.status == BillingCycleStatus.sent


def test_dunning_ignores_paid_cycles(db_session, subscription, invoice):
    billing_service.invoices.mark_paid(db_session, invoice)
    cycle = subscription.billing_cycles[0]
    cycle.due_date = datetime.now(UTC) - timedelta(days=60)
    db_session.commit()

    summary = billing_service.billing_cycles.process_dunning(db_session)

    assert summary["processed"] == 0
    db_session.refresh(subscription)
    assert subscription.status == SubscriptionStatus.active


def test_apply_pending_plan_changes(db_session, subscription, make_plan):
    cheaper = make_plan("Lite", "50000.00")
    billing_service.subscriptions.update_subscription_plan(
        db_session, str(subscription.id), str(cheaper.id)
    )
    db_session.refresh(subscription)
    assert subscription.pending_plan_id == cheaper.id

    later = _as_utc(subscription.plan_change_date) + timedelta(minutes=1)
    summary = billing_service.billing_cycles.apply_pending_plan_changes(db_session, now=later)

    assert summary["succeeded"] == 1
    db_session.refresh(subscription)
    assert subscription.plan_id == cheaper.id
    assert subscription.pending_plan_id is None


def test_overdue_and_pending_cycle_queries(db_session, subscription):
    cycle = billing_service.billing_cycles.create_billing_cycle(db_session, subscription)
    pending = billing_service.billing_cycles.get_pending_billing_cycles(
        db_session, str(subscription.id)
    )
    assert [item.id for item in pending] == [cycle.id]

    later = datetime.now(UTC) + timedelta(days=8)
    overdue = billing_service.billing_cycles.get_overdue_billing_cycles(db_session, now=later)
    assert cycle.id in {item.id for item in overdue}
    assert db_session.query(Invoice).filter(Invoice.billing_cycle_id == cycle.id).count() == 0

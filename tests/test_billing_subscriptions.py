from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

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
    Invoice,
    InvoiceItemType,
    InvoiceStatus,
    Subscription,
    SubscriptionStatus,
)
from app.models.event_store import EventStore
from app.services import billing as billing_service
from app.services.billing._common import _as_utc
from app.services.billing.subscriptions import calculate_proration


def _set_period_end(db_session, subscription, end):
    subscription.current_period_end = end
    db_session.commit()


def test_create_active_subscription(db_session, tenant, plan):
    subscription = billing_service.subscriptions.create_subscription(
        db_session, str(tenant.id), str(plan.id), metadata={"source": "signup"}
    )
    assert subscription.status == SubscriptionStatus.active
    assert subscription.trial_ends_at is None
    assert (
        _as_utc(subscription.current_period_end) - _as_utc(subscription.current_period_start)
    ) == timedelta(days=30)
    assert subscription.metadata_ == {"source": "signup"}
    event_types = {
        row.event_type
        for row in db_session.query(EventStore).filter(EventStore.subscription_id == subscription.id)
    }
    assert {"subscription.created", "billing_cycle.created", "invoice.created"} <= event_types


def test_create_trial_subscription(db_session, tenant, plan):
    subscription = billing_service.subscriptions.create_subscription(
        db_session, str(tenant.id), str(plan.id), trial_days=7
    )
    assert subscription.status == SubscriptionStatus.trial
    assert _as_utc(subscription.trial_ends_at) == _as_utc(subscription.current_period_end)
    assert db_session.query(Invoice).filter(Invoice.tenant_id == tenant.id).count() == 0


def test_second_subscription_is_rejected_without_a_row(db_session, tenant, plan, subscription):
    with pytest.raises(TenantAlreadySubscribed):
        billing_service.subscriptions.create_subscription(db_session, str(tenant.id), str(plan.id))
    assert db_session.query(Subscription).filter(Subscription.tenant_id == tenant.id).count() == 1


def test_create_subscription_rejects_inactive_plan(db_session, tenant, make_plan):
    retired = make_plan("Retired", "10.00", is_active=False)
    with pytest.raises(ValidationFailed):
        billing_service.subscriptions.create_subscription(db_session, str(tenant.id), str(retired.id))


def test_create_subscription_rejects_foreign_payment_method(
    db_session, tenant, plan, make_tenant, fake_gateway
):
    other = make_tenant("Toko Lain")
    method = billing_service.payment_providers.add_payment_method(
        db_session, str(other.id), "stripe"
    )
    with pytest.raises(NotFoundError):
        billing_service.subscriptions.create_subscription(
            db_session, str(tenant.id), str(plan.id), payment_method_id=str(method.id)
        )


def test_calculate_proration():
    now = datetime(2024, 6, 1, tzinfo=UTC)
    assert calculate_proration(Decimal("100"), now + timedelta(days=10), now) == Decimal("33.33")
    assert calculate_proration(Decimal("100"), now - timedelta(days=1), now) == Decimal("0.00")


def test_immediate_upgrade_invoices_proration(db_session, tenant, make_plan):
    starter = make_plan("Starter", "100.00")
    pro = make_plan("Pro", "200.00")
    subscription = billing_service.subscriptions.create_subscription(
        db_session, str(tenant.id), str(starter.id)
    )
    _set_period_end(db_session, subscription, datetime.now(UTC) + timedelta(days=10))

    updated = billing_service.subscriptions.update_subscription_plan(
        db_session, str(subscription.id), str(pro.id), immediate=True, prorate=True
    )

    assert updated.plan_id == pro.id
    proration = (
        db_session.query(BillingCycle)
        .filter(BillingCycle.subscription_id == subscription.id)
        .filter(BillingCycle.kind == BillingCycleKind.proration)
        .one()
    )
    assert proration.base_amount == Decimal("33.33")
    assert proration.total_amount == Decimal("33.33")
    assert proration.status == BillingCycleStatus.sent
    assert proration.invoice.items[0].item_type == InvoiceItemType.proration
    assert proration.invoice.total_amount == Decimal("33.33")


def test_immediate_upgrade_without_proration(db_session, subscription, make_plan):
    premium = make_plan("Premium", "500000.00")
    billing_service.subscriptions.update_subscription_plan(
        db_session, str(subscription.id), str(premium.id), immediate=True, prorate=False
    )
    kinds = [cycle.kind for cycle in db_session.query(BillingCycle).filter(
        BillingCycle.subscription_id == subscription.id
    )]
    assert BillingCycleKind.proration not in kinds
    db_session.refresh(subscription)
    assert subscription.plan_id == premium.id


def test_downgrade_is_scheduled_for_period_end(db_session, subscription, plan, make_plan):
    lite = make_plan("Lite", "50000.00")
    updated = billing_service.subscriptions.update_subscription_plan(
        db_session, str(subscription.id), str(lite.id), immediate=True
    )
    assert updated.plan_id == plan.id
    assert updated.pending_plan_id == lite.id
    assert _as_utc(updated.plan_change_date) == _as_utc(updated.current_period_end)


def test_change_to_same_plan_is_rejected(db_session, subscription, plan):
    with pytest.raises(ValidationFailed):
        billing_service.subscriptions.update_subscription_plan(
            db_session, str(subscription.id), str(plan.id)
        )


def test_cancelled_subscription_cannot_change_plan(db_session, subscription, make_plan):
    other = make_plan("Other", "1.00")
    billing_service.subscriptions.cancel_subscription(db_session, str(subscription.id))
    with pytest.raises(InvalidSubscriptionState):
        billing_service.subscriptions.update_subscription_plan(
            db_session, str(subscription.id), str(other.id)
        )


def test_cancel_now_cancels_open_cycles(db_session, subscription):
    cycle = billing_service.billing_cycles.create_billing_cycle(db_session, subscription)
    cancelled = billing_service.subscriptions.cancel_subscription(
        db_session, str(subscription.id), reason="Too expensive"
    )
    assert cancelled.status == SubscriptionStatus.cancelled
    assert cancelled.cancel_reason == "Too expensive"
    assert cancelled.cancelled_at is not None
    db_session.refresh(cycle)
    assert cycle.status == BillingCycleStatus.cancelled


def test_cancel_now_closes_unpaid_invoices(db_session, subscription, invoice):
    initial = subscription.billing_cycles[0]
    billing_service.subscriptions.cancel_subscription(db_session, str(subscription.id))

    db_session.refresh(initial)
    db_session.refresh(invoice)
    assert initial.status == BillingCycleStatus.cancelled
    assert invoice.status == InvoiceStatus.cancelled


def test_dunning_spares_paid_reactivation(db_session, subscription):
    billing_service.subscriptions.cancel_subscription(db_session, str(subscription.id))
    reactivated = billing_service.subscriptions.reactivate_subscription(db_session, str(subscription.id))
    cycle = next(
        cycle for cycle in reactivated.billing_cycles if cycle.kind == BillingCycleKind.reactivation
    )
    billing_service.invoices.mark_paid(db_session, cycle.invoice)

    summary = billing_service.billing_cycles.process_dunning(
        db_session, now=datetime.now(UTC) + timedelta(days=40)
    )

    assert summary["processed"] == 0
    db_session.refresh(reactivated)
    assert reactivated.status == SubscriptionStatus.active


def test_cancel_at_period_end_keeps_subscription_open(db_session, subscription):
    updated = billing_service.subscriptions.cancel_subscription(
        db_session, str(subscription.id), at_period_end=True
    )
    assert updated.status == SubscriptionStatus.active
    assert updated.cancel_at_period_end is True


def test_cancel_twice_is_rejected(db_session, subscription):
    billing_service.subscriptions.cancel_subscription(db_session, str(subscription.id))
    with pytest.raises(InvalidSubscriptionState):
        billing_service.subscriptions.cancel_subscription(db_session, str(subscription.id))


def test_reactivate_starts_a_new_billed_period(db_session, subscription):
    billing_service.subscriptions.cancel_subscription(db_session, str(subscription.id))
    reactivated = billing_service.subscriptions.reactivate_subscription(db_session, str(subscription.id))

    assert reactivated.status == SubscriptionStatus.active
    assert reactivated.cancelled_at is None
    kinds = [cycle.kind for cycle in reactivated.billing_cycles]
    assert BillingCycleKind.reactivation in kinds


def test_reactivate_requires_cancelled(db_session, subscription):
    with pytest.raises(InvalidSubscriptionState):
        billing_service.subscriptions.reactivate_subscription(db_session, str(subscription.id))


def test_new_subscription_allowed_after_cancel(db_session, tenant, plan, subscription):
    billing_service.subscriptions.cancel_subscription(db_session, str(subscription.id))
    replacement = billing_service.subscriptions.create_subscription(
        db_session, str(tenant.id), str(plan.id)
    )
    assert replacement.id != subscription.id
    assert billing_service.subscriptions.get_tenant_subscription(db_session, str(tenant.id)).id == replacement.id


def test_pause_and_resume(db_session, subscription):
    resume_on = datetime.now(UTC) + timedelta(days=14)
    paused = billing_service.subscriptions.pause_subscription(
        db_session, str(subscription.id), reason="Renovation", resume_date=resume_on
    )
    assert paused.status == SubscriptionStatus.past_due
    assert paused.metadata_["pause"]["reason"] == "Renovation"

    resumed = billing_service.subscriptions.resume_subscription(db_session, str(subscription.id))
    assert resumed.status == SubscriptionStatus.active
    assert "pause" not in resumed.metadata_


def test_pause_requires_active(db_session, tenant, plan):
    trial = billing_service.subscriptions.create_subscription(
        db_session, str(tenant.id), str(plan.id), trial_days=14
    )
    with pytest.raises(InvalidSubscriptionState):
        billing_service.subscriptions.pause_subscription(db_session, str(trial.id))


def test_resume_requires_paused(db_session, subscription):
    with pytest.raises(InvalidSubscriptionState):
        billing_service.subscriptions.resume_subscription(db_session, str(subscription.id))


def test_expiring_subscriptions(db_session, subscription):
    now = datetime.now(UTC)
    assert billing_service.subscriptions.get_expiring_subscriptions(db_session, now=now) == []
    _set_period_end(db_session, subscription, now + timedelta(days=3))
    expiring = billing_service.subscriptions.get_expiring_subscriptions(db_session, days=7, now=now)
    assert [item.id for item in expiring] == [subscription.id]


def test_health_of_clean_subscription(db_session, subscription):
    health = billing_service.subscriptions.calculate_subscription_health(db_session, subscription)
    assert health == {
        "score": 100,
        "status": "healthy",
        "issues": [],
        "days_remaining": 30,
        "within_limits": True,
    }


def test_health_penalties_accumulate(db_session, tenant, subscription):
    billing_service.usage.track_usage(db_session, str(tenant.id), "transactions", 1500)
    billing_service.subscriptions.pause_subscription(db_session, str(subscription.id))
    billing_service.subscriptions.cancel_subscription(
        db_session, str(subscription.id), at_period_end=True
    )
    _set_period_end(db_session, subscription, datetime.now(UTC) + timedelta(days=5))

    health = billing_service.subscriptions.calculate_subscription_health(db_session, subscription)

    # 100 - 30 (past due) - 10 (one overage) - 20 (ending within a week)
    assert health["score"] == 40
    assert health["status"] == "critical"
    assert len(health["issues"]) == 3
    assert health["within_limits"] is False


def test_health_warning_band(db_session, tenant, subscription):
    billing_service.subscriptions.pause_subscription(db_session, str(subscription.id))
    health = billing_service.subscriptions.calculate_subscription_health(db_session, subscription)
    assert health["score"] == 70
    assert health["status"] == "warning"


def test_subscription_analytics(db_session, tenant, subscription):
    analytics = billing_service.subscriptions.get_subscription_analytics(db_session, str(tenant.id))
    assert analytics["subscription"]["id"] == str(subscription.id)
    assert analytics["subscription"]["plan"] == "Basic"
    assert analytics["health"]["score"] == 100
    assert analytics["billing"]["total_billed"] == 100000.0
    assert "usage" in analytics

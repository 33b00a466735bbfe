from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.orm import Session
from starlette.responses import Response

from app.api.deps import get_db, get_tenant_id
from app.errors import NotFoundError, ValidationFailed
from app.models.billing import PaymentProviderType
from app.schemas.billing import (
    CreditNoteCreate,
    InvoicePaymentRequest,
    InvoiceRead,
    InvoiceVoid,
    PaymentMethodCreate,
    PaymentMethodRead,
    PaymentTransactionRead,
    PlanCreate,
    PlanLimitCreate,
    PlanRead,
    PlanRecommendationRequest,
    RefundRequest,
    SubscriptionCreate,
    SubscriptionPause,
    SubscriptionPlanChange,
    SubscriptionRead,
    UsageMetricRead,
    UsageTrackRequest,
)
from app.services import api_billing_webhooks as api_billing_webhooks_service
from app.services import billing as billing_service
from app.services.response import envelope

router = APIRouter(prefix="/billing")

ANALYTICS_TYPES = ("overview", "mrr", "churn", "arpu", "usage", "invoices")


def _dump(schema, obj) -> dict:
    return schema.model_validate(obj).model_dump(mode="json", by_alias=True)


def _dump_list(schema, payload: dict) -> dict:
    return {**payload, "items": [_dump(schema, item) for item in payload["items"]]}


def _tenant_subscription(db: Session, tenant_id: str):
    subscription = billing_service.subscriptions.get_tenant_subscription(db, tenant_id)
    if subscription is None:
        raise NotFoundError("No subscription found for tenant")
    return subscription


# --- Analytics ---


@router.get("/analytics", tags=["billing-analytics"])
def billing_analytics(
    period: str | None = None,
    type: str = Query(default="overview"),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    if type not in ANALYTICS_TYPES:
        raise ValidationFailed(
            f"Invalid analytics type: {type} (allowed: {', '.join(ANALYTICS_TYPES)})"
        )
    if type == "mrr":
        data = billing_service.billing_reporting.get_mrr(db, tenant_id)
    elif type == "churn":
        data = billing_service.billing_reporting.get_churn_rate(db, period)
    elif type == "arpu":
        data = billing_service.billing_reporting.get_arpu(db, period)
    elif type == "usage":
        data = billing_service.usage.get_usage_analytics(db, tenant_id, period)
    elif type == "invoices":
        data = billing_service.billing_reporting.get_invoice_analytics(db, tenant_id, period)
    else:
        data = billing_service.subscriptions.get_subscription_analytics(db, tenant_id, period)
    return envelope(data)


# --- Subscription ---


@router.get("/subscription", tags=["subscriptions"])
def get_subscription(tenant_id: str = Depends(get_tenant_id), db: Session = Depends(get_db)):
    return envelope(_dump(SubscriptionRead, _tenant_subscription(db, tenant_id)))


@router.post("/subscription", status_code=status.HTTP_201_CREATED, tags=["subscriptions"])
def create_subscription(
    payload: SubscriptionCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    subscription = billing_service.subscriptions.create_subscription(
        db,
        tenant_id,
        payload.plan_id,
        trial_days=payload.trial_days,
        payment_method_id=payload.payment_method_id,
        metadata=payload.metadata,
    )
    return envelope(_dump(SubscriptionRead, subscription), "Subscription created")


@router.put("/subscription", tags=["subscriptions"])
def change_subscription_plan(
    payload: SubscriptionPlanChange,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    subscription = _tenant_subscription(db, tenant_id)
    subscription = billing_service.subscriptions.update_subscription_plan(
        db,
        subscription.id,
        payload.plan_id,
        immediate=payload.immediate,
        prorate=payload.prorate,
    )
    return envelope(_dump(SubscriptionRead, subscription), "Subscription updated")


@router.delete("/subscription", tags=["subscriptions"])
def cancel_subscription(
    at_period_end: bool = False,
    reason: str | None = None,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    subscription = _tenant_subscription(db, tenant_id)
    subscription = billing_service.subscriptions.cancel_subscription(
        db, subscription.id, at_period_end=at_period_end, reason=reason
    )
    return envelope(_dump(SubscriptionRead, subscription), "Subscription cancelled")


@router.post("/subscription/pause", tags=["subscriptions"])
def pause_subscription(
    payload: SubscriptionPause,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    subscription = _tenant_subscription(db, tenant_id)
    subscription = billing_service.subscriptions.pause_subscription(
        db, subscription.id, reason=payload.reason, resume_date=payload.resume_date
    )
    return envelope(_dump(SubscriptionRead, subscription), "Subscription paused")


@router.post("/subscription/resume", tags=["subscriptions"])
def resume_subscription(tenant_id: str = Depends(get_tenant_id), db: Session = Depends(get_db)):
    subscription = _tenant_subscription(db, tenant_id)
    subscription = billing_service.subscriptions.resume_subscription(db, subscription.id)
    return envelope(_dump(SubscriptionRead, subscription), "Subscription resumed")


@router.post("/subscription/reactivate", tags=["subscriptions"])
def reactivate_subscription(
    tenant_id: str = Depends(get_tenant_id), db: Session = Depends(get_db)
):
    subscription = _tenant_subscription(db, tenant_id)
    subscription = billing_service.subscriptions.reactivate_subscription(db, subscription.id)
    return envelope(_dump(SubscriptionRead, subscription), "Subscription reactivated")


@router.get("/subscription/health", tags=["subscriptions"])
def subscription_health(tenant_id: str = Depends(get_tenant_id), db: Session = Depends(get_db)):
    subscription = _tenant_subscription(db, tenant_id)
    return envelope(billing_service.subscriptions.calculate_subscription_health(db, subscription))


# --- Invoices ---


@router.get("/invoices", tags=["invoices"])
def list_invoices(
    status: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    order_by: str = Query(default="issued_date"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    payload = billing_service.invoices.list_response(
        db, tenant_id, status, date_from, date_to, order_by, order_dir, limit, offset
    )
    return envelope(_dump_list(InvoiceRead, payload))


@router.get("/invoices/export", tags=["invoices"])
def export_invoices(
    format: str = Query(default="csv"),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    body, content_type, extension = billing_service.export_invoices(db, tenant_id, format)
    return Response(
        content=body,
        media_type=content_type,
        headers={"Content-Disposition": f'attachment; filename="invoices.{extension}"'},
    )


@router.get("/invoices/{invoice_id}", tags=["invoices"])
def get_invoice(
    invoice_id: str, tenant_id: str = Depends(get_tenant_id), db: Session = Depends(get_db)
):
    return envelope(_dump(InvoiceRead, billing_service.invoices.get(db, invoice_id, tenant_id)))


@router.post("/invoices/{invoice_id}/pay", tags=["invoices"])
def pay_invoice(
    invoice_id: str,
    payload: InvoicePaymentRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    result = billing_service.payment_providers.process_payment(
        db, invoice_id, payload.provider, payload.payment_details, tenant_id=tenant_id
    )
    return envelope(
        {
            "transaction": _dump(PaymentTransactionRead, result["transaction"]),
            "redirect_url": result["redirect_url"],
            "client_secret": result["client_secret"],
        }
    )


@router.post("/invoices/{invoice_id}/void", tags=["invoices"])
def void_invoice(
    invoice_id: str,
    payload: InvoiceVoid,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    invoice = billing_service.invoices.get(db, invoice_id, tenant_id)
    invoice = billing_service.invoices.void_invoice(db, invoice.id, payload.reason)
    return envelope(_dump(InvoiceRead, invoice), "Invoice voided")


@router.post(
    "/invoices/{invoice_id}/credit-notes",
    status_code=status.HTTP_201_CREATED,
    tags=["invoices"],
)
def create_credit_note(
    invoice_id: str,
    payload: CreditNoteCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    invoice = billing_service.invoices.get(db, invoice_id, tenant_id)
    credit_note = billing_service.invoices.create_credit_note(
        db, invoice.id, payload.items, reason=payload.reason
    )
    return envelope(_dump(InvoiceRead, credit_note), "Credit note created")


# --- Payment methods ---


@router.get("/payment-methods", tags=["payment-methods"])
def list_payment_methods(tenant_id: str = Depends(get_tenant_id), db: Session = Depends(get_db)):
    methods = billing_service.payment_providers.get_payment_methods(db, tenant_id)
    return envelope([_dump(PaymentMethodRead, method) for method in methods])


@router.get("/payment-methods/available", tags=["payment-methods"])
def available_payment_methods(provider: PaymentProviderType = PaymentProviderType.midtrans):
    return envelope(billing_service.payment_providers.get_available_payment_methods(provider))


@router.post("/payment-methods", status_code=status.HTTP_201_CREATED, tags=["payment-methods"])
def add_payment_method(
    payload: PaymentMethodCreate,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    method = billing_service.payment_providers.add_payment_method(
        db,
        tenant_id,
        payload.provider,
        method_type=payload.method_type,
        details=payload.details,
        is_default=payload.is_default,
    )
    return envelope(_dump(PaymentMethodRead, method), "Payment method added")


@router.delete("/payment-methods/{payment_method_id}", tags=["payment-methods"])
def remove_payment_method(
    payment_method_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    billing_service.payment_providers.remove_payment_method(db, tenant_id, payment_method_id)
    return envelope(message="Payment method removed")


@router.post("/payment-methods/{payment_method_id}/default", tags=["payment-methods"])
def set_default_payment_method(
    payment_method_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    method = billing_service.payment_providers.set_default_payment_method(
        db, tenant_id, payment_method_id
    )
    return envelope(_dump(PaymentMethodRead, method), "Default payment method updated")


# --- Transactions ---


@router.get("/transactions", tags=["transactions"])
def list_transactions(
    status: str | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    payload = billing_service.payment_providers.list_transactions(
        db, tenant_id, status=status, limit=limit, offset=offset
    )
    return envelope(_dump_list(PaymentTransactionRead, payload))


@router.get("/transactions/{transaction_id}", tags=["transactions"])
def get_transaction(
    transaction_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    transaction = billing_service.payment_providers.get_payment_status(
        db, transaction_id, tenant_id=tenant_id
    )
    return envelope(_dump(PaymentTransactionRead, transaction))


@router.post("/transactions/{transaction_id}/refund", tags=["transactions"])
def refund_transaction(
    transaction_id: str,
    payload: RefundRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    refund = billing_service.payment_providers.refund_payment(
        db, transaction_id, amount=payload.amount, reason=payload.reason, tenant_id=tenant_id
    )
    return envelope(_dump(PaymentTransactionRead, refund), "Refund processed")


@router.post("/transactions/{transaction_id}/approve", tags=["transactions"])
def approve_transaction(
    transaction_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    transaction = billing_service.payment_providers.approve_payment(
        db, transaction_id, tenant_id=tenant_id
    )
    return envelope(_dump(PaymentTransactionRead, transaction))


@router.post("/transactions/{transaction_id}/cancel", tags=["transactions"])
def cancel_transaction(
    transaction_id: str,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    transaction = billing_service.payment_providers.cancel_payment(
        db, transaction_id, tenant_id=tenant_id
    )
    return envelope(_dump(PaymentTransactionRead, transaction), "Payment cancelled")


# --- Plans ---


@router.get("/plans", tags=["plans"])
def list_plans(db: Session = Depends(get_db)):
    plans = billing_service.plans.get_available_plans(db)
    return envelope([_dump(PlanRead, plan) for plan in plans])


@router.post("/plans", status_code=status.HTTP_201_CREATED, tags=["plans"])
def create_plan(payload: PlanCreate, db: Session = Depends(get_db)):
    plan = billing_service.plans.create(db, payload)
    return envelope(_dump(PlanRead, plan), "Plan created")


@router.put("/plans/{plan_id}/limits", tags=["plans"])
def update_plan_limits(
    plan_id: str, payload: list[PlanLimitCreate], db: Session = Depends(get_db)
):
    plan = billing_service.plans.update_plan_limits(db, plan_id, payload)
    return envelope(_dump(PlanRead, plan), "Plan limits updated")


@router.delete("/plans/{plan_id}", tags=["plans"])
def delete_plan(plan_id: str, db: Session = Depends(get_db)):
    billing_service.plans.delete(db, plan_id)
    return envelope(message="Plan deactivated")


@router.post("/plans/recommend", tags=["plans"])
def recommend_plan(payload: PlanRecommendationRequest, db: Session = Depends(get_db)):
    recommendations = billing_service.plans.get_recommended_plan(db, payload.usage)
    return envelope(
        [
            {
                "plan": _dump(PlanRead, item["plan"]),
                "score": item["score"],
                "overages": item["overages"],
            }
            for item in recommendations
        ]
    )


# --- Usage ---


@router.post("/usage", status_code=status.HTTP_201_CREATED, tags=["usage"])
def track_usage(
    payload: UsageTrackRequest,
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    metric = billing_service.usage.track_usage(
        db,
        tenant_id,
        payload.metric_name,
        payload.value,
        period_start=payload.period_start,
        period_end=payload.period_end,
        metadata=payload.metadata,
        billable_overage=payload.is_billable_overage,
    )
    return envelope(_dump(UsageMetricRead, metric))


@router.get("/usage", tags=["usage"])
def list_usage(
    metric_name: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    tenant_id: str = Depends(get_tenant_id),
    db: Session = Depends(get_db),
):
    metrics = billing_service.usage.list_metrics(db, tenant_id, metric_name=metric_name, limit=limit)
    return envelope([_dump(UsageMetricRead, metric) for metric in metrics])


@router.get("/usage/limits", tags=["usage"])
def usage_limits(tenant_id: str = Depends(get_tenant_id), db: Session = Depends(get_db)):
    subscription = _tenant_subscription(db, tenant_id)
    return envelope(
        billing_service.usage.check_usage_against_limits(db, tenant_id, subscription.id)
    )


# --- Provider webhooks ---


@router.post("/webhooks/midtrans", tags=["payment-webhooks"])
async def midtrans_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    return api_billing_webhooks_service.process_midtrans_webhook(db=db, body=body)


@router.post("/webhooks/stripe", tags=["payment-webhooks"])
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    body = await request.body()
    signature = request.headers.get("Stripe-Signature", "")
    return api_billing_webhooks_service.process_stripe_webhook(
        db=db, body=body, signature=signature
    )

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.models.billing import (
    BillingCycleKind,
    BillingCycleStatus,
    BillingInterval,
    InvoiceItemType,
    InvoiceStatus,
    PaymentMethodType,
    PaymentProviderType,
    PaymentTransactionStatus,
    SubscriptionStatus,
    TransactionType,
)


class PlanLimitBase(BaseModel):
    metric_name: str = Field(min_length=1, max_length=80)
    max_value: Decimal = Field(description="Use -1 for unlimited")
    unit: str | None = Field(default=None, max_length=40)
    is_soft_limit: bool = False
    overage_rate: Decimal | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _validate_max_value(self) -> "PlanLimitBase":
        if self.max_value < 0 and self.max_value != Decimal("-1"):
            raise ValueError("max_value must be >= 0, or -1 for unlimited")
        return self


class PlanLimitCreate(PlanLimitBase):
    pass


class PlanLimitRead(PlanLimitBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    plan_id: UUID


class PlanBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(min_length=1, max_length=120)
    description: str | None = None
    price: Decimal = Field(default=Decimal("0.00"), ge=0)
    currency: str = Field(default="IDR", min_length=3, max_length=3)
    billing_interval: BillingInterval = BillingInterval.monthly
    trial_days: int = Field(default=14, ge=0)
    features: list[str] | None = None
    sort_order: int = 0
    is_active: bool = True
    metadata_: dict | None = Field(
        default=None,
        validation_alias="metadata",
        serialization_alias="metadata",
    )


class PlanCreate(PlanBase):
    limits: list[PlanLimitCreate] = Field(default_factory=list)


class PlanUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str | None = Field(default=None, min_length=1, max_length=120)
    description: str | None = None
    price: Decimal | None = Field(default=None, ge=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    billing_interval: BillingInterval | None = None
    trial_days: int | None = Field(default=None, ge=0)
    features: list[str] | None = None
    sort_order: int | None = None
    is_active: bool | None = None
    metadata_: dict | None = Field(
        default=None,
        validation_alias="metadata",
        serialization_alias="metadata",
    )


class PlanRead(PlanBase):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime
    updated_at: datetime
    limits: list[PlanLimitRead] = Field(default_factory=list)


class PlanRecommendationRequest(BaseModel):
    usage: dict[str, Decimal] = Field(default_factory=dict)


class UsageTrackRequest(BaseModel):
    metric_name: str = Field(min_length=1, max_length=80)
    value: Decimal
    period_start: datetime | None = None
    period_end: datetime | None = None
    is_billable_overage: bool = False
    metadata: dict | None = None


class UsageMetricRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    tenant_id: UUID
    metric_name: str
    metric_value: Decimal
    period_start: datetime
    period_end: datetime
    is_billable_overage: bool = False
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime


class SubscriptionCreate(BaseModel):
    plan_id: UUID
    trial_days: int | None = Field(default=None, ge=0)
    payment_method_id: UUID | None = None
    metadata: dict | None = None


class SubscriptionPlanChange(BaseModel):
    plan_id: UUID
    immediate: bool = False
    prorate: bool = True


class SubscriptionCancel(BaseModel):
    at_period_end: bool = False
    reason: str | None = None


class SubscriptionPause(BaseModel):
    reason: str | None = None
    resume_date: datetime | None = None


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    tenant_id: UUID
    plan_id: UUID
    status: SubscriptionStatus
    trial_ends_at: datetime | None = None
    started_at: datetime
    current_period_start: datetime
    current_period_end: datetime
    cancel_at_period_end: bool = False
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
    pending_plan_id: UUID | None = None
    plan_change_date: datetime | None = None
    default_payment_method_id: UUID | None = None
    version: int
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    plan: PlanRead | None = None


class BillingCycleRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    kind: BillingCycleKind
    period_start: datetime
    period_end: datetime
    base_amount: Decimal
    overage_amount: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    currency: str
    due_date: datetime
    status: BillingCycleStatus
    processed_at: datetime | None = None
    description: str | None = None


class InvoiceItemCreate(BaseModel):
    description: str = Field(min_length=1)
    quantity: Decimal = Field(default=Decimal("1"), gt=0)
    unit_price: Decimal = Field(default=Decimal("0.00"))
    amount: Decimal | None = None


class InvoiceItemRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    position: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    item_type: InvoiceItemType


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    id: UUID
    tenant_id: UUID
    subscription_id: UUID | None = None
    billing_cycle_id: UUID | None = None
    original_invoice_id: UUID | None = None
    invoice_number: str
    status: InvoiceStatus
    issued_date: datetime
    due_date: datetime
    paid_date: datetime | None = None
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    currency: str
    payment_provider: PaymentProviderType | None = None
    payment_method: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    notes: str | None = None
    items: list[InvoiceItemRead] = Field(default_factory=list)


class InvoiceVoid(BaseModel):
    reason: str = Field(min_length=1)


class CreditNoteCreate(BaseModel):
    items: list[InvoiceItemCreate] = Field(min_length=1)
    reason: str | None = None


class InvoicePaymentRequest(BaseModel):
    provider: PaymentProviderType
    payment_details: dict = Field(default_factory=dict)


class PaymentTransactionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    invoice_id: UUID
    parent_transaction_id: UUID | None = None
    transaction_type: TransactionType
    amount: Decimal
    currency: str
    status: PaymentTransactionStatus
    provider: PaymentProviderType
    provider_transaction_id: str | None = None
    provider_reference: str | None = None
    payment_method: str | None = None
    failure_reason: str | None = None
    processed_at: datetime | None = None
    created_at: datetime


class RefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = None


class PaymentMethodCreate(BaseModel):
    provider: PaymentProviderType
    method_type: PaymentMethodType = PaymentMethodType.card
    is_default: bool = False
    details: dict = Field(default_factory=dict)


class PaymentMethodRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    method_type: PaymentMethodType
    provider: PaymentProviderType
    provider_method_id: str | None = None
    last4: str | None = None
    brand: str | None = None
    expiry_month: int | None = None
    expiry_year: int | None = None
    bank_name: str | None = None
    is_default: bool = False
    created_at: datetime

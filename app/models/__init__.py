from app.models.billing import (  # noqa: F401
    BillingCycle,
    BillingCycleKind,
    BillingCycleStatus,
    BillingInterval,
    Invoice,
    InvoiceItem,
    InvoiceItemType,
    InvoiceStatus,
    PaymentMethod,
    PaymentMethodType,
    PaymentProviderType,
    PaymentTransaction,
    PaymentTransactionStatus,
    Plan,
    PlanLimit,
    Subscription,
    SubscriptionStatus,
    TransactionType,
    UsageMetric,
)
from app.models.event_store import EventStatus, EventStore  # noqa: F401
from app.models.tenant import Tenant  # noqa: F401

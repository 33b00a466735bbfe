"""Billing services package.

This package provides the subscription billing services: plans, usage,
billing cycles, invoices, subscriptions, payment providers and reporting.

Usage:
    from app.services import billing as billing_service
    billing_service.subscriptions.create_subscription(db, tenant_id, plan_id)

    from app.services.billing import Invoices, invoices
"""

from app.services.billing.cycles import BillingCycles
from app.services.billing.exports import export_invoices
from app.services.billing.invoices import Invoices
from app.services.billing.plans import Plans
from app.services.billing.providers import PaymentProviders
from app.services.billing.reporting import BillingReporting
from app.services.billing.subscriptions import Subscriptions
from app.services.billing.usage import Usage

# Singleton instances for service access
plans = Plans()
usage = Usage()
billing_cycles = BillingCycles()
billing_reporting = BillingReporting()
invoices = Invoices()
subscriptions = Subscriptions()
payment_providers = PaymentProviders()

__all__ = [
    # Classes
    "Plans",
    "Usage",
    "BillingCycles",
    "BillingReporting",
    "Invoices",
    "Subscriptions",
    "PaymentProviders",
    "export_invoices",
    # Singleton instances
    "plans",
    "usage",
    "billing_cycles",
    "billing_reporting",
    "invoices",
    "subscriptions",
    "payment_providers",
]

from app.tasks.billing import (
    apply_pending_plan_changes,
    mark_overdue_invoices,
    process_billing_cycle,
    process_dunning,
)

__all__ = [
    "apply_pending_plan_changes",
    "mark_overdue_invoices",
    "process_billing_cycle",
    "process_dunning",
]

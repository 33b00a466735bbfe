import logging
import time

from app.celery_app import celery_app
from app.db import SessionLocal
from app.metrics import observe_job
from app.services import billing as billing_service

logger = logging.getLogger(__name__)


def _run_job(task_name: str, job):
    start = time.monotonic()
    status = "success"
    session = SessionLocal()
    try:
        return job(session)
    except Exception:
        status = "error"
        session.rollback()
        logger.exception("%s failed.", task_name)
        raise
    finally:
        session.close()
        observe_job(task_name, status, time.monotonic() - start)


@celery_app.task(name="app.tasks.billing.process_billing_cycle")
def process_billing_cycle():
    return _run_job("billing_cycle", billing_service.billing_cycles.process_billing_cycle)


@celery_app.task(name="app.tasks.billing.process_dunning")
def process_dunning():
    return _run_job("billing_dunning", billing_service.billing_cycles.process_dunning)


@celery_app.task(name="app.tasks.billing.mark_overdue_invoices")
def mark_overdue_invoices():
    return _run_job("billing_mark_overdue", billing_service.invoices.mark_overdue_invoices)


@celery_app.task(name="app.tasks.billing.apply_pending_plan_changes")
def apply_pending_plan_changes():
    return _run_job(
        "billing_pending_plan_changes", billing_service.billing_cycles.apply_pending_plan_changes
    )

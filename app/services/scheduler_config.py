"""Celery configuration and the billing beat schedule."""

from celery.schedules import crontab

from app.config import settings


def get_celery_config() -> dict:
    return {
        "broker_url": settings.celery_broker_url,
        "result_backend": settings.celery_result_backend,
        "timezone": settings.celery_timezone,
    }


def build_beat_schedule() -> dict:
    # Overdue marking runs before dunning so the cutoff sees fresh statuses.
    return {
        "billing_apply_pending_plan_changes": {
            "task": "app.tasks.billing.apply_pending_plan_changes",
            "schedule": crontab(minute=0, hour=0),
        },
        "billing_process_billing_cycle": {
            "task": "app.tasks.billing.process_billing_cycle",
            "schedule": crontab(minute=15, hour=0),
        },
        "billing_mark_overdue_invoices": {
            "task": "app.tasks.billing.mark_overdue_invoices",
            "schedule": crontab(minute=30, hour=0),
        },
        "billing_process_dunning": {
            "task": "app.tasks.billing.process_dunning",
            "schedule": crontab(minute=45, hour=0),
        },
    }

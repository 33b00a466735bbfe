from prometheus_client import Counter, Histogram

JOB_DURATION = Histogram(
    "billing_job_duration_seconds",
    "Billing background job duration",
    ["task", "status"],
)
BILLING_CYCLE_RESULTS = Counter(
    "billing_cycle_subscriptions_total",
    "Subscriptions processed by the billing cycle run",
    ["outcome"],
)
PAYMENT_ATTEMPTS = Counter(
    "billing_payment_attempts_total",
    "Payment attempts sent to a provider",
    ["provider", "outcome"],
)
WEBHOOKS_RECEIVED = Counter(
    "billing_webhooks_total",
    "Payment provider webhooks received",
    ["provider", "outcome"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)


def record_payment_attempt(provider: str, outcome: str) -> None:
    PAYMENT_ATTEMPTS.labels(provider=provider, outcome=outcome).inc()


def record_webhook(provider: str, outcome: str) -> None:
    WEBHOOKS_RECEIVED.labels(provider=provider, outcome=outcome).inc()

"""
Celery Application Configuration
"""
from celery import Celery

from citizen_ledger.core.config import settings

celery_app = Celery(
    "citizen_ledger",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["citizen_ledger.workers.tasks"]
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

celery_app.conf.beat_schedule = {
    # Safe to run often: fees only move when a debt enters a new week past due
    "accrue-late-fees-hourly": {
        "task": "citizen_ledger.workers.tasks.accrue_late_fees",
        "schedule": settings.LATE_FEE_ACCRUAL_INTERVAL_SECONDS,
    },
    "process-outbox-every-10-seconds": {
        "task": "citizen_ledger.workers.tasks.process_outbox_messages",
        "schedule": 10.0,
    },
    "cleanup-old-callback-events-daily": {
        "task": "citizen_ledger.workers.tasks.cleanup_old_callback_events",
        "schedule": 86400.0,
    },
    "sweep-negative-balances-daily": {
        "task": "citizen_ledger.workers.tasks.sweep_negative_balances",
        "schedule": 86400.0,
    },
}

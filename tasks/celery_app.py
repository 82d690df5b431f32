"""
tasks/celery_app.py
Celery application instance for the ledger worker and beat.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=2

Beat scheduler (periodic reconciliation and archiving):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "booking_ledger",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.ledger_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.CELERY_TIMEZONE,
    enable_utc=True,

    # Reliability: acknowledge task AFTER execution, not before
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.ledger_tasks.send_admin_alert": {"rate_limit": "1/s"},
    },

    # Routing: ledger work and alerts on separate queues
    task_routes={
        "tasks.ledger_tasks.reconcile_ledger": {"queue": "ledger"},
        "tasks.ledger_tasks.archive_intake": {"queue": "ledger"},
        "tasks.ledger_tasks.send_admin_alert": {"queue": "alerts"},
    },

    # Worker prefetch: 1 task at a time for long-running tasks
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Sweep unsynced intake rows into the fortnight shards
    "reconcile-ledger": {
        "task": "tasks.ledger_tasks.reconcile_ledger",
        "schedule": settings.RECONCILE_INTERVAL_SECONDS,
    },

    # Move synced rows of past appointments to the archive
    # Runs nightly at 3 AM local time
    "archive-intake": {
        "task": "tasks.ledger_tasks.archive_intake",
        "schedule": crontab(hour=3, minute=0),
    },
}

"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery

from config.logging_config import configure_logging
from config.settings import settings

configure_logging()

celery_app = Celery(
    "field_dispatch",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.notification_tasks",
        "tasks.dispatch_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Kolkata",
    enable_utc=True,

    # Reliability: acknowledge task AFTER execution, not before
    # This prevents task loss if worker dies mid-execution
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    # Local runs and tests execute tasks inline
    task_always_eager=settings.CELERY_TASK_ALWAYS_EAGER,

    # Result expiry: keep task results for 1 hour
    result_expires=3600,

    # Retry: max 3 retries with exponential backoff
    task_max_retries=3,

    # Rate limits (per worker per second)
    task_annotations={
        "tasks.notification_tasks.send_push_notification": {"rate_limit": "30/s"},
    },

    # Routing: separate queues for different priority levels
    task_routes={
        "tasks.notification_tasks.*": {"queue": "notifications"},
        "tasks.dispatch_tasks.*": {"queue": "default"},
    },

    # Worker prefetch: 1 task at a time for long-running tasks
    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Apply PENDING_NO_MATCH_POLICY to bookings nobody has accepted
    # Runs every 5 minutes; a no-op under the default "keep" policy
    "expire-stale-pending-bookings": {
        "task": "tasks.dispatch_tasks.expire_stale_pending_bookings",
        "schedule": 300,
    },
}

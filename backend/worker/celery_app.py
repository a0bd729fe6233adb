"""Celery application configuration.

This module sets up the Celery app with:
- Redis as broker and result backend
- Serialization and timezone settings
- Beat schedule driving the transaction retry scan
"""

from celery import Celery
from celery.signals import worker_process_init

from app.config import get_settings

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "banking_engine",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

# Configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    task_routes={
        "worker.tasks.transactions.*": {"queue": "transactions"},
    },
    task_default_queue="default",

    # Result expiration (1 hour; scans are frequent)
    result_expires=3600,

    # Task execution limits
    task_soft_time_limit=120,
    task_time_limit=300,
    task_acks_late=True,        # Acknowledge after execution (safer)
    worker_prefetch_multiplier=1,  # One task at a time per worker process

    task_reject_on_worker_lost=True,

    # Beat schedule for periodic tasks
    beat_schedule={
        "process-retryable-transactions": {
            "task": "worker.tasks.transactions.process_retryable_transactions",
            "schedule": float(settings.RETRY_SCHEDULER_INTERVAL_SECONDS),
            "options": {"queue": "transactions"},
        },
    },

    include=[
        "worker.tasks.transactions",
    ],
)


@worker_process_init.connect
def _configure_worker_logging(**kwargs):
    from core.logging_config import setup_logging

    setup_logging()


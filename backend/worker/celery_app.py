"""Celery application configuration.

This module sets up the Celery app with:
- Redis as broker and result backend
- Task routing to the workflow and maintenance queues
- Serialization and timezone settings
- Beat schedule for recovery and cleanup
- structlog configuration and a credentials check in every worker process
"""

from celery import Celery
from celery.schedules import crontab
from celery.signals import worker_process_init

from app.config import get_settings
from core.logging_config import setup_logging

settings = get_settings()

# Create Celery app
celery_app = Celery(
    "account_automation",
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
        "worker.tasks.workflow.*": {"queue": "workflows"},
        "worker.tasks.maintenance.*": {"queue": "default"},
    },
    task_default_queue="default",

    # Result expiration (24 hours)
    result_expires=86400,

    # Task execution limits: an engagement campaign may poll the vendor for minutes
    task_soft_time_limit=900,
    task_time_limit=1200,
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,

    # Wait steps schedule re-entries up to 24h out; Redis must not redeliver them early
    broker_transport_options={"visibility_timeout": 90000},

    beat_schedule={
        "recover-interrupted-workflows": {
            "task": "worker.tasks.workflow.recover_interrupted",
            "schedule": crontab(minute="*/10"),
            "options": {"queue": "workflows"},
        },
        "cleanup-expired-locks": {
            "task": "worker.tasks.maintenance.cleanup_expired_locks",
            "schedule": crontab(minute="*/5"),
            "options": {"queue": "default"},
        },
        "cleanup-old-workflow-data": {
            "task": "worker.tasks.maintenance.cleanup_old_data",
            "schedule": crontab(hour=3, minute=0),  # Daily at 3 AM
            "options": {"queue": "default"},
        },
    },

    include=[
        "worker.tasks.workflow",
        "worker.tasks.maintenance",
    ],
)


@worker_process_init.connect
def _init_worker_process(**kwargs):
    setup_logging()
    settings.validate_secrets()

"""Celery tasks for maintenance and cleanup.

- ``cleanup_old_data`` runs daily at 3 AM (configured in beat_schedule):
  purges terminal instances, old execution logs and the scheduled-task
  ledger past their retention windows.
- ``cleanup_expired_locks`` runs every 5 minutes. Advisory only: lock
  acquisition already treats expired rows as absent.
- ``export_metrics`` renders the worker's metrics store in Prometheus
  text format, with instance-status gauges read fresh from the database.
"""

import structlog

from core import metrics
from worker.celery_app import celery_app
from worker.run_workflow import engine_components, run_sync

logger = structlog.get_logger(__name__)


async def _run_cleanup() -> dict:
    async with engine_components() as (components, _):
        return await components.cleanup.run()


@celery_app.task(
    name="worker.tasks.maintenance.cleanup_old_data",
    queue="default",
)
def cleanup_old_data():
    """Delete workflow data past its retention window."""
    logger.info("Running daily cleanup")
    stats = run_sync(_run_cleanup())
    stats["status"] = "completed"
    return stats


async def _cleanup_locks() -> int:
    async with engine_components() as (components, _):
        return await components.locks.cleanup_expired()


@celery_app.task(
    name="worker.tasks.maintenance.cleanup_expired_locks",
    queue="default",
)
def cleanup_expired_locks():
    """Delete expired lock rows."""
    removed = run_sync(_cleanup_locks())
    return {"status": "completed", "locks_deleted": removed}


async def _export_metrics() -> str:
    async with engine_components() as (components, _):
        await components.monitoring.get_stats()
    return metrics.generate_metrics()


@celery_app.task(
    name="worker.tasks.maintenance.export_metrics",
    queue="default",
)
def export_metrics():
    """Refresh the status gauges and return this worker's metrics as Prometheus text."""
    return run_sync(_export_metrics())

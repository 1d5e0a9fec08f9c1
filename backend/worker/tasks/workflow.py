"""Celery tasks for workflow execution.

``advance_workflow`` is the deferred re-entry: the Celery task scheduler
queues one per scheduled step and the executor runs exactly one step
per invocation. A re-entry that finds the account's execute lock held
is retried shortly; one that finds the instance stopped or paused is a
no-op.

``recover_interrupted`` runs the recovery scan (beat, every 10 minutes).
"""

import structlog

from core.exceptions import LockUnavailableError
from core.logging_config import workflow_log_context
from worker.celery_app import celery_app
from worker.run_workflow import engine_components, run_sync

logger = structlog.get_logger(__name__)

LOCK_BUSY_RETRY_SECONDS = 15

# A re-entry that fires at most this early (broker or clock drift) is
# re-queued for the remainder; anything earlier is a stale duplicate.
EARLY_FIRE_REQUEUE_MS = 5_000


async def _advance(account_id: str, instance_id: str, task_id: str) -> dict:
    async with engine_components() as (components, scheduler):
        if task_id:
            await scheduler.mark_executed(task_id)
        outcome = await components.executor.advance(account_id, instance_id=instance_id)
        return outcome.to_dict()


@celery_app.task(
    name="worker.tasks.workflow.advance_workflow",
    bind=True,
    max_retries=20,
    acks_late=True,
    queue="workflows",
)
def advance_workflow(
    self,
    account_id: str,
    instance_id: str = None,
    step_index: int = None,
    reason: str = None,
):
    """Run the account's current workflow step.

    Args:
        account_id: Account whose workflow to advance
        instance_id: Instance the re-entry was scheduled for; stale ids are ignored
        step_index: Step index at scheduling time (diagnostics only)
        reason: Why the re-entry was scheduled (start, wait, retry, resume, recovery)
    """
    with workflow_log_context(account_id, instance_id, reason=reason, task_id=self.request.id):
        logger.info("Advancing workflow", step_index=step_index)

        try:
            result = run_sync(_advance(account_id, instance_id, self.request.id))
        except LockUnavailableError as exc:
            logger.info("Execute lock busy, retrying", retry_in=LOCK_BUSY_RETRY_SECONDS)
            raise self.retry(exc=exc, countdown=LOCK_BUSY_RETRY_SECONDS)

        if result["reason"] == "not due yet" and (result["next_delay_ms"] or 0) <= EARLY_FIRE_REQUEUE_MS:
            countdown = result["next_delay_ms"] / 1000
            logger.info("Re-entry fired early, requeueing", retry_in=countdown)
            raise self.retry(countdown=countdown)

        logger.info("Workflow advanced", status=result["status"], executed=result["executed"])
        return result


async def _recover() -> dict:
    async with engine_components() as (components, _):
        results = await components.recovery.recover_all()
        return {
            "total": len(results),
            "recovered": sum(1 for r in results if r.recovered),
            "results": [r.to_dict() for r in results],
        }


@celery_app.task(
    name="worker.tasks.workflow.recover_interrupted",
    queue="workflows",
)
def recover_interrupted():
    """Scan for and recover interrupted workflow instances."""
    result = run_sync(_recover())
    logger.info("Recovery task finished", total=result["total"], recovered=result["recovered"])
    return result

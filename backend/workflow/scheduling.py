"""
Scheduling service: when does an account's workflow run next.

Holds no state of its own. Deferred re-entries are handed to the task
scheduler collaborator; instance status in the database stays
authoritative, so a re-entry that fires against a stopped or paused
instance is simply ignored by the executor.
"""

from typing import Any, Dict, Optional

import structlog

from core.exceptions import AutomationError, SchedulingError
from integrations.base import TaskScheduler
from workflow.config_service import ConfigService
from workflow.definitions import StepConfig, WorkflowDefinition
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)


def schedule_key(account_id: str) -> str:
    """Scheduler key: one pending re-entry stream per account."""
    return f"workflow:{account_id}"


class SchedulingService:
    """Computes delays and hands deferred work to the task scheduler."""

    def __init__(self, scheduler: TaskScheduler, config: ConfigService):
        self.scheduler = scheduler
        self.config = config

    async def schedule_next(self, account_id: str, delay_ms: int, payload: Dict[str, Any]) -> str:
        """Schedule the next re-entry for ``account_id``.

        Raises:
            SchedulingError: The task scheduler rejected the request
        """
        delay_ms = max(0, int(delay_ms))
        payload = {"account_id": account_id, **payload}
        try:
            task_id = await self.scheduler.schedule(schedule_key(account_id), delay_ms, payload)
        except AutomationError:
            raise
        except Exception as e:
            logger.error("Failed to schedule workflow step", account_id=account_id, error=str(e))
            raise SchedulingError(f"Failed to schedule next step for {account_id}: {e}")

        logger.info(
            "Next step scheduled",
            account_id=account_id,
            delay_ms=delay_ms,
            task_id=task_id,
            reason=payload.get("reason"),
        )
        return task_id

    async def cancel_scheduled(self, account_id: str) -> int:
        """Cancel any pending re-entry for ``account_id``."""
        try:
            cancelled = await self.scheduler.cancel(schedule_key(account_id))
        except Exception as e:
            logger.error("Failed to cancel scheduled steps", account_id=account_id, error=str(e))
            raise SchedulingError(f"Failed to cancel scheduled steps for {account_id}: {e}")
        if cancelled:
            logger.info("Scheduled steps cancelled", account_id=account_id, count=cancelled)
        return cancelled

    @staticmethod
    def delay_before(step: Optional[StepConfig]) -> int:
        """Delay applied before ``step`` runs. Wait steps apply theirs afterwards."""
        if step is None or step.is_wait:
            return 0
        return step.delay_ms

    async def retry_strategy(self, definition: WorkflowDefinition) -> RetryStrategy:
        retry_config = await self.config.get_retry_config()
        return RetryStrategy.from_config(retry_config, max_retries=definition.max_retries)

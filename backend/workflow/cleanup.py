"""
Retention cleanup for workflow data.

Runs daily (beat schedule) and deletes:
1. Terminal instances finished more than ``instance_retention_days`` ago,
   together with their execution logs
2. Execution log entries older than ``log_retention_days``
3. Expired lock rows
4. Scheduled-task ledger rows older than ``scheduled_task_retention_days``

Active-like instances are never touched regardless of age. The counts
from the most recent run are kept in system config so any process can
report them.
"""

from datetime import timedelta
from typing import Any, Dict

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.constants import TERMINAL_STATUSES
from core.utils import isoformat, utc_now
from db.models.execution_log import ExecutionLog
from db.models.scheduled_task import ScheduledTask
from db.models.workflow_instance import WorkflowInstance
from workflow.config_service import ConfigService
from workflow.locks import LockService

logger = structlog.get_logger(__name__)

LAST_RUN_KEY = "workflow.cleanup_last_run"


class CleanupService:
    """Deletes aged-out workflow rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        locks: LockService,
        config: ConfigService,
        instance_retention_days: int = 30,
        log_retention_days: int = 7,
        scheduled_task_retention_days: int = 1,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.config = config
        self.instance_retention = timedelta(days=instance_retention_days)
        self.log_retention = timedelta(days=log_retention_days)
        self.scheduled_task_retention = timedelta(days=scheduled_task_retention_days)

    async def run(self) -> Dict[str, Any]:
        now = utc_now()
        stats = {
            "instances_deleted": 0,
            "logs_deleted": 0,
            "locks_deleted": 0,
            "scheduled_tasks_deleted": 0,
        }

        async with self.session_factory() as db:
            instance_cutoff = now - self.instance_retention
            old_instances = (
                select(WorkflowInstance.id)
                .where(
                    WorkflowInstance.status.in_(TERMINAL_STATUSES),
                    WorkflowInstance.completed_at < instance_cutoff,
                )
                .scalar_subquery()
            )
            # SQLite does not enforce the FK cascade, so drop logs first.
            result = await db.execute(
                delete(ExecutionLog)
                .where(ExecutionLog.instance_id.in_(old_instances))
                .execution_options(synchronize_session=False)
            )
            stats["logs_deleted"] += result.rowcount or 0

            result = await db.execute(
                delete(WorkflowInstance)
                .where(
                    WorkflowInstance.status.in_(TERMINAL_STATUSES),
                    WorkflowInstance.completed_at < instance_cutoff,
                )
                .execution_options(synchronize_session=False)
            )
            stats["instances_deleted"] = result.rowcount or 0

            result = await db.execute(
                delete(ExecutionLog)
                .where(ExecutionLog.executed_at < now - self.log_retention)
                .execution_options(synchronize_session=False)
            )
            stats["logs_deleted"] += result.rowcount or 0

            result = await db.execute(
                delete(ScheduledTask)
                .where(ScheduledTask.created_at < now - self.scheduled_task_retention)
                .execution_options(synchronize_session=False)
            )
            stats["scheduled_tasks_deleted"] = result.rowcount or 0

            await db.commit()

        stats["locks_deleted"] = await self.locks.cleanup_expired()

        await self.config.set(
            LAST_RUN_KEY,
            {"ran_at": isoformat(now), **stats},
            description="Counts from the most recent retention cleanup",
            category="maintenance",
        )
        logger.info("Workflow cleanup completed", **stats)
        return stats

    async def get_cleanup_stats(self) -> Dict[str, Any]:
        """Rows currently eligible for deletion, plus the last run's counts."""
        now = utc_now()
        async with self.session_factory() as db:
            instances = await db.execute(
                select(func.count()).select_from(WorkflowInstance).where(
                    WorkflowInstance.status.in_(TERMINAL_STATUSES),
                    WorkflowInstance.completed_at < now - self.instance_retention,
                )
            )
            logs = await db.execute(
                select(func.count()).select_from(ExecutionLog).where(
                    ExecutionLog.executed_at < now - self.log_retention
                )
            )
            tasks = await db.execute(
                select(func.count()).select_from(ScheduledTask).where(
                    ScheduledTask.created_at < now - self.scheduled_task_retention
                )
            )
            pending = {
                "instances": instances.scalar() or 0,
                "logs": logs.scalar() or 0,
                "scheduled_tasks": tasks.scalar() or 0,
            }

        lock_stats = await self.locks.get_stats()
        pending["locks"] = lock_stats["expired"]
        return {
            "eligible": pending,
            "retention_days": {
                "instances": self.instance_retention.days,
                "logs": self.log_retention.days,
                "scheduled_tasks": self.scheduled_task_retention.days,
            },
            "last_run": await self.config.get(LAST_RUN_KEY),
        }

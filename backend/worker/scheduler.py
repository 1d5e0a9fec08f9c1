"""Celery-backed TaskScheduler.

Deferred re-entries become ``advance_workflow`` tasks with a countdown.
Each one is recorded in ``scheduled_tasks`` so that ``cancel(key)`` can
revoke whatever is still pending for an account.
"""

from datetime import timedelta
from typing import Optional

import structlog
from celery import Celery
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.constants import ScheduledTaskStatus
from core.utils import utc_now
from db.models.scheduled_task import ScheduledTask
from integrations.base import TaskScheduler

logger = structlog.get_logger(__name__)

ADVANCE_TASK = "worker.tasks.workflow.advance_workflow"


class CeleryTaskScheduler(TaskScheduler):

    def __init__(self, session_factory: async_sessionmaker, app: Optional[Celery] = None):
        if app is None:
            from worker.celery_app import celery_app as app
        self.app = app
        self.session_factory = session_factory

    async def schedule(self, key: str, delay_ms: int, payload: dict) -> str:
        countdown = max(0, delay_ms) / 1000
        async_result = self.app.send_task(
            ADVANCE_TASK,
            kwargs=payload,
            countdown=countdown,
            queue="workflows",
        )
        async with self.session_factory() as db:
            db.add(ScheduledTask(
                key=key,
                task_id=async_result.id,
                payload=payload,
                eta=utc_now() + timedelta(milliseconds=delay_ms),
                status=ScheduledTaskStatus.SCHEDULED.value,
            ))
            await db.commit()
        logger.debug("Celery task queued", key=key, task_id=async_result.id, countdown=countdown)
        return async_result.id

    async def cancel(self, key: str) -> int:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ScheduledTask.task_id).where(
                    ScheduledTask.key == key,
                    ScheduledTask.status == ScheduledTaskStatus.SCHEDULED.value,
                )
            )
            task_ids = list(result.scalars().all())
            if not task_ids:
                return 0

            for task_id in task_ids:
                self.app.control.revoke(task_id)

            await db.execute(
                update(ScheduledTask)
                .where(ScheduledTask.task_id.in_(task_ids))
                .values(status=ScheduledTaskStatus.CANCELLED.value)
            )
            await db.commit()
        return len(task_ids)

    async def mark_executed(self, task_id: str) -> None:
        async with self.session_factory() as db:
            await db.execute(
                update(ScheduledTask)
                .where(
                    ScheduledTask.task_id == task_id,
                    ScheduledTask.status == ScheduledTaskStatus.SCHEDULED.value,
                )
                .values(status=ScheduledTaskStatus.EXECUTED.value)
            )
            await db.commit()

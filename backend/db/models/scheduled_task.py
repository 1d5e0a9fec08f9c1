"""ScheduledTask model: ledger of deferred re-entries handed to Celery."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ScheduledTaskStatus
from db.base import BaseModel


class ScheduledTask(BaseModel):
    """A pending (or finished) deferred re-entry.

    Attributes:
        key: Scheduler key, one per account
        task_id: Celery task id, used for revocation
        payload: Task kwargs
        eta: When the task is due
        status: scheduled, cancelled or executed
    """

    __tablename__ = "scheduled_tasks"

    key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    task_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    eta: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), default=ScheduledTaskStatus.SCHEDULED.value, index=True
    )

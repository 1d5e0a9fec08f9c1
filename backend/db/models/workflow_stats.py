"""WorkflowStats model: daily execution aggregates for dashboards."""

from datetime import date

from sqlalchemy import Date
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base


class WorkflowStats(Base):
    """One row per UTC day, incremented by the monitoring service."""

    __tablename__ = "workflow_stats"

    stat_date: Mapped[date] = mapped_column(Date, primary_key=True)
    started: Mapped[int] = mapped_column(default=0)
    completed: Mapped[int] = mapped_column(default=0)
    failed: Mapped[int] = mapped_column(default=0)
    stopped: Mapped[int] = mapped_column(default=0)
    steps_executed: Mapped[int] = mapped_column(default=0)
    steps_failed: Mapped[int] = mapped_column(default=0)
    retries: Mapped[int] = mapped_column(default=0)
    goto_iterations: Mapped[int] = mapped_column(default=0)
    recoveries: Mapped[int] = mapped_column(default=0)
    recovery_failed: Mapped[int] = mapped_column(default=0)
    recovery_unrecoverable: Mapped[int] = mapped_column(default=0)
    recovery_skipped: Mapped[int] = mapped_column(default=0)

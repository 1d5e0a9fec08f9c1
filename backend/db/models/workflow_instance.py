"""WorkflowInstance model for the account automation engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column

from core.constants import ACTIVE_STATUSES, WorkflowStatus
from db.base import BaseModel

_ACTIVE_PREDICATE = "status IN ({})".format(
    ", ".join(f"'{status}'" for status in sorted(ACTIVE_STATUSES))
)


class WorkflowInstance(BaseModel):
    """One account's run of a workflow definition.

    Attributes:
        id: Unique identifier (UUID string)
        account_id: Owning account
        workflow_type: Definition type this run follows
        definition_version: Definition version at start time
        status: pending, active, running, paused, recovering, completed,
            failed, stopped or unrecoverable
        current_step_index: Index of the next step to run
        total_steps: Number of steps in the definition at start time
        retry_count: Consecutive failures of the current step plus recovery attempts
        loop_iterations: Number of goto jumps taken
        last_error: Last failure message, kept for operators
        execution_context: Per-run variables (model/channel overrides etc.)
        account_data: Snapshot of the account record taken at start
        next_action_at: When the pending scheduled re-entry is due
        started_at: First step dispatch
        completed_at: Terminal transition timestamp
        last_activity_at: Last step or control operation
    """

    __tablename__ = "workflow_instances"
    __table_args__ = (
        # At most one active-like instance per account.
        Index(
            "uq_workflow_instances_active_account",
            "account_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PREDICATE),
            sqlite_where=text(_ACTIVE_PREDICATE),
        ),
        Index("idx_workflow_instances_status_updated", "status", "updated_at"),
    )

    account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    workflow_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    definition_version: Mapped[int] = mapped_column(default=1)
    status: Mapped[str] = mapped_column(
        String(32), default=WorkflowStatus.PENDING.value, index=True
    )
    current_step_index: Mapped[int] = mapped_column(default=0)
    total_steps: Mapped[int] = mapped_column(default=0)
    retry_count: Mapped[int] = mapped_column(default=0)
    loop_iterations: Mapped[int] = mapped_column(default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    execution_context: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    account_data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    next_action_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def progress_percent(self) -> float:
        if not self.total_steps:
            return 0.0
        return round(min(self.current_step_index, self.total_steps) / self.total_steps * 100, 1)

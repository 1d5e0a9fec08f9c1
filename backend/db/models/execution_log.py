"""ExecutionLog model for the account automation engine."""

from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from db.base import BaseModel


class ExecutionLog(BaseModel):
    """Append-only record of one step outcome.

    Attributes:
        id: Unique identifier (UUID string)
        instance_id: Foreign key to WorkflowInstance
        account_id: Owning account (denormalized for per-account queries)
        step_id: Step id within the definition
        step_index: Position of the step when it ran
        action: Normalized action name
        success: Whether the step succeeded
        result: Handler payload (task id, generated text, goto target...)
        error: Error message when the step failed
        error_code: Stable error classification
        duration_ms: Handler wall time
        executed_at: Completion timestamp
    """

    __tablename__ = "execution_logs"

    instance_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_instances.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    step_id: Mapped[str] = mapped_column(String(255), nullable=False)
    step_index: Mapped[int] = mapped_column(default=0)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    success: Mapped[bool] = mapped_column(default=True, index=True)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    duration_ms: Mapped[int] = mapped_column(default=0)
    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

"""WorkflowLock model: named, expiring mutual-exclusion leases."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from db.base import Base


class WorkflowLock(Base):
    """A lease on ``workflow:<account_id>:<operation>``.

    A row whose ``expires_at`` is in the past is treated as absent by
    acquisition; expired rows are purged by a periodic task.
    """

    __tablename__ = "workflow_locks"

    lock_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    holder_id: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

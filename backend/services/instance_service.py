"""Workflow instance and execution log repository.

Status changes go through ``transition()``, a compare-and-set on the
current status, so a recovering process and a still-alive owner can
never overwrite each other's state.
"""

from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import ACTIVE_STATUSES, IN_FLIGHT_STATUSES
from core.utils import utc_now
from db.models.execution_log import ExecutionLog
from db.models.workflow_instance import WorkflowInstance
from services.base import BaseService


class InstanceService(BaseService[WorkflowInstance]):
    """Queries and guarded updates over ``workflow_instances``."""

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowInstance, db)

    # ─── Read ──────────────────────────────────────────────

    async def get_current(self, account_id: str) -> Optional[WorkflowInstance]:
        """The account's active-like instance, if any."""
        result = await self.db.execute(
            select(WorkflowInstance)
            .where(
                WorkflowInstance.account_id == account_id,
                WorkflowInstance.status.in_(ACTIVE_STATUSES),
            )
            .order_by(WorkflowInstance.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_latest(self, account_id: str) -> Optional[WorkflowInstance]:
        """The account's most recent instance in any status."""
        current = await self.get_current(account_id)
        if current is not None:
            return current
        result = await self.db.execute(
            select(WorkflowInstance)
            .where(WorkflowInstance.account_id == account_id)
            .order_by(WorkflowInstance.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def status_counts(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(WorkflowInstance.status, func.count()).group_by(WorkflowInstance.status)
        )
        return {status: count for status, count in result.all()}

    async def recovery_candidates(
        self,
        stale_before: datetime,
        oldest: datetime,
        limit: int,
    ) -> Sequence[WorkflowInstance]:
        """In-flight instances with no sign of a live owner.

        An instance qualifies when it has not been touched since
        ``stale_before`` (but after ``oldest``) and has no scheduled
        wake-up still in the future.
        """
        result = await self.db.execute(
            select(WorkflowInstance)
            .where(
                WorkflowInstance.status.in_(IN_FLIGHT_STATUSES),
                WorkflowInstance.updated_at < stale_before,
                WorkflowInstance.updated_at >= oldest,
                or_(
                    WorkflowInstance.next_action_at.is_(None),
                    WorkflowInstance.next_action_at < stale_before,
                ),
            )
            .order_by(WorkflowInstance.updated_at.asc())
            .limit(limit)
        )
        return result.scalars().all()

    # ─── Guarded updates ───────────────────────────────────

    async def transition(
        self,
        instance_id: str,
        expected_statuses: Iterable[str],
        values: Dict[str, Any],
        last_activity_at: Optional[datetime] = None,
    ) -> bool:
        """Compare-and-set update.

        Applies ``values`` only if the instance is still in one of
        ``expected_statuses`` and, when ``last_activity_at`` is given,
        nothing has touched it since that stamp.

        Returns:
            True if the row was updated
        """
        guards = [
            WorkflowInstance.id == instance_id,
            WorkflowInstance.status.in_(list(expected_statuses)),
        ]
        if last_activity_at is not None:
            guards.append(WorkflowInstance.last_activity_at == last_activity_at)

        values = dict(values)
        values.setdefault("last_activity_at", utc_now())
        result = await self.db.execute(
            update(WorkflowInstance)
            .where(*guards)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return (result.rowcount or 0) > 0

    # ─── Execution log ─────────────────────────────────────

    async def log_step(
        self,
        instance: WorkflowInstance,
        step_id: str,
        step_index: int,
        action: str,
        success: bool,
        result: Optional[dict] = None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
        duration_ms: int = 0,
    ) -> ExecutionLog:
        entry = ExecutionLog(
            instance_id=instance.id,
            account_id=instance.account_id,
            step_id=step_id,
            step_index=step_index,
            action=action,
            success=success,
            result=result,
            error=error,
            error_code=error_code,
            duration_ms=duration_ms,
            executed_at=utc_now(),
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def recent_logs(self, instance_id: str, limit: int = 10) -> Sequence[ExecutionLog]:
        result = await self.db.execute(
            select(ExecutionLog)
            .where(ExecutionLog.instance_id == instance_id)
            .order_by(ExecutionLog.executed_at.desc())
            .limit(limit)
        )
        return result.scalars().all()

    async def count_logs(self, instance_id: str, action: Optional[str] = None) -> int:
        query = select(func.count()).select_from(ExecutionLog).where(
            ExecutionLog.instance_id == instance_id
        )
        if action:
            query = query.where(ExecutionLog.action == action)
        result = await self.db.execute(query)
        return result.scalar() or 0

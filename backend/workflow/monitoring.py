"""
Workflow monitoring service.

Records execution starts, step outcomes and terminal transitions into
the daily ``workflow_stats`` table and the in-process metrics store,
and builds the statistics/health summary exposed by the manager.
"""

from datetime import timedelta
from typing import Any, Dict

import structlog
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from core import metrics
from core.constants import ACTIVE_STATUSES, WorkflowStatus
from core.utils import utc_now
from db.models.execution_log import ExecutionLog
from db.models.workflow_stats import WorkflowStats
from db.session import dialect_insert
from services.instance_service import InstanceService
from workflow.config_service import ConfigService

logger = structlog.get_logger(__name__)

_TERMINAL_COUNTERS = {
    WorkflowStatus.COMPLETED.value: "completed",
    WorkflowStatus.FAILED.value: "failed",
    WorkflowStatus.UNRECOVERABLE.value: "failed",
    WorkflowStatus.STOPPED.value: "stopped",
}

_RECOVERY_COUNTERS = {
    "recovered": "recoveries",
    "failed": "recovery_failed",
    "unrecoverable": "recovery_unrecoverable",
    "skipped": "recovery_skipped",
}


class MonitoringService:
    """Persists execution counters and evaluates health thresholds."""

    def __init__(self, session_factory: async_sessionmaker, config: ConfigService):
        self.session_factory = session_factory
        self.config = config

    async def _bump(self, **increments: int) -> None:
        """Add ``increments`` to today's stats row (created on first use)."""
        increments = {k: v for k, v in increments.items() if v}
        if not increments:
            return
        async with self.session_factory() as db:
            insert = dialect_insert(db)
            stmt = insert(WorkflowStats).values(stat_date=utc_now().date(), **increments)
            stmt = stmt.on_conflict_do_update(
                index_elements=[WorkflowStats.stat_date],
                set_={
                    name: getattr(WorkflowStats, name) + getattr(stmt.excluded, name)
                    for name in increments
                },
            )
            await db.execute(stmt)
            await db.commit()

    # ─── Recording ─────────────────────────────────────────

    async def record_start(self, instance) -> None:
        metrics.inc("workflow_started_total", labels={"workflow_type": instance.workflow_type})
        await self._bump(started=1)

    async def record_step(self, instance, result) -> None:
        outcome = "success" if result.success else "failure"
        metrics.inc("workflow_steps_total", labels={"action": result.action, "outcome": outcome})
        metrics.observe("workflow_step_duration_ms", result.duration_ms, labels={"action": result.action})

        goto_iterations = 0
        if result.success and result.loop_created:
            limits = await self.config.get_goto_limits()
            if limits.get("track_iterations", True):
                goto_iterations = 1
                metrics.inc("workflow_goto_iterations_total", labels={"workflow_type": instance.workflow_type})

        await self._bump(
            steps_executed=1,
            steps_failed=0 if result.success else 1,
            goto_iterations=goto_iterations,
        )

    async def record_retry(self, instance) -> None:
        metrics.inc("workflow_retries_total", labels={"workflow_type": instance.workflow_type})
        await self._bump(retries=1)

    async def record_transition(self, instance, status: str) -> None:
        metrics.inc("workflow_transitions_total", labels={"status": status})
        counter = _TERMINAL_COUNTERS.get(status)
        if counter:
            await self._bump(**{counter: 1})
        logger.info(
            "Workflow transition",
            account_id=instance.account_id,
            instance_id=instance.id,
            status=status,
        )

    async def record_recovery(self, outcome: str) -> None:
        metrics.inc("workflow_recovery_attempts_total", labels={"outcome": outcome})
        await self._bump(**{_RECOVERY_COUNTERS[outcome]: 1})

    async def recovery_totals(self, days: int = 7) -> Dict[str, int]:
        """Recovery outcomes summed over the last ``days``."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(*(func.coalesce(func.sum(getattr(WorkflowStats, column)), 0)
                         for column in _RECOVERY_COUNTERS.values()))
                .where(WorkflowStats.stat_date >= (utc_now() - timedelta(days=days)).date())
            )
            sums = result.one()
        return {outcome: int(total) for outcome, total in zip(_RECOVERY_COUNTERS, sums)}

    # ─── Reporting ─────────────────────────────────────────

    async def get_stats(self, days: int = 7) -> Dict[str, Any]:
        """Status counts, daily aggregates, per-action error rates and health."""
        since = utc_now() - timedelta(hours=24)
        async with self.session_factory() as db:
            status_counts = await InstanceService(db).status_counts()

            daily_result = await db.execute(
                select(WorkflowStats)
                .where(WorkflowStats.stat_date >= (utc_now() - timedelta(days=days)).date())
                .order_by(WorkflowStats.stat_date.desc())
            )
            daily = [
                {
                    "date": row.stat_date.isoformat(),
                    "started": row.started,
                    "completed": row.completed,
                    "failed": row.failed,
                    "stopped": row.stopped,
                    "steps_executed": row.steps_executed,
                    "steps_failed": row.steps_failed,
                    "retries": row.retries,
                    "goto_iterations": row.goto_iterations,
                    "recoveries": row.recoveries,
                    "recovery_failed": row.recovery_failed + row.recovery_unrecoverable,
                    "recovery_skipped": row.recovery_skipped,
                }
                for row in daily_result.scalars().all()
            ]

            action_result = await db.execute(
                select(
                    ExecutionLog.action,
                    func.count(),
                    func.sum(case((ExecutionLog.success.is_(False), 1), else_=0)),
                    func.avg(ExecutionLog.duration_ms),
                )
                .where(ExecutionLog.executed_at >= since)
                .group_by(ExecutionLog.action)
            )
            by_action = {
                action: {
                    "total": total,
                    "failed": int(failed or 0),
                    "error_rate": round((failed or 0) / total, 3) if total else 0.0,
                    "avg_duration_ms": int(avg or 0),
                }
                for action, total, failed, avg in action_result.all()
            }

        for status in WorkflowStatus:
            metrics.gauge_set(
                "workflow_instances", status_counts.get(status.value, 0), labels={"status": status.value}
            )

        active = sum(count for status, count in status_counts.items() if status in ACTIVE_STATUSES)
        finished = sum(status_counts.get(s, 0) for s in _TERMINAL_COUNTERS)
        failed = status_counts.get(WorkflowStatus.FAILED.value, 0) + status_counts.get(
            WorkflowStatus.UNRECOVERABLE.value, 0
        )
        failure_rate = round(failed / finished, 3) if finished else 0.0

        steps_total = sum(a["total"] for a in by_action.values())
        steps_failed = sum(a["failed"] for a in by_action.values())
        step_failure_rate = round(steps_failed / steps_total, 3) if steps_total else 0.0
        today = daily[0] if daily else {}
        retry_rate = (
            round(today.get("retries", 0) / today["steps_executed"], 3)
            if today.get("steps_executed") else 0.0
        )

        health = await self._health(active, step_failure_rate, retry_rate)

        return {
            "total": sum(status_counts.values()),
            "active": active,
            "by_status": status_counts,
            "failure_rate": failure_rate,
            "step_failure_rate_24h": step_failure_rate,
            "retry_rate_today": retry_rate,
            "by_action_24h": by_action,
            "daily": daily,
            "health": health,
        }

    async def _health(self, active: int, failure_rate: float, retry_rate: float) -> Dict[str, Any]:
        thresholds = await self.config.get_monitoring_config()
        issues = []
        if failure_rate > thresholds["max_failure_rate"]:
            issues.append(f"step failure rate {failure_rate:.0%} above {thresholds['max_failure_rate']:.0%}")
        if retry_rate > thresholds["max_retry_rate"]:
            issues.append(f"retry rate {retry_rate:.0%} above {thresholds['max_retry_rate']:.0%}")
        if active > thresholds["max_concurrent_executions"]:
            issues.append(f"{active} active workflows above {thresholds['max_concurrent_executions']}")

        if not issues:
            status = "healthy"
        elif len(issues) == 1:
            status = "warning"
        else:
            status = "critical"
        return {"status": status, "issues": issues, "thresholds": thresholds}

"""
Workflow Recovery Service.

Detects workflow instances whose owning worker vanished (crash,
restart, lost broker message) and hands them back to the executor.

Recovery flow:
1. Select in-flight instances (active, running, recovering) that
   have not been touched for ``min_age`` and have no future wake-up
2. Take the account's execute lock and re-read the instance; anything
   that moved since the scan belongs to a live worker and is skipped
3. Validate each one: account snapshot, resolvable definition and
   execution context must all be present
4. Give up on instances that already used their recovery attempts
5. Cancel orphaned scheduled work, mark the instance ``recovering``
   and signal the executor to resume it

Candidates are processed in small batches with a pause in between so
a mass restart does not hammer the vendor API.
"""

import asyncio
from collections import deque
from datetime import timedelta
from typing import Awaitable, Callable, Deque, List, Optional

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.constants import IN_FLIGHT_STATUSES, LockOperation, WorkflowStatus
from core.exceptions import AutomationError, LockUnavailableError
from core.logging_config import workflow_log_context
from core.utils import isoformat, utc_now
from db.models.workflow_instance import WorkflowInstance
from services.definition_service import DefinitionService
from services.instance_service import InstanceService
from workflow.locks import LockService, lock_key
from workflow.monitoring import MonitoringService
from workflow.scheduling import SchedulingService

logger = structlog.get_logger(__name__)

RecoveryCallback = Callable[[str, str], Awaitable[object]]

# Outcomes
RECOVERED = "recovered"
FAILED = "failed"
UNRECOVERABLE = "unrecoverable"
SKIPPED = "skipped"


class RecoveryResult:
    """Result of a recovery attempt for a single instance."""

    def __init__(self, instance: WorkflowInstance):
        self.instance_id = instance.id
        self.account_id = instance.account_id
        self.previous_status = instance.status
        self.step_index = instance.current_step_index
        self.attempt = (instance.retry_count or 0) + 1
        self.outcome: str = SKIPPED
        self.error: Optional[str] = None
        self.timestamp = utc_now()

    @property
    def recovered(self) -> bool:
        return self.outcome == RECOVERED

    def to_dict(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "account_id": self.account_id,
            "previous_status": self.previous_status,
            "step_index": self.step_index,
            "attempt": self.attempt,
            "outcome": self.outcome,
            "error": self.error,
            "timestamp": isoformat(self.timestamp),
        }


class RecoveryService:
    """
    Periodic scan for interrupted workflow instances.

    ``on_recovery_ready(account_id, instance_id)`` is invoked for each
    instance moved to ``recovering``; the executor uses it to schedule
    the instance back into the state machine.

    Outcome counts are persisted to ``workflow_stats``; only the most
    recent ``log_size`` results are kept in memory for inspection.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        locks: LockService,
        scheduling: SchedulingService,
        monitoring: MonitoringService,
        on_recovery_ready: Optional[RecoveryCallback] = None,
        min_age_minutes: int = 10,
        max_age_hours: int = 24,
        batch_size: int = 10,
        batch_pause: float = 1.0,
        max_attempts: int = 3,
        lock_ttl: int = 60,
        log_size: int = 100,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.scheduling = scheduling
        self.monitoring = monitoring
        self.on_recovery_ready = on_recovery_ready
        self.min_age = timedelta(minutes=min_age_minutes)
        self.max_age = timedelta(hours=max_age_hours)
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self.max_attempts = max_attempts
        self.lock_ttl = lock_ttl
        self._recovery_log: Deque[RecoveryResult] = deque(maxlen=log_size)

    async def scan_interrupted(self, limit: int = 100) -> List[WorkflowInstance]:
        """Instances that look abandoned by their worker."""
        now = utc_now()
        async with self.session_factory() as db:
            candidates = await InstanceService(db).recovery_candidates(
                stale_before=now - self.min_age,
                oldest=now - self.max_age,
                limit=limit,
            )
        if candidates:
            logger.info(
                "Found interrupted workflows",
                count=len(candidates),
                instance_ids=[c.id for c in candidates[:10]],
            )
        return list(candidates)

    async def recover_instance(self, instance: WorkflowInstance) -> RecoveryResult:
        """Validate and reset a single interrupted instance.

        Runs under the account's execute lock, so a worker that is
        mid-step (or picks the instance up while this runs) is never
        overwritten. The final status change is a compare-and-set on
        the status and activity stamp observed under that lock.
        """
        result = RecoveryResult(instance)
        log = logger.bind(account_id=instance.account_id, instance_id=instance.id)

        try:
            async with self.locks.hold(
                lock_key(instance.account_id, LockOperation.EXECUTE), self.lock_ttl
            ):
                await self._recover_locked(instance, result, log)
        except LockUnavailableError:
            result.error = "Step still executing"
            log.info("Workflow recovery skipped", reason=result.error)

        if result.recovered and self.on_recovery_ready is not None:
            await self.on_recovery_ready(instance.account_id, instance.id)

        await self._record(result)
        return result

    async def _recover_locked(self, scanned: WorkflowInstance, result: RecoveryResult, log) -> None:
        async with self.session_factory() as db:
            instance = await InstanceService(db).get_by_id(scanned.id)

        if (
            instance is None
            or instance.status not in IN_FLIGHT_STATUSES
            or instance.status != scanned.status
            or instance.last_activity_at != scanned.last_activity_at
        ):
            result.error = "Status changed during recovery"
            log.info("Workflow recovery skipped", reason=result.error)
            return

        problem = await self._validate(instance)
        if problem:
            result.error = problem
            if await self._terminate(instance, WorkflowStatus.UNRECOVERABLE.value, problem):
                result.outcome = UNRECOVERABLE
            log.warning("Workflow unrecoverable", reason=problem)
            return

        if (instance.retry_count or 0) >= self.max_attempts:
            result.error = f"Recovery attempts exhausted ({instance.retry_count}/{self.max_attempts})"
            if await self._terminate(instance, WorkflowStatus.FAILED.value, result.error):
                result.outcome = FAILED
            log.warning("Workflow recovery gave up", retry_count=instance.retry_count)
            return

        await self.scheduling.cancel_scheduled(instance.account_id)

        async with self.session_factory() as db:
            applied = await InstanceService(db).transition(
                instance.id,
                [instance.status],
                {
                    "status": WorkflowStatus.RECOVERING.value,
                    "retry_count": (instance.retry_count or 0) + 1,
                    "last_error": None,
                },
                last_activity_at=instance.last_activity_at,
            )
            await db.commit()

        if not applied:
            result.error = "Status changed during recovery"
            log.info("Workflow recovery skipped", reason=result.error)
            return

        result.outcome = RECOVERED
        await self.monitoring.record_transition(instance, WorkflowStatus.RECOVERING.value)
        log.info(
            "Workflow marked for recovery",
            previous_status=result.previous_status,
            step_index=result.step_index,
            attempt=result.attempt,
        )

    async def recover_all(self, limit: int = 100) -> List[RecoveryResult]:
        """Scan and recover every interrupted instance, batch by batch."""
        logger.info("Starting workflow recovery scan")

        candidates = await self.scan_interrupted(limit=limit)
        if not candidates:
            logger.info("No interrupted workflows found")
            return []

        results = []
        for start in range(0, len(candidates), self.batch_size):
            if start:
                await asyncio.sleep(self.batch_pause)
            for instance in candidates[start:start + self.batch_size]:
                try:
                    with workflow_log_context(instance.account_id, instance.id):
                        results.append(await self.recover_instance(instance))
                except AutomationError as e:
                    logger.error(
                        "Recovery failed",
                        account_id=instance.account_id,
                        instance_id=instance.id,
                        error=e.message,
                    )

        recovered = sum(1 for r in results if r.recovered)
        logger.info(
            "Recovery scan complete",
            total=len(results),
            recovered=recovered,
            failed=len(results) - recovered,
        )
        return results

    async def _validate(self, instance: WorkflowInstance) -> Optional[str]:
        """Reason the instance cannot be resumed, or None."""
        if not instance.account_data:
            return "Missing account data snapshot"
        if instance.execution_context is None:
            return "Missing execution context"
        async with self.session_factory() as db:
            try:
                definition = await DefinitionService(db).load(instance.workflow_type)
            except AutomationError as e:
                return f"Workflow definition unavailable: {e.message}"
        if instance.current_step_index > len(definition.steps):
            return f"Step index {instance.current_step_index} outside definition"
        return None

    async def _terminate(self, instance: WorkflowInstance, status: str, error: str) -> bool:
        async with self.session_factory() as db:
            applied = await InstanceService(db).transition(
                instance.id,
                [instance.status],
                {
                    "status": status,
                    "last_error": error,
                    "completed_at": utc_now(),
                    "next_action_at": None,
                },
                last_activity_at=instance.last_activity_at,
            )
            await db.commit()
        if applied:
            await self.scheduling.cancel_scheduled(instance.account_id)
            await self.monitoring.record_transition(instance, status)
        return applied

    async def _record(self, result: RecoveryResult) -> None:
        self._recovery_log.append(result)
        await self.monitoring.record_recovery(result.outcome)

    def get_recovery_log(self) -> List[dict]:
        """The most recent results seen by this process, oldest first."""
        return [r.to_dict() for r in self._recovery_log]

    async def get_recovery_stats(self, days: int = 7) -> dict:
        """Outcome counts over the last ``days`` from ``workflow_stats``."""
        totals = await self.monitoring.recovery_totals(days=days)
        last = self._recovery_log[-1] if self._recovery_log else None
        return {
            "total": sum(totals.values()),
            "by_outcome": totals,
            "days": days,
            "last_attempt_at": isoformat(last.timestamp) if last else None,
            "settings": {
                "min_age_minutes": int(self.min_age.total_seconds() // 60),
                "max_age_hours": int(self.max_age.total_seconds() // 3600),
                "batch_size": self.batch_size,
                "max_attempts": self.max_attempts,
            },
        }

"""
Workflow executor: the per-account state machine driver.

    pending → active ⇄ paused → completed | failed | stopped
    active → recovering → active          (recovery service)
    recovering → unrecoverable | failed   (recovery service)

Each call to ``advance()`` runs exactly one step under the account's
``execute`` lock:

1. Load the account's active-like instance; ignore the call unless it
   is ``pending`` or ``active`` (stale re-entries are no-ops).
2. Compare-and-set the instance to ``running`` and commit.
3. Run the step through the execution service.
4. Append the execution log entry and compare-and-set the outcome
   (next index, retry bookkeeping, terminal status) from ``running``.
5. After the commit, schedule the next re-entry.

Nothing is kept in memory between calls; the database row is the
only workflow state. ``wait`` steps finish immediately and push the
next re-entry ``delay`` milliseconds into the future.
"""

import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.constants import (
    ACTIVE_STATUSES,
    ADVANCING_STATUSES,
    LockOperation,
    WorkflowStatus,
)
from core.exceptions import (
    AccountNotAliveError,
    AutomationError,
    ConflictError,
    LockUnavailableError,
    NotFoundError,
    SchedulingError,
    ValidationError,
)
from core.utils import ensure_utc, isoformat, utc_now
from db.models.workflow_instance import WorkflowInstance
from integrations.base import AccountStore
from services.definition_service import DefinitionService
from services.instance_service import InstanceService
from workflow.config_service import ConfigService
from workflow.definitions import StepConfig, WorkflowDefinition
from workflow.execution import ExecutionService, StepResult
from workflow.locks import LockService, lock_key
from workflow.monitoring import MonitoringService
from workflow.scheduling import SchedulingService

logger = structlog.get_logger(__name__)

# Failures that skip a non-critical step instead of retrying it.
SKIP_CODES = frozenset({AccountNotAliveError.code, ValidationError.code})


@dataclass
class AdvanceOutcome:
    """What a single ``advance()`` call did."""

    account_id: str
    instance_id: Optional[str] = None
    executed: bool = False
    status: Optional[str] = None
    step_id: Optional[str] = None
    step_result: Optional[StepResult] = None
    next_delay_ms: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "instance_id": self.instance_id,
            "executed": self.executed,
            "status": self.status,
            "step_id": self.step_id,
            "step_result": self.step_result.to_dict() if self.step_result else None,
            "next_delay_ms": self.next_delay_ms,
            "reason": self.reason,
        }


@dataclass
class _Plan:
    """Outcome of applying a step result, carried past the commit."""

    status: str
    values: Dict[str, Any] = field(default_factory=dict)
    delay_ms: Optional[int] = None
    reason: str = ""
    retried: bool = False


def serialize_instance(instance: WorkflowInstance) -> Dict[str, Any]:
    return {
        "instance_id": instance.id,
        "account_id": instance.account_id,
        "workflow_type": instance.workflow_type,
        "definition_version": instance.definition_version,
        "status": instance.status,
        "current_step_index": instance.current_step_index,
        "total_steps": instance.total_steps,
        "progress": instance.progress_percent,
        "retry_count": instance.retry_count,
        "loop_iterations": instance.loop_iterations,
        "last_error": instance.last_error,
        "execution_context": instance.execution_context,
        "started_at": isoformat(instance.started_at),
        "completed_at": isoformat(instance.completed_at),
        "last_activity_at": isoformat(instance.last_activity_at),
        "next_action_at": isoformat(instance.next_action_at),
        "created_at": isoformat(instance.created_at),
        "updated_at": isoformat(instance.updated_at),
    }


class WorkflowExecutor:
    """Drives workflow instances through their step lists."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        locks: LockService,
        config: ConfigService,
        execution: ExecutionService,
        scheduling: SchedulingService,
        monitoring: MonitoringService,
        accounts: AccountStore,
        control_lock_ttl: int = 60,
        execute_lock_ttl: int = 300,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.config = config
        self.execution = execution
        self.scheduling = scheduling
        self.monitoring = monitoring
        self.accounts = accounts
        self.control_lock_ttl = control_lock_ttl
        self.execute_lock_ttl = execute_lock_ttl

    # ─── Start ─────────────────────────────────────────────

    async def start(
        self,
        account_id: str,
        workflow_type: str,
        execution_context: Optional[Dict[str, Any]] = None,
    ) -> WorkflowInstance:
        """Create a pending instance and schedule its first step.

        Raises:
            NotFoundError: Unknown account or workflow type
            ConflictError: The account already has an active-like instance
            LockUnavailableError: Another start for the account is in progress
        """
        async with self.locks.hold(lock_key(account_id, LockOperation.START), self.control_lock_ttl):
            account = await self.accounts.load(account_id)
            if account is None:
                raise NotFoundError(f"Account {account_id} not found")

            async with self.session_factory() as db:
                definition = await DefinitionService(db).load(workflow_type, require_active=True)
                instances = InstanceService(db)
                if await instances.get_current(account_id) is not None:
                    raise ConflictError(f"Account {account_id} already has an active workflow")

                delay_ms = self.scheduling.delay_before(definition.steps[0])
                now = utc_now()
                try:
                    instance = await instances.create({
                        "account_id": account_id,
                        "workflow_type": definition.type,
                        "definition_version": definition.version,
                        "status": WorkflowStatus.PENDING.value,
                        "current_step_index": 0,
                        "total_steps": len(definition.steps),
                        "execution_context": dict(execution_context or {}),
                        "account_data": account.to_dict(),
                        "last_activity_at": now,
                        "next_action_at": now + timedelta(milliseconds=delay_ms),
                    })
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    raise ConflictError(f"Account {account_id} already has an active workflow")

            logger.info(
                "Workflow started",
                account_id=account_id,
                instance_id=instance.id,
                workflow_type=definition.type,
                steps=len(definition.steps),
            )
            await self.monitoring.record_start(instance)

            try:
                await self.scheduling.schedule_next(
                    account_id,
                    delay_ms,
                    {"instance_id": instance.id, "step_index": 0, "reason": "start"},
                )
            except SchedulingError as e:
                await self._mark_terminal(instance, WorkflowStatus.FAILED.value, [WorkflowStatus.PENDING.value], e.message)
                raise

        return instance

    # ─── Advance ───────────────────────────────────────────

    async def advance(self, account_id: str, instance_id: Optional[str] = None) -> AdvanceOutcome:
        """Run the account's current step, if it is due to run.

        Raises:
            LockUnavailableError: A step for this account is already executing
            SchedulingError: The next re-entry could not be scheduled
        """
        ttl = await self._execute_lock_ttl(account_id)
        async with self.locks.hold(lock_key(account_id, LockOperation.EXECUTE), ttl):
            return await self._advance_locked(account_id, instance_id)

    async def _execute_lock_ttl(self, account_id: str) -> int:
        """Lease long enough to cover the upcoming step's timeout."""
        async with self.session_factory() as db:
            instance = await InstanceService(db).get_current(account_id)
            if instance is None:
                return self.execute_lock_ttl
            try:
                definition = await DefinitionService(db).load(instance.workflow_type)
            except AutomationError:
                return self.execute_lock_ttl
        step = definition.step_at(instance.current_step_index)
        if step is None or step.is_wait:
            return self.execute_lock_ttl
        timeout_ms = await self.config.get_timeout(step.action, step.params, definition.timeout_overrides)
        return max(self.execute_lock_ttl, math.ceil(timeout_ms / 1000) + 30)

    async def _advance_locked(self, account_id: str, instance_id: Optional[str]) -> AdvanceOutcome:
        outcome = AdvanceOutcome(account_id=account_id, instance_id=instance_id)
        log = logger.bind(account_id=account_id)

        async with self.session_factory() as db:
            instances = InstanceService(db)
            instance = await instances.get_current(account_id)
            if instance is None or (instance_id and instance.id != instance_id):
                outcome.reason = "no matching active workflow"
                log.info("Re-entry ignored", reason=outcome.reason, instance_id=instance_id)
                return outcome

            due = ensure_utc(instance.next_action_at)
            now = utc_now()
            if due is not None and due > now:
                outcome.reason = "not due yet"
                outcome.next_delay_ms = math.ceil((due - now).total_seconds() * 1000)
                log.info("Re-entry ignored", reason=outcome.reason, instance_id=instance.id, due=isoformat(due))
                return outcome

            outcome.instance_id = instance.id
            outcome.status = instance.status
            if instance.status not in ADVANCING_STATUSES:
                outcome.reason = f"workflow is {instance.status}"
                log.info("Re-entry ignored", reason=outcome.reason, instance_id=instance.id)
                return outcome

            terminal = None
            claimed = False
            index = instance.current_step_index
            step = None
            try:
                definition = await DefinitionService(db).load(instance.workflow_type)
            except AutomationError as e:
                terminal = (WorkflowStatus.FAILED.value, e.message)
            else:
                step = definition.step_at(index)
                if step is None:
                    terminal = (WorkflowStatus.COMPLETED.value, None)
                else:
                    claimed = await instances.transition(
                        instance.id,
                        ADVANCING_STATUSES,
                        {
                            "status": WorkflowStatus.RUNNING.value,
                            "started_at": instance.started_at or utc_now(),
                            "next_action_at": None,
                        },
                    )
                    await db.commit()

        if terminal is not None:
            status, error = terminal
            outcome.status = await self._mark_terminal(instance, status, ADVANCING_STATUSES, error)
            outcome.reason = error or "all steps done"
            return outcome
        if not claimed:
            outcome.reason = "status changed before step start"
            return outcome

        log.info("Executing step", instance_id=instance.id, step_id=step.id, step_index=index, action=step.action)
        result = await self.execution.execute_step(instance, step, definition)
        outcome.executed = True
        outcome.step_id = step.id
        outcome.step_result = result

        plan = await self._plan(instance, definition, index, step, result)

        async with self.session_factory() as db:
            instances = InstanceService(db)
            await instances.log_step(
                instance,
                step_id=step.id,
                step_index=index,
                action=step.action,
                success=result.success,
                result=result.output or None,
                error=result.error,
                error_code=result.error_code,
                duration_ms=result.duration_ms,
            )
            applied = await instances.transition(
                instance.id, [WorkflowStatus.RUNNING.value], plan.values
            )
            await db.commit()

        await self.monitoring.record_step(instance, result)

        if not applied:
            # Stopped (or otherwise taken over) while the step was running.
            outcome.status = None
            outcome.reason = "status changed during step"
            log.warning("Step outcome not applied", instance_id=instance.id, step_id=step.id, reason=outcome.reason)
            return outcome

        outcome.status = plan.status
        outcome.reason = plan.reason
        if plan.retried:
            await self.monitoring.record_retry(instance)
        if plan.status in (WorkflowStatus.COMPLETED.value, WorkflowStatus.FAILED.value):
            await self.monitoring.record_transition(instance, plan.status)
            return outcome

        outcome.next_delay_ms = plan.delay_ms
        await self.scheduling.schedule_next(
            account_id,
            plan.delay_ms,
            {
                "instance_id": instance.id,
                "step_index": plan.values.get("current_step_index", index),
                "reason": plan.reason,
            },
        )
        return outcome

    async def _plan(
        self,
        instance: WorkflowInstance,
        definition: WorkflowDefinition,
        index: int,
        step: StepConfig,
        result: StepResult,
    ) -> _Plan:
        """Decide the instance's next state from one step result."""
        now = utc_now()

        if result.success:
            values: Dict[str, Any] = {"retry_count": 0, "last_error": None}
            if result.next_step_index is not None:
                next_index = result.next_step_index
                values["loop_iterations"] = WorkflowInstance.loop_iterations + 1
            else:
                next_index = index + 1
            return self._plan_move(definition, values, next_index, result.defer_ms, now, "next_step")

        if step.critical:
            message = f"Critical step '{step.id}' failed: {result.error}"
            return self._plan_fail(message, now)

        if result.error_code in SKIP_CODES:
            values = {"last_error": result.error}
            return self._plan_move(definition, values, index + 1, 0, now, "step_skipped")

        strategy = await self.scheduling.retry_strategy(definition)
        attempt = (instance.retry_count or 0) + 1
        if strategy.should_retry(attempt, result.error_code):
            delay_ms = strategy.compute_delay_ms(attempt)
            logger.info(
                "Step will be retried",
                account_id=instance.account_id,
                step_id=step.id,
                attempt=attempt,
                max_retries=strategy.max_retries,
                delay_ms=delay_ms,
            )
            return _Plan(
                status=WorkflowStatus.ACTIVE.value,
                values={
                    "status": WorkflowStatus.ACTIVE.value,
                    "retry_count": attempt,
                    "last_error": result.error,
                    "next_action_at": now + timedelta(milliseconds=delay_ms),
                },
                delay_ms=delay_ms,
                reason="retry",
                retried=True,
            )

        message = f"Step '{step.id}' failed after {instance.retry_count or 0} retries: {result.error}"
        return self._plan_fail(message, now)

    def _plan_move(self, definition, values, next_index, defer_ms, now, reason) -> _Plan:
        delay_ms = defer_ms + self.scheduling.delay_before(definition.step_at(next_index))
        values["current_step_index"] = next_index
        if next_index >= len(definition.steps) and delay_ms == 0:
            values.update(
                status=WorkflowStatus.COMPLETED.value,
                completed_at=now,
                next_action_at=None,
            )
            return _Plan(status=WorkflowStatus.COMPLETED.value, values=values, reason="all steps done")

        values.update(
            status=WorkflowStatus.ACTIVE.value,
            next_action_at=now + timedelta(milliseconds=delay_ms),
        )
        if defer_ms:
            reason = "wait"
        return _Plan(status=WorkflowStatus.ACTIVE.value, values=values, delay_ms=delay_ms, reason=reason)

    @staticmethod
    def _plan_fail(message: str, now) -> _Plan:
        return _Plan(
            status=WorkflowStatus.FAILED.value,
            values={
                "status": WorkflowStatus.FAILED.value,
                "last_error": message,
                "completed_at": now,
                "next_action_at": None,
            },
            reason=message,
        )

    async def _mark_terminal(
        self,
        instance: WorkflowInstance,
        status: str,
        expected_statuses,
        error: Optional[str] = None,
    ) -> Optional[str]:
        values: Dict[str, Any] = {
            "status": status,
            "completed_at": utc_now(),
            "next_action_at": None,
        }
        if error:
            values["last_error"] = error
        async with self.session_factory() as db:
            applied = await InstanceService(db).transition(instance.id, expected_statuses, values)
            await db.commit()
        if not applied:
            return None
        await self.monitoring.record_transition(instance, status)
        if error:
            logger.error("Workflow terminated", account_id=instance.account_id, instance_id=instance.id, status=status, error=error)
        return status

    # ─── Control operations ────────────────────────────────

    async def pause(self, account_id: str) -> WorkflowInstance:
        """Pause the account's workflow.

        Fails fast with ``LockUnavailableError`` while a step is
        executing; the caller is expected to retry.
        """
        async with self.locks.hold(lock_key(account_id, LockOperation.PAUSE), self.control_lock_ttl):
            execute_key = lock_key(account_id, LockOperation.EXECUTE)
            if await self.locks.has_lock(execute_key):
                raise LockUnavailableError(execute_key, f"A step is executing for account {account_id}; retry shortly")

            async with self.session_factory() as db:
                instances = InstanceService(db)
                instance = await instances.get_current(account_id)
                if instance is None:
                    raise NotFoundError(f"No active workflow for account {account_id}")
                if instance.status == WorkflowStatus.PAUSED.value:
                    return instance
                if instance.status not in ADVANCING_STATUSES:
                    raise ConflictError(f"Cannot pause workflow in status '{instance.status}'")

                applied = await instances.transition(
                    instance.id, ADVANCING_STATUSES, {"status": WorkflowStatus.PAUSED.value}
                )
                await db.commit()
                if not applied:
                    raise LockUnavailableError(execute_key, f"Workflow for account {account_id} changed state; retry shortly")
                await db.refresh(instance)

            await self.scheduling.cancel_scheduled(account_id)
            await self.monitoring.record_transition(instance, WorkflowStatus.PAUSED.value)
            return instance

    async def resume(self, account_id: str) -> WorkflowInstance:
        """Resume a paused workflow, honoring any wait still in progress."""
        async with self.locks.hold(lock_key(account_id, LockOperation.RESUME), self.control_lock_ttl):
            async with self.session_factory() as db:
                instances = InstanceService(db)
                instance = await instances.get_current(account_id)
                if instance is None:
                    raise NotFoundError(f"No active workflow for account {account_id}")
                if instance.status != WorkflowStatus.PAUSED.value:
                    if instance.status in ADVANCING_STATUSES or instance.status == WorkflowStatus.RUNNING.value:
                        return instance
                    raise ConflictError(f"Cannot resume workflow in status '{instance.status}'")

                now = utc_now()
                due = ensure_utc(instance.next_action_at)
                delay_ms = max(0, int((due - now).total_seconds() * 1000)) if due else 0

                applied = await instances.transition(
                    instance.id,
                    [WorkflowStatus.PAUSED.value],
                    {
                        "status": WorkflowStatus.ACTIVE.value,
                        "next_action_at": now + timedelta(milliseconds=delay_ms),
                    },
                )
                await db.commit()
                if not applied:
                    raise ConflictError(f"Workflow for account {account_id} changed state during resume")
                await db.refresh(instance)

            await self.monitoring.record_transition(instance, WorkflowStatus.ACTIVE.value)
            await self.scheduling.schedule_next(
                account_id,
                delay_ms,
                {"instance_id": instance.id, "step_index": instance.current_step_index, "reason": "resume"},
            )
            return instance

    async def stop(self, account_id: str, delete_data: bool = False) -> Dict[str, Any]:
        """Stop the account's workflow. Idempotent.

        Returns:
            ``{"instance": ..., "already_stopped": bool, "data_deleted": bool}``
        """
        async with self.locks.hold(lock_key(account_id, LockOperation.STOP), self.control_lock_ttl):
            already_stopped = False
            async with self.session_factory() as db:
                instances = InstanceService(db)
                instance = await instances.get_current(account_id)
                if instance is None:
                    instance = await instances.get_latest(account_id)
                    if instance is None:
                        raise NotFoundError(f"No workflow found for account {account_id}")
                    already_stopped = True
                else:
                    applied = await instances.transition(
                        instance.id,
                        ACTIVE_STATUSES,
                        {
                            "status": WorkflowStatus.STOPPED.value,
                            "completed_at": utc_now(),
                            "next_action_at": None,
                        },
                    )
                    await db.commit()
                    already_stopped = not applied
                    await db.refresh(instance)

            await self.scheduling.cancel_scheduled(account_id)

            data_deleted = False
            if delete_data:
                data_deleted = await self.accounts.delete(account_id)

            if not already_stopped:
                await self.monitoring.record_transition(instance, WorkflowStatus.STOPPED.value)

            return {
                "instance": instance,
                "already_stopped": already_stopped,
                "data_deleted": data_deleted,
            }

    async def resume_recovered(self, account_id: str, instance_id: str) -> bool:
        """Re-enter the state machine for an instance the recovery service reset."""
        async with self.session_factory() as db:
            instances = InstanceService(db)
            instance = await instances.get_by_id(instance_id)
            applied = await instances.transition(
                instance_id,
                [WorkflowStatus.RECOVERING.value],
                {"status": WorkflowStatus.ACTIVE.value, "next_action_at": utc_now()},
            )
            await db.commit()

        if not applied:
            logger.warning("Recovered instance no longer recovering", account_id=account_id, instance_id=instance_id)
            return False

        await self.monitoring.record_transition(instance, WorkflowStatus.ACTIVE.value)
        await self.scheduling.schedule_next(
            account_id,
            0,
            {"instance_id": instance_id, "step_index": instance.current_step_index, "reason": "recovery"},
        )
        return True

    # ─── Queries ───────────────────────────────────────────

    async def get_status(self, account_id: str, log_limit: int = 10) -> Dict[str, Any]:
        async with self.session_factory() as db:
            instances = InstanceService(db)
            instance = await instances.get_latest(account_id)
            if instance is None:
                raise NotFoundError(f"No workflow found for account {account_id}")
            logs = await instances.recent_logs(instance.id, limit=log_limit)
            definition_model = await DefinitionService(db).get_by_type(instance.workflow_type)

        status = serialize_instance(instance)
        status["workflow_name"] = definition_model.name if definition_model else None
        status["current_step"] = None
        if definition_model is not None:
            steps = definition_model.steps or []
            if 0 <= instance.current_step_index < len(steps):
                status["current_step"] = steps[instance.current_step_index]
        status["recent_logs"] = [
            {
                "step_id": entry.step_id,
                "step_index": entry.step_index,
                "action": entry.action,
                "success": entry.success,
                "result": entry.result,
                "error": entry.error,
                "error_code": entry.error_code,
                "duration_ms": entry.duration_ms,
                "executed_at": isoformat(entry.executed_at),
            }
            for entry in logs
        ]
        return status

    async def list_workflows(
        self,
        statuses: Optional[List[str]] = None,
        workflow_type: Optional[str] = None,
        account_ids: Optional[List[str]] = None,
        offset: int = 0,
        limit: int = 50,
    ) -> Dict[str, Any]:
        async with self.session_factory() as db:
            items, total = await InstanceService(db).list(
                offset=offset,
                limit=limit,
                order_by="updated_at",
                filters={
                    "status": statuses or sorted(ACTIVE_STATUSES),
                    "workflow_type": workflow_type,
                    "account_id": account_ids,
                },
            )
        return {
            "items": [serialize_instance(item) for item in items],
            "total": total,
            "offset": offset,
            "limit": limit,
        }

"""
Workflow manager: the caller-facing facade over the executor.

Every operation returns an ``OperationResult``. Nothing raises across
this boundary: engine errors keep their stable ``code``, anything else
is logged with its traceback and reported as ``internal_error``.
"""

from dataclasses import dataclass
from functools import wraps
from typing import Any, Dict, List, Optional

import structlog

from core.constants import WorkflowStatus
from core.exceptions import AutomationError
from workflow.executor import WorkflowExecutor, serialize_instance
from workflow.monitoring import MonitoringService
from workflow.recovery import RecoveryService

logger = structlog.get_logger(__name__)

INTERNAL_ERROR = "internal_error"


@dataclass
class OperationResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None) -> "OperationResult":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, error_code: str) -> "OperationResult":
        return cls(success=False, error=error, error_code=error_code)

    def to_dict(self) -> dict:
        result = {"success": self.success}
        if self.success:
            result["data"] = self.data
        else:
            result["error"] = self.error
            result["error_code"] = self.error_code
        return result


def operation(name: str):
    """Turn exceptions raised by a manager method into failed results."""

    def decorator(fn):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs) -> OperationResult:
            try:
                return OperationResult.ok(await fn(self, *args, **kwargs))
            except AutomationError as e:
                logger.warning(f"{name} failed", error=e.message, error_code=e.code, args=args)
                return OperationResult.fail(e.message, e.code)
            except Exception as e:
                logger.error(f"{name} crashed", error=str(e), args=args, exc_info=True)
                return OperationResult.fail(f"Internal error: {e}", INTERNAL_ERROR)

        return wrapper

    return decorator


class WorkflowManager:
    """Start, control and inspect account workflows."""

    def __init__(
        self,
        executor: WorkflowExecutor,
        monitoring: MonitoringService,
        recovery: RecoveryService,
        default_workflow_type: str = "default",
    ):
        self.executor = executor
        self.monitoring = monitoring
        self.recovery = recovery
        self.default_workflow_type = default_workflow_type

    # ─── Lifecycle ─────────────────────────────────────────

    @operation("start_automation")
    async def start_automation(
        self,
        account_id: str,
        workflow_type: Optional[str] = None,
        execution_context: Optional[Dict[str, Any]] = None,
    ) -> dict:
        instance = await self.executor.start(
            account_id, workflow_type or self.default_workflow_type, execution_context
        )
        return serialize_instance(instance)

    @operation("stop_automation")
    async def stop_automation(self, account_id: str, delete_data: bool = False) -> dict:
        outcome = await self.executor.stop(account_id, delete_data=delete_data)
        data = serialize_instance(outcome["instance"])
        data["already_stopped"] = outcome["already_stopped"]
        data["data_deleted"] = outcome["data_deleted"]
        return data

    @operation("pause")
    async def pause(self, account_id: str) -> dict:
        return serialize_instance(await self.executor.pause(account_id))

    @operation("resume")
    async def resume(self, account_id: str) -> dict:
        return serialize_instance(await self.executor.resume(account_id))

    # ─── Queries ───────────────────────────────────────────

    @operation("get_status")
    async def get_status(self, account_id: str) -> dict:
        return await self.executor.get_status(account_id)

    @operation("get_active_workflows")
    async def get_active_workflows(self, filter: Optional[Dict[str, Any]] = None) -> dict:
        """List workflows.

        ``filter`` keys: ``status`` (str or list), ``workflow_type``,
        ``account_ids``, ``offset``, ``limit``.
        """
        filter = filter or {}
        statuses = filter.get("status")
        if isinstance(statuses, str):
            statuses = [statuses]
        return await self.executor.list_workflows(
            statuses=statuses,
            workflow_type=filter.get("workflow_type"),
            account_ids=filter.get("account_ids"),
            offset=int(filter.get("offset", 0)),
            limit=int(filter.get("limit", 50)),
        )

    @operation("get_stats")
    async def get_stats(self, days: int = 7) -> dict:
        stats = await self.monitoring.get_stats(days=days)
        stats["recovery"] = await self.recovery.get_recovery_stats(days=days)
        return stats

    # ─── Bulk control ──────────────────────────────────────

    async def pause_multiple(self, account_ids: List[str]) -> OperationResult:
        return await self._bulk(self.pause, account_ids)

    async def resume_multiple(self, account_ids: List[str]) -> OperationResult:
        return await self._bulk(self.resume, account_ids)

    async def pause_all(self) -> OperationResult:
        account_ids = await self._accounts_in(
            [WorkflowStatus.PENDING.value, WorkflowStatus.ACTIVE.value, WorkflowStatus.RUNNING.value]
        )
        if not account_ids.success:
            return account_ids
        return await self.pause_multiple(account_ids.data)

    async def resume_all(self) -> OperationResult:
        account_ids = await self._accounts_in([WorkflowStatus.PAUSED.value])
        if not account_ids.success:
            return account_ids
        return await self.resume_multiple(account_ids.data)

    @operation("list_accounts")
    async def _accounts_in(self, statuses: List[str]) -> List[str]:
        account_ids = []
        offset = 0
        while True:
            page = await self.executor.list_workflows(statuses=statuses, offset=offset, limit=200)
            account_ids.extend(item["account_id"] for item in page["items"])
            offset += len(page["items"])
            if not page["items"] or offset >= page["total"]:
                break
        return account_ids

    async def _bulk(self, op, account_ids: List[str]) -> OperationResult:
        results = {}
        for account_id in account_ids:
            results[account_id] = (await op(account_id)).to_dict()
        succeeded = sum(1 for r in results.values() if r["success"])
        logger.info(
            "Bulk operation finished",
            operation=op.__name__,
            total=len(account_ids),
            succeeded=succeeded,
        )
        return OperationResult.ok({
            "total": len(account_ids),
            "succeeded": succeeded,
            "failed": len(account_ids) - succeeded,
            "results": results,
        })


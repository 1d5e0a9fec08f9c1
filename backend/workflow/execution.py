"""
Step execution service.

Maps a step's ``action`` to a handler and runs it under the step
timeout from the config service. Every failure is caught here and
turned into ``StepResult(success=False)``; the executor decides what
the failure means for the instance.

Side-effecting actions first confirm the account is alive. Their
parameters resolve in this order: step parameter, execution context,
account record, engine default.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from core.constants import SIDE_EFFECT_ACTIONS, StepAction
from core.exceptions import (
    AccountNotAliveError,
    AutomationError,
    NotFoundError,
    StepTimeoutError,
    ValidationError,
    VendorCallError,
)
from core.utils import utc_now
from integrations.base import AccountRecord, AccountStore, VendorClient
from workflow.config_service import ConfigService
from workflow.definitions import StepConfig, WorkflowDefinition

logger = structlog.get_logger(__name__)

STEP_FAILED = "step_failed"


@dataclass
class StepResult:
    """Outcome of one step."""

    step_id: str
    action: str
    success: bool
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None
    duration_ms: int = 0
    next_step_index: Optional[int] = None
    loop_created: bool = False
    defer_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "action": self.action,
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "error_code": self.error_code,
            "duration_ms": self.duration_ms,
            "next_step_index": self.next_step_index,
            "loop_created": self.loop_created,
            "defer_ms": self.defer_ms,
        }


class ExecutionService:
    """Runs single steps against the vendor and account collaborators."""

    def __init__(self, vendor: VendorClient, accounts: AccountStore, config: ConfigService):
        self.vendor = vendor
        self.accounts = accounts
        self.config = config
        self._handlers: Dict[str, Callable[..., Awaitable[Dict[str, Any]]]] = {
            StepAction.UPDATE_BIO.value: self._update_bio,
            StepAction.UPDATE_PROMPT.value: self._update_prompt,
            StepAction.RUN_ENGAGEMENT_CAMPAIGN.value: self._run_engagement_campaign,
            StepAction.WAIT.value: self._wait,
            StepAction.GOTO.value: self._goto,
        }

    async def execute_step(self, instance, step: StepConfig, definition: WorkflowDefinition) -> StepResult:
        """Run ``step`` for ``instance``. Never raises."""
        started = time.monotonic()
        log = logger.bind(
            account_id=instance.account_id,
            instance_id=instance.id,
            step_id=step.id,
            action=step.action,
        )

        try:
            handler = self._handlers.get(step.action)
            if handler is None:
                raise ValidationError(f"Unsupported action: {step.action or '<empty>'}")

            timeout_ms = await self.config.get_timeout(
                step.action,
                {"delay": step.delay_ms, **step.params},
                definition.timeout_overrides,
            )
            try:
                output = await asyncio.wait_for(
                    self._run(handler, instance, step, definition),
                    timeout=timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                raise StepTimeoutError(step.action, timeout_ms)

        except AutomationError as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            log.warning("Step failed", error=e.message, error_code=e.code, duration_ms=duration_ms)
            return StepResult(
                step_id=step.id,
                action=step.action,
                success=False,
                error=e.message,
                error_code=e.code,
                duration_ms=duration_ms,
            )
        except Exception as e:
            duration_ms = int((time.monotonic() - started) * 1000)
            log.error("Step raised unexpected error", error=str(e), exc_info=True)
            return StepResult(
                step_id=step.id,
                action=step.action,
                success=False,
                error=str(e) or type(e).__name__,
                error_code=STEP_FAILED,
                duration_ms=duration_ms,
            )

        duration_ms = int((time.monotonic() - started) * 1000)
        log.info("Step succeeded", duration_ms=duration_ms)
        return StepResult(
            step_id=step.id,
            action=step.action,
            success=True,
            output=output,
            duration_ms=duration_ms,
            next_step_index=output.get("target_step_index"),
            loop_created=bool(output.get("loop_created")),
            defer_ms=int(output.get("wait_ms") or 0),
        )

    async def _run(self, handler, instance, step: StepConfig, definition: WorkflowDefinition) -> Dict[str, Any]:
        if step.action in SIDE_EFFECT_ACTIONS:
            alive = await self._call_vendor(self.vendor.is_alive(instance.account_id))
            if not alive:
                raise AccountNotAliveError(instance.account_id)
        return await handler(instance, step, definition)

    @staticmethod
    async def _call_vendor(awaitable: Awaitable[Any]) -> Any:
        """Await a vendor call, classifying unexpected errors as vendor failures."""
        try:
            return await awaitable
        except AutomationError:
            raise
        except asyncio.TimeoutError:
            raise
        except Exception as e:
            raise VendorCallError(f"{type(e).__name__}: {e}")

    async def _load_account(self, account_id: str) -> AccountRecord:
        account = await self.accounts.load(account_id)
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    # ─── Handlers ──────────────────────────────────────────

    async def _update_bio(self, instance, step: StepConfig, definition) -> Dict[str, Any]:
        context = instance.execution_context or {}
        text = step.param("bio", "text") or context.get("bio")
        result = await self._call_vendor(self.vendor.update_bio(instance.account_id, text))
        return {
            "task_id": result.get("task_id"),
            "generated_bio": result.get("generated_bio"),
        }

    async def _update_prompt(self, instance, step: StepConfig, definition) -> Dict[str, Any]:
        context = instance.execution_context or {}
        account = await self._load_account(instance.account_id)

        model = step.param("model") or context.get("model") or account.model
        channel = step.param("channel") or context.get("channel") or account.channel
        if not model:
            raise ValidationError(f"No model configured for account {instance.account_id}")
        if not channel:
            raise ValidationError(f"No channel configured for account {instance.account_id}")

        result = await self._call_vendor(
            self.vendor.update_prompt(instance.account_id, model, channel)
        )
        return {
            "task_id": result.get("task_id"),
            "model": model,
            "channel": channel,
            "visible_text": result.get("visible_text"),
            "obfuscated_text": result.get("obfuscated_text"),
        }

    async def _run_engagement_campaign(self, instance, step: StepConfig, definition) -> Dict[str, Any]:
        context = instance.execution_context or {}
        account = await self._load_account(instance.account_id)
        defaults = await self.config.get_action_defaults()

        count = (
            step.param("count", "swipeCount")
            or context.get("engagement_count")
            or account.extra.get("engagement_count")
            or defaults["engagement_count"]
        )
        try:
            count = int(count)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid engagement count: {count!r}")
        if count <= 0:
            raise ValidationError(f"Engagement count must be positive, got {count}")

        result = await self._call_vendor(
            self.vendor.run_engagement_campaign(instance.account_id, count)
        )
        matches = int(result.get("matches") or 0)
        await self.accounts.update_stats(
            instance.account_id,
            {"swipes": count, "matches": matches, "campaigns": 1},
        )
        return {
            "task_id": result.get("task_id"),
            "count": count,
            "matches": matches,
        }

    async def _wait(self, instance, step: StepConfig, definition) -> Dict[str, Any]:
        wait_ms = step.delay_ms or int(step.param("duration_ms", default=0))
        max_wait_ms = await self.config.get_max_wait_ms()
        if wait_ms > max_wait_ms:
            logger.warning(
                "Wait clamped to maximum",
                account_id=instance.account_id,
                step_id=step.id,
                requested_ms=wait_ms,
                max_wait_ms=max_wait_ms,
            )
            wait_ms = max_wait_ms
        return {
            "wait_ms": wait_ms,
            "resume_at": (utc_now() + timedelta(milliseconds=wait_ms)).isoformat(),
        }

    async def _goto(self, instance, step: StepConfig, definition: WorkflowDefinition) -> Dict[str, Any]:
        if not step.next_step:
            raise ValidationError(f"Goto step '{step.id}' has no nextStep")
        target_index = definition.index_of(step.next_step)

        limits = await self.config.get_goto_limits()
        iterations = (instance.loop_iterations or 0) + 1
        if not limits.get("infinite_allowed", True):
            max_iterations = int(limits.get("default_max_iterations", 1000))
            if iterations > max_iterations:
                raise ValidationError(
                    f"Goto iteration limit reached ({max_iterations}) at step '{step.id}'"
                )

        return {
            "action": "goto",
            "next_step": step.next_step,
            "target_step_index": target_index,
            "loop_created": True,
            "iteration": iterations,
            "description": step.description or f"Jump to step {step.next_step}",
        }

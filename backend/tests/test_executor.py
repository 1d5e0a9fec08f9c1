"""Tests for the workflow executor state machine."""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from core.constants import WorkflowStatus
from core.exceptions import (
    ConflictError,
    LockUnavailableError,
    NotFoundError,
    SchedulingError,
)
from core.utils import utc_now
from db.models.workflow_instance import WorkflowInstance
from services.instance_service import InstanceService
from workflow.config_service import RETRY_KEY
from workflow.locks import lock_key

HOUR_MS = 60 * 60 * 1000

LOOP = {
    "type": "loop",
    "name": "Loop",
    "steps": [
        {"id": "rest", "action": "wait", "delay": HOUR_MS},
        {"id": "again", "action": "goto", "nextStep": "rest"},
    ],
}


def single(step, **config):
    return {"type": "single", "name": "Single", "config": config, "steps": [step]}


async def count_logs(session_factory, instance_id, action=None):
    async with session_factory() as db:
        return await InstanceService(db).count_logs(instance_id, action)


@pytest.mark.integration
class TestStart:

    async def test_start_creates_pending_instance(self, components, install_definition, scheduler):
        await install_definition(LOOP)
        instance = await components.executor.start("acct-1", "loop", {"model": "m"})

        assert instance.status == WorkflowStatus.PENDING.value
        assert instance.current_step_index == 0
        assert instance.total_steps == 2
        assert instance.execution_context == {"model": "m"}
        assert instance.account_data["account_id"] == "acct-1"
        assert scheduler.last["delay_ms"] == 0
        assert scheduler.last["payload"]["reason"] == "start"
        assert scheduler.last["key"] == "workflow:acct-1"

    async def test_first_step_delay_is_scheduled(self, components, install_definition, scheduler):
        await install_definition(single({"id": "bio", "action": "update_bio", "delay": 2500}))
        await components.executor.start("acct-1", "single")
        assert scheduler.last["delay_ms"] == 2500

    async def test_duplicate_start_conflicts(self, components, install_definition):
        await install_definition(LOOP)
        await components.executor.start("acct-1", "loop")
        with pytest.raises(ConflictError):
            await components.executor.start("acct-1", "loop")

    async def test_unknown_account(self, components, install_definition):
        await install_definition(LOOP)
        with pytest.raises(NotFoundError):
            await components.executor.start("nobody", "loop")

    async def test_unknown_workflow_type(self, components):
        with pytest.raises(NotFoundError):
            await components.executor.start("acct-1", "missing")

    async def test_inactive_definition(self, components, install_definition):
        await install_definition({**LOOP, "is_active": False})
        with pytest.raises(NotFoundError):
            await components.executor.start("acct-1", "loop")

    async def test_start_lock_busy(self, components, install_definition):
        await install_definition(LOOP)
        await components.locks.acquire(lock_key("acct-1", "start"), "other-process")
        with pytest.raises(LockUnavailableError):
            await components.executor.start("acct-1", "loop")

    async def test_scheduling_failure_fails_instance(
        self, components, install_definition, scheduler
    ):
        await install_definition(LOOP)
        scheduler.fail = True
        with pytest.raises(SchedulingError):
            await components.executor.start("acct-1", "loop")

        status = await components.executor.get_status("acct-1")
        assert status["status"] == WorkflowStatus.FAILED.value
        assert "broker unreachable" in status["last_error"]

    async def test_concurrent_starts_single_winner(self, components, install_definition, session_factory):
        await install_definition(LOOP)

        results = await asyncio.gather(
            components.executor.start("acct-1", "loop"),
            components.executor.start("acct-1", "loop"),
            return_exceptions=True,
        )

        started = [r for r in results if isinstance(r, WorkflowInstance)]
        refused = [r for r in results if isinstance(r, (ConflictError, LockUnavailableError))]
        assert len(started) == 1
        assert len(refused) == 1
        async with session_factory() as db:
            _, total = await InstanceService(db).list(filters={"account_id": "acct-1"})
        assert total == 1

    async def test_unique_index_backs_up_the_start_lock(
        self, components, install_definition, session_factory, monkeypatch
    ):
        await install_definition(LOOP)

        @asynccontextmanager
        async def no_lock(key, ttl_seconds=None):
            yield "unlocked"

        async def nothing_current(self, account_id):
            return None

        monkeypatch.setattr(components.locks, "hold", no_lock)
        monkeypatch.setattr(InstanceService, "get_current", nothing_current)

        results = await asyncio.gather(
            components.executor.start("acct-1", "loop"),
            components.executor.start("acct-1", "loop"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, WorkflowInstance) for r in results) == 1
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(conflicts) == 1
        assert "already has an active workflow" in conflicts[0].message
        async with session_factory() as db:
            _, total = await InstanceService(db).list(filters={"account_id": "acct-1"})
        assert total == 1


@pytest.mark.integration
class TestAdvance:

    async def test_wait_goto_loop_never_completes(
        self, components, install_definition, scheduler, make_due, load_instance, session_factory
    ):
        await install_definition(LOOP)
        instance = await components.executor.start("acct-1", "loop")
        executor = components.executor

        for _ in range(3):
            outcome = await executor.advance("acct-1")
            assert outcome.step_id == "rest"
            assert outcome.reason == "wait"
            assert outcome.next_delay_ms == HOUR_MS

            await make_due(instance.id)
            outcome = await executor.advance("acct-1")
            assert outcome.step_id == "again"
            assert outcome.status == WorkflowStatus.ACTIVE.value

        current = await load_instance(instance.id)
        assert current.status == WorkflowStatus.ACTIVE.value
        assert current.current_step_index == 0
        assert current.loop_iterations == 3
        assert current.completed_at is None
        assert await count_logs(session_factory, instance.id, "wait") == 3
        assert await count_logs(session_factory, instance.id, "goto") == 3

    async def test_wait_is_honored_before_completion(self, components, install_definition):
        await install_definition(single({"id": "pause", "action": "wait", "delay": 300}))
        instance = await components.executor.start("acct-1", "single")

        outcome = await components.executor.advance("acct-1", instance.id)
        assert outcome.executed
        assert outcome.next_delay_ms == 300

        early = await components.executor.advance("acct-1", instance.id)
        assert not early.executed
        assert early.reason == "not due yet"

        await asyncio.sleep(0.35)
        done = await components.executor.advance("acct-1", instance.id)
        assert done.status == WorkflowStatus.COMPLETED.value
        assert done.reason == "all steps done"

    async def test_wait_not_cut_short_by_a_millisecond(
        self, components, install_definition, set_instance, load_instance, monkeypatch
    ):
        await install_definition(single({"id": "pause", "action": "wait", "delay": 1000}))
        instance = await components.executor.start("acct-1", "single")
        await components.executor.advance("acct-1", instance.id)

        now = utc_now()
        await set_instance(instance.id, next_action_at=now + timedelta(milliseconds=1))
        monkeypatch.setattr("workflow.executor.utc_now", lambda: now)

        early = await components.executor.advance("acct-1", instance.id)

        assert not early.executed
        assert early.reason == "not due yet"
        assert early.next_delay_ms == 1
        current = await load_instance(instance.id)
        assert current.status == WorkflowStatus.ACTIVE.value
        assert current.completed_at is None

    async def test_steps_run_in_order_and_complete(
        self, components, install_definition, vendor, load_instance
    ):
        await install_definition({
            "type": "setup",
            "name": "Setup",
            "steps": [
                {"id": "prompt", "action": "update_prompt"},
                {"id": "bio", "action": "update_bio"},
            ],
        })
        instance = await components.executor.start("acct-1", "setup")

        first = await components.executor.advance("acct-1")
        assert first.status == WorkflowStatus.ACTIVE.value
        assert first.next_delay_ms == 0
        second = await components.executor.advance("acct-1")
        assert second.status == WorkflowStatus.COMPLETED.value

        assert [c[0] for c in vendor.calls if c[0] != "is_alive"] == ["update_prompt", "update_bio"]
        current = await load_instance(instance.id)
        assert current.completed_at is not None
        assert current.current_step_index == 2
        assert current.progress_percent == 100.0

    async def test_critical_failure_fails_without_retry(
        self, components, install_definition, vendor, load_instance, scheduler
    ):
        await install_definition(single({"id": "bio", "action": "update_bio", "critical": True}))
        instance = await components.executor.start("acct-1", "single")
        vendor.dead.add("acct-1")
        scheduled = len(scheduler.scheduled)

        outcome = await components.executor.advance("acct-1")

        assert outcome.status == WorkflowStatus.FAILED.value
        current = await load_instance(instance.id)
        assert current.status == WorkflowStatus.FAILED.value
        assert "not alive" in current.last_error
        assert current.retry_count == 0
        assert len(scheduler.scheduled) == scheduled
        assert vendor.count("update_bio") == 0

    async def test_non_critical_dead_account_skips(
        self, components, install_definition, vendor, load_instance
    ):
        await install_definition({
            "type": "setup",
            "name": "Setup",
            "steps": [
                {"id": "bio", "action": "update_bio"},
                {"id": "engage", "action": "run_engagement_campaign", "count": 5},
            ],
        })
        instance = await components.executor.start("acct-1", "setup")
        vendor.dead.add("acct-1")

        assert (await components.executor.advance("acct-1")).reason == "step_skipped"
        assert (await components.executor.advance("acct-1")).status == WorkflowStatus.COMPLETED.value

        current = await load_instance(instance.id)
        assert "not alive" in current.last_error
        assert current.retry_count == 0

    async def test_retry_with_backoff_then_fail(
        self, components, install_definition, vendor, make_due, load_instance
    ):
        await components.config.set(RETRY_KEY, {"policy": "exponential", "backoff_ms": 1000})
        await install_definition(single({"id": "bio", "action": "update_bio"}, max_retries=2))
        instance = await components.executor.start("acct-1", "single")
        vendor.fail_next("update_bio", times=3)

        first = await components.executor.advance("acct-1")
        assert first.reason == "retry"
        assert first.next_delay_ms == 1000
        assert (await load_instance(instance.id)).retry_count == 1

        await make_due(instance.id)
        second = await components.executor.advance("acct-1")
        assert second.next_delay_ms == 2000

        await make_due(instance.id)
        third = await components.executor.advance("acct-1")
        assert third.status == WorkflowStatus.FAILED.value

        current = await load_instance(instance.id)
        assert current.last_error.startswith("Step 'bio' failed after 2 retries")
        assert vendor.count("update_bio") == 3

    async def test_success_resets_retry_count(
        self, components, install_definition, vendor, make_due, load_instance
    ):
        await install_definition(single({"id": "bio", "action": "update_bio"}))
        instance = await components.executor.start("acct-1", "single")
        vendor.fail_next("update_bio")

        await components.executor.advance("acct-1")
        await make_due(instance.id)
        outcome = await components.executor.advance("acct-1")

        assert outcome.status == WorkflowStatus.COMPLETED.value
        current = await load_instance(instance.id)
        assert current.retry_count == 0
        assert current.last_error is None

    async def test_stale_instance_id_ignored(self, components, install_definition):
        await install_definition(LOOP)
        await components.executor.start("acct-1", "loop")
        outcome = await components.executor.advance("acct-1", "some-old-instance")
        assert not outcome.executed
        assert outcome.reason == "no matching active workflow"

    async def test_advance_without_workflow(self, components):
        outcome = await components.executor.advance("acct-1")
        assert not outcome.executed

    async def test_execute_lock_busy(self, components, install_definition):
        await install_definition(LOOP)
        await components.executor.start("acct-1", "loop")
        await components.locks.acquire(lock_key("acct-1", "execute"), "other-worker")
        with pytest.raises(LockUnavailableError):
            await components.executor.advance("acct-1")

    async def test_stop_during_step_wins(
        self, components, install_definition, vendor, monkeypatch, load_instance, scheduler
    ):
        await install_definition(single({"id": "bio", "action": "update_bio"}))
        instance = await components.executor.start("acct-1", "single")

        async def bio_then_stop(account_id, text=None):
            await components.executor.stop(account_id)
            return {"task_id": "t"}

        monkeypatch.setattr(vendor, "update_bio", bio_then_stop)
        scheduled = len(scheduler.scheduled)

        outcome = await components.executor.advance("acct-1")

        assert outcome.executed
        assert outcome.reason == "status changed during step"
        assert (await load_instance(instance.id)).status == WorkflowStatus.STOPPED.value
        assert len(scheduler.scheduled) == scheduled


@pytest.mark.integration
class TestControl:

    async def test_pause_and_resume_keeps_remaining_wait(
        self, components, install_definition, scheduler
    ):
        await install_definition(LOOP)
        instance = await components.executor.start("acct-1", "loop")
        await components.executor.advance("acct-1")

        paused = await components.executor.pause("acct-1")
        assert paused.status == WorkflowStatus.PAUSED.value
        assert scheduler.cancelled

        again = await components.executor.pause("acct-1")
        assert again.status == WorkflowStatus.PAUSED.value

        resumed = await components.executor.resume("acct-1")
        assert resumed.id == instance.id
        assert resumed.status == WorkflowStatus.ACTIVE.value
        assert scheduler.last["payload"]["reason"] == "resume"
        assert HOUR_MS - 60_000 < scheduler.last["delay_ms"] <= HOUR_MS

    async def test_paused_instance_does_not_advance(
        self, components, install_definition, make_due, vendor
    ):
        await install_definition(single({"id": "bio", "action": "update_bio"}))
        instance = await components.executor.start("acct-1", "single")
        await components.executor.pause("acct-1")
        await make_due(instance.id)

        outcome = await components.executor.advance("acct-1")
        assert not outcome.executed
        assert outcome.reason == "workflow is paused"
        assert vendor.count("update_bio") == 0

    async def test_resume_overdue_runs_immediately(
        self, components, install_definition, make_due, scheduler
    ):
        await install_definition(LOOP)
        instance = await components.executor.start("acct-1", "loop")
        await components.executor.pause("acct-1")
        await make_due(instance.id)

        await components.executor.resume("acct-1")
        assert scheduler.last["delay_ms"] == 0

    async def test_resume_active_is_noop(self, components, install_definition, scheduler):
        await install_definition(LOOP)
        await components.executor.start("acct-1", "loop")
        scheduled = len(scheduler.scheduled)

        instance = await components.executor.resume("acct-1")
        assert instance.status == WorkflowStatus.PENDING.value
        assert len(scheduler.scheduled) == scheduled

    async def test_pause_while_step_executing(self, components, install_definition):
        await install_definition(LOOP)
        await components.executor.start("acct-1", "loop")
        await components.locks.acquire(lock_key("acct-1", "execute"), "worker-1")

        with pytest.raises(LockUnavailableError):
            await components.executor.pause("acct-1")

    async def test_pause_without_workflow(self, components):
        with pytest.raises(NotFoundError):
            await components.executor.pause("acct-1")

    async def test_stop_is_idempotent(self, components, install_definition, scheduler):
        await install_definition(LOOP)
        instance = await components.executor.start("acct-1", "loop")

        first = await components.executor.stop("acct-1")
        assert first["already_stopped"] is False
        assert first["instance"].status == WorkflowStatus.STOPPED.value
        assert first["instance"].completed_at is not None
        assert scheduler.cancelled

        second = await components.executor.stop("acct-1")
        assert second["already_stopped"] is True
        assert second["instance"].id == instance.id
        assert second["instance"].status == WorkflowStatus.STOPPED.value

    async def test_stop_then_start_again(self, components, install_definition):
        await install_definition(LOOP)
        first = await components.executor.start("acct-1", "loop")
        await components.executor.stop("acct-1")
        second = await components.executor.start("acct-1", "loop")
        assert second.id != first.id

    async def test_stop_with_data_deletion(self, components, install_definition, accounts):
        await install_definition(LOOP)
        await components.executor.start("acct-1", "loop")

        outcome = await components.executor.stop("acct-1", delete_data=True)
        assert outcome["data_deleted"] is True
        assert accounts.deleted == ["acct-1"]

    async def test_stop_unknown_account(self, components):
        with pytest.raises(NotFoundError):
            await components.executor.stop("acct-1")

    async def test_stopped_instance_ignores_reentry(self, components, install_definition, vendor):
        await install_definition(single({"id": "bio", "action": "update_bio"}))
        await components.executor.start("acct-1", "single")
        await components.executor.stop("acct-1")

        outcome = await components.executor.advance("acct-1")
        assert not outcome.executed
        assert vendor.count("update_bio") == 0


@pytest.mark.integration
class TestQueries:

    async def test_get_status(self, components, install_definition):
        await install_definition(LOOP)
        instance = await components.executor.start("acct-1", "loop")
        await components.executor.advance("acct-1")

        status = await components.executor.get_status("acct-1")
        assert status["instance_id"] == instance.id
        assert status["workflow_name"] == "Loop"
        assert status["current_step"]["id"] == "again"
        assert status["progress"] == 50.0
        assert status["recent_logs"][0]["step_id"] == "rest"
        assert status["recent_logs"][0]["success"] is True

    async def test_get_status_unknown(self, components):
        with pytest.raises(NotFoundError):
            await components.executor.get_status("acct-1")

    async def test_list_workflows_filters(self, components, install_definition, accounts):
        await install_definition(LOOP)
        await install_definition(single({"id": "w", "action": "wait"}))
        accounts.add("acct-2")
        accounts.add("acct-3")
        await components.executor.start("acct-1", "loop")
        await components.executor.start("acct-2", "single")
        await components.executor.start("acct-3", "loop")
        await components.executor.stop("acct-3")

        active = await components.executor.list_workflows()
        assert active["total"] == 2

        loops = await components.executor.list_workflows(workflow_type="loop")
        assert [i["account_id"] for i in loops["items"]] == ["acct-1"]

        stopped = await components.executor.list_workflows(statuses=["stopped"])
        assert [i["account_id"] for i in stopped["items"]] == ["acct-3"]

        page = await components.executor.list_workflows(limit=1)
        assert page["total"] == 2
        assert len(page["items"]) == 1

    async def test_one_active_instance_per_account_enforced_by_db(self, session_factory):
        async with session_factory() as db:
            db.add(WorkflowInstance(account_id="a", workflow_type="t", status="active"))
            db.add(WorkflowInstance(account_id="a", workflow_type="t", status="stopped"))
            await db.commit()

        async with session_factory() as db:
            db.add(WorkflowInstance(account_id="a", workflow_type="t", status="paused"))
            with pytest.raises(IntegrityError):
                await db.commit()

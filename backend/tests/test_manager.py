"""Tests for the workflow manager facade."""

import pytest
import pytest_asyncio

from core.constants import WorkflowStatus
from workflow.locks import lock_key
from workflow.manager import INTERNAL_ERROR, OperationResult

LOOP = {
    "type": "default",
    "name": "Default",
    "steps": [
        {"id": "rest", "action": "wait", "delay": 60_000},
        {"id": "again", "action": "goto", "nextStep": "rest"},
    ],
}


@pytest.fixture
def manager(components):
    return components.manager


@pytest_asyncio.fixture
async def three_running(manager, install_definition, accounts):
    await install_definition(LOOP)
    for account_id in ("acct-1", "acct-2", "acct-3"):
        accounts.add(account_id)
        assert (await manager.start_automation(account_id)).success
    return ["acct-1", "acct-2", "acct-3"]


@pytest.mark.unit
class TestOperationResult:
    def test_ok_to_dict(self):
        assert OperationResult.ok({"a": 1}).to_dict() == {"success": True, "data": {"a": 1}}

    def test_fail_to_dict(self):
        assert OperationResult.fail("nope", "conflict").to_dict() == {
            "success": False,
            "error": "nope",
            "error_code": "conflict",
        }


@pytest.mark.integration
class TestLifecycle:

    async def test_start_uses_default_type(self, manager, install_definition):
        await install_definition(LOOP)
        result = await manager.start_automation("acct-1", execution_context={"channel": "c"})

        assert result.success
        assert result.data["workflow_type"] == "default"
        assert result.data["status"] == WorkflowStatus.PENDING.value
        assert result.data["execution_context"] == {"channel": "c"}

    async def test_duplicate_start_reports_conflict(self, manager, install_definition):
        await install_definition(LOOP)
        await manager.start_automation("acct-1")
        result = await manager.start_automation("acct-1")
        assert not result.success
        assert result.error_code == "conflict"

    async def test_unknown_type_reports_not_found(self, manager):
        result = await manager.start_automation("acct-1", "nope")
        assert result.error_code == "not_found"
        assert "nope" in result.error

    async def test_stop_reports_flags(self, manager, install_definition):
        await install_definition(LOOP)
        await manager.start_automation("acct-1")

        first = await manager.stop_automation("acct-1")
        assert first.success
        assert first.data["status"] == WorkflowStatus.STOPPED.value
        assert first.data["already_stopped"] is False
        assert first.data["data_deleted"] is False

        second = await manager.stop_automation("acct-1")
        assert second.success
        assert second.data["already_stopped"] is True

    async def test_pause_busy_reports_lock_code(self, manager, components, install_definition):
        await install_definition(LOOP)
        await manager.start_automation("acct-1")
        await components.locks.acquire(lock_key("acct-1", "execute"), "worker")

        result = await manager.pause("acct-1")
        assert result.error_code == "lock_unavailable"

    async def test_pause_resume(self, manager, install_definition):
        await install_definition(LOOP)
        await manager.start_automation("acct-1")

        assert (await manager.pause("acct-1")).data["status"] == WorkflowStatus.PAUSED.value
        assert (await manager.resume("acct-1")).data["status"] == WorkflowStatus.ACTIVE.value

    async def test_unexpected_error_is_internal(self, manager, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("database on fire")

        monkeypatch.setattr(manager.executor, "get_status", broken)
        result = await manager.get_status("acct-1")

        assert not result.success
        assert result.error_code == INTERNAL_ERROR
        assert "database on fire" in result.error


@pytest.mark.integration
class TestQueries:

    async def test_get_status_not_found(self, manager):
        result = await manager.get_status("acct-1")
        assert result.error_code == "not_found"

    async def test_get_active_workflows_filter(self, manager, three_running):
        await manager.stop_automation("acct-2")

        active = await manager.get_active_workflows()
        assert active.data["total"] == 2

        stopped = await manager.get_active_workflows({"status": "stopped"})
        assert [i["account_id"] for i in stopped.data["items"]] == ["acct-2"]

        subset = await manager.get_active_workflows({"account_ids": ["acct-1"], "limit": 10})
        assert subset.data["total"] == 1
        assert subset.data["limit"] == 10

    async def test_get_stats(self, manager, three_running):
        result = await manager.get_stats()

        assert result.success
        assert result.data["active"] == 3
        assert result.data["by_status"] == {"pending": 3}
        assert result.data["daily"][0]["started"] == 3
        assert result.data["health"]["status"] == "healthy"
        assert result.data["recovery"]["total"] == 0


@pytest.mark.integration
class TestBulk:

    async def test_pause_multiple_reports_each_account(self, manager, three_running):
        result = await manager.pause_multiple(["acct-1", "acct-2", "ghost"])

        assert result.success
        assert result.data["total"] == 3
        assert result.data["succeeded"] == 2
        assert result.data["failed"] == 1
        assert result.data["results"]["ghost"]["error_code"] == "not_found"

    async def test_pause_all_then_resume_all(self, manager, three_running):
        paused = await manager.pause_all()
        assert paused.data["succeeded"] == 3

        listing = await manager.get_active_workflows({"status": "paused"})
        assert listing.data["total"] == 3

        resumed = await manager.resume_all()
        assert resumed.data["succeeded"] == 3

        listing = await manager.get_active_workflows({"status": "active"})
        assert listing.data["total"] == 3

    async def test_pause_all_with_nothing_running(self, manager):
        result = await manager.pause_all()
        assert result.success
        assert result.data["total"] == 0

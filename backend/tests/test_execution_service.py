"""Tests for single-step execution."""

import asyncio
from types import SimpleNamespace

import pytest

from workflow.config_service import GOTO_LIMITS_KEY, TIMEOUTS_KEY
from workflow.definitions import WorkflowDefinition


def make_instance(account_id="acct-1", context=None, loop_iterations=0):
    return SimpleNamespace(
        id="inst-1",
        account_id=account_id,
        execution_context=context or {},
        loop_iterations=loop_iterations,
    )


def make_definition(*steps, config=None):
    return WorkflowDefinition.from_dict({
        "type": "t",
        "steps": list(steps),
        "config": config or {},
    })


async def run(components, definition, index=0, instance=None):
    return await components.execution.execute_step(
        instance or make_instance(), definition.steps[index], definition
    )


@pytest.mark.integration
class TestLivenessGate:

    async def test_dead_account_fails_without_side_effect(self, components, vendor):
        vendor.dead.add("acct-1")
        result = await run(components, make_definition({"id": "bio", "action": "update_bio"}))

        assert not result.success
        assert result.error_code == "account_not_alive"
        assert "not alive" in result.error
        assert vendor.count("update_bio") == 0

    async def test_wait_skips_liveness_check(self, components, vendor):
        vendor.dead.add("acct-1")
        result = await run(components, make_definition({"id": "w", "action": "wait", "delay": 5}))
        assert result.success
        assert vendor.count("is_alive") == 0


@pytest.mark.integration
class TestActions:

    async def test_update_bio_passes_step_text(self, components, vendor):
        result = await run(components, make_definition(
            {"id": "bio", "action": "update_bio", "bio": "hello there"}
        ))
        assert result.success
        assert vendor.calls[-1] == ("update_bio", "acct-1", "hello there")
        assert result.output["generated_bio"] == "hello there"

    async def test_update_bio_falls_back_to_context(self, components, vendor):
        await run(
            components,
            make_definition({"id": "bio", "action": "update_bio"}),
            instance=make_instance(context={"bio": "from context"}),
        )
        assert vendor.calls[-1] == ("update_bio", "acct-1", "from context")

    async def test_update_prompt_parameter_precedence(self, components, vendor, accounts):
        accounts.add("acct-1", model="account-model", channel="account-channel")
        definition = make_definition({"id": "p", "action": "update_prompt", "model": "step-model"})

        result = await run(
            components,
            definition,
            instance=make_instance(context={"model": "ctx-model", "channel": "ctx-channel"}),
        )
        assert result.success
        assert vendor.calls[-1] == ("update_prompt", "acct-1", "step-model", "ctx-channel")

        await run(components, make_definition({"id": "p", "action": "update_prompt"}))
        assert vendor.calls[-1] == ("update_prompt", "acct-1", "account-model", "account-channel")

    async def test_update_prompt_without_model(self, components, accounts):
        accounts.add("acct-1", model=None)
        result = await run(components, make_definition({"id": "p", "action": "update_prompt"}))
        assert result.error_code == "validation_error"
        assert "No model" in result.error

    async def test_engagement_updates_account_stats(self, components, vendor, accounts):
        vendor.matches = 4
        result = await run(components, make_definition(
            {"id": "e", "action": "run_engagement_campaign", "count": 25}
        ))
        assert result.success
        assert result.output["count"] == 25
        record = accounts.accounts["acct-1"]
        assert (record.total_swipes, record.total_matches, record.total_campaigns) == (25, 4, 1)

    async def test_engagement_count_from_engine_default(self, components, vendor):
        await run(components, make_definition({"id": "e", "action": "swipe"}))
        assert vendor.calls[-1] == ("run_engagement_campaign", "acct-1", 10)

    async def test_engagement_invalid_count(self, components, vendor):
        result = await run(components, make_definition(
            {"id": "e", "action": "run_engagement_campaign", "count": "lots"}
        ))
        assert result.error_code == "validation_error"
        assert vendor.count("run_engagement_campaign") == 0

    async def test_unsupported_action(self, components):
        result = await run(components, make_definition({"id": "x", "action": "teleport"}))
        assert not result.success
        assert result.error_code == "validation_error"
        assert "Unsupported action" in result.error

    async def test_vendor_failure_classified(self, components, vendor):
        vendor.fail_next("update_bio", RuntimeError("socket closed"))
        result = await run(components, make_definition({"id": "bio", "action": "update_bio"}))
        assert result.error_code == "vendor_call_failed"
        assert "socket closed" in result.error


@pytest.mark.integration
class TestTimingActions:

    async def test_wait_returns_defer(self, components):
        result = await run(components, make_definition({"id": "w", "action": "wait", "delay": 1500}))
        assert result.success
        assert result.defer_ms == 1500
        assert result.next_step_index is None

    async def test_wait_clamped_to_max(self, components):
        await components.config.set(TIMEOUTS_KEY, {"max_wait_time": 1000})
        result = await run(components, make_definition({"id": "w", "action": "wait", "delay": 5000}))
        assert result.defer_ms == 1000

    async def test_goto_targets_step(self, components):
        definition = make_definition(
            {"id": "a", "action": "wait"},
            {"id": "b", "action": "goto", "nextStep": "a"},
        )
        result = await run(components, definition, index=1, instance=make_instance(loop_iterations=4))
        assert result.success
        assert result.next_step_index == 0
        assert result.loop_created
        assert result.output["iteration"] == 5

    async def test_goto_limit_when_infinite_disallowed(self, components):
        await components.config.set(
            GOTO_LIMITS_KEY, {"infinite_allowed": False, "default_max_iterations": 2}
        )
        definition = make_definition(
            {"id": "a", "action": "wait"},
            {"id": "b", "action": "goto", "nextStep": "a"},
        )
        result = await run(components, definition, index=1, instance=make_instance(loop_iterations=2))
        assert result.error_code == "validation_error"
        assert "iteration limit" in result.error

    async def test_step_timeout(self, components, vendor, monkeypatch):
        async def slow_bio(account_id, text=None):
            await asyncio.sleep(1)
            return {}

        monkeypatch.setattr(vendor, "update_bio", slow_bio)
        definition = make_definition(
            {"id": "bio", "action": "update_bio"},
            config={"timeouts": {"update_bio": 50}},
        )
        result = await run(components, definition)
        assert result.error_code == "step_timeout"
        assert "50ms" in result.error

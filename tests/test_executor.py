"""Tests for the action executor."""

import asyncio

import pytest

from conftest import FakeAction

from axremediation.actions.registry import ActionRegistry
from axremediation.core.errors import InvalidTransitionError
from axremediation.engine.executor import ActionExecutor, aggregate_status
from axremediation.engine.ledger_writer import LedgerWriter
from axremediation.models.execution import (
    ActionStatus,
    Execution,
    ExecutionStatus,
)
from axremediation.models.rule import ActionSpec, Rule
from axremediation.storage.ledger import RedisExecutionLedger


def make_rule(actions: list[ActionSpec], **overrides) -> Rule:
    data = {
        "rule_id": "rule_cpu",
        "name": "High CPU",
        "trigger_condition": {"type": "threshold", "field": "sql_health.cpu_usage", "value": 80},
        "actions": actions,
    }
    data.update(overrides)
    return Rule(**data)


async def running_execution(ledger: RedisExecutionLedger, rule: Rule) -> Execution:
    execution = Execution(execution_id="exec_1", rule_id=rule.rule_id)
    await ledger.try_create(execution)
    execution.transition(ExecutionStatus.RUNNING)
    return execution


@pytest.fixture
def ledger(redis) -> RedisExecutionLedger:
    return RedisExecutionLedger(redis)


@pytest.fixture
def build_executor(ledger, settings):
    def build(*handlers) -> ActionExecutor:
        return ActionExecutor(ActionRegistry(list(handlers)), LedgerWriter(ledger, settings), settings=settings)
    return build


async def test_actions_run_in_order(ledger, build_executor):
    log = []
    executor = build_executor(FakeAction("first", log=log), FakeAction("second", log=log))
    rule = make_rule([
        ActionSpec(type="second", parameters={"step": "a"}),
        ActionSpec(type="first", parameters={"step": "b"}),
        ActionSpec(type="second", parameters={"step": "c"}),
    ])
    execution = await running_execution(ledger, rule)

    status = await executor.execute(execution, rule)

    assert status == ExecutionStatus.SUCCEEDED
    assert log == ["a", "b", "c"]
    assert [o.index for o in execution.actions_executed] == [0, 1, 2]
    stored = await ledger.get("exec_1")
    assert stored.status == ExecutionStatus.SUCCEEDED
    assert stored.result_data["succeeded"] == 3


async def test_timeout_then_success_is_partially_failed(ledger, build_executor):
    executor = build_executor(FakeAction("slow", delay=5), FakeAction("notify"))
    rule = make_rule([
        ActionSpec(type="slow", timeout_seconds=0.05),
        ActionSpec(type="notify"),
    ])
    execution = await running_execution(ledger, rule)

    status = await executor.execute(execution, rule)

    assert status == ExecutionStatus.PARTIALLY_FAILED
    first, second = execution.actions_executed
    assert first.status == ActionStatus.TIMED_OUT
    assert "Timed out" in first.error
    assert second.status == ActionStatus.SUCCEEDED
    assert execution.end_time is not None


async def test_all_failing_is_failed(ledger, build_executor):
    executor = build_executor(FakeAction("flaky", outcomes=[False, RuntimeError("boom")]))
    rule = make_rule([ActionSpec(type="flaky"), ActionSpec(type="flaky")])
    execution = await running_execution(ledger, rule)

    status = await executor.execute(execution, rule)

    assert status == ExecutionStatus.FAILED
    assert execution.actions_executed[1].error == "boom"
    assert execution.error_message.startswith("Action 0 (flaky) failed")


async def test_abort_on_first_failure_stops_sequence(ledger, build_executor):
    notify = FakeAction("notify")
    executor = build_executor(FakeAction("kill", outcomes=[True, False]), notify)
    rule = make_rule(
        [ActionSpec(type="kill"), ActionSpec(type="kill"), ActionSpec(type="notify")],
        abort_on_first_failure=True,
    )
    execution = await running_execution(ledger, rule)

    status = await executor.execute(execution, rule)

    assert status == ExecutionStatus.PARTIALLY_FAILED
    assert len(execution.actions_executed) == 2
    assert notify.calls == []
    assert execution.result_data["aborted"] is True


async def test_continue_on_failure_overrides_abort(ledger, build_executor):
    executor = build_executor(FakeAction("kill", outcomes=[False]), FakeAction("notify"))
    rule = make_rule(
        [ActionSpec(type="kill", continue_on_failure=True), ActionSpec(type="notify")],
        abort_on_first_failure=True,
    )
    execution = await running_execution(ledger, rule)

    await executor.execute(execution, rule)

    assert len(execution.actions_executed) == 2


async def test_retries_up_to_max_attempts(ledger, build_executor):
    handler = FakeAction("restart", outcomes=[False, False, True])
    executor = build_executor(handler)
    rule = make_rule([ActionSpec(type="restart")], max_attempts=3)
    execution = await running_execution(ledger, rule)

    status = await executor.execute(execution, rule)

    assert status == ExecutionStatus.SUCCEEDED
    assert len(handler.calls) == 3
    assert execution.actions_executed[0].attempts == 3


async def test_no_actions_succeeds(ledger, build_executor):
    rule = make_rule([])
    execution = await running_execution(ledger, rule)

    assert await build_executor().execute(execution, rule) == ExecutionStatus.SUCCEEDED


async def test_cancellation_keeps_partial_outcomes(ledger, build_executor):
    gate = asyncio.Event()
    executor = build_executor(FakeAction("notify"), FakeAction("script", gate=gate))
    rule = make_rule([ActionSpec(type="notify"), ActionSpec(type="script")])
    execution = await running_execution(ledger, rule)

    task = asyncio.create_task(executor.execute(execution, rule))
    while len(execution.actions_executed) < 1:
        await asyncio.sleep(0)
    await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert execution.status == ExecutionStatus.CANCELLED
    assert [o.status for o in execution.actions_executed] == [ActionStatus.SUCCEEDED, ActionStatus.CANCELLED]
    stored = await ledger.get("exec_1")
    assert stored.status == ExecutionStatus.CANCELLED
    assert not await ledger.has_active("rule_cpu")


async def test_execute_requires_running(ledger, build_executor):
    rule = make_rule([])
    execution = Execution(execution_id="exec_1", rule_id=rule.rule_id)

    with pytest.raises(InvalidTransitionError):
        await build_executor().execute(execution, rule)


def test_aggregate_status():
    assert aggregate_status([]) == ExecutionStatus.SUCCEEDED

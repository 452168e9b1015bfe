"""Tests for the dispatcher control loop."""

import asyncio
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import REGISTRY

from conftest import FakeAction, FakeSignalSource

from axremediation.actions.registry import ActionRegistry
from axremediation.engine.catalog import RuleCatalog
from axremediation.engine.dispatcher import RemediationDispatcher, SkipReason
from axremediation.engine.executor import ActionExecutor
from axremediation.engine.ledger_writer import LedgerWriter
from axremediation.models.execution import ActionStatus, Execution, ExecutionStatus
from axremediation.models.rule import ActionSpec, Rule
from axremediation.models.signal import AlertSignal
from axremediation.notification.publisher import ExecutionNotifier
from axremediation.storage.ledger import RedisExecutionLedger
from axremediation.storage.redis_client import RedisKeys
from axremediation.storage.rule_store import RuleSource

BASE = datetime.now(timezone.utc).replace(microsecond=0)

CPU_SUSTAINED = {
    "type": "sustained",
    "field": "sql_health.cpu_usage",
    "operator": ">=",
    "value": 80,
    "duration_seconds": 60,
}
CPU_ABOVE_80 = {"type": "threshold", "field": "sql_health.cpu_usage", "operator": ">=", "value": 80}


class FakeClock:
    def __init__(self, now: datetime = BASE):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class MutableRuleSource(RuleSource):
    def __init__(self, rules: list[Rule]):
        self.rules = rules

    async def load_enabled_rules(self) -> list[Rule]:
        return [rule for rule in self.rules if rule.enabled]


def make_rule(rule_id: str = "rule_cpu", condition: dict | None = None, **overrides) -> Rule:
    data = {
        "rule_id": rule_id,
        "name": rule_id,
        "trigger_condition": condition or CPU_ABOVE_80,
        "actions": [ActionSpec(type="send_notification")],
    }
    data.update(overrides)
    return Rule(**data)


@dataclass
class Engine:
    dispatcher: RemediationDispatcher
    catalog: RuleCatalog
    source: MutableRuleSource
    ledger: RedisExecutionLedger
    signals: FakeSignalSource
    notify: FakeAction
    clock: FakeClock

    async def drain(self) -> None:
        await asyncio.gather(*self.dispatcher.inflight.values())

    def publish_cpu(self, value: float) -> None:
        self.signals.set_cpu(value, at=self.clock())

    async def tick(self, advance: float = 0):
        self.clock.advance(advance)
        report = await self.dispatcher.tick()
        await asyncio.sleep(0)
        return report


@pytest.fixture
def build_engine(redis, settings, signals):
    async def build(rules: list[Rule], gate: asyncio.Event | None = None, **overrides) -> Engine:
        config = settings.model_copy(update=overrides)
        clock = FakeClock()
        notify = FakeAction("send_notification", gate=gate)
        registry = ActionRegistry([notify])
        ledger = RedisExecutionLedger(redis)
        writer = LedgerWriter(ledger, config)
        notifier = ExecutionNotifier(redis)
        source = MutableRuleSource(rules)
        catalog = RuleCatalog(source, registry, config)
        await catalog.refresh()
        dispatcher = RemediationDispatcher(
            catalog=catalog,
            signals=signals,
            ledger=ledger,
            writer=writer,
            executor=ActionExecutor(registry, writer, notifier, config, clock=clock),
            notifier=notifier,
            settings=config,
            clock=clock,
        )
        return Engine(dispatcher, catalog, source, ledger, signals, notify, clock)
    return build


async def test_sustained_cpu_fires_exactly_once(build_engine):
    engine = await build_engine([make_rule(condition=CPU_SUSTAINED)])

    started = []
    for step in range(7):
        engine.clock.advance(15 if step else 0)
        engine.publish_cpu(85)
        report = await engine.tick()
        started.extend(report.started)
        await engine.drain()

    assert len(started) == 1
    [execution] = await engine.ledger.history("rule_cpu")
    assert execution.status == ExecutionStatus.SUCCEEDED
    assert execution.start_time == BASE + timedelta(seconds=60)
    [outcome] = execution.actions_executed
    assert outcome.action_type == "send_notification"
    assert outcome.status == ActionStatus.SUCCEEDED
    assert execution.trigger_payload["matches"][0]["sustained_seconds"] == 60


async def test_unrefreshed_reading_does_not_count_as_sustained(build_engine):
    engine = await build_engine([make_rule(condition=CPU_SUSTAINED)])
    engine.publish_cpu(90)

    started = []
    for step in range(6):
        report = await engine.tick(advance=15 if step else 0)
        started.extend(report.started)

    assert started == []
    assert report.matched == 0


async def test_running_execution_blocks_new_ones(build_engine):
    gate = asyncio.Event()
    engine = await build_engine([make_rule()], gate=gate)
    engine.signals.set_cpu(90)

    first = await engine.tick()
    while not engine.notify.calls:
        await asyncio.sleep(0)
    second = await engine.tick(advance=15)

    assert len(first.started) == 1
    assert second.started == []
    assert second.skipped[SkipReason.SINGLE_FLIGHT] == 1
    active = await engine.ledger.list_active()
    assert [e.execution_id for e in active] == first.started
    assert active[0].status == ExecutionStatus.RUNNING

    gate.set()
    await engine.drain()
    assert await engine.ledger.list_active() == []


async def test_disabling_rule_lets_inflight_finish(build_engine):
    gate = asyncio.Event()
    rule = make_rule()
    engine = await build_engine([rule], gate=gate)
    engine.signals.set_cpu(90)
    first = await engine.tick()

    engine.source.rules = [rule.model_copy(update={"enabled": False})]
    await engine.catalog.refresh()
    gate.set()
    await engine.drain()
    second = await engine.tick(advance=15)

    assert second.started == []
    assert second.evaluated == 0
    finished = await engine.ledger.get(first.started[0])
    assert finished.status == ExecutionStatus.SUCCEEDED


async def test_cooldown_suppresses_refire(build_engine):
    engine = await build_engine([make_rule(cooldown_seconds=300)])
    engine.signals.set_cpu(90)

    first = await engine.tick()
    await engine.drain()
    during = await engine.tick(advance=120)
    after = await engine.tick(advance=200)
    await engine.drain()

    assert len(first.started) == 1
    assert during.skipped[SkipReason.COOLDOWN] == 1
    assert len(after.started) == 1
    assert len(await engine.ledger.history("rule_cpu")) == 2


async def test_malformed_rule_does_not_stop_others(build_engine):
    engine = await build_engine([
        make_rule("rule_bad", condition={"type": "expression", "expression": "sql_health_cpu_usage >"}),
        make_rule("rule_cpu"),
    ])
    engine.signals.set_cpu(95)

    report = await engine.tick()
    await engine.drain()

    assert [c.rule_id for c in engine.catalog.current_rules()] == ["rule_cpu"]
    assert "rule_bad" in engine.catalog.health().config_errors
    assert len(report.started) == 1


async def test_evaluation_error_is_isolated(build_engine):
    engine = await build_engine([
        make_rule("rule_kpi", condition={"type": "expression", "expression": "kpi_error_rate > 5"}, priority=9),
        make_rule("rule_cpu"),
    ])
    engine.signals.set_cpu(95)

    report = await engine.tick()
    await engine.drain()

    assert report.evaluated == 2
    assert report.matched == 1
    assert await engine.ledger.history("rule_kpi") == []


async def test_confirmation_required_never_auto_fires(build_engine):
    engine = await build_engine([make_rule(requires_confirmation=True)])
    engine.signals.set_cpu(90)

    report = await engine.tick()

    assert report.matched == 1
    assert report.started == []
    assert report.skipped[SkipReason.CONFIRMATION_REQUIRED] == 1

    execution = await engine.dispatcher.execute_now("rule_cpu")
    await engine.drain()
    stored = await engine.ledger.get(execution.execution_id)
    assert stored.manual
    assert stored.status == ExecutionStatus.SUCCEEDED


async def test_execute_now_bypasses_condition_but_not_single_flight(build_engine):
    gate = asyncio.Event()
    engine = await build_engine([make_rule()], gate=gate)
    engine.signals.set_cpu(10)

    first = await engine.dispatcher.execute_now("rule_cpu", {"reason": "operator"})
    second = await engine.dispatcher.execute_now("rule_cpu")

    assert first is not None
    assert first.trigger_payload == {"reason": "operator", "manual": True}
    assert second is None

    with pytest.raises(ValueError):
        await engine.dispatcher.execute_now("rule_missing")

    gate.set()
    await engine.drain()


async def test_preview_has_no_side_effects(build_engine):
    engine = await build_engine([make_rule("rule_cpu"), make_rule("rule_alert", condition={
        "type": "equals", "field": "alert.type", "value": "Deadlock",
    })])
    engine.signals.set_cpu(90)
    engine.signals.alerts = [AlertSignal(alert_id="a1", type="Timeout")]

    matches = await engine.dispatcher.preview()

    assert [rule.rule_id for rule, _ in matches] == ["rule_cpu"]
    assert await engine.ledger.history() == []
    assert len(engine.dispatcher.history) == 0


async def test_signal_failure_skips_tick(build_engine):
    engine = await build_engine([make_rule()])
    engine.signals.fail = True

    report = await engine.tick()

    assert report.errors == 1
    assert report.evaluated == 0


async def test_overlapping_tick_is_skipped(build_engine):
    engine = await build_engine([make_rule()])
    engine.signals.set_cpu(10)
    engine.dispatcher._tick_in_progress = True

    report = await engine.tick()

    assert report.overlapped


async def test_reconcile_stale_executions(build_engine, settings):
    engine = await build_engine([make_rule("rule_a"), make_rule("rule_b"), make_rule("rule_c")])
    old = BASE - timedelta(seconds=settings.execution_max_lifetime_seconds + 60)

    running = Execution(execution_id="exec_running", rule_id="rule_a", start_time=old)
    await engine.ledger.try_create(running)
    running.transition(ExecutionStatus.RUNNING)
    await engine.ledger.record(running)
    pending = Execution(execution_id="exec_pending", rule_id="rule_b", start_time=old)
    await engine.ledger.try_create(pending)
    fresh = Execution(execution_id="exec_fresh", rule_id="rule_c", start_time=BASE)
    await engine.ledger.try_create(fresh)

    assert await engine.dispatcher.reconcile_stale() == 2

    assert (await engine.ledger.get("exec_running")).status == ExecutionStatus.FAILED
    assert (await engine.ledger.get("exec_pending")).status == ExecutionStatus.CANCELLED
    assert "maximum lifetime" in (await engine.ledger.get("exec_running")).error_message
    assert (await engine.ledger.get("exec_fresh")).status == ExecutionStatus.PENDING
    assert not await engine.ledger.has_active("rule_a")


async def test_stop_cancels_after_grace(build_engine):
    gate = asyncio.Event()
    engine = await build_engine([make_rule()], gate=gate)
    engine.signals.set_cpu(90)
    report = await engine.tick()

    await engine.dispatcher.stop(grace_seconds=0.05)

    stored = await engine.ledger.get(report.started[0])
    assert stored.status == ExecutionStatus.CANCELLED
    assert stored.actions_executed[0].status == ActionStatus.CANCELLED
    assert engine.dispatcher.inflight == {}

    after = await engine.tick(advance=15)
    assert after.skipped[SkipReason.SHUTTING_DOWN] == 1


async def test_stop_waits_for_execution_being_created(build_engine, monkeypatch):
    engine = await build_engine([make_rule()])
    engine.signals.set_cpu(90)
    writer = engine.dispatcher._writer
    create = writer.create
    creating = asyncio.Event()

    async def slow_create(execution):
        creating.set()
        await asyncio.sleep(0.1)
        return await create(execution)

    monkeypatch.setattr(writer, "create", slow_create)

    tick = asyncio.create_task(engine.dispatcher.tick())
    await creating.wait()
    await engine.dispatcher.stop(grace_seconds=0.05)

    assert engine.dispatcher.inflight == {}
    report = await tick
    assert report.started == []
    assert report.skipped[SkipReason.SHUTTING_DOWN] == 1
    [execution] = await engine.ledger.history("rule_cpu")
    assert execution.status == ExecutionStatus.CANCELLED
    assert not await engine.ledger.has_active("rule_cpu")


async def test_run_skips_overrun_ticks_instead_of_queueing(build_engine):
    engine = await build_engine([make_rule()], tick_interval_seconds=0.1)
    loop = asyncio.get_running_loop()
    calls: list[float] = []
    second = asyncio.Event()

    async def slow_first_tick():
        calls.append(loop.time())
        if len(calls) == 1:
            await asyncio.sleep(0.25)
        else:
            second.set()

    engine.dispatcher.tick = slow_first_tick
    skipped_before = REGISTRY.get_sample_value("remediation_ticks_total", {"outcome": "skipped"}) or 0

    runner = asyncio.create_task(engine.dispatcher.run())
    await asyncio.wait_for(second.wait(), timeout=2)
    await engine.dispatcher.stop()
    await asyncio.wait_for(runner, timeout=2)

    skipped = REGISTRY.get_sample_value("remediation_ticks_total", {"outcome": "skipped"}) - skipped_before
    # The slow tick spans the 0.1s and 0.2s slots; the next one runs on the 0.3s slot
    assert len(calls) == 2
    assert calls[1] - calls[0] >= 0.28
    assert skipped >= 2


async def test_execution_events_are_published(build_engine, redis):
    engine = await build_engine([make_rule()])
    engine.signals.set_cpu(90)
    pubsub = redis.pubsub()
    await pubsub.subscribe(RedisKeys.EXECUTION_EVENTS_CHANNEL)

    await engine.tick()
    await engine.drain()

    events = []
    deadline = asyncio.get_running_loop().time() + 2
    while len(events) < 2 and asyncio.get_running_loop().time() < deadline:
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
        if message is not None:
            events.append(json.loads(message["data"])["event"])
    await pubsub.aclose()

    assert events == ["execution.started", "execution.completed"]

#!/usr/bin/env python3
"""Seed demo rules and publish monitoring signals to Redis.

Used for end-to-end checks of a running engine.
"""

import asyncio
import sys
from datetime import datetime, timezone

from redis.asyncio import Redis

from axremediation.models.rule import ActionSpec, ActionType, Rule
from axremediation.models.signal import (
    AlertSignal,
    BlockingChainSignal,
    KpiReading,
    SqlHealthReading,
)
from axremediation.storage.ledger import RedisExecutionLedger
from axremediation.storage.rule_store import RuleStore
from axremediation.storage.signal_store import RedisSignalSource

DEMO_RULES = [
    Rule(
        rule_id="demo_high_cpu",
        name="Sustained high CPU",
        description="Notify the DBA team when CPU stays above 80% for a minute",
        priority=8,
        trigger_condition={
            "type": "sustained",
            "field": "sql_health.cpu_usage",
            "operator": ">=",
            "value": 80,
            "duration_seconds": 60,
        },
        actions=[
            ActionSpec(
                type=ActionType.SEND_NOTIFICATION,
                parameters={"channel": "email", "recipients": ["dba@example.com"], "severity": "High"},
            ),
        ],
        cooldown_seconds=600,
    ),
    Rule(
        rule_id="demo_long_blocking",
        name="Kill long head blockers",
        description="Kill sessions blocking others for more than two minutes",
        priority=9,
        trigger_condition={
            "type": "threshold",
            "field": "blocking.duration_seconds",
            "operator": ">",
            "value": 120,
        },
        actions=[
            ActionSpec(type=ActionType.KILL_SESSION, timeout_seconds=30),
            ActionSpec(type=ActionType.SEND_NOTIFICATION, parameters={"channel": "teams"}),
        ],
        abort_on_first_failure=True,
        requires_confirmation=True,
    ),
]


async def seed_rules(store: RuleStore) -> None:
    """Create or replace the demo rules."""
    for rule in DEMO_RULES:
        if await store.get(rule.rule_id):
            await store.update(rule.rule_id, rule.model_copy(deep=True))
            print(f"Updated rule: {rule.rule_id}")
        else:
            await store.create(rule.model_copy(deep=True))
            print(f"Created rule: {rule.rule_id}")


async def publish_cpu_spike(signals: RedisSignalSource, seconds: int, interval: float) -> None:
    """Publish a CPU reading above the demo threshold every ``interval`` seconds."""
    readings = int(seconds / interval)
    for n in range(readings):
        reading = SqlHealthReading(cpu_usage=85 + n % 5, memory_usage=70, active_connections=240)
        await signals.publish_sql_health(reading)
        await signals.publish_kpi(KpiReading(values={"batch_backlog": 40 + n, "active_sessions": 180}))
        print(f"Published sql_health.cpu_usage={reading.cpu_usage:g} ({n + 1}/{readings})")
        await asyncio.sleep(interval)

    await signals.publish_sql_health(SqlHealthReading(cpu_usage=35, memory_usage=60, active_connections=120))
    print("Published recovery reading")


async def publish_blocking(signals: RedisSignalSource) -> None:
    """Open a long blocking chain with its alert."""
    now = datetime.now(timezone.utc)
    await signals.open_blocking_chain(BlockingChainSignal(
        blocking_session_id="51",
        blocked_session_id="64",
        blocking_type="LCK_M_X",
        resource="INVENTTRANS",
        duration_seconds=180,
        detected_at=now,
    ))
    await signals.raise_alert(AlertSignal(
        alert_id="demo_blocking",
        type="Blocking",
        severity="High",
        message="Session 51 blocks 64 for 180s",
        timestamp=now,
    ))
    print("Opened blocking chain 51 -> 64")


async def clear_blocking(signals: RedisSignalSource) -> None:
    await signals.close_blocking_chain("51", "64")
    await signals.resolve_alert("demo_blocking")
    print("Closed blocking chain 51 -> 64")


async def show_history(ledger: RedisExecutionLedger) -> None:
    """Print the latest executions."""
    for execution in await ledger.history(limit=10):
        print(
            f"{execution.start_time:%H:%M:%S} {execution.rule_id:<22} "
            f"{execution.status.value:<16} actions={len(execution.actions_executed)}"
        )


def main():
    """Main function."""
    redis_url = "redis://localhost:6379/0"
    command = sys.argv[1] if len(sys.argv) > 1 else "cpu"
    if len(sys.argv) > 2:
        redis_url = sys.argv[2]

    async def run() -> None:
        redis = Redis.from_url(redis_url, decode_responses=True)
        signals = RedisSignalSource(redis)
        try:
            if command == "rules":
                await seed_rules(RuleStore(redis))
            elif command == "cpu":
                await publish_cpu_spike(signals, seconds=120, interval=15)
            elif command == "blocking":
                await publish_blocking(signals)
            elif command == "clear":
                await clear_blocking(signals)
            elif command == "history":
                await show_history(RedisExecutionLedger(redis))
            else:
                print(f"Unknown command: {command}")
                print("Usage: send_demo_signals.py [rules|cpu|blocking|clear|history] [redis_url]")
                sys.exit(1)
        finally:
            await redis.aclose()

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        print("\nInterrupted")


if __name__ == "__main__":
    main()

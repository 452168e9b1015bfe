"""Tests for the Redis signal source."""

from datetime import datetime, timedelta, timezone

from axremediation.models.signal import (
    AlertSignal,
    BlockingChainSignal,
    KpiReading,
    SqlHealthReading,
)
from axremediation.storage.signal_store import RedisSignalSource

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


async def test_empty_store_gives_empty_snapshot(redis):
    snapshot = await RedisSignalSource(redis).snapshot(T0)

    assert snapshot.captured_at == T0
    assert snapshot.kpi is None
    assert snapshot.sql_health is None
    assert snapshot.alerts == ()
    assert snapshot.blocking_chains == ()


async def test_snapshot_bundles_latest_signals(redis):
    source = RedisSignalSource(redis)
    await source.publish_kpi(KpiReading(values={"batch_backlog": 12}))
    await source.publish_sql_health(SqlHealthReading(cpu_usage=40))
    await source.publish_sql_health(SqlHealthReading(cpu_usage=92))
    await source.raise_alert(AlertSignal(alert_id="a2", type="Blocking", timestamp=T0 + timedelta(seconds=5)))
    await source.raise_alert(AlertSignal(alert_id="a1", type="Deadlock", timestamp=T0))
    await source.open_blocking_chain(BlockingChainSignal(
        blocking_session_id="51", blocked_session_id="60", duration_seconds=45, detected_at=T0,
    ))

    snapshot = await source.snapshot(T0)

    assert snapshot.scalar("kpi", "batch_backlog") == 12
    assert snapshot.scalar("sql_health", "cpu_usage") == 92
    assert [alert.alert_id for alert in snapshot.alerts] == ["a1", "a2"]
    assert snapshot.flatten()["blocking_max_duration"] == 45


async def test_resolved_signals_disappear(redis):
    source = RedisSignalSource(redis)
    await source.raise_alert(AlertSignal(alert_id="a1", type="Deadlock"))
    await source.open_blocking_chain(BlockingChainSignal(blocking_session_id="51", blocked_session_id="60"))

    await source.resolve_alert("a1")
    await source.close_blocking_chain("51", "60")

    assert await source.active_alerts() == []
    assert await source.active_blocking_chains() == []

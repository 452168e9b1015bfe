"""Pytest configuration and fixtures."""

import asyncio
from datetime import datetime, timezone
from typing import AsyncIterator

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

from axremediation.actions.base import ActionContext, ActionHandler, ActionResult
from axremediation.core.config import Settings
from axremediation.models.rule import ActionSpec
from axremediation.models.signal import (
    AlertSignal,
    BlockingChainSignal,
    KpiReading,
    SqlHealthReading,
)
from axremediation.storage.signal_store import SignalSource


class FakeSignalSource(SignalSource):
    """In-memory signal source whose readings tests set directly."""

    def __init__(self):
        self.kpi: KpiReading | None = None
        self.sql_health: SqlHealthReading | None = None
        self.alerts: list[AlertSignal] = []
        self.blocking: list[BlockingChainSignal] = []
        self.fail = False

    def set_cpu(self, value: float, at: datetime | None = None) -> None:
        self.sql_health = SqlHealthReading(cpu_usage=value, recorded_at=at or datetime.now(timezone.utc))

    async def latest_kpi_snapshot(self) -> KpiReading | None:
        if self.fail:
            raise ConnectionError("signal store unavailable")
        return self.kpi

    async def latest_sql_health_snapshot(self) -> SqlHealthReading | None:
        return self.sql_health

    async def active_alerts(self) -> list[AlertSignal]:
        return list(self.alerts)

    async def active_blocking_chains(self) -> list[BlockingChainSignal]:
        return list(self.blocking)


class FakeAction(ActionHandler):
    """Scripted action handler.

    ``outcomes`` is consumed one entry per call: True/False for the reported
    result, an exception instance to raise. Once exhausted every call succeeds.
    """

    def __init__(
        self,
        action_type: str = "fake",
        outcomes: list | None = None,
        delay: float = 0.0,
        gate: asyncio.Event | None = None,
        log: list | None = None,
    ):
        self._type = action_type
        self.outcomes = list(outcomes or [])
        self.delay = delay
        self.gate = gate
        self.log = log if log is not None else []
        self.calls: list[tuple[ActionSpec, ActionContext]] = []

    @property
    def action_type(self) -> str:
        return self._type

    async def run(self, action: ActionSpec, context: ActionContext) -> ActionResult:
        self.calls.append((action, context))
        self.log.append(action.parameters.get("step", self._type))
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)

        outcome = self.outcomes.pop(0) if self.outcomes else True
        if isinstance(outcome, Exception):
            raise outcome
        if outcome:
            return ActionResult(success=True, output=f"{self._type} ok")
        return ActionResult(success=False, error=f"{self._type} failed")


@pytest.fixture
def settings() -> Settings:
    """Settings with retry delays removed."""
    return Settings(
        _env_file=None,
        tick_interval_seconds=15,
        max_concurrent_executions=4,
        action_timeout_seconds=5,
        action_retry_base_delay=0,
        ledger_write_max_retry=3,
        ledger_retry_base_delay=0,
        shutdown_grace_seconds=1,
        execution_max_lifetime_seconds=600,
        metrics_port=0,
    )


@pytest_asyncio.fixture
async def redis() -> AsyncIterator[FakeRedis]:
    """In-memory Redis for storage tests."""
    client = FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def signals() -> FakeSignalSource:
    return FakeSignalSource()

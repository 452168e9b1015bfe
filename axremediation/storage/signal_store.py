"""Signal source collaborators."""

from abc import ABC, abstractmethod
from datetime import datetime, timezone

from redis.asyncio import Redis

from axremediation.models.signal import (
    AlertSignal,
    BlockingChainSignal,
    KpiReading,
    SignalSnapshot,
    SqlHealthReading,
)
from axremediation.storage.redis_client import RedisKeys, get_redis


class SignalSource(ABC):
    """Supplier of the latest monitoring telemetry."""

    @abstractmethod
    async def latest_kpi_snapshot(self) -> KpiReading | None:
        """Latest KPI reading, None if nothing was collected yet."""

    @abstractmethod
    async def latest_sql_health_snapshot(self) -> SqlHealthReading | None:
        """Latest SQL health reading, None if nothing was collected yet."""

    @abstractmethod
    async def active_alerts(self) -> list[AlertSignal]:
        """Currently active alerts."""

    @abstractmethod
    async def active_blocking_chains(self) -> list[BlockingChainSignal]:
        """Currently open blocking chains and deadlock victims."""

    async def snapshot(self, now: datetime | None = None) -> SignalSnapshot:
        """Bundle the four signal kinds into one immutable snapshot."""
        return SignalSnapshot(
            captured_at=now or datetime.now(timezone.utc),
            kpi=await self.latest_kpi_snapshot(),
            sql_health=await self.latest_sql_health_snapshot(),
            alerts=tuple(await self.active_alerts()),
            blocking_chains=tuple(await self.active_blocking_chains()),
        )


class RedisSignalSource(SignalSource):
    """Reads the signal documents the monitoring collectors keep in Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def latest_kpi_snapshot(self) -> KpiReading | None:
        data = await self.redis.get(RedisKeys.SIGNAL_KPI)
        return KpiReading.model_validate_json(data) if data else None

    async def latest_sql_health_snapshot(self) -> SqlHealthReading | None:
        data = await self.redis.get(RedisKeys.SIGNAL_SQL_HEALTH)
        return SqlHealthReading.model_validate_json(data) if data else None

    async def active_alerts(self) -> list[AlertSignal]:
        entries = await self.redis.hvals(RedisKeys.SIGNAL_ALERTS)
        alerts = [AlertSignal.model_validate_json(entry) for entry in entries]
        alerts.sort(key=lambda a: (a.timestamp, a.alert_id))
        return alerts

    async def active_blocking_chains(self) -> list[BlockingChainSignal]:
        entries = await self.redis.hvals(RedisKeys.SIGNAL_BLOCKING)
        chains = [BlockingChainSignal.model_validate_json(entry) for entry in entries]
        chains.sort(key=lambda c: (c.detected_at, c.blocked_session_id))
        return chains

    # Writers used by the collectors

    async def publish_kpi(self, reading: KpiReading) -> None:
        await self.redis.set(RedisKeys.SIGNAL_KPI, reading.model_dump_json())

    async def publish_sql_health(self, reading: SqlHealthReading) -> None:
        await self.redis.set(RedisKeys.SIGNAL_SQL_HEALTH, reading.model_dump_json())

    async def raise_alert(self, alert: AlertSignal) -> None:
        await self.redis.hset(RedisKeys.SIGNAL_ALERTS, alert.alert_id, alert.model_dump_json())

    async def resolve_alert(self, alert_id: str) -> None:
        await self.redis.hdel(RedisKeys.SIGNAL_ALERTS, alert_id)

    async def open_blocking_chain(self, chain: BlockingChainSignal) -> None:
        await self.redis.hset(
            RedisKeys.SIGNAL_BLOCKING,
            f"{chain.blocking_session_id}:{chain.blocked_session_id}",
            chain.model_dump_json(),
        )

    async def close_blocking_chain(self, blocking_session_id: str, blocked_session_id: str) -> None:
        await self.redis.hdel(RedisKeys.SIGNAL_BLOCKING, f"{blocking_session_id}:{blocked_session_id}")

"""Redis client management."""

import redis.asyncio as redis
from redis.asyncio import Redis

from axremediation.core.config import get_settings

# Global connection pool
_pool: redis.ConnectionPool | None = None


async def init_redis_pool() -> None:
    """Initialize Redis connection pool."""
    global _pool
    if _pool is None:
        settings = get_settings()
        _pool = redis.ConnectionPool.from_url(
            settings.redis_url,
            decode_responses=True,
            max_connections=20,
        )


async def close_redis_pool() -> None:
    """Close Redis connection pool."""
    global _pool
    if _pool is not None:
        await _pool.disconnect()
        _pool = None


def get_redis() -> Redis:
    """Get Redis client from pool.

    Returns:
        Redis client instance

    Raises:
        RuntimeError: If pool not initialized
    """
    if _pool is None:
        raise RuntimeError("Redis pool not initialized. Call init_redis_pool() first.")
    return redis.Redis(connection_pool=_pool)


class RedisKeys:
    """Redis key patterns."""

    # Rules
    RULE_DETAIL = "remediation:rules:detail:{rule_id}"
    RULE_ALL = "remediation:rules:all"
    RULE_VERSION = "remediation:rules:version"
    RULE_UPDATE_CHANNEL = "remediation:rules:update"

    # Signals written by the monitoring collectors
    SIGNAL_KPI = "monitoring:signals:kpi"
    SIGNAL_SQL_HEALTH = "monitoring:signals:sql_health"
    SIGNAL_ALERTS = "monitoring:signals:alerts"
    SIGNAL_BLOCKING = "monitoring:signals:blocking"

    # Execution ledger
    EXECUTION_DETAIL = "remediation:executions:detail:{execution_id}"
    EXECUTION_TRANSITIONS = "remediation:executions:transitions:{execution_id}"
    EXECUTION_ACTIVE = "remediation:executions:active:{rule_id}"
    EXECUTION_ACTIVE_ALL = "remediation:executions:active"
    EXECUTION_LAST_END = "remediation:executions:last_end:{rule_id}"
    EXECUTION_HISTORY = "remediation:executions:history"
    EXECUTION_RULE_HISTORY = "remediation:executions:history:{rule_id}"
    EXECUTION_EVENTS_CHANNEL = "remediation:executions:events"

    # Notifications consumed by the alerting service
    NOTIFY_QUEUE = "remediation:notify:queue"

    @classmethod
    def rule_detail(cls, rule_id: str) -> str:
        return cls.RULE_DETAIL.format(rule_id=rule_id)

    @classmethod
    def execution_detail(cls, execution_id: str) -> str:
        return cls.EXECUTION_DETAIL.format(execution_id=execution_id)

    @classmethod
    def execution_transitions(cls, execution_id: str) -> str:
        return cls.EXECUTION_TRANSITIONS.format(execution_id=execution_id)

    @classmethod
    def execution_active(cls, rule_id: str) -> str:
        return cls.EXECUTION_ACTIVE.format(rule_id=rule_id)

    @classmethod
    def execution_last_end(cls, rule_id: str) -> str:
        return cls.EXECUTION_LAST_END.format(rule_id=rule_id)

    @classmethod
    def execution_rule_history(cls, rule_id: str) -> str:
        return cls.EXECUTION_RULE_HISTORY.format(rule_id=rule_id)

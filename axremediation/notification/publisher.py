"""Execution status publisher for dashboards and push channels."""

import json

from redis.asyncio import Redis
from redis.exceptions import RedisError

from axremediation.core.logging import get_logger
from axremediation.models.execution import Execution
from axremediation.storage.redis_client import RedisKeys, get_redis

logger = get_logger(__name__)


class ExecutionNotifier:
    """Publishes execution summaries on the Redis events channel."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def notify_execution_started(self, execution: Execution) -> None:
        await self._publish("execution.started", execution)

    async def notify_execution_completed(self, execution: Execution) -> None:
        await self._publish("execution.completed", execution)

    async def _publish(self, event: str, execution: Execution) -> None:
        """Publish an event; failures are logged, never raised."""
        message = json.dumps({"event": event, **execution.summary()})
        try:
            await self.redis.publish(RedisKeys.EXECUTION_EVENTS_CHANNEL, message)
        except RedisError as e:
            logger.warning(
                "Execution event not published",
                event_name=event,
                execution_id=execution.execution_id,
                error=str(e),
            )

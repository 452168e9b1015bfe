"""Notification queue shared with the alerting service."""

from redis.asyncio import Redis

from axremediation.models.notification import NotificationTask
from axremediation.storage.redis_client import RedisKeys, get_redis


class NotificationQueue:
    """Notification task queue."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def enqueue(self, task: NotificationTask) -> None:
        """Add task to notification queue.

        Args:
            task: Notification task to enqueue
        """
        await self.redis.lpush(RedisKeys.NOTIFY_QUEUE, task.model_dump_json())

    async def dequeue(self, timeout: int = 5) -> NotificationTask | None:
        """Get next task from queue.

        Args:
            timeout: Blocking timeout in seconds

        Returns:
            Next task if available
        """
        result = await self.redis.brpop(RedisKeys.NOTIFY_QUEUE, timeout=timeout)
        if result:
            _, data = result
            return NotificationTask.model_validate_json(data)
        return None

    async def queue_length(self) -> int:
        """Get current queue length."""
        return await self.redis.llen(RedisKeys.NOTIFY_QUEUE)

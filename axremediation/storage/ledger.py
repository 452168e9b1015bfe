"""Execution ledger storage.

Each execution has a current-state document and an append-only transition
log. A per-rule active pointer, set with ``SET NX`` when the execution is
created and cleared on its terminal write, is what makes "create unless a
non-terminal execution exists" a single atomic operation.
"""

import json
from datetime import datetime, timezone

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from axremediation.core.config import get_settings
from axremediation.core.errors import LedgerWriteError
from axremediation.core.logging import get_logger
from axremediation.models.execution import Execution
from axremediation.storage.redis_client import RedisKeys, get_redis

logger = get_logger(__name__)


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class RedisExecutionLedger:
    """Durable record of every execution attempt."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def try_create(self, execution: Execution) -> bool:
        """Create the execution unless its rule already has a non-terminal one.

        Args:
            execution: New execution in Pending status

        Returns:
            True if created, False if another execution holds the rule

        Raises:
            LedgerWriteError: If the execution could not be stored
        """
        active_key = RedisKeys.execution_active(execution.rule_id)
        try:
            acquired = await self.redis.set(active_key, execution.execution_id, nx=True)
        except RedisError as e:
            raise LedgerWriteError(f"Cannot acquire rule {execution.rule_id}: {e}") from e
        if not acquired:
            return False

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                self._stage_write(pipe, execution)
                pipe.sadd(RedisKeys.EXECUTION_ACTIVE_ALL, execution.execution_id)
                pipe.zadd(
                    RedisKeys.EXECUTION_HISTORY,
                    {execution.execution_id: _epoch_ms(execution.start_time)},
                )
                pipe.zadd(
                    RedisKeys.execution_rule_history(execution.rule_id),
                    {execution.execution_id: _epoch_ms(execution.start_time)},
                )
                await pipe.execute()
        except RedisError as e:
            try:
                await self._release(execution.rule_id, execution.execution_id)
            except RedisError:
                logger.error(
                    "Cannot release rule after failed create",
                    rule_id=execution.rule_id,
                    execution_id=execution.execution_id,
                )
            raise LedgerWriteError(f"Cannot store execution {execution.execution_id}: {e}") from e
        return True

    async def record(self, execution: Execution) -> bool:
        """Persist a state transition of an existing execution.

        A stored terminal execution is immutable; later writes are ignored.
        A terminal write clears the rule's active pointer in the same
        transaction, provided this execution still owns it.

        Returns:
            True if written, False if the stored execution was already terminal

        Raises:
            LedgerWriteError: If the write failed
        """
        try:
            stored = await self.get(execution.execution_id)
            if stored is not None and stored.is_terminal:
                logger.warning(
                    "Ignoring write to terminal execution",
                    execution_id=execution.execution_id,
                    stored_status=stored.status.value,
                    new_status=execution.status.value,
                )
                # A stored terminal state must not leave the rule held
                await self._release(execution.rule_id, execution.execution_id)
                return False

            active_key = RedisKeys.execution_active(execution.rule_id)
            async with self.redis.pipeline(transaction=True) as pipe:
                owner = None
                if execution.is_terminal:
                    await pipe.watch(active_key)
                    owner = await pipe.get(active_key)
                    pipe.multi()
                self._stage_write(pipe, execution)
                if execution.is_terminal:
                    pipe.srem(RedisKeys.EXECUTION_ACTIVE_ALL, execution.execution_id)
                    pipe.set(
                        RedisKeys.execution_last_end(execution.rule_id),
                        _epoch_ms(execution.end_time),
                    )
                    if owner == execution.execution_id:
                        pipe.delete(active_key)
                await pipe.execute()
        except RedisError as e:
            raise LedgerWriteError(f"Cannot record execution {execution.execution_id}: {e}") from e
        return True

    async def get(self, execution_id: str) -> Execution | None:
        """Get an execution by ID."""
        data = await self.redis.get(RedisKeys.execution_detail(execution_id))
        if not data:
            return None
        return Execution.model_validate_json(data)

    async def active_execution(self, rule_id: str) -> Execution | None:
        """Return the rule's non-terminal execution, if any."""
        execution_id = await self.redis.get(RedisKeys.execution_active(rule_id))
        if not execution_id:
            return None
        return await self.get(execution_id)

    async def has_active(self, rule_id: str) -> bool:
        """Whether the rule is held by a non-terminal execution."""
        return await self.redis.exists(RedisKeys.execution_active(rule_id)) > 0

    async def last_terminal_end(self, rule_id: str) -> datetime | None:
        """End time of the rule's most recent terminal execution."""
        value = await self.redis.get(RedisKeys.execution_last_end(rule_id))
        if not value:
            return None
        return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)

    async def list_active(self) -> list[Execution]:
        """List all non-terminal executions."""
        execution_ids = await self.redis.smembers(RedisKeys.EXECUTION_ACTIVE_ALL)
        executions = []
        for execution_id in execution_ids:
            execution = await self.get(execution_id)
            if execution:
                executions.append(execution)
        executions.sort(key=lambda e: e.start_time)
        return executions

    async def history(self, rule_id: str | None = None, limit: int | None = None) -> list[Execution]:
        """List executions, most recent first.

        Args:
            rule_id: Restrict to one rule (optional)
            limit: Maximum number of executions (defaults to the configured limit)

        Returns:
            Executions ordered by start time descending
        """
        limit = limit or get_settings().history_default_limit
        key = RedisKeys.execution_rule_history(rule_id) if rule_id else RedisKeys.EXECUTION_HISTORY
        execution_ids = await self.redis.zrevrange(key, 0, limit - 1)
        if not execution_ids:
            return []

        documents = await self.redis.mget(
            [RedisKeys.execution_detail(execution_id) for execution_id in execution_ids]
        )
        executions = []
        for execution_id, data in zip(execution_ids, documents):
            if not data:
                continue
            try:
                executions.append(Execution.model_validate_json(data))
            except ValidationError as e:
                logger.warning("Stored execution is invalid", execution_id=execution_id, error=str(e))
        return executions

    async def transitions(self, execution_id: str) -> list[dict]:
        """Return the append-only transition log of an execution."""
        entries = await self.redis.lrange(RedisKeys.execution_transitions(execution_id), 0, -1)
        return [json.loads(entry) for entry in entries]

    def _stage_write(self, pipe, execution: Execution) -> None:
        pipe.set(RedisKeys.execution_detail(execution.execution_id), execution.model_dump_json())
        pipe.rpush(
            RedisKeys.execution_transitions(execution.execution_id),
            json.dumps({
                "status": execution.status.value,
                "at": datetime.now(timezone.utc).isoformat(),
                "actions": len(execution.actions_executed),
            }),
        )

    async def _release(self, rule_id: str, execution_id: str) -> None:
        """Clear the rule's active pointer if this execution still owns it."""
        key = RedisKeys.execution_active(rule_id)
        owner = await self.redis.get(key)
        if owner == execution_id:
            await self.redis.delete(key)

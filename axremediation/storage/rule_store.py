"""Rule storage operations."""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from pydantic import ValidationError
from redis.asyncio import Redis

from axremediation.core.logging import get_logger
from axremediation.models.rule import Rule
from axremediation.storage.redis_client import RedisKeys, get_redis

logger = get_logger(__name__)


class RuleSource(ABC):
    """Where the rule catalog loads its definitions from."""

    @abstractmethod
    async def load_enabled_rules(self) -> list[Rule]:
        """Return the current enabled rule definitions."""

    def rejected_rules(self) -> dict[str, str]:
        """Enabled rules the last load could not read, by rule ID."""
        return {}


class RuleStore(RuleSource):
    """Rule storage operations using Redis."""

    def __init__(self, redis: Redis | None = None):
        self._redis = redis
        self._rejected: dict[str, str] = {}

    @property
    def redis(self) -> Redis:
        return self._redis or get_redis()

    async def create(self, rule: Rule) -> Rule:
        """Create a new rule.

        Args:
            rule: Rule to create

        Returns:
            Created rule
        """
        await self._write(rule)
        await self.redis.sadd(RedisKeys.RULE_ALL, rule.rule_id)
        await self._publish_update("create", rule.rule_id)
        return rule

    async def get(self, rule_id: str) -> Rule | None:
        """Get a rule by ID.

        Args:
            rule_id: Rule ID

        Returns:
            Rule if found, None otherwise
        """
        data = await self.redis.hget(RedisKeys.rule_detail(rule_id), "config")
        if not data:
            return None
        return Rule.model_validate_json(data)

    async def update(self, rule_id: str, rule: Rule) -> Rule | None:
        """Replace an existing rule, bumping its version.

        Args:
            rule_id: Rule ID to update
            rule: Updated rule data

        Returns:
            Updated rule if found, None otherwise
        """
        existing = await self.get(rule_id)
        if not existing:
            return None

        rule.rule_id = rule_id
        rule.metadata.created_at = existing.metadata.created_at
        rule.metadata.updated_at = datetime.now(timezone.utc)
        rule.metadata.version = existing.metadata.version + 1

        await self._write(rule)
        await self._publish_update("update", rule_id)
        return rule

    async def delete(self, rule_id: str) -> bool:
        """Delete a rule.

        Args:
            rule_id: Rule ID to delete

        Returns:
            True if deleted, False if not found
        """
        removed = await self.redis.delete(RedisKeys.rule_detail(rule_id))
        await self.redis.srem(RedisKeys.RULE_ALL, rule_id)
        if not removed:
            return False

        await self._publish_update("delete", rule_id)
        return True

    async def set_enabled(self, rule_id: str, enabled: bool) -> bool:
        """Set rule enabled status.

        Args:
            rule_id: Rule ID
            enabled: New enabled status

        Returns:
            True if updated, False if not found
        """
        rule = await self.get(rule_id)
        if not rule:
            return False

        rule.enabled = enabled
        rule.metadata.updated_at = datetime.now(timezone.utc)
        rule.metadata.version += 1

        await self._write(rule)
        await self._publish_update("update", rule_id)
        return True

    async def list_all(self) -> list[Rule]:
        """List all readable rules, highest priority first.

        Rules whose stored document no longer validates are logged and skipped;
        enabled ones are kept for ``rejected_rules``.
        """
        rule_ids = await self.redis.smembers(RedisKeys.RULE_ALL)
        rules = []
        rejected = {}
        for rule_id in rule_ids:
            try:
                rule = await self.get(rule_id)
            except ValidationError as e:
                logger.warning("Stored rule is invalid", rule_id=rule_id, error=str(e))
                enabled = await self.redis.hget(RedisKeys.rule_detail(rule_id), "enabled")
                if enabled != "false":
                    rejected[rule_id] = f"Stored rule is invalid: {e}"
                continue
            if rule:
                rules.append(rule)

        self._rejected = rejected
        rules.sort(key=lambda r: (-r.priority, r.rule_id))
        return rules

    def rejected_rules(self) -> dict[str, str]:
        return dict(self._rejected)

    async def load_enabled_rules(self) -> list[Rule]:
        """List enabled rules in catalog order."""
        return [rule for rule in await self.list_all() if rule.enabled]

    async def get_version(self) -> int:
        """Get global rules version number."""
        version = await self.redis.get(RedisKeys.RULE_VERSION)
        return int(version) if version else 0

    async def _write(self, rule: Rule) -> None:
        await self.redis.hset(
            RedisKeys.rule_detail(rule.rule_id),
            mapping={
                "config": rule.model_dump_json(),
                "enabled": str(rule.enabled).lower(),
                "version": str(rule.metadata.version),
                "updated_at": str(int(rule.metadata.updated_at.timestamp() * 1000)),
            },
        )

    async def _publish_update(self, action: str, rule_id: str) -> None:
        """Publish rule update notification.

        Args:
            action: Action type (create/update/delete)
            rule_id: Affected rule ID
        """
        await self.redis.incr(RedisKeys.RULE_VERSION)

        message = json.dumps({
            "action": action,
            "rule_id": rule_id,
            "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
        })
        await self.redis.publish(RedisKeys.RULE_UPDATE_CHANNEL, message)

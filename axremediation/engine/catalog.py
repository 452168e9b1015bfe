"""Rule catalog: periodically refreshed, immutable view of enabled rules."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

from axremediation.actions.registry import ActionRegistry
from axremediation.core.config import Settings, get_settings
from axremediation.core.errors import RuleConfigurationError
from axremediation.core.logging import get_logger
from axremediation.engine.conditions import Condition, parse_condition
from axremediation.models.rule import Rule
from axremediation.observability.metrics import (
    CATALOG_CONFIG_ERRORS,
    CATALOG_REFRESH_FAILURES,
    CATALOG_RULES,
)
from axremediation.storage.rule_store import RuleSource

logger = get_logger(__name__)


@dataclass(frozen=True)
class CompiledRule:
    """Rule snapshot with its trigger condition parsed once."""

    rule: Rule
    condition: Condition

    @property
    def rule_id(self) -> str:
        return self.rule.rule_id


@dataclass
class CatalogHealth:
    """Refresh status surfaced to the hosting process."""

    last_refresh_at: datetime | None = None
    last_error: str | None = None
    rule_count: int = 0
    config_errors: dict[str, str] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.last_refresh_at is not None and self.last_error is None


class RuleCatalog:
    """Copy-on-refresh catalog of enabled, compiled rules."""

    def __init__(
        self,
        source: RuleSource,
        registry: ActionRegistry,
        settings: Settings | None = None,
    ):
        self._source = source
        self._registry = registry
        self._settings = settings or get_settings()
        self._rules: tuple[CompiledRule, ...] = ()
        self._health = CatalogHealth()

    def current_rules(self) -> tuple[CompiledRule, ...]:
        """Enabled rules in evaluation order (priority desc, then rule id)."""
        return self._rules

    def get(self, rule_id: str) -> CompiledRule | None:
        for compiled in self._rules:
            if compiled.rule_id == rule_id:
                return compiled
        return None

    def health(self) -> CatalogHealth:
        return self._health

    def compile(self, rule: Rule) -> CompiledRule:
        """Parse the rule's condition and validate its actions.

        Raises:
            RuleConfigurationError: If the rule cannot be evaluated or executed
        """
        try:
            condition = parse_condition(rule.trigger_condition)
            self._registry.validate(rule.actions)
        except RuleConfigurationError as e:
            raise RuleConfigurationError(str(e), rule_id=rule.rule_id) from e
        return CompiledRule(rule=rule, condition=condition)

    async def refresh(self) -> bool:
        """Reload rules from the source and swap the snapshot.

        A failing source keeps the last-known-good snapshot. Rules that do not
        compile are left out and reported once per refresh.

        Returns:
            True if the snapshot was replaced
        """
        try:
            rules = await self._source.load_enabled_rules()
        except Exception as e:
            CATALOG_REFRESH_FAILURES.inc()
            self._health.last_error = str(e)
            logger.warning(
                "Rule catalog refresh failed, serving last known rules",
                error=str(e),
                rule_count=len(self._rules),
            )
            return False

        compiled: list[CompiledRule] = []
        errors: dict[str, str] = {}
        for rule_id, error in self._source.rejected_rules().items():
            errors[rule_id] = error
            CATALOG_CONFIG_ERRORS.labels(rule_id=rule_id).inc()
            logger.warning("Rule configuration error", rule_id=rule_id, error=error)
        for rule in rules:
            if not rule.enabled:
                continue
            try:
                compiled.append(self.compile(rule))
            except RuleConfigurationError as e:
                errors[rule.rule_id] = str(e)
                CATALOG_CONFIG_ERRORS.labels(rule_id=rule.rule_id).inc()
                logger.warning("Rule configuration error", rule_id=rule.rule_id, error=str(e))

        compiled.sort(key=lambda c: (-c.rule.priority, c.rule_id))
        self._rules = tuple(compiled)
        self._health = CatalogHealth(
            last_refresh_at=datetime.now(timezone.utc),
            rule_count=len(compiled),
            config_errors=errors,
        )
        CATALOG_RULES.set(len(compiled))
        logger.info("Rule catalog refreshed", rule_count=len(compiled), config_errors=len(errors))
        return True

    async def run(self, stop: asyncio.Event) -> None:
        """Refresh on a fixed interval until ``stop`` is set."""
        interval = self._settings.catalog_refresh_seconds
        while not stop.is_set():
            await self.refresh()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

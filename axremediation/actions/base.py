"""Base class for remediation action handlers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from axremediation.models.rule import ActionSpec


@dataclass(frozen=True)
class ActionContext:
    """What an action knows about the execution it runs in."""

    rule_id: str
    execution_id: str
    trigger_payload: dict[str, Any] = field(default_factory=dict)

    def matched_items(self, source: str) -> list[dict[str, Any]]:
        """Collection entries of ``source`` that made the condition match."""
        items: list[dict[str, Any]] = []
        for match in self.trigger_payload.get("matches", []):
            if match.get("source") == source:
                items.extend(match.get("items", []))
        return items


@dataclass
class ActionResult:
    """Outcome reported by a handler."""

    success: bool
    output: str | None = None
    error: str | None = None


class ActionHandler(ABC):
    """Abstract base class for action handlers."""

    @property
    @abstractmethod
    def action_type(self) -> str:
        """Return action type identifier."""
        pass

    @abstractmethod
    async def run(self, action: ActionSpec, context: ActionContext) -> ActionResult:
        """Perform the action.

        Args:
            action: Action specification from the rule
            context: Execution context with the trigger payload

        Returns:
            Action result
        """
        pass

    def validate(self, action: ActionSpec) -> None:
        """Check the action's parameters when the rule is loaded.

        Raises:
            RuleConfigurationError: If the parameters are unusable
        """

    async def close(self) -> None:
        """Clean up resources. Override if needed."""
        pass

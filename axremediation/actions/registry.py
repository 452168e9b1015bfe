"""Action handler registry."""

from axremediation.actions.base import ActionHandler
from axremediation.core.errors import RuleConfigurationError
from axremediation.models.rule import ActionSpec


class ActionRegistry:
    """Maps action types to their handlers."""

    def __init__(self, handlers: list[ActionHandler] | None = None):
        self._handlers: dict[str, ActionHandler] = {}
        for handler in handlers or []:
            self.register(handler)

    def register(self, handler: ActionHandler) -> None:
        self._handlers[handler.action_type] = handler

    def get(self, action_type: str) -> ActionHandler:
        """Get the handler of an action type.

        Raises:
            RuleConfigurationError: If the type is not registered
        """
        handler = self._handlers.get(action_type)
        if handler is None:
            raise RuleConfigurationError(f"Unknown action type: {action_type!r}")
        return handler

    def validate(self, actions: list[ActionSpec]) -> None:
        """Validate an action list against the registered handlers."""
        for index, action in enumerate(actions):
            try:
                self.get(action.type).validate(action)
            except RuleConfigurationError as e:
                raise RuleConfigurationError(f"Action {index} ({action.type}): {e}") from e

    @property
    def action_types(self) -> list[str]:
        return sorted(self._handlers)

    async def close(self) -> None:
        for handler in self._handlers.values():
            await handler.close()

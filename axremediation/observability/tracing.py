"""Execution-scoped logging context."""

from typing import Any

import structlog


class TraceContext:
    """Context manager binding an execution to structlog's context.

    Each execution runs in its own asyncio task, so the binding does not
    leak across concurrently running executions.
    """

    def __init__(self, execution_id: str, rule_id: str):
        self._execution_id = execution_id
        self._rule_id = rule_id

    def __enter__(self) -> str:
        structlog.contextvars.bind_contextvars(
            execution_id=self._execution_id,
            rule_id=self._rule_id,
        )
        return self._execution_id

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.unbind_contextvars("execution_id", "rule_id")

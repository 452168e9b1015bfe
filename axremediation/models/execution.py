"""Execution record domain models."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from axremediation.core.errors import InvalidTransitionError


class ExecutionStatus(str, Enum):
    """Execution lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_FAILED = "partially_failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.SUCCEEDED,
    ExecutionStatus.FAILED,
    ExecutionStatus.PARTIALLY_FAILED,
    ExecutionStatus.CANCELLED,
})

# Allowed edges; terminal statuses have none
TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.RUNNING, ExecutionStatus.CANCELLED}),
    ExecutionStatus.RUNNING: TERMINAL_STATUSES,
}


class ActionStatus(str, Enum):
    """Outcome of a single action."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class ActionOutcome(BaseModel):
    """Audit entry for one executed action."""

    index: int = Field(..., ge=0, description="Position in the rule's action list")
    action_type: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    status: ActionStatus
    output: str | None = None
    error: str | None = None
    attempts: int = Field(default=1, ge=0)
    started_at: datetime
    duration_ms: int = Field(default=0, ge=0)

    @property
    def succeeded(self) -> bool:
        return self.status == ActionStatus.SUCCEEDED


class Execution(BaseModel):
    """One attempt to run a rule's actions in response to a match."""

    execution_id: str = Field(..., description="Execution unique identifier")
    rule_id: str = Field(..., description="Rule being executed")
    rule_version: int = Field(default=1, description="Version of the rule snapshot used")
    status: ExecutionStatus = Field(default=ExecutionStatus.PENDING)
    trigger_payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Signal data that caused the match",
    )
    manual: bool = Field(default=False, description="Started by an operator, not by a match")
    start_time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    actions_executed: list[ActionOutcome] = Field(default_factory=list)
    result_data: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, status: ExecutionStatus, at: datetime | None = None) -> None:
        """Move to ``status`` following the transition table.

        ``end_time`` is stamped on the (single) terminal transition.

        Raises:
            InvalidTransitionError: If the edge is not allowed
        """
        allowed = TRANSITIONS.get(self.status, frozenset())
        if status not in allowed:
            raise InvalidTransitionError(
                f"Execution {self.execution_id}: {self.status.value} -> {status.value} not allowed"
            )
        self.status = status
        if status.is_terminal:
            self.end_time = at or datetime.now(timezone.utc)

    def record_action(self, outcome: ActionOutcome) -> None:
        """Append an action outcome while the execution is running."""
        if self.status != ExecutionStatus.RUNNING:
            raise InvalidTransitionError(
                f"Execution {self.execution_id} is {self.status.value}, cannot record actions"
            )
        self.actions_executed.append(outcome)

    def summary(self) -> dict[str, Any]:
        """Compact view published to dashboards."""
        return {
            "execution_id": self.execution_id,
            "rule_id": self.rule_id,
            "status": self.status.value,
            "manual": self.manual,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "actions": len(self.actions_executed),
            "failed_actions": sum(1 for o in self.actions_executed if not o.succeeded),
            "error_message": self.error_message,
        }

"""Remediation rule domain models."""

import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator


class ActionType:
    """Built-in action type identifiers."""

    ACKNOWLEDGE_ALERT = "acknowledge_alert"
    KILL_SESSION = "kill_session"
    RESTART_BATCH_JOB = "restart_batch_job"
    INVOKE_SCRIPT = "invoke_script"
    CALL_WEBHOOK = "call_webhook"
    SEND_NOTIFICATION = "send_notification"


class ActionSpec(BaseModel):
    """One step of a rule's action sequence."""

    type: str = Field(..., min_length=1, description="Action type, e.g. 'kill_session'")
    parameters: dict[str, Any] = Field(default_factory=dict, description="Action parameters")
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Hard timeout for this action (falls back to rule, then settings)",
    )
    continue_on_failure: bool | None = Field(
        default=None,
        description="Override the rule's abort policy for this action",
    )


class RuleMetadata(BaseModel):
    """Rule metadata."""

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    created_by: str = Field(default="system")
    version: int = Field(default=1, ge=1)


class Rule(BaseModel):
    """Complete remediation rule as authored by an administrator."""

    rule_id: str = Field(..., min_length=1, description="Rule unique identifier")
    name: str = Field(..., description="Rule name")
    description: str = Field(default="", description="Rule description")
    enabled: bool = Field(default=True, description="Whether rule is enabled")
    priority: int = Field(default=5, ge=0, description="Rule priority (higher = evaluated first)")
    trigger_condition: dict[str, Any] = Field(
        ...,
        description="Serialized trigger predicate, see engine.conditions",
    )
    actions: list[ActionSpec] = Field(default_factory=list, description="Ordered actions")
    cooldown_seconds: int = Field(
        default=0,
        ge=0,
        description="Minimum seconds between two fired executions",
    )
    abort_on_first_failure: bool = Field(
        default=False,
        description="Stop the action sequence at the first failing action",
    )
    max_attempts: int = Field(default=1, ge=1, le=10, description="Attempts per action")
    timeout_seconds: float | None = Field(
        default=None,
        gt=0,
        description="Default per-action timeout for this rule",
    )
    requires_confirmation: bool = Field(
        default=False,
        description="Only run when triggered manually",
    )
    business_impact: str | None = Field(default=None, description="Free-text impact note")
    metadata: RuleMetadata = Field(
        default_factory=RuleMetadata,
        description="Rule metadata",
    )

    @field_validator("trigger_condition", mode="before")
    @classmethod
    def parse_serialized_condition(cls, value: Any) -> Any:
        """Accept the condition as a JSON string, the way it is stored."""
        if isinstance(value, str):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                # Plain text is a free-form expression
                return {"type": "expression", "expression": value}
        return value

    def action_timeout(self, action: ActionSpec, default: float) -> float:
        """Resolve the effective timeout of an action."""
        return action.timeout_seconds or self.timeout_seconds or default

    def continues_after_failure(self, action: ActionSpec) -> bool:
        """Whether a failure of ``action`` lets the sequence continue."""
        if action.continue_on_failure is not None:
            return action.continue_on_failure
        return not self.abort_on_first_failure

"""Notification task domain models."""

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class NotificationTask(BaseModel):
    """Notification handed to the alerting service for delivery."""

    task_id: str = Field(..., description="Task unique identifier")
    rule_id: str = Field(..., description="Rule whose action queued the notification")
    execution_id: str = Field(..., description="Execution that queued the notification")
    channel: str = Field(default="email", description="Delivery channel, e.g. email/teams")
    recipients: list[str] = Field(default_factory=list, description="Channel-specific recipients")
    subject: str = Field(default="", description="Short subject line")
    message: str = Field(..., description="Notification body")
    severity: str = Field(default="Medium", description="Alert severity")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        description="Trigger details for the receiving side",
    )

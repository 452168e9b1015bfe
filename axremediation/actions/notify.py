"""Notification action handing messages to the alerting service."""

import uuid

from axremediation.actions.base import ActionContext, ActionHandler, ActionResult
from axremediation.core.logging import get_logger
from axremediation.models.notification import NotificationTask
from axremediation.models.rule import ActionSpec, ActionType
from axremediation.storage.notify_queue import NotificationQueue

logger = get_logger(__name__)


class SendNotificationAction(ActionHandler):
    """Queue a notification; delivery and formatting belong to the alerting service."""

    def __init__(self, queue: NotificationQueue):
        self._queue = queue

    @property
    def action_type(self) -> str:
        return ActionType.SEND_NOTIFICATION

    async def run(self, action: ActionSpec, context: ActionContext) -> ActionResult:
        params = action.parameters
        task = NotificationTask(
            task_id=f"notify_{uuid.uuid4().hex[:12]}",
            rule_id=context.rule_id,
            execution_id=context.execution_id,
            channel=params.get("channel", "email"),
            recipients=list(params.get("recipients", [])),
            subject=params.get("subject") or f"Remediation rule {context.rule_id} triggered",
            message=params.get("message") or self._build_message(context),
            severity=params.get("severity", "Medium"),
            metadata={"trigger": context.trigger_payload},
        )

        await self._queue.enqueue(task)

        logger.info("Notification queued", task_id=task.task_id, channel=task.channel)
        return ActionResult(success=True, output=f"Queued {task.task_id}")

    def _build_message(self, context: ActionContext) -> str:
        """Plain-text summary of what matched."""
        lines = [f"Rule {context.rule_id} matched (execution {context.execution_id})."]
        for match in context.trigger_payload.get("matches", []):
            if "value" in match:
                lines.append(f"- {match['field']} = {match['value']}")
            elif "items" in match:
                lines.append(f"- {match['field']}: {len(match['items'])} matching {match['source']} entries")
            elif "expression" in match:
                lines.append(f"- {match['expression']}")
        return "\n".join(lines)

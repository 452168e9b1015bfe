"""ERP operations actions executed through the monitoring API."""

from abc import abstractmethod

import httpx

from axremediation.actions.base import ActionContext, ActionHandler, ActionResult
from axremediation.core.config import get_settings
from axremediation.core.errors import RuleConfigurationError
from axremediation.core.logging import get_logger
from axremediation.models.rule import ActionSpec, ActionType
from axremediation.models.signal import SOURCE_ALERT, SOURCE_BLOCKING

logger = get_logger(__name__)


def build_monitoring_client() -> httpx.AsyncClient:
    """HTTP client for the monitoring API configured from settings."""
    settings = get_settings()
    headers = {}
    if settings.monitoring_api_token:
        headers["Authorization"] = f"Bearer {settings.monitoring_api_token}"
    return httpx.AsyncClient(
        base_url=settings.monitoring_api_url,
        timeout=settings.http_timeout,
        headers=headers,
    )


def _unique(values: list[str]) -> list[str]:
    return list(dict.fromkeys(v for v in values if v))


class MonitoringApiAction(ActionHandler):
    """Action that POSTs one request per target to the monitoring API."""

    path_template = ""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._owns_client = client is None
        self._client = client or build_monitoring_client()

    @abstractmethod
    def targets(self, action: ActionSpec, context: ActionContext) -> list[str]:
        """IDs to call the monitoring API for, from parameters or trigger."""

    async def run(self, action: ActionSpec, context: ActionContext) -> ActionResult:
        targets = self.targets(action, context)
        if not targets:
            return ActionResult(success=False, error="No target found in parameters or trigger")

        done: list[str] = []
        errors: list[str] = []
        for target in targets:
            path = self.path_template.format(id=target)
            response = await self._client.post(path)
            if response.is_success:
                done.append(target)
                logger.info("Monitoring API call succeeded", action=self.action_type, target=target)
            else:
                errors.append(f"{target}: HTTP {response.status_code} {response.text[:200]}")
                logger.warning(
                    "Monitoring API call failed",
                    action=self.action_type,
                    target=target,
                    status_code=response.status_code,
                )

        output = f"{self.action_type} done for {', '.join(done)}" if done else None
        if errors:
            return ActionResult(success=False, output=output, error="; ".join(errors))
        return ActionResult(success=True, output=output)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class AcknowledgeAlertAction(MonitoringApiAction):
    """Acknowledge the configured alert or every alert that matched."""

    path_template = "/api/v1/alerts/{id}/acknowledge"

    @property
    def action_type(self) -> str:
        return ActionType.ACKNOWLEDGE_ALERT

    def targets(self, action: ActionSpec, context: ActionContext) -> list[str]:
        if action.parameters.get("alert_id"):
            return [str(action.parameters["alert_id"])]
        return _unique([str(item.get("alert_id", "")) for item in context.matched_items(SOURCE_ALERT)])


class KillSessionAction(MonitoringApiAction):
    """Kill the configured session or the head blockers that matched."""

    path_template = "/api/v1/sessions/{id}/kill"

    @property
    def action_type(self) -> str:
        return ActionType.KILL_SESSION

    def targets(self, action: ActionSpec, context: ActionContext) -> list[str]:
        if action.parameters.get("session_id"):
            return [str(action.parameters["session_id"])]
        return _unique([
            str(item.get("blocking_session_id", ""))
            for item in context.matched_items(SOURCE_BLOCKING)
        ])


class RestartBatchJobAction(MonitoringApiAction):
    """Restart an AX batch job."""

    path_template = "/api/v1/batch-jobs/{id}/restart"

    @property
    def action_type(self) -> str:
        return ActionType.RESTART_BATCH_JOB

    def validate(self, action: ActionSpec) -> None:
        if not action.parameters.get("job_id"):
            raise RuleConfigurationError("'job_id' parameter is required")

    def targets(self, action: ActionSpec, context: ActionContext) -> list[str]:
        return [str(action.parameters["job_id"])]

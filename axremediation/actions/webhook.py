"""Generic webhook action."""

import httpx

from axremediation.actions.base import ActionContext, ActionHandler, ActionResult
from axremediation.core.config import get_settings
from axremediation.core.errors import RuleConfigurationError
from axremediation.core.logging import get_logger
from axremediation.models.rule import ActionSpec, ActionType

logger = get_logger(__name__)

ALLOWED_METHODS = frozenset({"POST", "PUT", "PATCH"})


class CallWebhookAction(ActionHandler):
    """Send the trigger to an HTTP endpoint, e.g. a ticketing or runbook system."""

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=get_settings().http_timeout)

    @property
    def action_type(self) -> str:
        return ActionType.CALL_WEBHOOK

    def validate(self, action: ActionSpec) -> None:
        url = action.parameters.get("url")
        if not isinstance(url, str) or not url.startswith(("http://", "https://")):
            raise RuleConfigurationError(f"'url' must be an http(s) URL, got {url!r}")
        method = str(action.parameters.get("method", "POST")).upper()
        if method not in ALLOWED_METHODS:
            raise RuleConfigurationError(f"Unsupported method: {method}")

    async def run(self, action: ActionSpec, context: ActionContext) -> ActionResult:
        url = action.parameters["url"]
        method = str(action.parameters.get("method", "POST")).upper()
        body = action.parameters.get("payload") or {
            "rule_id": context.rule_id,
            "execution_id": context.execution_id,
            "trigger": context.trigger_payload,
        }

        response = await self._client.request(method, url, json=body)
        if response.is_success:
            logger.info("Webhook called", url=url, status_code=response.status_code)
            return ActionResult(success=True, output=f"HTTP {response.status_code}")

        logger.warning("Webhook failed", url=url, status_code=response.status_code)
        return ActionResult(
            success=False,
            error=f"HTTP {response.status_code}: {response.text[:200]}",
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

"""External remediation script action."""

import asyncio
import json
import os
from pathlib import Path

from axremediation.actions.base import ActionContext, ActionHandler, ActionResult
from axremediation.core.config import get_settings
from axremediation.core.errors import RuleConfigurationError
from axremediation.core.logging import get_logger
from axremediation.models.rule import ActionSpec, ActionType

logger = get_logger(__name__)

# Bytes of stdout/stderr kept in the action outcome
MAX_CAPTURE = 4000


class InvokeScriptAction(ActionHandler):
    """Run a script from the remediation script directory.

    The trigger is passed through the environment as REMEDIATION_TRIGGER
    (JSON), next to REMEDIATION_RULE_ID and REMEDIATION_EXECUTION_ID. A
    non-zero exit code is a failure.
    """

    def __init__(self, script_root: str | Path | None = None, powershell: str | None = None):
        settings = get_settings()
        self._root = Path(script_root or settings.script_root).resolve()
        self._powershell = powershell or settings.powershell_executable

    @property
    def action_type(self) -> str:
        return ActionType.INVOKE_SCRIPT

    def validate(self, action: ActionSpec) -> None:
        script = action.parameters.get("script")
        if not isinstance(script, str) or not script:
            raise RuleConfigurationError("'script' parameter is required")
        if Path(script).is_absolute() or ".." in Path(script).parts:
            raise RuleConfigurationError(f"Script must be relative to the script root: {script!r}")
        args = action.parameters.get("args", [])
        if not isinstance(args, list):
            raise RuleConfigurationError("'args' must be a list")

    def _resolve(self, action: ActionSpec) -> Path:
        path = (self._root / action.parameters["script"]).resolve()
        if self._root not in path.parents:
            raise RuleConfigurationError(f"Script escapes the script root: {path}")
        return path

    def _command(self, path: Path, action: ActionSpec) -> list[str]:
        args = [str(arg) for arg in action.parameters.get("args", [])]
        if path.suffix.lower() == ".ps1":
            return [self._powershell, "-NoProfile", "-NonInteractive", "-File", str(path), *args]
        return [str(path), *args]

    async def run(self, action: ActionSpec, context: ActionContext) -> ActionResult:
        path = self._resolve(action)
        if not path.is_file():
            return ActionResult(success=False, error=f"Script not found: {action.parameters['script']}")

        env = {
            **os.environ,
            "REMEDIATION_RULE_ID": context.rule_id,
            "REMEDIATION_EXECUTION_ID": context.execution_id,
            "REMEDIATION_TRIGGER": json.dumps(context.trigger_payload, default=str),
        }
        command = self._command(path, action)

        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self._root),
            env=env,
        )
        try:
            stdout, stderr = await process.communicate()
        finally:
            # Timeout or shutdown cancelled us while the script was running
            if process.returncode is None:
                process.kill()
                await process.wait()

        output = stdout.decode(errors="replace")[-MAX_CAPTURE:].strip() or None
        if process.returncode != 0:
            logger.warning(
                "Remediation script failed",
                script=action.parameters["script"],
                returncode=process.returncode,
            )
            error = stderr.decode(errors="replace")[-MAX_CAPTURE:].strip()
            return ActionResult(
                success=False,
                output=output,
                error=f"Exit code {process.returncode}: {error}" if error else f"Exit code {process.returncode}",
            )

        logger.info("Remediation script finished", script=action.parameters["script"])
        return ActionResult(success=True, output=output)

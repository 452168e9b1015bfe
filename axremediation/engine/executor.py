"""Action executor running a fired rule's action sequence."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable

from axremediation.actions.base import ActionContext, ActionResult
from axremediation.actions.registry import ActionRegistry
from axremediation.core.config import Settings, get_settings
from axremediation.core.errors import InvalidTransitionError
from axremediation.core.logging import get_logger
from axremediation.engine.ledger_writer import LedgerWriter
from axremediation.models.execution import (
    ActionOutcome,
    ActionStatus,
    Execution,
    ExecutionStatus,
)
from axremediation.models.rule import ActionSpec, Rule
from axremediation.notification.publisher import ExecutionNotifier
from axremediation.observability.metrics import ACTION_DURATION, EXECUTIONS_FINISHED
from axremediation.observability.tracing import TraceContext

logger = get_logger(__name__)


def aggregate_status(outcomes: list[ActionOutcome]) -> ExecutionStatus:
    """Final status of an execution from its action outcomes."""
    failures = sum(1 for outcome in outcomes if not outcome.succeeded)
    if failures == 0:
        return ExecutionStatus.SUCCEEDED
    if failures < len(outcomes):
        return ExecutionStatus.PARTIALLY_FAILED
    return ExecutionStatus.FAILED


class ActionExecutor:
    """Runs actions strictly in order, each under its own timeout."""

    def __init__(
        self,
        registry: ActionRegistry,
        writer: LedgerWriter,
        notifier: ExecutionNotifier | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._registry = registry
        self._writer = writer
        self._notifier = notifier
        self._settings = settings or get_settings()
        self._sleep = sleep
        self._clock = clock

    async def execute(self, execution: Execution, rule: Rule) -> ExecutionStatus:
        """Run the rule's actions for a Running execution.

        Action failures never escape; cancellation (engine shutdown) ends the
        execution as Cancelled with the outcomes gathered so far and is then
        propagated.

        Args:
            execution: Execution in Running status
            rule: Rule snapshot the execution was created from

        Returns:
            Terminal status
        """
        if execution.status != ExecutionStatus.RUNNING:
            raise InvalidTransitionError(
                f"Execution {execution.execution_id} is {execution.status.value}, expected running"
            )

        with TraceContext(execution.execution_id, rule.rule_id):
            logger.info("Execution started", actions=len(rule.actions))
            try:
                status = await self._run_actions(execution, rule)
            except asyncio.CancelledError:
                await self._finish(execution, ExecutionStatus.CANCELLED, "Cancelled during engine shutdown")
                raise
            except Exception as e:
                logger.error("Execution aborted by unexpected error", error=str(e), exc_info=True)
                await self._finish(execution, self._status_after_fault(execution), f"Unexpected error: {e}")
                return execution.status

            await self._finish(execution, status, self._first_error(execution))
            return status

    async def _run_actions(self, execution: Execution, rule: Rule) -> ExecutionStatus:
        context = ActionContext(
            rule_id=rule.rule_id,
            execution_id=execution.execution_id,
            trigger_payload=execution.trigger_payload,
        )

        aborted = False
        for index, action in enumerate(rule.actions):
            outcome = await self._run_action(index, action, rule, context, execution)
            execution.record_action(outcome)

            if not outcome.succeeded and not rule.continues_after_failure(action):
                aborted = index < len(rule.actions) - 1
                logger.info("Aborting remaining actions", failed_index=index)
                break

        execution.result_data = {
            "total_actions": len(rule.actions),
            "attempted": len(execution.actions_executed),
            "succeeded": sum(1 for o in execution.actions_executed if o.succeeded),
            "failed": sum(1 for o in execution.actions_executed if not o.succeeded),
            "aborted": aborted,
        }
        return aggregate_status(execution.actions_executed)

    async def _run_action(
        self,
        index: int,
        action: ActionSpec,
        rule: Rule,
        context: ActionContext,
        execution: Execution,
    ) -> ActionOutcome:
        """Run one action with its timeout and retry policy."""
        timeout = rule.action_timeout(action, self._settings.action_timeout_seconds)
        started_at = self._clock()
        started = time.monotonic()
        attempts = 0
        status = ActionStatus.FAILED
        result = ActionResult(success=False)

        try:
            while True:
                attempts += 1
                status, result = await self._attempt(action, context, timeout)
                if status == ActionStatus.SUCCEEDED or attempts >= rule.max_attempts:
                    break
                logger.info(
                    "Retrying action",
                    index=index,
                    action_type=action.type,
                    attempt=attempts,
                    error=result.error,
                )
                await self._sleep(self._settings.action_retry_base_delay * (2 ** (attempts - 1)))
        except asyncio.CancelledError:
            # Keep the interrupted action in the audit trail
            execution.record_action(self._outcome(
                index, action, ActionStatus.CANCELLED,
                ActionResult(success=False, error="Cancelled during engine shutdown"),
                attempts, started_at, started,
            ))
            raise

        outcome = self._outcome(index, action, status, result, attempts, started_at, started)
        logger.info(
            "Action finished",
            index=index,
            action_type=action.type,
            status=status.value,
            attempts=attempts,
            duration_ms=outcome.duration_ms,
        )
        return outcome

    async def _attempt(
        self,
        action: ActionSpec,
        context: ActionContext,
        timeout: float,
    ) -> tuple[ActionStatus, ActionResult]:
        try:
            handler = self._registry.get(action.type)
            result = await asyncio.wait_for(handler.run(action, context), timeout=timeout)
        except asyncio.TimeoutError:
            return ActionStatus.TIMED_OUT, ActionResult(
                success=False,
                error=f"Timed out after {timeout:g}s",
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Action raised", action_type=action.type, error=str(e))
            return ActionStatus.FAILED, ActionResult(success=False, error=str(e) or type(e).__name__)

        if result.success:
            return ActionStatus.SUCCEEDED, result
        return ActionStatus.FAILED, result

    @staticmethod
    def _outcome(
        index: int,
        action: ActionSpec,
        status: ActionStatus,
        result: ActionResult,
        attempts: int,
        started_at: datetime,
        started: float,
    ) -> ActionOutcome:
        elapsed = time.monotonic() - started
        ACTION_DURATION.labels(action_type=action.type, status=status.value).observe(elapsed)
        return ActionOutcome(
            index=index,
            action_type=action.type,
            parameters=action.parameters,
            status=status,
            output=result.output,
            error=result.error,
            attempts=attempts,
            started_at=started_at,
            duration_ms=int(elapsed * 1000),
        )

    @staticmethod
    def _first_error(execution: Execution) -> str | None:
        for outcome in execution.actions_executed:
            if not outcome.succeeded:
                return f"Action {outcome.index} ({outcome.action_type}) {outcome.status.value}: {outcome.error}"
        return None

    @staticmethod
    def _status_after_fault(execution: Execution) -> ExecutionStatus:
        if any(outcome.succeeded for outcome in execution.actions_executed):
            return ExecutionStatus.PARTIALLY_FAILED
        return ExecutionStatus.FAILED

    async def _finish(self, execution: Execution, status: ExecutionStatus, error: str | None) -> None:
        """Apply the terminal transition, persist it and announce it."""
        execution.transition(status, at=self._clock())
        execution.error_message = error
        EXECUTIONS_FINISHED.labels(rule_id=execution.rule_id, status=status.value).inc()

        await self._writer.record(execution)

        logger.info(
            "Execution finished",
            status=status.value,
            actions=len(execution.actions_executed),
            error=error,
        )
        if self._notifier:
            await self._notifier.notify_execution_completed(execution)

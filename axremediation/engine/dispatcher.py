"""Scheduler/dispatcher: the remediation control loop."""

import asyncio
import uuid
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from axremediation.core.config import Settings, get_settings
from axremediation.core.errors import LedgerWriteError
from axremediation.core.logging import get_logger
from axremediation.engine.catalog import CompiledRule, RuleCatalog
from axremediation.engine.evaluator import ConditionEvaluator, EvaluationResult, get_condition_evaluator
from axremediation.engine.executor import ActionExecutor
from axremediation.engine.history import SignalHistory
from axremediation.engine.ledger_writer import LedgerWriter
from axremediation.models.execution import Execution, ExecutionStatus
from axremediation.models.rule import Rule
from axremediation.models.signal import SignalSnapshot
from axremediation.notification.publisher import ExecutionNotifier
from axremediation.observability.metrics import (
    EXECUTIONS_FINISHED,
    EXECUTIONS_RUNNING,
    EXECUTIONS_STARTED,
    RULES_EVALUATED,
    RULES_MATCHED,
    TICK_DURATION,
    TICKS,
    TRIGGERS_SKIPPED,
)
from axremediation.storage.ledger import RedisExecutionLedger
from axremediation.storage.signal_store import SignalSource

logger = get_logger(__name__)


class SkipReason:
    """Why a rule did not produce an execution on a tick."""

    SINGLE_FLIGHT = "single_flight"
    COOLDOWN = "cooldown"
    CONFIRMATION_REQUIRED = "confirmation_required"
    LEDGER_UNAVAILABLE = "ledger_unavailable"
    SHUTTING_DOWN = "shutting_down"


@dataclass
class TickReport:
    """What one evaluation pass did."""

    evaluated: int = 0
    matched: int = 0
    started: list[str] = field(default_factory=list)
    skipped: Counter = field(default_factory=Counter)
    errors: int = 0
    overlapped: bool = False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_execution_id(now: datetime) -> str:
    return f"exec_{now:%Y%m%d_%H%M%S}_{uuid.uuid4().hex[:8]}"


class RemediationDispatcher:
    """Evaluates the catalog on every tick and hands matches to the executor.

    The ledger's atomic check-and-insert is the single-flight guarantee; the
    per-rule lock only keeps two coroutines of this process from racing to it.
    """

    def __init__(
        self,
        catalog: RuleCatalog,
        signals: SignalSource,
        ledger: RedisExecutionLedger,
        writer: LedgerWriter,
        executor: ActionExecutor,
        notifier: ExecutionNotifier | None = None,
        evaluator: ConditionEvaluator | None = None,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._settings = settings or get_settings()
        self._catalog = catalog
        self._signals = signals
        self._ledger = ledger
        self._writer = writer
        self._executor = executor
        self._notifier = notifier
        self._evaluator = evaluator or get_condition_evaluator()
        self._clock = clock
        self._history = SignalHistory(self._settings.history_window_seconds)
        self._pool = asyncio.Semaphore(self._settings.max_concurrent_executions)
        self._rule_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._inflight: dict[str, asyncio.Task] = {}
        self._executions: dict[str, Execution] = {}
        self._tick_in_progress = False
        self._stopping = asyncio.Event()
        self._creating = 0
        self._creates_done = asyncio.Event()
        self._creates_done.set()

    @property
    def inflight(self) -> dict[str, asyncio.Task]:
        """Execution tasks currently owned by this process."""
        return dict(self._inflight)

    @property
    def history(self) -> SignalHistory:
        return self._history

    async def tick(self, now: datetime | None = None) -> TickReport:
        """Run one evaluation pass over the catalog.

        A tick requested while another is still running is skipped.
        """
        report = TickReport()
        if self._tick_in_progress:
            report.overlapped = True
            TICKS.labels(outcome="overlapped").inc()
            logger.warning("Previous tick still running, skipping")
            return report

        self._tick_in_progress = True
        try:
            now = now or self._clock()
            try:
                snapshot = await self._signals.snapshot(now)
            except Exception as e:
                report.errors += 1
                TICKS.labels(outcome="signal_error").inc()
                logger.error("Cannot read signals, tick skipped", error=str(e))
                return report

            self._history.record(snapshot)
            samples = self._history.samples

            for compiled in self._catalog.current_rules():
                try:
                    await self._process_rule(compiled, snapshot, samples, now, report)
                except Exception as e:
                    report.errors += 1
                    logger.error(
                        "Rule processing failed",
                        rule_id=compiled.rule_id,
                        error=str(e),
                        exc_info=True,
                    )

            TICKS.labels(outcome="completed").inc()
            logger.debug(
                "Tick complete",
                evaluated=report.evaluated,
                matched=report.matched,
                started=len(report.started),
                skipped=dict(report.skipped),
            )
            return report
        finally:
            self._tick_in_progress = False

    async def _process_rule(
        self,
        compiled: CompiledRule,
        snapshot: SignalSnapshot,
        samples: tuple[SignalSnapshot, ...],
        now: datetime,
        report: TickReport,
    ) -> None:
        rule = compiled.rule
        if not rule.enabled:
            return

        if rule.rule_id in self._running_rules() or await self._ledger.has_active(rule.rule_id):
            self._skip(rule, SkipReason.SINGLE_FLIGHT, report)
            return

        last_end = await self._ledger.last_terminal_end(rule.rule_id)
        if last_end is not None:
            if now - last_end < timedelta(seconds=rule.cooldown_seconds):
                self._skip(rule, SkipReason.COOLDOWN, report)
                return
            # Sustained conditions re-arm: only count time after the last execution
            samples = tuple(sample for sample in samples if sample.captured_at > last_end)

        result = self._evaluator.evaluate(compiled.condition, snapshot, samples)
        report.evaluated += 1
        RULES_EVALUATED.labels(rule_id=rule.rule_id).inc()

        if result.error:
            logger.warning("Rule evaluation error", rule_id=rule.rule_id, error=result.error)
        if not result.matched:
            return

        report.matched += 1
        RULES_MATCHED.labels(rule_id=rule.rule_id).inc()
        logger.info("Rule matched", rule_id=rule.rule_id, reason=result.reason)

        if rule.requires_confirmation:
            self._skip(rule, SkipReason.CONFIRMATION_REQUIRED, report)
            return

        execution = await self._start(rule, result.payload, now, report=report)
        if execution is not None:
            report.started.append(execution.execution_id)

    def _skip(self, rule: Rule, reason: str, report: TickReport | None = None) -> None:
        TRIGGERS_SKIPPED.labels(rule_id=rule.rule_id, reason=reason).inc()
        if report is not None:
            report.skipped[reason] += 1
        logger.info("Skipped trigger", rule_id=rule.rule_id, reason=reason)

    def _running_rules(self) -> set[str]:
        return {task.get_name() for task in self._inflight.values()}

    async def _start(
        self,
        rule: Rule,
        payload: dict[str, Any],
        now: datetime,
        manual: bool = False,
        report: TickReport | None = None,
    ) -> Execution | None:
        """Create the execution (Pending) and schedule it on the worker pool."""
        if self._stopping.is_set():
            self._skip(rule, SkipReason.SHUTTING_DOWN, report)
            return None

        # stop() waits for every create in progress before it collects tasks
        self._creating += 1
        self._creates_done.clear()
        try:
            async with self._rule_locks[rule.rule_id]:
                execution = Execution(
                    execution_id=new_execution_id(now),
                    rule_id=rule.rule_id,
                    rule_version=rule.metadata.version,
                    trigger_payload=payload,
                    manual=manual,
                    start_time=now,
                )
                try:
                    created = await self._writer.create(execution)
                except LedgerWriteError as e:
                    logger.error("Cannot create execution", rule_id=rule.rule_id, error=str(e))
                    self._skip(rule, SkipReason.LEDGER_UNAVAILABLE, report)
                    return None
                if not created:
                    self._skip(rule, SkipReason.SINGLE_FLIGHT, report)
                    return None

                if self._stopping.is_set():
                    await self._terminate(execution, ExecutionStatus.CANCELLED, "Cancelled before start")
                    self._skip(rule, SkipReason.SHUTTING_DOWN, report)
                    return None

                EXECUTIONS_STARTED.labels(rule_id=rule.rule_id, manual=str(manual).lower()).inc()
                task = asyncio.create_task(self._run(execution, rule), name=rule.rule_id)
                self._inflight[execution.execution_id] = task
                self._executions[execution.execution_id] = execution
                task.add_done_callback(lambda t, eid=execution.execution_id: self._on_done(eid, t))
        finally:
            self._creating -= 1
            if not self._creating:
                self._creates_done.set()

        logger.info(
            "Execution created",
            rule_id=rule.rule_id,
            execution_id=execution.execution_id,
            manual=manual,
        )
        return execution

    async def _run(self, execution: Execution, rule: Rule) -> None:
        """Wait for a worker slot, then run the execution."""
        try:
            async with self._pool:
                execution.transition(ExecutionStatus.RUNNING)
                await self._writer.record(execution)
                if self._notifier:
                    await self._notifier.notify_execution_started(execution)

                EXECUTIONS_RUNNING.inc()
                try:
                    await self._executor.execute(execution, rule)
                finally:
                    EXECUTIONS_RUNNING.dec()
        except asyncio.CancelledError:
            if not execution.is_terminal:
                await self._terminate(execution, ExecutionStatus.CANCELLED, "Cancelled before actions started")
            raise

    def _on_done(self, execution_id: str, task: asyncio.Task) -> None:
        self._inflight.pop(execution_id, None)
        self._executions.pop(execution_id, None)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Execution task failed", execution_id=execution_id, error=str(error))

    async def _terminate(self, execution: Execution, status: ExecutionStatus, reason: str) -> None:
        execution.transition(status, at=self._clock())
        execution.error_message = reason
        EXECUTIONS_FINISHED.labels(rule_id=execution.rule_id, status=status.value).inc()
        await self._writer.record(execution)
        if self._notifier:
            await self._notifier.notify_execution_completed(execution)

    async def execute_now(
        self,
        rule_id: str,
        trigger_payload: dict[str, Any] | None = None,
    ) -> Execution | None:
        """Run a rule on operator request, bypassing condition and cooldown.

        Single-flight still applies.

        Args:
            rule_id: Rule to run
            trigger_payload: Data to hand to the actions (defaults to current signals)

        Returns:
            The created execution, or None if the rule is already running

        Raises:
            ValueError: If the rule is not in the catalog
        """
        compiled = self._catalog.get(rule_id)
        if compiled is None:
            raise ValueError(f"Rule {rule_id} not found")

        now = self._clock()
        if trigger_payload is None:
            snapshot = await self._signals.snapshot(now)
            trigger_payload = {"captured_at": snapshot.captured_at.isoformat(), "matches": []}
        return await self._start(compiled.rule, {**trigger_payload, "manual": True}, now, manual=True)

    async def preview(self, snapshot: SignalSnapshot | None = None) -> list[tuple[Rule, EvaluationResult]]:
        """Rules whose conditions match right now, without side effects."""
        snapshot = snapshot or await self._signals.snapshot(self._clock())
        samples = self._history.samples
        matches = []
        for compiled in self._catalog.current_rules():
            result = self._evaluator.evaluate(compiled.condition, snapshot, samples)
            if result.matched:
                matches.append((compiled.rule, result))
        return matches

    async def reconcile_stale(self, now: datetime | None = None) -> int:
        """Fail non-terminal executions that outlived their maximum lifetime.

        Executions owned by this process or waiting in the ledger fallback
        buffer are left alone.

        Returns:
            Number of executions reconciled
        """
        now = now or self._clock()
        max_age = timedelta(seconds=self._settings.execution_max_lifetime_seconds)

        await self._writer.flush()
        buffered = {execution.execution_id for execution in self._writer.pending}

        reconciled = 0
        for execution in await self._ledger.list_active():
            if execution.execution_id in self._inflight or execution.execution_id in buffered:
                continue
            if now - execution.start_time <= max_age:
                continue

            reason = f"Exceeded maximum lifetime of {self._settings.execution_max_lifetime_seconds}s"
            if execution.status == ExecutionStatus.RUNNING:
                await self._terminate(execution, ExecutionStatus.FAILED, reason)
            else:
                await self._terminate(execution, ExecutionStatus.CANCELLED, reason)
            reconciled += 1
            logger.warning(
                "Stale execution reconciled",
                execution_id=execution.execution_id,
                rule_id=execution.rule_id,
                status=execution.status.value,
            )
        return reconciled

    async def run(self) -> None:
        """Tick on a fixed period until stopped; overrunning ticks skip, never queue."""
        loop = asyncio.get_running_loop()
        interval = self._settings.tick_interval_seconds
        next_tick = loop.time()

        logger.info("Dispatcher started", tick_interval=interval)
        while not self._stopping.is_set():
            started = loop.time()
            await self.tick()
            TICK_DURATION.observe(loop.time() - started)

            next_tick += interval
            if loop.time() > next_tick:
                missed = int((loop.time() - next_tick) // interval) + 1
                next_tick += missed * interval
                TICKS.labels(outcome="skipped").inc(missed)
                logger.warning("Tick overran its interval", skipped_ticks=missed)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=max(0.0, next_tick - loop.time()))
            except asyncio.TimeoutError:
                pass
        logger.info("Dispatcher stopped")

    async def run_watchdog(self) -> None:
        """Reconcile stale executions periodically until stopped."""
        interval = self._settings.watchdog_interval_seconds
        while not self._stopping.is_set():
            try:
                await self.reconcile_stale()
            except Exception as e:
                logger.error("Watchdog pass failed", error=str(e), exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass

    async def stop(self, grace_seconds: float | None = None) -> None:
        """Stop ticking and let in-flight executions finish within the grace period.

        Executions still running at the deadline are cancelled and end as
        Cancelled with their partial action outcomes.
        """
        self._stopping.set()
        grace = self._settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        await self._creates_done.wait()

        tasks = list(self._inflight.values())
        executions = list(self._executions.values())
        if tasks:
            logger.info("Waiting for in-flight executions", count=len(tasks), grace_seconds=grace)
            _, pending = await asyncio.wait(tasks, timeout=grace)
            if pending:
                logger.warning("Cancelling executions after grace period", count=len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        # Tasks cancelled before their first step never reach their own handler
        for execution in executions:
            if execution.status == ExecutionStatus.PENDING:
                await self._terminate(execution, ExecutionStatus.CANCELLED, "Cancelled before start")

        await self._writer.flush()

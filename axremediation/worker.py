"""Engine process entry point: rule catalog, dispatcher and watchdog."""

import asyncio
import signal

import httpx
from prometheus_client import start_http_server

from axremediation.actions.notify import SendNotificationAction
from axremediation.actions.operations import (
    AcknowledgeAlertAction,
    KillSessionAction,
    RestartBatchJobAction,
    build_monitoring_client,
)
from axremediation.actions.registry import ActionRegistry
from axremediation.actions.script import InvokeScriptAction
from axremediation.actions.webhook import CallWebhookAction
from axremediation.core.config import get_settings
from axremediation.core.logging import get_logger, setup_logging
from axremediation.engine.catalog import RuleCatalog
from axremediation.engine.dispatcher import RemediationDispatcher
from axremediation.engine.executor import ActionExecutor
from axremediation.engine.ledger_writer import LedgerWriter
from axremediation.notification.publisher import ExecutionNotifier
from axremediation.storage.ledger import RedisExecutionLedger
from axremediation.storage.notify_queue import NotificationQueue
from axremediation.storage.redis_client import (
    close_redis_pool,
    get_redis,
    init_redis_pool,
)
from axremediation.storage.rule_store import RuleStore
from axremediation.storage.signal_store import RedisSignalSource

logger = get_logger(__name__)


def build_registry(queue: NotificationQueue, monitoring: httpx.AsyncClient) -> ActionRegistry:
    """Registry with every built-in action type."""
    return ActionRegistry([
        AcknowledgeAlertAction(monitoring),
        KillSessionAction(monitoring),
        RestartBatchJobAction(monitoring),
        InvokeScriptAction(),
        CallWebhookAction(),
        SendNotificationAction(queue),
    ])


class EngineManager:
    """Manager for coordinating the engine's long-running loops."""

    def __init__(self):
        """Initialize engine manager."""
        self._settings = get_settings()
        self._monitoring: httpx.AsyncClient | None = None
        self._registry: ActionRegistry | None = None
        self._catalog: RuleCatalog | None = None
        self._dispatcher: RemediationDispatcher | None = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """Wire the components and run until stopped."""
        setup_logging()
        logger.info(
            "Starting remediation engine",
            version=self._settings.app_version,
            tick_interval=self._settings.tick_interval_seconds,
        )

        await init_redis_pool()
        redis = get_redis()

        if self._settings.metrics_port > 0:
            start_http_server(self._settings.metrics_port)
            logger.info("Metrics endpoint started", port=self._settings.metrics_port)

        ledger = RedisExecutionLedger(redis)
        writer = LedgerWriter(ledger)
        notifier = ExecutionNotifier(redis)
        self._monitoring = build_monitoring_client()
        self._registry = build_registry(NotificationQueue(redis), self._monitoring)
        logger.info("Action handlers registered", action_types=self._registry.action_types)
        self._catalog = RuleCatalog(RuleStore(redis), self._registry)
        self._dispatcher = RemediationDispatcher(
            catalog=self._catalog,
            signals=RedisSignalSource(redis),
            ledger=ledger,
            writer=writer,
            executor=ActionExecutor(self._registry, writer, notifier),
            notifier=notifier,
        )

        # Evaluate against a populated catalog from the first tick
        await self._catalog.refresh()

        try:
            await asyncio.gather(
                self._run_catalog(),
                self._run_dispatcher(),
                self._run_watchdog(),
                self._shutdown_event.wait(),
            )
        finally:
            await self._cleanup()

    async def _run_catalog(self) -> None:
        """Run catalog refresh loop."""
        if self._catalog:
            try:
                await self._catalog.run(self._shutdown_event)
            except asyncio.CancelledError:
                logger.info("Catalog refresh cancelled")
            except Exception as e:
                logger.error("Catalog refresh error", error=str(e), exc_info=True)

    async def _run_dispatcher(self) -> None:
        """Run dispatcher tick loop."""
        if self._dispatcher:
            try:
                await self._dispatcher.run()
            except asyncio.CancelledError:
                logger.info("Dispatcher cancelled")
            except Exception as e:
                logger.error("Dispatcher error", error=str(e), exc_info=True)

    async def _run_watchdog(self) -> None:
        """Run stale execution watchdog."""
        if self._dispatcher:
            try:
                await self._dispatcher.run_watchdog()
            except asyncio.CancelledError:
                logger.info("Watchdog cancelled")
            except Exception as e:
                logger.error("Watchdog error", error=str(e), exc_info=True)

    async def stop(self) -> None:
        """Stop ticking and drain in-flight executions."""
        logger.info("Stopping engine")
        try:
            if self._dispatcher:
                await self._dispatcher.stop()
        finally:
            self._shutdown_event.set()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        logger.info("Cleaning up resources")
        if self._registry:
            await self._registry.close()
        if self._monitoring:
            await self._monitoring.aclose()
        await close_redis_pool()
        logger.info("Cleanup complete")


async def main() -> None:
    """Main entry point for the engine process."""
    manager = EngineManager()

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(manager.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    await manager.start()


def cli() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    cli()

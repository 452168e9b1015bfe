"""Retrying ledger writes with an in-process fallback buffer."""

import asyncio
from typing import Awaitable, Callable

from axremediation.core.config import Settings, get_settings
from axremediation.core.errors import LedgerWriteError
from axremediation.core.logging import get_logger
from axremediation.models.execution import Execution
from axremediation.observability.metrics import LEDGER_FALLBACK_SIZE, LEDGER_WRITE_FAILURES
from axremediation.storage.ledger import RedisExecutionLedger

logger = get_logger(__name__)


class LedgerWriter:
    """Write path of the execution ledger.

    Terminal writes are retried with exponential backoff. When the retries
    are exhausted the execution is parked in a fallback buffer, which is
    flushed ahead of every later write and by the watchdog, so a terminal
    execution is never dropped.
    """

    def __init__(
        self,
        ledger: RedisExecutionLedger,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = settings or get_settings()
        self._ledger = ledger
        self._max_retry = settings.ledger_write_max_retry
        self._base_delay = settings.ledger_retry_base_delay
        self._sleep = sleep
        self._fallback: dict[str, Execution] = {}

    @property
    def pending(self) -> list[Execution]:
        """Terminal executions waiting to be flushed."""
        return list(self._fallback.values())

    async def create(self, execution: Execution) -> bool:
        """Atomically create an execution unless its rule is held.

        Raises:
            LedgerWriteError: If the ledger is unavailable
        """
        await self.flush()
        return await self._ledger.try_create(execution)

    async def record(self, execution: Execution) -> bool:
        """Persist a transition.

        Non-terminal writes are attempted once; the terminal write carries the
        full state anyway. Terminal writes are retried, then buffered.

        Returns:
            True if the ledger accepted the write
        """
        await self.flush()

        if not execution.is_terminal:
            try:
                return await self._ledger.record(execution)
            except LedgerWriteError as e:
                LEDGER_WRITE_FAILURES.inc()
                logger.warning(
                    "Ledger transition write failed",
                    execution_id=execution.execution_id,
                    status=execution.status.value,
                    error=str(e),
                )
                return False

        for attempt in range(1, self._max_retry + 1):
            try:
                await self._ledger.record(execution)
                return True
            except LedgerWriteError as e:
                LEDGER_WRITE_FAILURES.inc()
                logger.warning(
                    "Terminal ledger write failed",
                    execution_id=execution.execution_id,
                    attempt=attempt,
                    error=str(e),
                )
                if attempt < self._max_retry:
                    await self._sleep(self._base_delay * (2 ** (attempt - 1)))

        self._fallback[execution.execution_id] = execution.model_copy(deep=True)
        LEDGER_FALLBACK_SIZE.set(len(self._fallback))
        logger.error(
            "Terminal execution buffered after exhausting retries",
            execution_id=execution.execution_id,
            status=execution.status.value,
            buffered=len(self._fallback),
        )
        return False

    async def flush(self) -> int:
        """Write buffered terminal executions, oldest first.

        Stops at the first failure and keeps the remainder buffered.

        Returns:
            Number of executions flushed
        """
        flushed = 0
        for execution_id, execution in list(self._fallback.items()):
            try:
                await self._ledger.record(execution)
            except LedgerWriteError as e:
                LEDGER_WRITE_FAILURES.inc()
                logger.debug("Fallback flush deferred", execution_id=execution_id, error=str(e))
                break
            del self._fallback[execution_id]
            flushed += 1

        if flushed:
            LEDGER_FALLBACK_SIZE.set(len(self._fallback))
            logger.info("Flushed buffered executions", flushed=flushed, remaining=len(self._fallback))
        return flushed

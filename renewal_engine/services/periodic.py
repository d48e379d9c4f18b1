"""
Periodic Task - Cancellable fixed-cadence background loop.

`stop()` lets an in-flight tick finish, then returns with no task left behind.
"""

import asyncio
import time

from structlog import get_logger

from renewal_engine.models.api import ProcessState
from renewal_engine.observability.metrics import metrics
from renewal_engine.observability.tracing import trace_operation

logger = get_logger(__name__)


class PeriodicTask:
    """Base class for the engine's background loops. Subclasses implement `tick()`."""

    name: str = "periodic"

    def __init__(self, interval_seconds: float, stop_timeout_seconds: float = 30.0) -> None:
        if interval_seconds <= 0:
            raise ValueError(f"{self.name} interval must be positive")
        self.interval_seconds = interval_seconds
        self.stop_timeout_seconds = stop_timeout_seconds
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def state(self) -> ProcessState:
        return ProcessState.RUNNING if self.running else ProcessState.STOPPED

    async def tick(self) -> None:
        raise NotImplementedError

    async def start(self) -> None:
        """Start the loop in the background. No-op if already running."""
        if self.running:
            logger.warning("loop_already_running", process=self.name)
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"renewal-engine-{self.name}")
        metrics.set_running(self.name, True)
        logger.info("loop_started", process=self.name, interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        """Stop the loop, waiting for the current tick to finish."""
        if self._task is None:
            return

        self._stop_event.set()
        task = self._task
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=self.stop_timeout_seconds)
        except TimeoutError:
            logger.error("loop_stop_timeout", process=self.name)
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            metrics.set_running(self.name, False)

        logger.info("loop_stopped", process=self.name)

    async def run_once(self) -> bool:
        """Run one tick inside the loop's error boundary. Returns success."""
        started = time.perf_counter()
        success = True
        with trace_operation(f"{self.name}_tick"):
            try:
                await self.tick()
            except Exception as e:
                success = False
                logger.exception("loop_tick_failed", process=self.name, error=str(e))
                metrics.record_error(type(e).__name__, f"{self.name}_tick")
        metrics.record_tick(self.name, success, time.perf_counter() - started)
        return success

    async def _run(self) -> None:
        # First tick runs immediately; a stop request is honored between ticks
        while True:
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
                return
            except TimeoutError:
                continue

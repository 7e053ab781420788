"""
Recurring task driver for Certs Monitor.
"""

import asyncio
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from certs_monitor.logger import get_logger, log_loop_run
from certs_monitor.metrics import MetricsCollector
from certs_monitor.models import utcnow


def _noop() -> None:
    return None


class RecurringTask:
    """
    Runs a coroutine function forever with a fixed pause between runs.

    The first run starts immediately; each following run starts ``interval``
    seconds after the previous one completed. A run is never overlapped by
    another run of the same task, and exceptions are reported through
    ``on_fail`` without stopping the loop.
    """

    def __init__(
        self,
        name: str,
        task: Callable[[], Awaitable[Any]],
        interval: float,
        on_start: Callable[[], None] = _noop,
        on_finish: Callable[[], None] = _noop,
        on_fail: Optional[Callable[[Exception], None]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.name = name
        self.task = task
        self.interval = interval
        self.on_start = on_start
        self.on_finish = on_finish
        self.on_fail = on_fail or self._log_failure
        self.metrics = metrics
        self.logger = get_logger("scheduler")

        self.last_run_at: Optional[datetime] = None
        self.last_duration: Optional[float] = None
        self.last_error: Optional[str] = None
        self.runs = 0

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        """True while a run is in progress."""
        return self._running

    @property
    def started(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def _log_failure(self, error: Exception) -> None:
        self.logger.error(f"Task '{self.name}' failed: {error}", exc_info=error)

    async def run_once(self) -> bool:
        """
        Run the task unless a run is already in progress.

        Returns:
            False if the run was skipped because the previous one is still active
        """
        if self._running:
            self.logger.debug(f"Task '{self.name}' still running, skipping this tick")
            return False

        self._running = True
        started = time.monotonic()
        failed = False
        log_loop_run(self.logger, self.name, "started")

        try:
            self.on_start()
            await self.task()
            self.on_finish()
            self.last_error = None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            failed = True
            self.last_error = str(e) or type(e).__name__
            self.on_fail(e)
        finally:
            self._running = False
            self.runs += 1
            self.last_duration = time.monotonic() - started
            self.last_run_at = utcnow()
            if self.metrics is not None:
                self.metrics.record_loop_run(self.name, self.last_duration, failed)
            log_loop_run(self.logger, self.name, "finished", self.last_duration)

        return True

    async def _run_forever(self) -> None:
        while True:
            await self.run_once()
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        """Schedule the loop on the running event loop."""
        if self.started:
            self.logger.warning(f"Task '{self.name}' is already running")
            return

        self._loop_task = asyncio.create_task(self._run_forever(), name=f"recurring-{self.name}")
        self.logger.info(f"Started task '{self.name}' - Interval: {self.interval:g}s")

    async def stop(self) -> None:
        """Cancel the loop, interrupting a run in progress."""
        if self._loop_task is None:
            return

        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass

        self._loop_task = None
        self.logger.info(f"Stopped task '{self.name}'")

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "started": self.started,
            "running": self._running,
            "interval_seconds": self.interval,
            "runs": self.runs,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_duration_seconds": self.last_duration,
            "last_error": self.last_error,
        }

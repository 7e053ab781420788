"""
Background worker that drives the check, heartbeat and outbox loops.
"""

from typing import Any, Dict, List

from certs_monitor.checks import DomainCheckRunner
from certs_monitor.config import Config
from certs_monitor.heartbeat import HeartbeatAggregator
from certs_monitor.logger import get_logger
from certs_monitor.metrics import MetricsCollector
from certs_monitor.outbox import NotificationOutbox
from certs_monitor.scheduler import RecurringTask


class Worker:
    """Owns the three independent recurring tasks."""

    def __init__(
        self,
        config: Config,
        checks: DomainCheckRunner,
        heartbeat: HeartbeatAggregator,
        outbox: NotificationOutbox,
        metrics: MetricsCollector,
    ):
        self.config = config
        self.checks = checks
        self.heartbeat = heartbeat
        self.outbox = outbox
        self.logger = get_logger("worker")

        self.check_task = RecurringTask(
            "checks",
            checks.run_checks,
            config.check_interval_seconds,
            on_start=lambda: self.logger.info("Starting domain checks run..."),
            on_finish=lambda: self.logger.info("Domain checks finished"),
            on_fail=lambda e: self.logger.error(f"Domain checks run failed: {e}", exc_info=e),
            metrics=metrics,
        )
        self.heartbeat_task = RecurringTask(
            "heartbeat",
            heartbeat.run_heartbeat,
            config.heartbeat_interval_seconds,
            on_start=lambda: self.logger.info("Starting heartbeat report run..."),
            on_finish=lambda: self.logger.info("Heartbeat report finished"),
            on_fail=lambda e: self.logger.error(f"Heartbeat report run failed: {e}", exc_info=e),
            metrics=metrics,
        )
        self.outbox_task = RecurringTask(
            "outbox",
            outbox.drain,
            config.outbox_poll_interval_seconds,
            on_start=lambda: self.logger.debug("Checking email outbox..."),
            on_finish=lambda: self.logger.debug("Email outbox poll finished"),
            on_fail=lambda e: self.logger.error(f"Email outbox poll failed: {e}", exc_info=e),
            metrics=metrics,
        )

    @property
    def tasks(self) -> List[RecurringTask]:
        return [self.check_task, self.heartbeat_task, self.outbox_task]

    def start(self) -> None:
        self.logger.info("Starting background tasks")
        for task in self.tasks:
            task.start()

    async def stop(self) -> None:
        for task in self.tasks:
            await task.stop()
        self.logger.info("Background tasks stopped")

    async def run_once(self) -> None:
        """Run every task a single time, in producer-then-consumer order."""
        for task in self.tasks:
            await task.run_once()

    def get_health_status(self) -> Dict[str, Any]:
        return {"loops": {task.name: task.get_health_status() for task in self.tasks}}

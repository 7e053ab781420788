"""
Prometheus metrics collection for Certs Monitor.
"""

import platform
import socket
import sys
import time
from datetime import datetime
from typing import Any, Dict

import psutil
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from certs_monitor.logger import get_logger


class MetricsCollector:
    """Prometheus metrics collector for domain checks, the outbox and the process."""

    def __init__(self) -> None:
        self.logger = get_logger("metrics")
        self.registry = CollectorRegistry()

        # Domain metrics
        self.domain_expiration_timestamp = Gauge(
            "certs_domain_expiration_timestamp",
            "Certificate expiration time of a monitored domain (Unix timestamp)",
            ["domain"],
            registry=self.registry,
        )

        self.domain_days_remaining = Gauge(
            "certs_domain_days_remaining",
            "Whole days until the domain certificate expires",
            ["domain"],
            registry=self.registry,
        )

        self.probes_total = Counter(
            "certs_probes_total",
            "Certificate probes by outcome",
            ["outcome"],
            registry=self.registry,
        )

        self.domains_due = Gauge(
            "certs_domains_due",
            "Domains selected for checking in the last run",
            registry=self.registry,
        )

        # Notification metrics
        self.notifications_enqueued_total = Counter(
            "certs_notifications_enqueued_total",
            "Outbox jobs created by template",
            ["template"],
            registry=self.registry,
        )

        self.outbox_deliveries_total = Counter(
            "certs_outbox_deliveries_total",
            "Outbox delivery attempts by result",
            ["result"],
            registry=self.registry,
        )

        self.outbox_batch_size = Gauge(
            "certs_outbox_batch_size",
            "Jobs picked up by the last outbox drain",
            registry=self.registry,
        )

        # Loop metrics
        self.loop_duration_seconds = Histogram(
            "certs_loop_duration_seconds",
            "Duration of recurring task runs",
            ["loop"],
            registry=self.registry,
        )

        self.loop_last_run_timestamp = Gauge(
            "certs_loop_last_run_timestamp",
            "Completion time of the last run",
            ["loop"],
            registry=self.registry,
        )

        self.loop_failures_total = Counter(
            "certs_loop_failures_total",
            "Recurring task runs that raised",
            ["loop"],
            registry=self.registry,
        )

        # Application metrics
        self.app_memory_bytes = Gauge(
            "app_memory_bytes",
            "Application memory usage in bytes",
            ["type"],
            registry=self.registry,
        )

        self.app_cpu_percent = Gauge(
            "app_cpu_percent", "Application CPU usage percentage", registry=self.registry
        )

        self.app_thread_count = Gauge(
            "app_thread_count", "Number of application threads", registry=self.registry
        )

        self.app_info = Info(
            "app_info",
            "Application information",
            ["hostname", "version", "python_version"],
            registry=self.registry,
        )

        self._last_system_update = 0.0
        self._system_update_interval = 30  # Update system metrics every 30 seconds

        self.logger.info("Metrics collector initialized")

    def record_certificate(self, domain: str, not_after: datetime, days_remaining: int) -> None:
        """Record the expiry of a successfully probed domain."""
        self.domain_expiration_timestamp.labels(domain=domain).set(not_after.timestamp())
        self.domain_days_remaining.labels(domain=domain).set(days_remaining)

    def record_probe(self, outcome: str) -> None:
        self.probes_total.labels(outcome=outcome).inc()

    def record_notification(self, template: str) -> None:
        self.notifications_enqueued_total.labels(template=template).inc()

    def record_delivery(self, result: str) -> None:
        self.outbox_deliveries_total.labels(result=result).inc()

    def record_loop_run(self, loop: str, duration: float, failed: bool) -> None:
        self.loop_duration_seconds.labels(loop=loop).observe(duration)
        self.loop_last_run_timestamp.labels(loop=loop).set(int(time.time()))
        if failed:
            self.loop_failures_total.labels(loop=loop).inc()

    def update_system_metrics(self) -> None:
        """Update system and application metrics."""
        current_time = time.time()

        # Only update system metrics every N seconds to reduce overhead
        if current_time - self._last_system_update < self._system_update_interval:
            return

        try:
            process = psutil.Process()

            memory_info = process.memory_info()
            self.app_memory_bytes.labels(type="rss").set(int(memory_info.rss))
            self.app_memory_bytes.labels(type="vms").set(int(memory_info.vms))

            self.app_cpu_percent.set(process.cpu_percent())
            self.app_thread_count.set(int(process.num_threads()))

            from certs_monitor import __version__

            self.app_info.labels(
                hostname=socket.gethostname(),
                version=__version__,
                python_version=platform.python_version(),
            ).info({"platform": sys.platform, "process_id": str(process.pid)})

            self._last_system_update = current_time

        except psutil.Error as e:
            self.logger.error(f"Failed to update system metrics: {e}")

    def get_metrics(self) -> str:
        """
        Get Prometheus metrics in text format.

        Returns:
            Metrics in Prometheus text format
        """
        self.update_system_metrics()
        return generate_latest(self.registry).decode("utf-8")

    def get_content_type(self) -> str:
        """Get content type for metrics endpoint."""
        return CONTENT_TYPE_LATEST

    def get_registry_status(self) -> Dict[str, Any]:
        """Get Prometheus registry status for health checks."""
        try:
            metrics_count = len(list(self.registry._collector_to_names.keys()))

            return {
                "prometheus_registry": {
                    "status": "healthy",
                    "metrics_count": metrics_count,
                    "last_update": self._last_system_update,
                }
            }
        except Exception as e:
            return {"prometheus_registry": {"status": "error", "error": str(e)}}

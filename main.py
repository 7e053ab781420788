#!/usr/bin/env python3
"""
Certs Monitor - Main Application Entry Point
"""

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

import click
import uvicorn
from fastapi import FastAPI

from certs_monitor import __version__
from certs_monitor.api import create_app
from certs_monitor.checks import DomainCheckRunner
from certs_monitor.config import Config, create_example_config, load_config
from certs_monitor.heartbeat import HeartbeatAggregator
from certs_monitor.logger import setup_logging
from certs_monitor.mailer import create_mailer
from certs_monitor.metrics import MetricsCollector
from certs_monitor.outbox import NotificationOutbox
from certs_monitor.prober import CertificateProber
from certs_monitor.renderer import TemplateRenderer
from certs_monitor.store import Store
from certs_monitor.worker import Worker


class CertsMonitor:
    """Main application class for Certs Monitor."""

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False):
        self.config: Optional[Config] = None
        self.store: Optional[Store] = None
        self.metrics: Optional[MetricsCollector] = None
        self.worker: Optional[Worker] = None
        self.app: Optional[FastAPI] = None
        self.config_path = config_path
        self.dry_run = dry_run
        self._shutdown_event = asyncio.Event()
        self.logger = logging.getLogger(__name__)

    async def initialize(self) -> None:
        """Initialize all application components."""
        try:
            self.config = load_config(self.config_path)
            if self.dry_run:
                self.config = self.config.model_copy(update={"dry_run": True})

            setup_logging(self.config)
            self.logger.info("Initializing Certs Monitor")

            self.store = Store(self.config)
            await self.store.create_all()

            self.metrics = MetricsCollector()
            renderer = TemplateRenderer()
            prober = CertificateProber(timeout=float(self.config.probe_timeout_seconds))

            outbox = NotificationOutbox(
                config=self.config,
                store=self.store,
                mailer=create_mailer(self.config),
                metrics=self.metrics,
            )
            checks = DomainCheckRunner(
                config=self.config,
                store=self.store,
                prober=prober,
                outbox=outbox,
                renderer=renderer,
                metrics=self.metrics,
            )
            heartbeat = HeartbeatAggregator(
                config=self.config, store=self.store, outbox=outbox, renderer=renderer
            )
            self.worker = Worker(
                config=self.config,
                checks=checks,
                heartbeat=heartbeat,
                outbox=outbox,
                metrics=self.metrics,
            )

            if self.config.enable_api:
                self.app = create_app(
                    config=self.config, store=self.store, worker=self.worker, metrics=self.metrics
                )

            self.logger.info("Certs Monitor initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize application: {e}")
            raise

    async def run(self) -> None:
        """Run the worker loops, or a single pass of each in dry-run mode."""
        if not self.worker:
            await self.initialize()

        assert self.config is not None, "Config should be initialized"
        assert self.worker is not None, "Worker should be initialized"

        if self.config.dry_run:
            self.logger.info("Running in dry-run mode - one pass of every loop, no email sent")
            try:
                await self.worker.run_once()
                self.logger.info("Dry-run completed")
            finally:
                await self.shutdown()
            return

        self.worker.start()

        if self.app is None:
            loop = asyncio.get_running_loop()
            for sig in [signal.SIGTERM, signal.SIGINT]:
                loop.add_signal_handler(sig, self._signal_handler, sig)
            try:
                await self._shutdown_event.wait()
            finally:
                await self.shutdown()
            return

        self.logger.info(f"Starting HTTP server on {self.config.bind_address}:{self.config.port}")
        server = uvicorn.Server(
            uvicorn.Config(
                app=self.app,
                host=self.config.bind_address,
                port=self.config.port,
                log_level=self.config.log_level.lower(),
                access_log=True,
            )
        )

        try:
            await server.serve()
        except KeyboardInterrupt:
            self.logger.info("Received interrupt signal")
        finally:
            await self.shutdown()

    def _signal_handler(self, signum: int) -> None:
        """Handle shutdown signals."""
        self.logger.info(f"Received signal {signum}, initiating graceful shutdown")
        self._shutdown_event.set()

    async def shutdown(self) -> None:
        """Gracefully shutdown all components."""
        self.logger.info("Starting graceful shutdown")

        if self.worker:
            await self.worker.stop()

        if self.store:
            await self.store.close()

        self.logger.info("Graceful shutdown completed")


async def init_database(config_path: Optional[str]) -> None:
    """Create the schema and exit."""
    config = load_config(config_path)
    setup_logging(config)
    store = Store(config)
    try:
        await store.create_all()
    finally:
        await store.close()


@click.command()
@click.option(
    "--config",
    "-f",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option("--version", "-v", is_flag=True, help="Show version information")
@click.option(
    "--dry-run", is_flag=True, help="Run every loop once without sending email, then exit"
)
@click.option("--init-db", is_flag=True, help="Create the database schema and exit")
@click.option(
    "--example-config",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write an example configuration file to PATH and exit",
)
def main(
    config: Optional[Path],
    version: bool,
    dry_run: bool,
    init_db: bool,
    example_config: Optional[Path],
) -> None:
    """Certs Monitor - Watch TLS certificates and email their owners before they expire."""

    if version:
        print(f"Certs Monitor v{__version__}")
        return

    if example_config:
        create_example_config(str(example_config))
        print(f"Example configuration written to {example_config}")
        return

    config_path = str(config) if config else None

    try:
        if init_db:
            asyncio.run(init_database(config_path))
            print("Database schema created")
            return

        monitor = CertsMonitor(config_path, dry_run=dry_run)
        asyncio.run(monitor.run())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
    except Exception as e:
        print(f"Application failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()

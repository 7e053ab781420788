"""
Standardized logging configuration for Certs Monitor.
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Optional

from certs_monitor.config import Config


class CustomFormatter(logging.Formatter):
    """Custom formatter with colored output for console."""

    # Color codes
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",  # Reset
    }

    def __init__(self, use_color: bool = True) -> None:
        self.use_color = use_color
        super().__init__()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with optional colors."""
        if self.use_color and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            reset = self.COLORS["RESET"]
            level_name = f"{color}{record.levelname:<8}{reset}"
        else:
            level_name = f"{record.levelname:<8}"

        timestamp = self.formatTime(record, "%Y-%m-%d %H:%M:%S")

        message = record.getMessage()

        if record.exc_info:
            if not message.endswith("\n"):
                message += "\n"
            message += self.formatException(record.exc_info)

        return f"{timestamp} | {level_name} | {record.name:<28} | {message}"


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    EXTRA_FIELDS = (
        "domain",
        "status",
        "error_type",
        "job_id",
        "attempts",
        "retry_in",
        "loop",
        "duration",
    )

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        import json
        from datetime import datetime, timezone

        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in self.EXTRA_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(config: Config) -> None:
    """
    Setup logging configuration.

    Args:
        config: Configuration object
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, config.log_level))

    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, config.log_level))

    # Use colored formatter for console if output is a TTY
    use_color = hasattr(sys.stdout, "isatty") and sys.stdout.isatty()
    console_handler.setFormatter(CustomFormatter(use_color=use_color))
    root_logger.addHandler(console_handler)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # Rotating file handler (10MB max, 5 backups)
        file_handler = logging.handlers.RotatingFileHandler(
            config.log_file, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setLevel(getattr(logging, config.log_level))
        file_handler.setFormatter(StructuredFormatter())
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    app_logger = logging.getLogger("certs_monitor")
    app_logger.info(f"Logging initialized - Level: {config.log_level}")

    if config.log_file:
        app_logger.info(f"Log file: {config.log_file}")


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance.

    Args:
        name: Logger name

    Returns:
        Logger instance
    """
    return logging.getLogger(f"certs_monitor.{name}")


# Logging helpers for worker operations
def log_probe_failed(logger: logging.Logger, domain: str, error: Exception) -> None:
    """Log a failed certificate probe."""
    logger.warning(
        f"[{domain}] Check failed: {error}",
        extra={"domain": domain, "error_type": type(error).__name__},
    )


def log_status(logger: logging.Logger, domain: str, status: str, days: int) -> None:
    """Log the status computed for a domain."""
    logger.info(
        f"[{domain}] Status: {status} ({days} days remaining)",
        extra={"domain": domain, "status": status},
    )


def log_outbox_retry(
    logger: logging.Logger, job_id: int, attempts: int, retry_in: float, error: Exception
) -> None:
    """Log a failed delivery that will be retried."""
    logger.warning(
        f"Email outbox job {job_id} failed ({error}); retrying in {retry_in:g} seconds",
        extra={"job_id": job_id, "attempts": attempts, "retry_in": retry_in},
    )


def log_loop_run(
    logger: logging.Logger, loop: str, event: str, duration: Optional[float] = None
) -> None:
    """Log a recurring task lifecycle event."""
    extra: dict = {"loop": loop}
    if duration is not None:
        extra["duration"] = duration
        logger.debug(f"Loop '{loop}' {event} in {duration:.2f}s", extra=extra)
    else:
        logger.debug(f"Loop '{loop}' {event}", extra=extra)

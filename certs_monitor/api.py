"""
FastAPI application for Certs Monitor.
"""

import asyncio
import ipaddress
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse

from certs_monitor import __version__
from certs_monitor.config import Config
from certs_monitor.logger import get_logger
from certs_monitor.metrics import MetricsCollector
from certs_monitor.store import Store
from certs_monitor.worker import Worker

REDACTED = "***REDACTED***"


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan handler that suppresses CancelledError during shutdown."""
    try:
        yield
    except asyncio.CancelledError:
        pass


def is_ip_allowed(client_ip: str, allowed_ips: list) -> bool:
    """Check a client address against single IPs and CIDR networks."""
    logger = get_logger("api")
    for allowed_ip in allowed_ips:
        try:
            if "/" in allowed_ip:
                network = ipaddress.ip_network(allowed_ip, strict=False)
                if ipaddress.ip_address(client_ip) in network:
                    return True
            elif client_ip == allowed_ip:
                return True
        except ValueError as e:
            logger.warning(f"Invalid IP configuration '{allowed_ip}': {e}")
    return False


def redact_config(config: Config) -> Dict[str, Any]:
    """Configuration as a dict with credentials removed."""
    config_dict: Dict[str, Any] = config.model_dump()

    if config_dict.get("smtp_password"):
        config_dict["smtp_password"] = REDACTED
    if config_dict.get("smtp_username"):
        config_dict["smtp_username"] = REDACTED
    config_dict["database_url"] = Store._mask_password(config.database_url)
    if config_dict.get("allowed_ips"):
        config_dict["allowed_ips"] = [f"{REDACTED} ({len(config.allowed_ips)} IPs/networks)"]

    return config_dict


def create_app(
    config: Config,
    store: Store,
    worker: Worker,
    metrics: MetricsCollector,
    lifespan_override: Optional[Any] = None,
) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        config: Configuration instance
        store: Store used for the database health check
        worker: Background worker whose loops are reported and triggered
        metrics: Metrics collector instance

    Returns:
        Configured FastAPI application
    """
    app = FastAPI(
        title="Certs Monitor",
        description="TLS certificate expiry monitoring worker",
        version=__version__,
        docs_url="/docs" if not config.dry_run else None,
        redoc_url="/redoc" if not config.dry_run else None,
        lifespan=lifespan_override or lifespan,
    )

    logger = get_logger("api")

    @app.middleware("http")
    async def ip_whitelist_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        """Middleware to enforce IP whitelisting."""
        if not config.enable_ip_whitelist:
            return await call_next(request)

        client_ip = request.client.host if request.client else None

        if not client_ip:
            logger.warning("Unable to determine client IP address, allowing request")
            return await call_next(request)

        if not is_ip_allowed(client_ip, config.allowed_ips):
            logger.warning(f"Access denied for IP address: {client_ip}")
            return JSONResponse(
                status_code=403,
                content={
                    "error": "Access forbidden",
                    "message": "Your IP address is not allowed to access this service",
                    "client_ip": client_ip,
                },
            )

        logger.debug(f"Access granted for IP address: {client_ip}")
        return await call_next(request)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def get_metrics() -> PlainTextResponse:
        try:
            metrics_data: str = metrics.get_metrics()
            return PlainTextResponse(content=metrics_data, media_type=metrics.get_content_type())
        except Exception as e:
            logger.error(f"Failed to generate metrics: {e}")
            raise HTTPException(status_code=500, detail="Failed to generate metrics") from e

    @app.get("/healthz", response_class=JSONResponse)
    async def get_health() -> JSONResponse:
        try:
            store_health = await store.get_health_status()
            worker_health = worker.get_health_status()
            metrics_health = metrics.get_registry_status()

            healthy = store_health["database"]["status"] == "healthy"
            health_status = {
                **store_health,
                **worker_health,
                **metrics_health,
                "status": "healthy" if healthy else "degraded",
                "version": __version__,
            }

            return JSONResponse(content=health_status, status_code=200 if healthy else 503)
        except Exception as e:
            logger.error(f"Failed to get health status: {e}")
            return JSONResponse(content={"status": "error", "error": str(e)}, status_code=500)

    @app.post("/checks/run", response_class=JSONResponse)
    async def trigger_checks() -> JSONResponse:
        if config.dry_run:
            return JSONResponse(
                content={"message": "Checks not run - dry run mode enabled"}, status_code=200
            )

        logger.info("Manual domain checks triggered via API")
        if not await worker.check_task.run_once():
            return JSONResponse(
                content={"message": "Domain checks already running"}, status_code=409
            )

        return JSONResponse(
            content={
                "message": "Domain checks finished",
                "checks": worker.check_task.get_health_status(),
            }
        )

    @app.get("/config", response_class=JSONResponse)
    async def get_config() -> JSONResponse:
        try:
            return JSONResponse(content=redact_config(config))
        except Exception as e:
            logger.error(f"Failed to get configuration: {e}")
            raise HTTPException(status_code=500, detail="Failed to get configuration") from e

    return app

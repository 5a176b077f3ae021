"""
Health check server for the deposit monitor.

Provides HTTP endpoints reporting monitor loop state.
"""

import asyncio

from aiohttp import web
from loguru import logger

from btc_deposits.services.monitor_scheduler import MonitorScheduler

# Global scheduler reference for health checks
_scheduler: MonitorScheduler | None = None

# Consecutive failed ticks before the monitor reports unhealthy
UNHEALTHY_AFTER_FAILURES = 3


def set_scheduler(scheduler: MonitorScheduler | None) -> None:
    """
    Set the scheduler instance for health checks.

    Args:
        scheduler: MonitorScheduler instance to report on
    """
    global _scheduler
    _scheduler = scheduler
    if scheduler is not None:
        logger.info("Deposit monitor registered for health checks")


async def health_handler(request: web.Request) -> web.Response:
    """
    Health check endpoint.

    Returns:
        JSON response with monitor loop state and last tick stats
    """
    if _scheduler is None:
        return web.json_response(
            {
                "status": "unhealthy",
                "error": "Deposit monitor not initialized",
            },
            status=503,
        )

    state = _scheduler.health()
    if not state["running"]:
        status = "stopped"
    elif state["consecutive_failures"] >= UNHEALTHY_AFTER_FAILURES:
        status = "unhealthy"
    else:
        status = "healthy"

    return web.json_response(
        {"status": status, **state},
        status=200 if status == "healthy" else 503,
    )


async def readiness_handler(request: web.Request) -> web.Response:
    """
    Readiness check endpoint.

    Ready once the loop is running.
    """
    if _scheduler is None or not _scheduler.state.running:
        return web.json_response(
            {
                "status": "not_ready",
                "ready": False,
            },
            status=503,
        )

    return web.json_response(
        {
            "status": "ready",
            "ready": True,
        }
    )


async def liveness_handler(request: web.Request) -> web.Response:
    """Liveness check endpoint."""
    return web.json_response(
        {
            "status": "alive",
            "alive": True,
        }
    )


def create_health_app() -> web.Application:
    """Build the health check application."""
    app = web.Application()
    app.router.add_get("/health", health_handler)
    app.router.add_get("/readiness", readiness_handler)
    app.router.add_get("/liveness", liveness_handler)
    return app


async def start_health_server(
    host: str = "0.0.0.0",
    port: int = 8080,
) -> web.AppRunner:
    """
    Start health check server.

    Args:
        host: Host to bind to
        port: Port to bind to

    Returns:
        AppRunner for cleanup
    """
    runner = web.AppRunner(create_health_app())
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()

    logger.info(f"Health check server started on {host}:{port}")
    return runner


async def stop_health_server(
    runner: web.AppRunner,
    timeout: int = 5,
) -> None:
    """
    Stop health check server gracefully.

    Args:
        runner: AppRunner to cleanup
        timeout: Maximum time to wait for cleanup in seconds
    """
    logger.info("Stopping health check server...")
    try:
        await asyncio.wait_for(runner.cleanup(), timeout=timeout)
        logger.info("Health check server stopped")
    except TimeoutError:
        logger.warning(f"Health check server cleanup timed out after {timeout}s")

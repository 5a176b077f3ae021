"""
Bitcoin deposit monitor worker.

Runs the monitor loop in-process with a health check server. Stops
after the current tick on SIGINT/SIGTERM.

Usage:
    python -m jobs.monitor_worker
"""

import asyncio
import signal
import sys

from loguru import logger

from btc_deposits.config.database import async_engine, async_session_maker
from btc_deposits.config.logging import setup_logging
from btc_deposits.config.settings import settings
from btc_deposits.services.chain.client import ChainQueryClient
from btc_deposits.services.confirmation_tracker import ConfirmationTracker
from btc_deposits.services.mint_trigger import build_mint_trigger
from btc_deposits.services.monitor_scheduler import MonitorScheduler
from jobs.health import set_scheduler, start_health_server, stop_health_server


async def main() -> None:
    """Run monitor loop until a shutdown signal arrives."""
    setup_logging(settings.log_level)
    logger.info(
        f"Starting Bitcoin deposit monitor worker "
        f"(environment={settings.environment}, network={settings.bitcoin_network})"
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    client = ChainQueryClient.from_settings(settings)
    mint_trigger = build_mint_trigger(settings)
    scheduler = MonitorScheduler(
        async_session_maker,
        ConfirmationTracker(client, settings.required_confirmations),
        settings,
        mint_trigger=mint_trigger,
    )
    set_scheduler(scheduler)

    health_runner = None
    try:
        health_runner = await start_health_server(port=settings.health_check_port)
    except OSError as e:
        logger.warning(f"Failed to start health check server: {e}")

    try:
        await scheduler.run(stop_event)
    finally:
        logger.info("Shutting down deposit monitor worker...")
        set_scheduler(None)
        if health_runner is not None:
            await stop_health_server(health_runner)
        await client.close()
        if mint_trigger is not None:
            await mint_trigger.close()
        await async_engine.dispose()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Deposit monitor stopped by user (KeyboardInterrupt)")
    except Exception as e:
        logger.exception(f"Deposit monitor crashed: {e}")
        sys.exit(1)

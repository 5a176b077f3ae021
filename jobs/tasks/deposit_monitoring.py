"""
Bitcoin deposit monitoring tasks.

One-shot dramatiq actors for queue-driven deployments. Each actor runs
against its own NullPool engine; concurrent runs are safe because every
transition is a conditional write.
"""

from contextlib import asynccontextmanager

import dramatiq
from loguru import logger

from btc_deposits.config.settings import settings
from btc_deposits.services.chain.client import ChainQueryClient
from btc_deposits.services.confirmation_tracker import ConfirmationTracker
from btc_deposits.services.mint_trigger import build_mint_trigger
from btc_deposits.services.monitor_scheduler import MonitorScheduler
from jobs.async_runner import run_async
from jobs.broker import NON_RETRYABLE_ERRORS, broker  # noqa: F401
from jobs.utils.database import create_task_engine, create_task_session_maker


@asynccontextmanager
async def _task_scheduler():
    """Scheduler wired to task-local engine, chain client and mint trigger."""
    engine = create_task_engine()
    client = ChainQueryClient.from_settings(settings)
    mint_trigger = build_mint_trigger(settings)
    try:
        yield MonitorScheduler(
            create_task_session_maker(engine),
            ConfirmationTracker(client, settings.required_confirmations),
            settings,
            mint_trigger=mint_trigger,
        )
    finally:
        await client.close()
        if mint_trigger is not None:
            await mint_trigger.close()
        await engine.dispose()


@dramatiq.actor(max_retries=0, time_limit=600_000)  # 10 min timeout
def monitor_bitcoin_deposits() -> None:
    """
    Run one monitoring tick.

    Expires overdue payments, polls active addresses and hands
    confirmed payments to the mint trigger.
    """
    logger.info("Starting Bitcoin deposit monitoring...")
    run_async(_monitor_bitcoin_deposits_async())


async def _monitor_bitcoin_deposits_async() -> None:
    async with _task_scheduler() as scheduler:
        stats = await scheduler.tick()
    logger.info(
        f"Bitcoin deposit monitoring complete: {stats.confirmed} confirmed, "
        f"{stats.expired} expired"
    )


@dramatiq.actor(
    max_retries=3, time_limit=300_000, throws=NON_RETRYABLE_ERRORS
)  # 5 min timeout
def retry_pending_mints() -> None:
    """Retry mint for confirmed payments that are not minted yet."""
    logger.info("Starting pending mint retry...")
    run_async(_retry_pending_mints_async())


async def _retry_pending_mints_async() -> None:
    async with _task_scheduler() as scheduler:
        if scheduler.mint_trigger is None:
            logger.warning("MINT_TRIGGER_URL is not set, skipping mint retry")
            return
        stats = await scheduler.retry_pending_mints()
    logger.info(
        f"Pending mint retry complete: {stats.mints_triggered} triggered, "
        f"{stats.mints_failed} failed"
    )


@dramatiq.actor(max_retries=0, time_limit=120_000, throws=NON_RETRYABLE_ERRORS)
def retrigger_mint(payment_id: str, force: bool = False) -> None:
    """
    Operator re-trigger of the mint for one payment.

    Args:
        payment_id: Payment ID
        force: Clear a stale in-flight mint claim first
    """
    run_async(_retrigger_mint_async(payment_id, force))


async def _retrigger_mint_async(payment_id: str, force: bool) -> None:
    async with _task_scheduler() as scheduler:
        result = await scheduler.retrigger_mint(payment_id, force=force)
    logger.info(
        f"Manual mint re-trigger for payment {payment_id}: "
        f"{result.from_status} -> {result.to_status} ({result.reason or 'ok'})"
    )

#!/usr/bin/env python3
"""
Manually re-trigger the mint for a confirmed payment.

For payments parked in mint_failed, or confirmed payments whose automatic
attempts ran out. Confirmation fields are never touched.

Usage:
    python scripts/retrigger_mint.py PAYMENT_ID
    python scripts/retrigger_mint.py PAYMENT_ID --force   # clear stale claim
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger

from btc_deposits.config.settings import settings
from btc_deposits.models.enums import PaymentStatus
from btc_deposits.services.chain.client import ChainQueryClient
from btc_deposits.services.confirmation_tracker import ConfirmationTracker
from btc_deposits.services.mint_trigger import build_mint_trigger
from btc_deposits.services.monitor_scheduler import MonitorScheduler
from btc_deposits.utils.exceptions import DepositMonitorError
from jobs.utils.database import create_task_engine, create_task_session_maker


# Configure logger
logger.remove()
logger.add(sys.stderr, level="INFO", format="{time:HH:mm:ss} | {level} | {message}")


async def retrigger(payment_id: str, force: bool) -> int:
    """Re-trigger mint; returns process exit code."""
    mint_trigger = build_mint_trigger(settings)
    if mint_trigger is None:
        logger.error("MINT_TRIGGER_URL is not set")
        return 1

    engine = create_task_engine()
    client = ChainQueryClient.from_settings(settings)
    scheduler = MonitorScheduler(
        create_task_session_maker(engine),
        ConfirmationTracker(client, settings.required_confirmations),
        settings,
        mint_trigger=mint_trigger,
    )

    try:
        result = await scheduler.retrigger_mint(payment_id, force=force)
    except DepositMonitorError as e:
        logger.error(str(e))
        return 1
    finally:
        await mint_trigger.close()
        await client.close()
        await engine.dispose()

    if result.to_status == PaymentStatus.MINT_TRIGGERED.value and result.applied:
        logger.success(f"Payment {payment_id} minted")
        return 0

    logger.warning(
        f"Payment {payment_id} not minted: status={result.to_status}, "
        f"reason={result.reason}"
    )
    if result.reason == "mint_in_flight":
        logger.info("Another attempt holds the mint claim; use --force if it is stale")
    return 2


def main():
    parser = argparse.ArgumentParser(
        description="Re-trigger the mint for a confirmed Bitcoin payment"
    )
    parser.add_argument("payment_id", help="Payment ID")
    parser.add_argument(
        "--force",
        action="store_true",
        help="Clear a stale in-flight mint claim before retrying",
    )

    args = parser.parse_args()
    sys.exit(asyncio.run(retrigger(args.payment_id, args.force)))


if __name__ == "__main__":
    main()

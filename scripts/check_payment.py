#!/usr/bin/env python3
"""
Show a payment and optionally poll its address now.

Usage:
    python scripts/check_payment.py PAYMENT_ID            # status + history
    python scripts/check_payment.py PAYMENT_ID --poll     # run one check first
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from loguru import logger

from btc_deposits.config.settings import settings
from btc_deposits.services.chain.client import ChainQueryClient
from btc_deposits.services.confirmation_tracker import ConfirmationTracker
from btc_deposits.services.monitor_scheduler import MonitorScheduler
from btc_deposits.services.payment_query_service import PaymentQueryService
from btc_deposits.utils.exceptions import PaymentNotFoundError
from jobs.utils.database import create_task_engine, create_task_session_maker


# Configure logger
logger.remove()
logger.add(sys.stderr, level="INFO", format="{time:HH:mm:ss} | {level} | {message}")


async def check_payment(payment_id: str, poll: bool) -> int:
    engine = create_task_engine()
    session_maker = create_task_session_maker(engine)
    client = ChainQueryClient.from_settings(settings)

    try:
        if poll:
            scheduler = MonitorScheduler(
                session_maker,
                ConfirmationTracker(client, settings.required_confirmations),
                settings,
            )
            result = await scheduler.process_payment(payment_id)
            logger.info(
                f"Check: {result.from_status} -> {result.to_status} "
                f"({result.reason or 'applied'})"
            )

        async with session_maker() as session:
            query = PaymentQueryService.from_settings(session, settings)
            status = await query.get_status(payment_id)
            address = await query.get_address_for(payment_id)
            events = await query.get_events(payment_id)
    except PaymentNotFoundError as e:
        logger.error(str(e))
        return 1
    finally:
        await client.close()
        await engine.dispose()

    logger.info(f"Payment {status.payment_id}: {status.status}")
    logger.info(f"  Address: {address.address} ({address.network})")
    logger.info(f"  Explorer: {address.explorer_url}")
    logger.info(f"  Observed: {status.observed_received} sats")
    logger.info(
        f"  Confirmations: {status.max_confirmations}/{status.required_confirmations}"
    )
    logger.info(f"  Confirmed: {status.confirmed_received} sats")
    if status.last_mint_error:
        logger.warning(
            f"  Mint attempts: {status.mint_attempts}, last error: {status.last_mint_error}"
        )
    for event in events:
        logger.info(
            f"  {event['created_at']} {event['event_type']} "
            f"{event['from_status'] or '-'} -> {event['to_status'] or '-'}"
        )
    return 0


def main():
    parser = argparse.ArgumentParser(description="Inspect a Bitcoin payment")
    parser.add_argument("payment_id", help="Payment ID")
    parser.add_argument(
        "--poll",
        action="store_true",
        help="Poll the deposit address once before showing status",
    )

    args = parser.parse_args()
    sys.exit(asyncio.run(check_payment(args.payment_id, args.poll)))


if __name__ == "__main__":
    main()
